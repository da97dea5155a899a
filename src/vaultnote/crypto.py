"""
Password-based encryption for item bodies.

Tokens are self-describing text so they survive any text-based remote
file:

    ENC:<b64 salt>:<b64 iv>:<b64 ciphertext>:<b64 mac>

Each token carries its own random 16-byte salt. PBKDF2-HMAC-SHA256 with
10000 iterations stretches the password into 64 bytes: the first half
keys AES-256-CBC (PKCS7 padding, random 16-byte IV), the second half keys
an HMAC-SHA256 over ``iv || ciphertext``. The MAC lets a wrong password
fail cleanly instead of producing garbage plaintext.

Tokens written before the MAC was introduced have only three fields after
the tag. They still decrypt; for those a wrong password is detected by
broken padding or invalid UTF-8, which catches the vast majority of
cases.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import os
from typing import Optional

logger = logging.getLogger("vaultnote.crypto")

ENCRYPTION_TAG = "ENC:"
PBKDF2_ITERATIONS = 10000
SALT_BYTES = 16
IV_BYTES = 16
KEY_BYTES = 32

# Fixed application key for the password verifier. The verifier is a
# local self-check, not a secret.
VERIFIER_KEY = b"vaultnote_master_key"


class DecryptionError(Exception):
    """A token could not be decrypted with the given password."""


def is_encrypted(text: Optional[str]) -> bool:
    """Check whether a string is an encryption token."""
    return bool(text) and text.startswith(ENCRYPTION_TAG)


def _derive_keys(password: str, salt: bytes) -> tuple[bytes, bytes]:
    """Stretch a password into an AES key and a MAC key."""
    from cryptography.hazmat.primitives.hashes import SHA256
    from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

    kdf = PBKDF2HMAC(
        algorithm=SHA256(),
        length=KEY_BYTES * 2,
        salt=salt,
        iterations=PBKDF2_ITERATIONS,
    )
    material = kdf.derive(password.encode("utf-8"))
    return material[:KEY_BYTES], material[KEY_BYTES:]


def _legacy_key(password: str, salt: bytes) -> bytes:
    from cryptography.hazmat.primitives.hashes import SHA256
    from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

    kdf = PBKDF2HMAC(algorithm=SHA256(), length=KEY_BYTES, salt=salt, iterations=PBKDF2_ITERATIONS)
    return kdf.derive(password.encode("utf-8"))


def _aes_encrypt(key: bytes, iv: bytes, plaintext: bytes) -> bytes:
    from cryptography.hazmat.primitives import padding
    from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(plaintext) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    return encryptor.update(padded) + encryptor.finalize()


def _aes_decrypt(key: bytes, iv: bytes, ciphertext: bytes) -> bytes:
    from cryptography.hazmat.primitives import padding
    from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()
    unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
    return unpadder.update(padded) + unpadder.finalize()


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def encrypt(plaintext: str, password: str) -> str:
    """Encrypt text into a self-contained token.

    Args:
        plaintext: The text to protect.
        password: The master password.

    Returns:
        str: A token beginning with ``ENC:``.
    """
    salt = os.urandom(SALT_BYTES)
    iv = os.urandom(IV_BYTES)
    aes_key, mac_key = _derive_keys(password, salt)
    ciphertext = _aes_encrypt(aes_key, iv, plaintext.encode("utf-8"))
    mac = hmac.new(mac_key, iv + ciphertext, hashlib.sha256).digest()
    return ENCRYPTION_TAG + ":".join([_b64(salt), _b64(iv), _b64(ciphertext), _b64(mac)])


def decrypt_or_raise(token: str, password: str) -> str:
    """Decrypt a token, raising DecryptionError on any failure.

    Raises:
        DecryptionError: Not a token, malformed, or wrong password.
    """
    if not is_encrypted(token):
        raise DecryptionError("not an encryption token")

    fields = token[len(ENCRYPTION_TAG):].split(":")
    if len(fields) not in (3, 4):
        raise DecryptionError(f"expected 3 or 4 token fields, got {len(fields)}")
    try:
        decoded = [base64.b64decode(f, validate=True) for f in fields]
    except ValueError as exc:
        raise DecryptionError(f"invalid base64 in token: {exc}") from exc

    salt, iv, ciphertext = decoded[0], decoded[1], decoded[2]
    if len(iv) != IV_BYTES or not ciphertext:
        raise DecryptionError("invalid iv or empty ciphertext")

    if len(decoded) == 4:
        aes_key, mac_key = _derive_keys(password, salt)
        expected = hmac.new(mac_key, iv + ciphertext, hashlib.sha256).digest()
        if not hmac.compare_digest(expected, decoded[3]):
            raise DecryptionError("authentication failed")
    else:
        aes_key = _legacy_key(password, salt)

    try:
        plaintext = _aes_decrypt(aes_key, iv, ciphertext)
        return plaintext.decode("utf-8")
    except ValueError as exc:
        # Bad padding and invalid UTF-8 both land here.
        raise DecryptionError(f"decryption failed: {exc}") from exc


def decrypt(token: str, password: str) -> Optional[str]:
    """Decrypt a token.

    Returns:
        The plaintext, or None if the password is wrong or the token is
        corrupted. Never returns garbage.
    """
    try:
        return decrypt_or_raise(token, password)
    except DecryptionError as exc:
        logger.debug("Decryption failed: %s", exc)
        return None


def password_verifier(password: str) -> str:
    """Keyed hash of the password, stored locally for offline checks."""
    return hmac.new(VERIFIER_KEY, password.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_password(password: str, verifier: Optional[str]) -> bool:
    """Check a password against a stored verifier."""
    if not verifier:
        return False
    return hmac.compare_digest(password_verifier(password), verifier)
