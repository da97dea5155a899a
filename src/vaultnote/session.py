"""
Session key — the unlocked master password for this process.

The holder of a SessionKey decides its lifetime: it is set at unlock and
cleared at lock or exit. Codec calls take it as an explicit argument;
nothing reads it from a global.
"""

from __future__ import annotations

import logging
from typing import Optional

from . import crypto

logger = logging.getLogger("vaultnote.session")


class SessionKey:
    """Holds the master password while the vault is unlocked."""

    def __init__(self, password: Optional[str] = None) -> None:
        self._password = password

    @property
    def is_unlocked(self) -> bool:
        return self._password is not None

    @property
    def password(self) -> Optional[str]:
        return self._password

    def unlock(self, password: str) -> None:
        self._password = password
        logger.debug("Session unlocked")

    def lock(self) -> None:
        self._password = None
        logger.debug("Session locked")

    def encrypt(self, plaintext: str) -> str:
        """Encrypt text with the session password.

        Raises:
            RuntimeError: If the session is locked.
        """
        if self._password is None:
            raise RuntimeError("session is locked")
        return crypto.encrypt(plaintext, self._password)

    def decrypt(self, token: str) -> Optional[str]:
        """Decrypt a token, or None when locked or the password is wrong."""
        if self._password is None:
            return None
        return crypto.decrypt(token, self._password)

    def __repr__(self) -> str:
        return f"SessionKey(unlocked={self.is_unlocked})"
