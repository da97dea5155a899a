"""
Encryption Coordinator — keeps every device on the same master password.

The remote repository holds one small JSON document at
``.notes-sync/encryption.json``:

    {"version": 3, "enabled": true, "locked": false,
     "device": "1712345678901-421337", "timestamp": "2024-04-05T10:01:18+00:00"}

``version`` increases with every password-affecting change, so a device
that sees a newer version knows the password moved on without it.
``locked`` is an advisory, TTL-bounded claim taken before a password
change or disable. Lock writes are conditional on the config's hash, so
when two devices race exactly one of them gets the lock.

The local verifier (a keyed hash of the password) only proves that a
password is the one this device was given. Before a device trusts a
password for sync it decrypts one real remote item with it.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from .. import crypto
from ..audit import audit_event
from ..models import LocalEncryptionSettings
from ..pubsub import EventBus
from ..session import SessionKey
from ..store import LocalStore
from . import codec
from .models import (
    ChangePasswordResult,
    EncryptionConfig,
    EncryptionStatus,
    EncryptionSyncResult,
    SyncSettings,
)
from .remote import (
    ConflictError,
    HistoryRewriteError,
    NotConfiguredError,
    RemoteError,
    RemoteStoreClient,
    git_blob_sha,
)

logger = logging.getLogger("vaultnote.sync.encryption")

ENCRYPTION_CONFIG_PATH = ".notes-sync/encryption.json"
ITEM_PREFIXES = ("notes/", "bookmarks/")
VERIFY_SAMPLE_SIZE = 10

# Failures at these stages leave the original branch untouched.
_REWRITE_SAFE_STAGES = {"blobs", "tree", "commit", "temp_branch", "default_branch"}

Clock = Callable[[], datetime]


class EncryptionLockedError(RuntimeError):
    """Another device holds an unexpired encryption lock."""

    def __init__(self, device: Optional[str] = None, timestamp: Optional[str] = None) -> None:
        super().__init__(f"encryption config locked by device {device} since {timestamp}")
        self.device = device
        self.timestamp = timestamp


class EncryptionNotReadyError(RuntimeError):
    """Sync cannot proceed until the encryption state is resolved."""

    def __init__(self, result: EncryptionSyncResult) -> None:
        super().__init__(f"encryption not ready: {result.value}")
        self.result = result


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EncryptionCoordinator:
    """Negotiates encryption state between this device and the remote.

    Args:
        store: Local store holding settings, items and the SHA cache.
        remote: Remote client, or None when no repository is configured.
        session: The process's session key.
        settings: Lock TTL and retry policy.
        events: Optional bus for ``encryption.*`` events.
        clock: Returns the current time; injectable for tests.
    """

    def __init__(
        self,
        store: LocalStore,
        remote: Optional[RemoteStoreClient],
        session: SessionKey,
        settings: Optional[SyncSettings] = None,
        events: Optional[EventBus] = None,
        clock: Clock = _utcnow,
    ) -> None:
        self.store = store
        self.remote = remote
        self.session = session
        self.settings = settings or SyncSettings()
        self.events = events
        self._clock = clock
        self.operation_in_progress = False
        self.password_verified = False
        self.password_change_detected = False
        self._status = EncryptionStatus.UNKNOWN
        self._last_config: Optional[EncryptionConfig] = None
        self.device_id = store.load_encryption_settings().device_id

    # ------------------------------------------------------------------
    # Local state
    # ------------------------------------------------------------------

    @property
    def local(self) -> LocalEncryptionSettings:
        return self.store.load_encryption_settings()

    @property
    def status(self) -> EncryptionStatus:
        return self._status

    @property
    def remote_configured(self) -> bool:
        return self.remote is not None and self.remote.config.is_configured

    @property
    def last_remote_config(self) -> Optional[EncryptionConfig]:
        return self._last_config

    def _set_status(self, status: EncryptionStatus) -> None:
        if status != self._status:
            logger.info("Encryption status %s -> %s", self._status.value, status.value)
        self._status = status
        if self.events:
            local = self.local
            self.events.publish(
                "encryption.changed",
                {"status": status.value, "enabled": local.enabled, "version": local.version},
            )

    def _record_versions(self, remote_version: int, remote_enabled: bool) -> None:
        if not self.remote_configured:
            return
        local = self.local
        self.store.update_encryption_versions(
            self.remote.config.repo_key,
            local_version=local.version,
            remote_version=remote_version,
            local_enabled=local.enabled,
            remote_enabled=remote_enabled,
        )

    def verify_password(self, password: str) -> bool:
        """Check a password against the local verifier. No network."""
        return crypto.verify_password(password, self.local.verifier)

    def unlock(self, password: str) -> bool:
        """Unlock the session with the local password.

        The session is not trusted for sync until it has also been checked
        against remote content.

        Returns:
            False if the password does not match the local verifier.
        """
        if not self.local.enabled or not self.verify_password(password):
            return False
        self.session.unlock(password)
        self.password_verified = False
        self._set_status(EncryptionStatus.ENABLED_LOCAL_ONLY)
        return True

    def lock(self) -> None:
        """Forget the session password."""
        self.session.lock()
        self.password_verified = False
        if self.local.enabled:
            self._set_status(EncryptionStatus.ENABLED_LOCAL_ONLY)

    def sync_session(self) -> Optional[SessionKey]:
        """The session key to hand to the codec for a sync pass.

        Returns:
            None when encryption is off.

        Raises:
            EncryptionNotReadyError: Encryption is on but the session is
                locked or not yet verified against remote content.
        """
        if not self.local.enabled:
            return None
        if not self.session.is_unlocked or self._status != EncryptionStatus.ENABLED_VERIFIED:
            raise EncryptionNotReadyError(EncryptionSyncResult.NEEDS_PASSWORD)
        return self.session

    # ------------------------------------------------------------------
    # Remote config
    # ------------------------------------------------------------------

    def _require_remote(self) -> RemoteStoreClient:
        if not self.remote_configured:
            raise NotConfiguredError("remote repository is not configured")
        return self.remote

    async def read_config(self) -> tuple[Optional[EncryptionConfig], Optional[str]]:
        """Fetch the remote encryption config and its hash.

        A config that does not parse is reported as absent, but its hash is
        still returned so it can be overwritten.
        """
        remote_file = await self._require_remote().read_file(ENCRYPTION_CONFIG_PATH)
        if remote_file is None:
            self._last_config = None
            return None, None
        try:
            cfg = EncryptionConfig.from_json(remote_file.content)
        except ValueError as exc:
            logger.warning("Ignoring unreadable encryption config: %s", exc)
            self._last_config = None
            return None, remote_file.sha
        self._last_config = cfg
        return cfg, remote_file.sha

    async def _write_config(self, cfg: EncryptionConfig, expected_sha: Optional[str]) -> str:
        sha = await self._require_remote().write_file(
            ENCRYPTION_CONFIG_PATH,
            cfg.to_json(),
            expected_sha=expected_sha,
            message=f"Update encryption config (v{cfg.version})",
        )
        self._last_config = cfg
        return sha

    def _config(self, version: int, enabled: bool, locked: bool = False) -> EncryptionConfig:
        return EncryptionConfig(
            version=version,
            enabled=enabled,
            locked=locked,
            device=self.device_id,
            timestamp=self._clock().isoformat(),
        )

    async def _acquire_lock(self) -> tuple[Optional[EncryptionConfig], str]:
        """Take the soft lock with a conditional write.

        The locked document keeps the current version and enabled flag;
        the new values land together with the unlock.

        Returns:
            The config as it was before locking, and the locked config's hash.

        Raises:
            EncryptionLockedError: Another device holds a live lock, or the
                config kept changing under us.
        """
        now = self._clock()
        seen_version: Optional[int] = None
        for attempt in range(self.settings.max_attempts):
            cfg, sha = await self.read_config()
            if cfg and cfg.is_locked_by_other(self.device_id, self.settings.lock_ttl_minutes, now):
                logger.info("Encryption config locked by %s since %s", cfg.device, cfg.timestamp)
                raise EncryptionLockedError(cfg.device, cfg.timestamp)
            version = cfg.version if cfg else 0
            if seen_version is not None and version != seen_version:
                # Another device finished a change between our read and our write.
                logger.info("Encryption config moved to v%d while locking", version)
                raise EncryptionLockedError(cfg.device if cfg else None, cfg.timestamp if cfg else None)
            seen_version = version
            if cfg and cfg.locked:
                logger.warning("Ignoring expired lock held by %s since %s", cfg.device, cfg.timestamp)

            current_version = cfg.version if cfg else self.local.version
            current_enabled = cfg.enabled if cfg else self.local.enabled
            try:
                lock_sha = await self._write_config(
                    self._config(current_version, current_enabled, locked=True), sha
                )
            except ConflictError:
                logger.info("Encryption config changed while locking (attempt %d)", attempt + 1)
                continue
            logger.debug("Acquired encryption lock as %s", self.device_id)
            return cfg, lock_sha

        last = self._last_config
        raise EncryptionLockedError(last.device if last else None, last.timestamp if last else None)

    # ------------------------------------------------------------------
    # Password-affecting operations
    # ------------------------------------------------------------------

    async def change_password(self, old_password: str, new_password: str) -> ChangePasswordResult:
        """Replace the master password on this device and the remote.

        Returns:
            SUCCESS, WRONG_PASSWORD, LOCKED_BY_ANOTHER_DEVICE or ERROR.
        """
        if not self.local.enabled or not self.verify_password(old_password):
            return ChangePasswordResult.WRONG_PASSWORD
        return await self._rekey(new_password, enabled=True, event="PASSWORD_CHANGED")

    async def disable(self, password: str, remove_config: bool = False) -> ChangePasswordResult:
        """Turn encryption off everywhere.

        Args:
            password: The current master password.
            remove_config: Delete the remote config instead of publishing a
                disabled one.
        """
        if not self.local.enabled:
            return ChangePasswordResult.SUCCESS
        if not self.verify_password(password):
            return ChangePasswordResult.WRONG_PASSWORD
        return await self._rekey(
            None, enabled=False, event="ENCRYPTION_DISABLED", remove_config=remove_config
        )

    async def _rekey(
        self,
        password: Optional[str],
        enabled: bool,
        event: str,
        remove_config: bool = False,
    ) -> ChangePasswordResult:
        previous = self.local
        previous_password = self.session.password
        self.operation_in_progress = True
        try:
            before: Optional[EncryptionConfig] = None
            lock_sha: Optional[str] = None
            if self.remote_configured:
                try:
                    before, lock_sha = await self._acquire_lock()
                except EncryptionLockedError:
                    return ChangePasswordResult.LOCKED_BY_ANOTHER_DEVICE
                except RemoteError as exc:
                    logger.error("Could not lock encryption config: %s", exc)
                    return ChangePasswordResult.ERROR

            new_version = max(previous.version, before.version if before else 0) + 1
            self.store.save_encryption_settings(
                previous.model_copy(
                    update={
                        "enabled": enabled,
                        "verifier": crypto.password_verifier(password) if password else None,
                        "version": new_version,
                    }
                )
            )
            if password:
                self.session.unlock(password)
            else:
                self.session.lock()
            self.store.mark_all_dirty()
            self.store.clear_sha_cache()

            if self.remote_configured:
                try:
                    if remove_config:
                        await self.remote.delete_file(
                            ENCRYPTION_CONFIG_PATH, sha=lock_sha, message="Remove encryption config"
                        )
                        self._last_config = None
                    else:
                        await self._write_config(self._config(new_version, enabled), lock_sha)
                except RemoteError as exc:
                    logger.error("Publishing encryption config failed, rolling back: %s", exc)
                    self._rollback(previous, previous_password)
                    await self._release_lock(before, lock_sha)
                    return ChangePasswordResult.ERROR
                self._record_versions(new_version, enabled and not remove_config)

            self.password_verified = enabled
            self.password_change_detected = False
            self._set_status(EncryptionStatus.ENABLED_VERIFIED if enabled else EncryptionStatus.DISABLED)
            audit_event(self.store.home, event, f"Encryption now v{new_version}", {"device": self.device_id})
            logger.info("%s: encryption v%d (enabled=%s)", event, new_version, enabled)
            return ChangePasswordResult.SUCCESS
        finally:
            self.operation_in_progress = False

    def _rollback(self, previous: LocalEncryptionSettings, previous_password: Optional[str]) -> None:
        self.store.save_encryption_settings(previous)
        if previous_password is not None:
            self.session.unlock(previous_password)
        else:
            self.session.lock()

    async def _release_lock(self, before: Optional[EncryptionConfig], lock_sha: Optional[str]) -> None:
        if lock_sha is None:
            return
        version = before.version if before else self.local.version
        enabled = before.enabled if before else self.local.enabled
        try:
            await self._write_config(self._config(version, enabled), lock_sha)
        except RemoteError as exc:
            logger.warning("Could not release encryption lock, it will expire: %s", exc)

    async def enable(self, password: str, rewrite_history: bool = False) -> ChangePasswordResult:
        """Turn encryption on with a new master password.

        With ``rewrite_history`` the remote branch is replaced by a single
        commit holding only encrypted content, so no plaintext survives in
        old commits. Otherwise items are simply re-uploaded encrypted.
        """
        local = self.local
        if local.enabled:
            return (
                ChangePasswordResult.SUCCESS
                if self.verify_password(password)
                else ChangePasswordResult.WRONG_PASSWORD
            )

        cfg: Optional[EncryptionConfig] = None
        sha: Optional[str] = None
        if self.remote_configured:
            try:
                cfg, sha = await self.read_config()
            except RemoteError as exc:
                logger.error("Could not read encryption config: %s", exc)
                return ChangePasswordResult.ERROR
            if cfg and cfg.is_locked_by_other(self.device_id, self.settings.lock_ttl_minutes, self._clock()):
                return ChangePasswordResult.LOCKED_BY_ANOTHER_DEVICE
            if cfg and cfg.enabled:
                logger.info("Remote already encrypted, adopting its password")
                adopted = await self.setup_from_remote(password)
                return ChangePasswordResult.SUCCESS if adopted else ChangePasswordResult.WRONG_PASSWORD

        new_version = max(local.version, cfg.version if cfg else 0) + 1
        self.store.save_encryption_settings(
            local.model_copy(
                update={
                    "enabled": True,
                    "verifier": crypto.password_verifier(password),
                    "version": new_version,
                }
            )
        )
        self.session.unlock(password)

        if self.remote_configured:
            if rewrite_history:
                result = await self._enable_with_rewrite(new_version, local)
                if result != ChangePasswordResult.SUCCESS:
                    return result
            else:
                try:
                    await self._write_config(self._config(new_version, True), sha)
                except RemoteError as exc:
                    logger.error("Publishing encryption config failed, rolling back: %s", exc)
                    self._rollback(local, None)
                    return ChangePasswordResult.ERROR
                self.store.mark_all_dirty()
            self._record_versions(new_version, True)

        self.password_verified = True
        self._set_status(EncryptionStatus.ENABLED_VERIFIED)
        audit_event(
            self.store.home,
            "ENCRYPTION_ENABLED",
            f"Encryption enabled at v{new_version}",
            {"rewrite_history": rewrite_history},
        )
        return ChangePasswordResult.SUCCESS

    async def _enable_with_rewrite(
        self, new_version: int, previous: LocalEncryptionSettings
    ) -> ChangePasswordResult:
        items = self.store.all_items()
        encoded = {item.remote_path: codec.encode(item, self.session) for item in items}
        files = dict(encoded)
        files[ENCRYPTION_CONFIG_PATH] = self._config(new_version, True).to_json()

        self.operation_in_progress = True
        try:
            commit_sha = await self._require_remote().rewrite_history(
                files, f"Encrypted snapshot (encryption v{new_version})"
            )
        except HistoryRewriteError as exc:
            self.store.mark_all_dirty()
            audit_event(
                self.store.home,
                "HISTORY_REWRITE_FAILED",
                f"Failed at {exc.stage}",
                {"commit_sha": exc.commit_sha, "temp_branch": exc.temp_branch},
            )
            if exc.stage in _REWRITE_SAFE_STAGES:
                self._rollback(previous, None)
            else:
                # The original branch may be gone. The orphan commit already
                # carries the enabled config, so stay enabled and re-upload.
                self.password_verified = True
                self._set_status(EncryptionStatus.ENABLED_VERIFIED)
            return ChangePasswordResult.ERROR
        except RemoteError as exc:
            logger.error("History rewrite could not start: %s", exc)
            self._rollback(previous, None)
            return ChangePasswordResult.ERROR
        finally:
            self.operation_in_progress = False

        for item in items:
            if not item.is_synced:
                self.store.upsert(item.model_copy(update={"is_synced": True}))
        self.store.save_sha_cache({path: git_blob_sha(text) for path, text in encoded.items()})
        for deletion in self.store.pending_deletions():
            self.store.remove_deletion(deletion.path)
        self._last_config = EncryptionConfig.from_json(files[ENCRYPTION_CONFIG_PATH])
        audit_event(
            self.store.home, "HISTORY_REWRITTEN", f"Orphan commit {commit_sha}", {"items": len(items)}
        )
        return ChangePasswordResult.SUCCESS

    # ------------------------------------------------------------------
    # Negotiation
    # ------------------------------------------------------------------

    async def verify_with_remote(self, password: str) -> bool:
        """Prove a password by decrypting real remote content.

        Returns:
            True if an encrypted remote item decrypts, or if none of the
            sampled items is encrypted.
        """
        remote = self._require_remote()
        listing = await remote.list_tree(ITEM_PREFIXES)
        for path in sorted(listing)[:VERIFY_SAMPLE_SIZE]:
            remote_file = await remote.read_file(path)
            if remote_file is None:
                continue
            body = codec.extract_body(remote_file.content, path)
            if crypto.is_encrypted(body):
                ok = crypto.decrypt(body, password) is not None
                logger.info("Password check against %s: %s", path, "ok" if ok else "failed")
                return ok
        return True

    async def detect_remote_state(self) -> EncryptionSyncResult:
        """Compare local and remote encryption state and reconcile it.

        Publishes the local config when this device is ahead, adopts a
        newer disabled version, and reports when the user has to act.
        """
        if not self.remote_configured:
            return EncryptionSyncResult.NOT_CONFIGURED

        local = self.local
        cfg, sha = await self.read_config()
        remote_enabled = bool(cfg and cfg.enabled)
        remote_version = cfg.version if cfg else 0
        previous = self.store.get_encryption_versions(self.remote.config.repo_key)
        logger.debug(
            "Local v%d enabled=%s, remote v%d enabled=%s",
            local.version, local.enabled, remote_version, remote_enabled,
        )

        if remote_enabled and not local.enabled:
            self._record_versions(remote_version, remote_enabled)
            self._set_status(EncryptionStatus.DISABLED)
            return EncryptionSyncResult.NEEDS_PASSWORD

        if cfg is None and local.enabled and previous is not None and previous.remote_enabled:
            logger.warning("Remote encryption config disappeared while enabled locally")
            return EncryptionSyncResult.DISABLED_REMOTELY

        if remote_enabled and not self.session.is_unlocked:
            self._record_versions(remote_version, remote_enabled)
            self._set_status(EncryptionStatus.ENABLED_LOCAL_ONLY)
            return EncryptionSyncResult.NEEDS_PASSWORD

        if remote_enabled and remote_version > local.version:
            logger.info("Password changed elsewhere (remote v%d > local v%d)", remote_version, local.version)
            self.password_change_detected = True
            self._record_versions(remote_version, remote_enabled)
            self._set_status(EncryptionStatus.ENABLED_LOCAL_ONLY)
            return EncryptionSyncResult.VERSION_MISMATCH

        if remote_enabled and not self.password_verified:
            if not await self.verify_with_remote(self.session.password):
                self._record_versions(remote_version, remote_enabled)
                self._set_status(EncryptionStatus.ENABLED_LOCAL_ONLY)
                return EncryptionSyncResult.NEEDS_PASSWORD
            self.password_verified = True

        final_version, final_enabled = remote_version, remote_enabled
        # The remote version only moves forward: publish strictly newer state, adopt anything newer.
        if local.version > remote_version:
            if cfg and cfg.is_locked_by_other(self.device_id, self.settings.lock_ttl_minutes, self._clock()):
                logger.info("Not publishing encryption config while %s holds the lock", cfg.device)
            else:
                logger.info("Publishing local encryption config v%d", local.version)
                await self._write_config(self._config(local.version, local.enabled), sha)
                final_version, final_enabled = local.version, local.enabled
                if local.enabled != remote_enabled:
                    self.store.mark_all_dirty()
        elif remote_version > local.version and not remote_enabled:
            self._adopt_remote_disable(local, remote_version)
            local = self.local

        self._record_versions(final_version, final_enabled)
        if local.enabled:
            if self.session.is_unlocked:
                self.password_verified = True
                self._set_status(EncryptionStatus.ENABLED_VERIFIED)
            else:
                self._set_status(EncryptionStatus.ENABLED_LOCAL_ONLY)
        else:
            self._set_status(EncryptionStatus.DISABLED)
        return EncryptionSyncResult.OK

    def _adopt_remote_disable(self, local: LocalEncryptionSettings, remote_version: int) -> None:
        logger.info("Adopting disabled encryption version v%d", remote_version)
        update: dict = {"version": remote_version}
        if local.enabled:
            update.update({"enabled": False, "verifier": None})
        self.store.save_encryption_settings(local.model_copy(update=update))
        if local.enabled:
            self.session.lock()
            self.password_verified = False
            self.store.mark_all_dirty()
            self.store.clear_sha_cache()
            audit_event(
                self.store.home,
                "ENCRYPTION_DISABLED",
                f"Encryption turned off elsewhere at v{remote_version}",
                {"device": self.device_id},
            )

    async def prepare_sync(self) -> Optional[SessionKey]:
        """Resolve encryption state before a sync pass.

        Returns:
            The session key for the codec, or None when encryption is off.

        Raises:
            NotConfiguredError: No remote repository.
            EncryptionNotReadyError: The user must enter or update the password.
            EncryptionLockedError: Another device is mid password change.
        """
        result = await self.detect_remote_state()
        if result == EncryptionSyncResult.NOT_CONFIGURED:
            raise NotConfiguredError("remote repository is not configured")
        if result != EncryptionSyncResult.OK:
            raise EncryptionNotReadyError(result)
        cfg = self._last_config
        if cfg and cfg.is_locked_by_other(self.device_id, self.settings.lock_ttl_minutes, self._clock()):
            raise EncryptionLockedError(cfg.device, cfg.timestamp)
        return self.sync_session()

    async def setup_from_remote(self, password: str) -> bool:
        """Adopt the remote password on this device.

        Returns:
            False if the remote is not encrypted or the password does not
            decrypt remote content.
        """
        cfg, _ = await self.read_config()
        if cfg is None or not cfg.enabled:
            return False
        if not await self.verify_with_remote(password):
            logger.info("Password does not decrypt remote content")
            return False

        self.store.save_encryption_settings(
            self.local.model_copy(
                update={
                    "enabled": True,
                    "verifier": crypto.password_verifier(password),
                    "version": cfg.version,
                }
            )
        )
        self.session.unlock(password)
        self.password_verified = True
        self.password_change_detected = False
        self._record_versions(cfg.version, cfg.enabled)
        self._set_status(EncryptionStatus.ENABLED_VERIFIED)
        audit_event(self.store.home, "ENCRYPTION_ADOPTED", f"Adopted remote encryption v{cfg.version}")
        return True

    async def recover_stale_lock(self) -> bool:
        """Clear a lock this device left behind after a crash.

        Also flags a password change made elsewhere while we were away.

        Returns:
            True if a stale lock was cleared.
        """
        if not self.remote_configured:
            return False
        cfg, sha = await self.read_config()
        if cfg is None:
            return False

        recovered = False
        if (
            cfg.locked
            and cfg.device == self.device_id
            and cfg.is_lock_expired(self.settings.lock_ttl_minutes, self._clock())
        ):
            logger.warning("Removing stale lock left by this device at %s", cfg.timestamp)
            await self._write_config(self._config(cfg.version, cfg.enabled), sha)
            self._record_versions(cfg.version, cfg.enabled)
            recovered = True

        if cfg.version > self.local.version:
            logger.info("Remote encryption v%d is newer than local v%d", cfg.version, self.local.version)
            self.password_change_detected = True
        return recovered
