"""
Sync Engine — one download-then-upload pass over every item.

    Idle -> Downloading -> Uploading -> Idle

Downloading lists the remote tree with hashes, fetches only paths whose
hash differs from the SHA cache, and removes local items that vanished
remotely. Uploading first sends queued deletions, then writes every
dirty item with a conditional write.

A pass never raises for a single item. Per-item problems are collected
in the returned ``SyncReport``; only pass-level preconditions (no remote,
encryption not ready, lock held elsewhere, rejected token) raise.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from ..audit import audit_event
from ..crypto import DecryptionError
from ..models import Item, ItemKind, PendingDeletion, is_valid_item_id
from ..pubsub import EventBus
from ..session import SessionKey
from ..store import LocalStore
from . import codec
from .codec import MalformedContentError
from .encryption import ITEM_PREFIXES, EncryptionCoordinator
from .models import OutcomeKind, SyncPhase, SyncReport, SyncSettings, SyncState
from .remote import (
    AuthError,
    ConflictError,
    NotConfiguredError,
    RemoteError,
    RemoteFile,
    RemoteStoreClient,
    friendly_error,
    git_blob_sha,
)

logger = logging.getLogger("vaultnote.sync.engine")

CONFLICT_PAUSE_SECONDS = 0.2

Sleep = Callable[[float], Awaitable[Any]]


def _item_key(kind: ItemKind, item_id: str) -> str:
    return f"{kind.value}:{item_id}"


class SyncEngine:
    """Runs sync passes between the local store and the remote repository.

    Args:
        store: Local store.
        remote: Remote client.
        settings: Batch sizes, pauses and retry policy.
        coordinator: Encryption coordinator, or None to sync plaintext.
        events: Optional bus for ``sync.*`` events.
        sleep: Awaitable sleep used for batch and conflict pauses.
    """

    def __init__(
        self,
        store: LocalStore,
        remote: RemoteStoreClient,
        settings: Optional[SyncSettings] = None,
        coordinator: Optional[EncryptionCoordinator] = None,
        events: Optional[EventBus] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.store = store
        self.remote = remote
        self.settings = settings or SyncSettings()
        self.coordinator = coordinator
        self.events = events
        self._sleep = sleep
        self._running = False
        self._uploading: set[str] = set()
        self.phase = SyncPhase.IDLE

    @property
    def is_running(self) -> bool:
        return self._running

    def _publish(self, topic: str, payload: Optional[dict[str, Any]] = None) -> None:
        if self.events:
            self.events.publish(topic, payload or {})

    def _set_phase(self, phase: SyncPhase) -> None:
        self.phase = phase
        self._publish("sync.phase", {"phase": phase.value})

    async def sync(self, reason: str = "manual") -> Optional[SyncReport]:
        """Run one sync pass.

        Args:
            reason: What triggered the pass, for logs and events.

        Returns:
            The pass report, or None if a pass (or an encryption
            operation) is already running. Calls are rejected, not queued.

        Raises:
            NotConfiguredError: No remote repository is configured.
            EncryptionNotReadyError: The password is needed first.
            EncryptionLockedError: Another device is changing the password.
            AuthError: The token was rejected.
        """
        if self._running:
            logger.debug("Sync already running, dropping %s trigger", reason)
            return None
        if self.coordinator and self.coordinator.operation_in_progress:
            logger.info("Encryption operation in progress, skipping %s sync", reason)
            return None
        if not self.remote.config.is_configured:
            raise NotConfiguredError("remote repository is not configured")

        self._running = True
        report = SyncReport()
        state = self.store.load_sync_state()
        try:
            self._publish("sync.started", {"reason": reason})
            logger.info("Sync pass started (%s)", reason)

            session: Optional[SessionKey] = None
            try:
                if self.coordinator:
                    session = await self.coordinator.prepare_sync()
                self._set_phase(SyncPhase.DOWNLOADING)
                listing = await self.remote.list_tree(ITEM_PREFIXES)
            except AuthError:
                raise
            except NotConfiguredError:
                raise
            except RemoteError as exc:
                logger.error("Sync pass aborted: %s", exc)
                report.error = friendly_error(exc)
                return report

            await self._download(listing, session, report)
            self._set_phase(SyncPhase.UPLOADING)
            await self._upload(session, report)
            return report
        except Exception as exc:
            report.error = report.error or friendly_error(exc)
            raise
        finally:
            report.finished_at = datetime.now(timezone.utc)
            self._running = False
            self._set_phase(SyncPhase.IDLE)
            self._finish(report, state)

    def _finish(self, report: SyncReport, state: SyncState) -> None:
        state.passes += 1
        state.last_sync = report.finished_at
        state.uploaded_total += report.count(OutcomeKind.UPLOADED)
        state.downloaded_total += report.count(OutcomeKind.ADDED) + report.count(OutcomeKind.UPDATED)
        if report.ok:
            state.last_success = report.finished_at
            state.last_error = None
        else:
            state.last_error = report.error or "; ".join(f"{o.path}: {o.message}" for o in report.failures)
        self.store.save_sync_state(state)

        summary = report.summary()
        if report.error:
            logger.warning("Sync pass failed: %s", report.error)
            self._publish("sync.failed", {"error": report.error})
        else:
            logger.info("Sync pass finished: %s", summary)
            self._publish("sync.completed", report.model_dump(mode="json"))
        if report.outcomes or report.error:
            audit_event(self.store.home, "SYNC_PASS", report.error or summary)

    # ------------------------------------------------------------------
    # Download
    # ------------------------------------------------------------------

    async def _fetch(self, path: str, session: Optional[SessionKey]) -> Optional[tuple[RemoteFile, Item]]:
        remote_file = await self.remote.read_file(path)
        if remote_file is None:
            return None
        return remote_file, codec.decode(remote_file.content, path, session)

    async def _download(
        self, listing: dict[str, str], session: Optional[SessionKey], report: SyncReport
    ) -> None:
        cache = self.store.load_sha_cache()
        pending_paths = {d.path for d in self.store.pending_deletions()}
        remote_items = {
            path: sha
            for path, sha in listing.items()
            if codec.kind_for_path(path) is not None and path not in pending_paths
        }
        changed = [path for path, sha in sorted(remote_items.items()) if cache.get(path) != sha]
        logger.debug("%d remote item(s), %d changed", len(remote_items), len(changed))

        new_cache = {path: cache[path] for path in remote_items if path in cache}
        size = self.settings.download_batch_size
        for start in range(0, len(changed), size):
            if start:
                await self._sleep(self.settings.batch_pause_seconds)
            batch = changed[start:start + size]
            results = await asyncio.gather(
                *(self._fetch(path, session) for path in batch), return_exceptions=True
            )
            for path, result in zip(batch, results):
                if isinstance(result, AuthError):
                    raise result
                if isinstance(result, MalformedContentError):
                    logger.warning("Skipping malformed %s: %s", path, result)
                    report.record(path, OutcomeKind.FAILED, str(result))
                    new_cache[path] = remote_items[path]
                elif isinstance(result, DecryptionError):
                    logger.warning("Cannot decrypt %s: %s", path, result)
                    report.record(path, OutcomeKind.FAILED, "decryption failed")
                elif isinstance(result, Exception):
                    logger.error("Failed to fetch %s: %s", path, result)
                    report.record(path, OutcomeKind.FAILED, friendly_error(result))
                elif isinstance(result, BaseException):
                    raise result
                elif result is not None:
                    remote_file, item = result
                    self._apply_remote(path, item, report)
                    new_cache[path] = remote_file.sha

        self._remove_vanished(remote_items, pending_paths, report)
        self.store.save_sha_cache(new_cache)

    def _apply_remote(self, path: str, item: Item, report: SyncReport) -> None:
        if path != item.remote_path:
            # Re-upload at the derived path and drop the old file.
            logger.info("Moving %s %s from %s to %s", item.kind.value, item.id, path, item.remote_path)
            self.store.queue_deletion(PendingDeletion.for_path(item, path))
            item = item.model_copy(update={"is_synced": False})
        local = self.store.get(item.kind, item.id)
        if local is not None and not local.is_synced and local.updated_at >= item.updated_at:
            logger.info("Keeping local edit of %s over %s", item.id, path)
            return
        self.store.upsert(item)
        report.record(path, OutcomeKind.UPDATED if local else OutcomeKind.ADDED)
        logger.debug("%s %s from %s", "Updated" if local else "Added", item.id, path)

    def _remove_vanished(
        self, remote_items: dict[str, str], pending_paths: set[str], report: SyncReport
    ) -> None:
        synced = [i for i in self.store.all_items() if i.is_synced]
        if not remote_items and len(synced) > self.settings.empty_remote_threshold:
            logger.warning(
                "Remote listing is empty but %d item(s) are synced; re-uploading instead of deleting",
                len(synced),
            )
            for item in synced:
                self.store.upsert(item.model_copy(update={"is_synced": False}))
                report.record(item.remote_path, OutcomeKind.REUPLOAD)
            return

        listed_ids = set()
        for path in remote_items:
            kind = codec.kind_for_path(path)
            stem = path.rsplit("/", 1)[-1].rsplit(".", 1)[0]
            if kind is not None and is_valid_item_id(stem):
                listed_ids.add(_item_key(kind, stem))

        for item in synced:
            path = item.remote_path
            key = _item_key(item.kind, item.id)
            if path in remote_items or path in pending_paths or key in listed_ids or key in self._uploading:
                continue
            self.store.delete(item.kind, item.id)
            report.record(path, OutcomeKind.DELETED_LOCALLY)
            logger.info("Removed %s %s, deleted on another device", item.kind.value, item.id)

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------

    async def _upload(self, session: Optional[SessionKey], report: SyncReport) -> None:
        cache = self.store.load_sha_cache()

        for deletion in self.store.pending_deletions():
            path = deletion.path
            try:
                existed = await self.remote.delete_file(path, message=f"Delete {path}")
            except AuthError:
                raise
            except RemoteError as exc:
                logger.warning("Remote deletion of %s failed, keeping it queued: %s", path, exc)
                report.record(path, OutcomeKind.FAILED, friendly_error(exc))
                continue
            self.store.remove_deletion(path)
            cache.pop(path, None)
            if existed:
                report.remote_writes += 1
                report.record(path, OutcomeKind.DELETED_REMOTELY)
        self.store.save_sha_cache(cache)

        for item in self.store.dirty_items():
            key = _item_key(item.kind, item.id)
            if key in self._uploading:
                continue
            self._uploading.add(key)
            try:
                await self._upload_item(item, session, cache, report)
            finally:
                self._uploading.discard(key)
            self.store.save_sha_cache(cache)

    async def _upload_item(
        self,
        item: Item,
        session: Optional[SessionKey],
        cache: dict[str, str],
        report: SyncReport,
    ) -> None:
        path = item.remote_path
        text = codec.encode(item, session)
        try:
            expected = cache.get(path)
            if expected is None:
                expected = await self.remote.get_file_sha(path)

            if expected is not None and expected == git_blob_sha(text):
                new_sha = expected
                logger.debug("%s already up to date remotely", path)
            else:
                new_sha = await self._write_with_retry(path, text, expected)
                if new_sha is None:
                    report.record(path, OutcomeKind.CONFLICT, "remote kept changing")
                    return
                report.remote_writes += 1
        except AuthError:
            raise
        except RemoteError as exc:
            logger.error("Upload of %s failed: %s", path, exc)
            report.record(path, OutcomeKind.FAILED, friendly_error(exc))
            return

        cache[path] = new_sha
        current = self.store.get(item.kind, item.id)
        if current is not None and not current.is_synced and current.updated_at == item.updated_at:
            self.store.upsert(current.model_copy(update={"is_synced": True}))
        report.record(path, OutcomeKind.UPLOADED)
        logger.debug("Uploaded %s", path)

    async def _write_with_retry(self, path: str, text: str, expected: Optional[str]) -> Optional[str]:
        """Conditional write, refreshing the expected hash on conflict.

        Returns:
            The new hash, or None when every attempt conflicted.
        """
        attempts = self.settings.max_attempts
        for attempt in range(attempts):
            try:
                return await self.remote.write_file(path, text, expected_sha=expected, message=f"Sync {path}")
            except ConflictError as exc:
                logger.info("Conflict on %s (attempt %d/%d): %s", path, attempt + 1, attempts, exc)
                if attempt + 1 < attempts:
                    await self._sleep(CONFLICT_PAUSE_SECONDS * (attempt + 1))
                    expected = await self.remote.get_file_sha(path)
        logger.warning("Giving up on %s after %d conflicts", path, attempts)
        return None
