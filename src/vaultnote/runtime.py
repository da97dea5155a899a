"""
Vault Runtime — the one object a UI or the CLI talks to.

Loads configuration and the local store from ~/.vaultnote/, wires the
remote client, encryption coordinator, sync engine and scheduler
together, and exposes item editing that keeps sync bookkeeping right:
every save marks the item dirty, and a delete or folder move queues the
old remote path for deletion.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import httpx

from .audit import audit_event
from .config import VaultConfig, load_config, resolve_home, save_config
from .models import Bookmark, Item, ItemKind, Note, PendingDeletion
from .pubsub import EventBus
from .session import SessionKey
from .store import LocalStore
from .sync.encryption import EncryptionCoordinator
from .sync.engine import SyncEngine
from .sync.models import RemoteConfig, SyncReport
from .sync.remote import NotConfiguredError, RemoteStoreClient
from .sync.scheduler import SyncScheduler

logger = logging.getLogger("vaultnote.runtime")


class VaultRuntime:
    """Notes, bookmarks and their sync machinery for one home directory.

    Args:
        home: Override home directory. Defaults to ~/.vaultnote/.
        transport: Optional httpx transport for the remote client.
    """

    def __init__(
        self,
        home: Optional[Path] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.home = resolve_home(home)
        self.config: VaultConfig = load_config(self.home)
        self.store = LocalStore(self.home)
        self.store.initialize()
        self.events = EventBus()
        self.session = SessionKey()
        self._transport = transport
        self.remote: Optional[RemoteStoreClient] = None
        self.engine: Optional[SyncEngine] = None
        self.scheduler: Optional[SyncScheduler] = None
        self._wire()

    def _wire(self) -> None:
        """(Re)build the sync components from the current config."""
        settings = self.config.sync
        if self.config.remote.is_configured:
            self.remote = RemoteStoreClient(self.config.remote, settings, transport=self._transport)
        else:
            self.remote = None
        self.coordinator = EncryptionCoordinator(
            self.store, self.remote, self.session, settings, events=self.events
        )
        if self.remote is not None:
            self.engine = SyncEngine(
                self.store, self.remote, settings, coordinator=self.coordinator, events=self.events
            )
            self.scheduler = SyncScheduler(self.engine, settings.interval_minutes)
        else:
            self.engine = None
            self.scheduler = None

    @property
    def is_remote_configured(self) -> bool:
        return self.remote is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Recover from crashes and start periodic sync."""
        if self.remote is None:
            return
        await self.coordinator.recover_stale_lock()
        if self.scheduler:
            self.scheduler.start()

    async def stop(self) -> None:
        """Stop periodic sync, close connections and forget the session key."""
        if self.scheduler:
            await self.scheduler.stop()
        if self.remote:
            await self.remote.close()
        self.session.lock()

    async def configure_remote(self, remote: RemoteConfig) -> None:
        """Point the vault at a repository and persist the choice."""
        await self.stop()
        self.config.remote = remote
        save_config(self.home, self.config)
        self._wire()
        audit_event(self.home, "REMOTE_CONFIGURED", f"Remote set to {remote.repo_key}")
        logger.info("Remote configured: %s@%s", remote.repo_key, remote.branch)

    async def disconnect(self) -> None:
        """Forget the remote repository.

        Local items are kept and marked dirty so a future remote receives
        all of them.
        """
        repo_key = self.config.remote.repo_key
        await self.stop()
        self.store.clear_encryption_versions()
        self.store.clear_sha_cache()
        for deletion in self.store.pending_deletions():
            self.store.remove_deletion(deletion.path)
        self.store.mark_all_dirty()
        self.config.remote = RemoteConfig(token_env_var=self.config.remote.token_env_var)
        save_config(self.home, self.config)
        self._wire()
        audit_event(self.home, "REMOTE_DISCONNECTED", f"Disconnected from {repo_key}")

    def mark_all_for_sync(self) -> int:
        """Force every item to be re-uploaded on the next pass."""
        self.store.clear_sha_cache()
        return self.store.mark_all_dirty()

    # ------------------------------------------------------------------
    # Items
    # ------------------------------------------------------------------

    def _queue_remote_delete(self, item: Item) -> None:
        # A dirty item can still have a remote copy once the SHA cache is
        # cleared; deleting an absent file is a no-op.
        if self.is_remote_configured or item.is_synced or item.remote_path in self.store.load_sha_cache():
            self.store.queue_deletion(PendingDeletion.for_item(item))

    def save(self, item: Item) -> Item:
        """Store an edited or new item and schedule it for upload.

        A changed folder moves the remote file: the old path is queued for
        deletion.
        """
        previous = self.store.get(item.kind, item.id)
        if previous is not None and previous.remote_path != item.remote_path:
            self._queue_remote_delete(previous)
        self.store.remove_deletion(item.remote_path)

        updated = item.model_copy(
            update={"is_synced": False, "updated_at": datetime.now(timezone.utc)}
        )
        self.store.upsert(updated)
        self.events.publish("items.changed", {"kind": item.kind.value, "id": item.id})
        self._sync_after_save()
        return updated

    def delete(self, kind: ItemKind, item_id: str) -> bool:
        """Delete an item locally and queue its remote deletion."""
        item = self.store.get(kind, item_id)
        if item is None:
            return False
        self.store.delete(kind, item_id)
        self._queue_remote_delete(item)
        self.events.publish("items.changed", {"kind": kind.value, "id": item_id, "deleted": True})
        self._sync_after_save()
        return True

    def _sync_after_save(self) -> None:
        if not (self.scheduler and self.config.sync.sync_after_save):
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return
        self.scheduler.request("save")

    def add_note(
        self,
        title: str,
        content: str = "",
        tags: Optional[list[str]] = None,
        folder: str = "",
    ) -> Note:
        return self.save(Note(title=title, content=content, tags=tags or [], folder=folder))  # type: ignore[return-value]

    def update_note(self, note_id: str, **changes: Any) -> Optional[Note]:
        note = self.store.get(ItemKind.NOTE, note_id)
        if note is None:
            return None
        return self.save(note.model_copy(update=changes))  # type: ignore[return-value]

    def add_bookmark(self, url: str, title: str = "", **fields: Any) -> Bookmark:
        return self.save(Bookmark.from_capture({"url": url, "title": title, **fields}))  # type: ignore[return-value]

    def update_bookmark(self, bookmark_id: str, **changes: Any) -> Optional[Bookmark]:
        bookmark = self.store.get(ItemKind.BOOKMARK, bookmark_id)
        if bookmark is None:
            return None
        return self.save(bookmark.model_copy(update=changes))  # type: ignore[return-value]

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def search(self, query: str, kind: Optional[ItemKind] = None) -> list[Item]:
        """Case-insensitive search over titles, bodies, tags and URLs."""
        needle = query.lower()
        kinds = [kind] if kind else list(ItemKind)
        hits: list[Item] = []
        for k in kinds:
            for item in self.store.items(k):
                if isinstance(item, Note):
                    haystack = [item.title, item.content, *item.tags]
                else:
                    haystack = [item.title, item.url, item.description or "", item.notes or "", *item.tags]
                if any(needle in field.lower() for field in haystack):
                    hits.append(item)
        return hits

    def by_tag(self, tag: str) -> list[Item]:
        return [i for i in self.store.all_items() if tag in i.tags]

    def folders(self, kind: ItemKind = ItemKind.NOTE) -> list[str]:
        return sorted({i.folder for i in self.store.items(kind) if i.folder})

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def sync_now(self, reason: str = "manual") -> Optional[SyncReport]:
        """Run a sync pass immediately.

        Raises:
            NotConfiguredError: No remote repository is configured.
        """
        if self.engine is None:
            raise NotConfiguredError("remote repository is not configured")
        return await self.engine.sync(reason)

    def status(self) -> dict[str, Any]:
        items = self.store.all_items()
        state = self.store.load_sync_state()
        local = self.store.load_encryption_settings()
        return {
            "home": str(self.home),
            "remote": self.config.remote.repo_key if self.remote else None,
            "branch": self.config.remote.branch if self.remote else None,
            "notes": sum(1 for i in items if i.kind == ItemKind.NOTE),
            "bookmarks": sum(1 for i in items if i.kind == ItemKind.BOOKMARK),
            "dirty": sum(1 for i in items if not i.is_synced),
            "pending_deletions": len(self.store.pending_deletions()),
            "encryption_enabled": local.enabled,
            "encryption_version": local.version,
            "encryption_status": self.coordinator.status.value,
            "last_sync": state.last_sync.isoformat() if state.last_sync else None,
            "last_error": state.last_error,
            "recent_events": [m.topic for m in self.events.recent(limit=10)],
        }


def get_runtime(home: Optional[Path] = None) -> VaultRuntime:
    """Create the runtime for a home directory.

    Args:
        home: Override home directory.

    Returns:
        A VaultRuntime with its store initialized.
    """
    return VaultRuntime(home=home)
