"""
Local Store — the on-disk source of truth for this device.

Items are plaintext JSON, one file per item. Sync bookkeeping lives next
to them so that everything a pass needs survives a restart.

Storage layout:
    ~/.vaultnote/
    ├── notes/{id}.json
    ├── bookmarks/{id}.json
    ├── sync/
    │   ├── sha_cache.json             # remote path -> last seen hash
    │   ├── pending_deletions.json     # remote deletions not yet sent
    │   ├── encryption_versions.json   # repo key -> version state
    │   └── state.json                 # last pass summary
    └── security/
        ├── encryption.json            # local encryption settings
        └── audit.log

All writes go to a temp file first and are renamed into place.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError

from .models import (
    Bookmark,
    EncryptionVersionState,
    Item,
    ItemKind,
    LocalEncryptionSettings,
    Note,
    PendingDeletion,
)
from .sync.models import SyncState

logger = logging.getLogger("vaultnote.store")

_MODEL_FOR_KIND = {ItemKind.NOTE: Note, ItemKind.BOOKMARK: Bookmark}
_DIR_FOR_KIND = {ItemKind.NOTE: "notes", ItemKind.BOOKMARK: "bookmarks"}


def _atomic_write(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.parent / f".{path.name}.tmp"
    tmp_path.write_text(text, encoding="utf-8")
    tmp_path.replace(path)


def _read_json(path: Path, default: Any) -> Any:
    if not path.exists():
        return default
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError) as exc:
        logger.warning("Failed to read %s: %s", path, exc)
        return default


class LocalStore:
    """File-backed store for items and sync bookkeeping.

    Args:
        home: VaultNote home directory (~/.vaultnote).
    """

    def __init__(self, home: Path) -> None:
        self.home = home
        self._sync_dir = home / "sync"
        self._security_dir = home / "security"
        self._sha_cache_file = self._sync_dir / "sha_cache.json"
        self._deletions_file = self._sync_dir / "pending_deletions.json"
        self._versions_file = self._sync_dir / "encryption_versions.json"
        self._state_file = self._sync_dir / "state.json"
        self._settings_file = self._security_dir / "encryption.json"

    def initialize(self) -> None:
        """Create the directory structure."""
        for kind in ItemKind:
            (self.home / _DIR_FOR_KIND[kind]).mkdir(parents=True, exist_ok=True)
        self._sync_dir.mkdir(parents=True, exist_ok=True)
        self._security_dir.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Items
    # ------------------------------------------------------------------

    def _item_path(self, kind: ItemKind, item_id: str) -> Path:
        return self.home / _DIR_FOR_KIND[kind] / f"{item_id}.json"

    def items(self, kind: ItemKind) -> list[Item]:
        """Load every item of one kind, oldest first.

        Unreadable files are skipped with a warning.
        """
        directory = self.home / _DIR_FOR_KIND[kind]
        if not directory.is_dir():
            return []
        model = _MODEL_FOR_KIND[kind]
        loaded: list[Item] = []
        for item_file in sorted(directory.glob("*.json")):
            try:
                loaded.append(model.model_validate_json(item_file.read_text(encoding="utf-8")))
            except (ValidationError, ValueError, OSError) as exc:
                logger.warning("Skipping unreadable %s %s: %s", kind.value, item_file.name, exc)
        loaded.sort(key=lambda i: i.created_at)
        return loaded

    def notes(self) -> list[Note]:
        return self.items(ItemKind.NOTE)  # type: ignore[return-value]

    def bookmarks(self) -> list[Bookmark]:
        return self.items(ItemKind.BOOKMARK)  # type: ignore[return-value]

    def all_items(self) -> list[Item]:
        return self.items(ItemKind.NOTE) + self.items(ItemKind.BOOKMARK)

    def get(self, kind: ItemKind, item_id: str) -> Optional[Item]:
        """Load one item, or None if it does not exist."""
        path = self._item_path(kind, item_id)
        if not path.exists():
            return None
        try:
            return _MODEL_FOR_KIND[kind].model_validate_json(path.read_text(encoding="utf-8"))
        except (ValidationError, ValueError, OSError) as exc:
            logger.warning("Failed to load %s %s: %s", kind.value, item_id, exc)
            return None

    def upsert(self, item: Item) -> Item:
        """Insert or replace an item by id."""
        _atomic_write(self._item_path(item.kind, item.id), item.model_dump_json(indent=2))
        logger.debug("Stored %s %s", item.kind.value, item.id)
        return item

    def delete(self, kind: ItemKind, item_id: str) -> bool:
        """Remove an item.

        Returns:
            True if the item existed.
        """
        path = self._item_path(kind, item_id)
        if not path.exists():
            return False
        path.unlink()
        logger.debug("Deleted %s %s", kind.value, item_id)
        return True

    def dirty_items(self) -> list[Item]:
        return [i for i in self.all_items() if not i.is_synced]

    def mark_all_dirty(self) -> int:
        """Flag every item for re-upload.

        Returns:
            Number of items that changed state.
        """
        changed = 0
        for item in self.all_items():
            if item.is_synced:
                self.upsert(item.model_copy(update={"is_synced": False}))
                changed += 1
        logger.info("Marked %d item(s) for re-upload", changed)
        return changed

    # ------------------------------------------------------------------
    # SHA cache
    # ------------------------------------------------------------------

    def load_sha_cache(self) -> dict[str, str]:
        data = _read_json(self._sha_cache_file, {})
        return {str(k): str(v) for k, v in data.items()} if isinstance(data, dict) else {}

    def save_sha_cache(self, cache: dict[str, str]) -> None:
        _atomic_write(self._sha_cache_file, json.dumps(cache, indent=2, sort_keys=True))

    def clear_sha_cache(self) -> None:
        self.save_sha_cache({})

    # ------------------------------------------------------------------
    # Pending deletions
    # ------------------------------------------------------------------

    def pending_deletions(self) -> list[PendingDeletion]:
        data = _read_json(self._deletions_file, [])
        entries: list[PendingDeletion] = []
        for raw in data if isinstance(data, list) else []:
            try:
                entries.append(PendingDeletion.model_validate(raw))
            except ValidationError as exc:
                logger.warning("Dropping invalid pending deletion %r: %s", raw, exc)
        return entries

    def _save_deletions(self, entries: list[PendingDeletion]) -> None:
        _atomic_write(
            self._deletions_file,
            json.dumps([e.model_dump(mode="json") for e in entries], indent=2),
        )

    def queue_deletion(self, deletion: PendingDeletion) -> None:
        """Queue a remote deletion; duplicates of the same path are ignored."""
        entries = self.pending_deletions()
        if any(e.path == deletion.path for e in entries):
            return
        entries.append(deletion)
        self._save_deletions(entries)
        logger.debug("Queued remote deletion of %s", deletion.path)

    def remove_deletion(self, path: str) -> bool:
        entries = self.pending_deletions()
        remaining = [e for e in entries if e.path != path]
        if len(remaining) == len(entries):
            return False
        self._save_deletions(remaining)
        return True

    # ------------------------------------------------------------------
    # Encryption bookkeeping
    # ------------------------------------------------------------------

    def get_encryption_versions(self, repo_key: str) -> Optional[EncryptionVersionState]:
        data = _read_json(self._versions_file, {})
        raw = data.get(repo_key) if isinstance(data, dict) else None
        if raw is None:
            return None
        try:
            return EncryptionVersionState.model_validate(raw)
        except ValidationError as exc:
            logger.warning("Invalid encryption version state for %s: %s", repo_key, exc)
            return None

    def update_encryption_versions(self, repo_key: str, **fields: Any) -> EncryptionVersionState:
        """Merge fields into the version state for a repository."""
        data = _read_json(self._versions_file, {})
        if not isinstance(data, dict):
            data = {}
        current = self.get_encryption_versions(repo_key) or EncryptionVersionState(repo_key=repo_key)
        updated = current.model_copy(update={**fields, "last_synced": datetime.now(timezone.utc)})
        data[repo_key] = updated.model_dump(mode="json")
        _atomic_write(self._versions_file, json.dumps(data, indent=2))
        return updated

    def clear_encryption_versions(self) -> None:
        _atomic_write(self._versions_file, "{}")

    def load_encryption_settings(self) -> LocalEncryptionSettings:
        """Load local encryption settings, creating them on first use.

        The device id is generated once and persisted immediately.
        """
        data = _read_json(self._settings_file, None)
        if isinstance(data, dict):
            try:
                return LocalEncryptionSettings.model_validate(data)
            except ValidationError as exc:
                logger.warning("Invalid encryption settings, regenerating: %s", exc)
        settings = LocalEncryptionSettings()
        self.save_encryption_settings(settings)
        return settings

    def save_encryption_settings(self, settings: LocalEncryptionSettings) -> None:
        _atomic_write(self._settings_file, settings.model_dump_json(indent=2))

    # ------------------------------------------------------------------
    # Sync state
    # ------------------------------------------------------------------

    def load_sync_state(self) -> SyncState:
        data = _read_json(self._state_file, None)
        if isinstance(data, dict):
            try:
                return SyncState.model_validate(data)
            except ValidationError as exc:
                logger.warning("Invalid sync state: %s", exc)
        return SyncState()

    def save_sync_state(self, state: SyncState) -> None:
        _atomic_write(self._state_file, state.model_dump_json(indent=2))
