"""
Pydantic models for everything VaultNote keeps on the local disk.

Notes and bookmarks are the unit of sync. Both rest in plaintext locally
and carry an ``is_synced`` flag that turns true only after an upload
round-trip succeeds. The remote path of an item is a pure function of its
kind, folder and id.
"""

from __future__ import annotations

import re
import threading
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, Field, field_validator

NOTES_COLLECTION = "notes"
BOOKMARKS_COLLECTION = "bookmarks"
DEFAULT_NOTE_FOLDER = "Uncategorized"
DEFAULT_BOOKMARK_FOLDER = "Bookmarks"

_BOOKMARK_FOLDER_UNSAFE = re.compile(r"[^\w\-/]")
_ID_PATTERN = re.compile(r"^\d+$")

_id_lock = threading.Lock()
_last_id = 0


def new_item_id() -> str:
    """Generate a time-ordered item id (milliseconds since the epoch).

    Ids handed out by one process are strictly increasing even when two
    items are created within the same millisecond.
    """
    global _last_id
    with _id_lock:
        candidate = int(time.time() * 1000)
        if candidate <= _last_id:
            candidate = _last_id + 1
        _last_id = candidate
        return str(candidate)


def is_valid_item_id(value: str) -> bool:
    """Check whether a string has the shape of an item id."""
    return bool(_ID_PATTERN.match(value or ""))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ItemKind(str, Enum):
    """The two kinds of item that sync."""

    NOTE = "note"
    BOOKMARK = "bookmark"


def remote_path_for(kind: ItemKind, folder: str, item_id: str) -> str:
    """Compute the remote path for an item.

    Notes live at ``notes/{folder or Uncategorized}/{id}.md``; bookmarks at
    ``bookmarks/{sanitized folder}/{id}.json``.
    """
    if kind == ItemKind.NOTE:
        return f"{NOTES_COLLECTION}/{folder or DEFAULT_NOTE_FOLDER}/{item_id}.md"
    safe = _BOOKMARK_FOLDER_UNSAFE.sub("_", folder or DEFAULT_BOOKMARK_FOLDER)
    return f"{BOOKMARKS_COLLECTION}/{safe}/{item_id}.json"


class Note(BaseModel):
    """A markdown note."""

    id: str = Field(default_factory=new_item_id)
    title: str = ""
    content: str = ""
    tags: list[str] = Field(default_factory=list)
    folder: str = ""
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    is_synced: bool = False
    is_pinned: bool = False
    is_favorite: bool = False
    gist_id: Optional[str] = None
    gist_url: Optional[str] = None
    gist_public: bool = False
    gist_password_protected: bool = False

    @field_validator("folder")
    @classmethod
    def _strip_separators(cls, value: str) -> str:
        return value.strip("/")

    @property
    def kind(self) -> ItemKind:
        return ItemKind.NOTE

    @property
    def is_shared(self) -> bool:
        """True when the note is published as a gist."""
        return self.gist_id is not None and self.gist_url is not None

    @property
    def remote_path(self) -> str:
        return remote_path_for(ItemKind.NOTE, self.folder, self.id)


class Bookmark(BaseModel):
    """A saved web page with user annotations."""

    id: str = Field(default_factory=new_item_id)
    url: str
    title: str
    description: Optional[str] = None
    image: Optional[str] = None
    notes: Optional[str] = None
    favicon: Optional[str] = None
    folder: str = DEFAULT_BOOKMARK_FOLDER
    tags: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    is_synced: bool = False

    @field_validator("id", "url", "title")
    @classmethod
    def _not_empty(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("must not be empty")
        return value

    @field_validator("folder")
    @classmethod
    def _default_folder(cls, value: str) -> str:
        return value.strip("/") or DEFAULT_BOOKMARK_FOLDER

    @property
    def kind(self) -> ItemKind:
        return ItemKind.BOOKMARK

    @property
    def remote_path(self) -> str:
        return remote_path_for(ItemKind.BOOKMARK, self.folder, self.id)

    @classmethod
    def from_capture(cls, payload: dict[str, Any]) -> "Bookmark":
        """Build a bookmark from the capture listener's payload.

        Accepts ``url`` and ``title`` plus optional ``description``,
        ``image``, ``favicon``, ``folder``, ``notes`` and ``tags`` (either a
        list or a comma separated string).
        """
        tags = payload.get("tags") or []
        if isinstance(tags, str):
            tags = [t.strip() for t in tags.split(",")]
        url = (payload.get("url") or "").strip()
        return cls(
            url=url,
            title=(payload.get("title") or "").strip() or url,
            description=payload.get("description"),
            image=payload.get("image"),
            favicon=payload.get("favicon"),
            notes=payload.get("notes"),
            folder=payload.get("folder") or DEFAULT_BOOKMARK_FOLDER,
            tags=[t for t in tags if t],
        )


Item = Union[Note, Bookmark]


class PendingDeletion(BaseModel):
    """A remote file that must be deleted on the next sync pass.

    ``source_path`` is set for files stored under a name that does not
    follow the ``{collection}/{folder}/{id}`` layout.
    """

    kind: ItemKind
    folder: str
    item_id: str
    source_path: Optional[str] = None
    queued_at: datetime = Field(default_factory=_utcnow)

    @property
    def path(self) -> str:
        return self.source_path or remote_path_for(self.kind, self.folder, self.item_id)

    @classmethod
    def for_item(cls, item: Item) -> "PendingDeletion":
        return cls(kind=item.kind, folder=item.folder, item_id=item.id)

    @classmethod
    def for_path(cls, item: Item, path: str) -> "PendingDeletion":
        return cls(kind=item.kind, folder=item.folder, item_id=item.id, source_path=path)


class EncryptionVersionState(BaseModel):
    """Last observed encryption versions for one remote repository."""

    repo_key: str
    local_version: int = 0
    remote_version: int = 0
    local_enabled: bool = False
    remote_enabled: bool = False
    last_synced: datetime = Field(default_factory=_utcnow)


class LocalEncryptionSettings(BaseModel):
    """This device's encryption settings.

    The verifier is a keyed hash of the master password. It only proves
    that a password is the one this device was given, not that it matches
    what other devices agreed on.
    """

    enabled: bool = False
    verifier: Optional[str] = None
    version: int = 0
    device_id: str = Field(default_factory=lambda: f"{new_item_id()}-{time.monotonic_ns() % 1000000}")
