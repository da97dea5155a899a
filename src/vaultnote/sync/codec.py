"""
Content Codec — items to portable text and back.

Notes become markdown with a fixed-order header block:

    ---
    id: 1712345678901
    title: Groceries
    tags: [home, weekly]
    folder: Personal
    createdAt: 2024-04-05T10:01:18.901000+00:00
    updatedAt: 2024-04-05T10:01:18.901000+00:00
    isFavorite: false
    isPinned: false
    ---

    <body>

Bookmarks become a small camelCase JSON document.

With an unlocked session key the note body (or the bookmark's ``notes``
field) is replaced by an ``ENC:`` token. Titles, tags, folders and
timestamps stay readable so the repository remains browsable.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import Any, Optional

from pydantic import ValidationError

from ..crypto import DecryptionError, is_encrypted
from ..models import (
    BOOKMARKS_COLLECTION,
    NOTES_COLLECTION,
    Bookmark,
    Item,
    ItemKind,
    Note,
    is_valid_item_id,
    new_item_id,
)
from ..session import SessionKey

logger = logging.getLogger("vaultnote.sync.codec")

HEADER_DELIMITER = "---"
_HEADER_RE = re.compile(r"\A---[ \t]*\n(.*?)\n---[ \t]*(?:\n|\Z)", re.DOTALL)


class MalformedContentError(ValueError):
    """Remote content that cannot be turned into an item."""


def kind_for_path(path: str) -> Optional[ItemKind]:
    """Which kind of item a remote path holds, or None for other files."""
    if path.startswith(f"{NOTES_COLLECTION}/") and path.endswith(".md"):
        return ItemKind.NOTE
    if path.startswith(f"{BOOKMARKS_COLLECTION}/") and path.endswith(".json"):
        return ItemKind.BOOKMARK
    return None


def _id_from_path(path: str) -> Optional[str]:
    stem = PurePosixPath(path).stem
    return stem if is_valid_item_id(stem) else None


def _format_time(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def _parse_time(value: Any) -> datetime:
    if isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            logger.debug("Unparseable timestamp %r, using now", value)
        else:
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return datetime.now(timezone.utc)


def _single_line(value: str) -> str:
    return " ".join(value.splitlines()).strip()


def _clean_tag(tag: str) -> str:
    return _single_line(tag).replace(",", " ").replace("[", "").replace("]", "").strip()


def _seal(text: Optional[str], session: Optional[SessionKey]) -> Optional[str]:
    if text is None or session is None or not session.is_unlocked:
        return text
    return session.encrypt(text)


def _open(text: Optional[str], session: Optional[SessionKey], path: str) -> Optional[str]:
    if not is_encrypted(text) or session is None or not session.is_unlocked:
        return text
    plaintext = session.decrypt(text)
    if plaintext is None:
        raise DecryptionError(f"{path}: encrypted content does not open with the session key")
    return plaintext


# ---------------------------------------------------------------------------
# Encode
# ---------------------------------------------------------------------------

def encode_note(note: Note, session: Optional[SessionKey] = None) -> str:
    lines = [
        HEADER_DELIMITER,
        f"id: {note.id}",
        f"title: {_single_line(note.title)}",
        f"tags: [{', '.join(t for t in (_clean_tag(t) for t in note.tags) if t)}]",
        f"folder: {_single_line(note.folder)}",
        f"createdAt: {_format_time(note.created_at)}",
        f"updatedAt: {_format_time(note.updated_at)}",
        f"isFavorite: {str(note.is_favorite).lower()}",
        f"isPinned: {str(note.is_pinned).lower()}",
    ]
    if note.is_shared:
        lines += [
            f"gistId: {note.gist_id}",
            f"gistUrl: {note.gist_url}",
            f"gistPublic: {str(note.gist_public).lower()}",
            f"gistPasswordProtected: {str(note.gist_password_protected).lower()}",
        ]
    lines.append(HEADER_DELIMITER)
    return "\n".join(lines) + "\n\n" + (_seal(note.content, session) or "")


def encode_bookmark(bookmark: Bookmark, session: Optional[SessionKey] = None) -> str:
    data = {
        "id": bookmark.id,
        "url": bookmark.url,
        "title": bookmark.title,
        "description": bookmark.description,
        "image": bookmark.image,
        "notes": _seal(bookmark.notes, session),
        "favicon": bookmark.favicon,
        "folder": bookmark.folder,
        "tags": bookmark.tags,
        "createdAt": _format_time(bookmark.created_at),
        "updatedAt": _format_time(bookmark.updated_at),
    }
    return json.dumps(data, indent=2, ensure_ascii=False) + "\n"


def encode(item: Item, session: Optional[SessionKey] = None) -> str:
    """Serialize an item to its portable text form.

    Args:
        item: Note or bookmark.
        session: Unlocked session key when encryption is on, else None.

    Returns:
        str: The text to store at ``item.remote_path``.
    """
    if isinstance(item, Note):
        return encode_note(item, session)
    return encode_bookmark(item, session)


# ---------------------------------------------------------------------------
# Decode
# ---------------------------------------------------------------------------

def split_note(text: str) -> tuple[dict[str, str], str]:
    """Split note text into header fields and the exact body.

    Raises:
        MalformedContentError: If there is no header block.
    """
    text = text.replace("\r\n", "\n")
    match = _HEADER_RE.match(text)
    if not match:
        raise MalformedContentError("missing header block")

    fields: dict[str, str] = {}
    for line in match.group(1).split("\n"):
        key, sep, value = line.partition(":")
        if sep and key.strip():
            fields.setdefault(key.strip(), value.strip())

    body = text[match.end():]
    if body.startswith("\n"):
        body = body[1:]
    return fields, body


def _resolve_id(path: str, header_id: Optional[str]) -> str:
    from_path = _id_from_path(path)
    if from_path:
        return from_path
    if header_id and is_valid_item_id(header_id.strip()):
        return header_id.strip()
    fresh = new_item_id()
    logger.info("No usable id for %s, assigned %s", path, fresh)
    return fresh


def _flag(value: Optional[str]) -> bool:
    return (value or "").strip().lower() == "true"


def decode_note(text: str, path: str, session: Optional[SessionKey] = None) -> Note:
    fields, body = split_note(text)
    raw_tags = fields.get("tags", "").replace("[", "").replace("]", "")
    return Note(
        id=_resolve_id(path, fields.get("id")),
        title=fields.get("title", ""),
        content=_open(body, session, path) or "",
        tags=[t.strip() for t in raw_tags.split(",") if t.strip()],
        folder=fields.get("folder", ""),
        created_at=_parse_time(fields.get("createdAt")),
        updated_at=_parse_time(fields.get("updatedAt") or fields.get("createdAt")),
        is_favorite=_flag(fields.get("isFavorite")),
        is_pinned=_flag(fields.get("isPinned")),
        gist_id=fields.get("gistId") or None,
        gist_url=fields.get("gistUrl") or None,
        gist_public=_flag(fields.get("gistPublic")),
        gist_password_protected=_flag(fields.get("gistPasswordProtected")),
        is_synced=True,
    )


def decode_bookmark(text: str, path: str, session: Optional[SessionKey] = None) -> Bookmark:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise MalformedContentError(f"invalid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise MalformedContentError("bookmark must be a JSON object")

    tags = data.get("tags") or []
    if isinstance(tags, str):
        tags = [t.strip() for t in tags.split(",") if t.strip()]
    header_id = data.get("id")
    try:
        return Bookmark(
            id=_resolve_id(path, str(header_id) if header_id is not None else None),
            url=data.get("url") or "",
            title=data.get("title") or "",
            description=data.get("description"),
            image=data.get("image"),
            notes=_open(data.get("notes"), session, path),
            favicon=data.get("favicon"),
            folder=data.get("folder") or "",
            tags=tags,
            created_at=_parse_time(data.get("createdAt")),
            updated_at=_parse_time(data.get("updatedAt") or data.get("createdAt")),
            is_synced=True,
        )
    except ValidationError as exc:
        raise MalformedContentError(f"invalid bookmark: {exc}") from exc


def decode(text: str, path: str, session: Optional[SessionKey] = None) -> Item:
    """Parse portable text back into an item.

    The id comes from the filename when it is a valid id, then from the
    header, and is freshly generated as a last resort. Without an
    unlocked session an encrypted body is returned unchanged.

    Args:
        text: File content.
        path: Remote path the content was read from.
        session: Session key for encrypted bodies.

    Returns:
        The decoded Note or Bookmark, marked as synced.

    Raises:
        MalformedContentError: Unknown path shape or unparseable content.
        DecryptionError: Encrypted body and the session key does not fit.
    """
    kind = kind_for_path(path)
    if kind == ItemKind.NOTE:
        return decode_note(text, path, session)
    if kind == ItemKind.BOOKMARK:
        return decode_bookmark(text, path, session)
    raise MalformedContentError(f"{path} is not an item path")


def extract_body(text: str, path: str) -> Optional[str]:
    """The possibly encrypted body of a stored item, without decrypting."""
    try:
        kind = kind_for_path(path)
        if kind == ItemKind.NOTE:
            return split_note(text)[1]
        if kind == ItemKind.BOOKMARK:
            data = json.loads(text)
            return data.get("notes") if isinstance(data, dict) else None
    except (MalformedContentError, json.JSONDecodeError):
        return None
    return None
