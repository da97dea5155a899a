"""
Audit trail for security-relevant actions.

Encryption toggles, password changes, history rewrites and sync pass
summaries are appended to ``security/audit.log`` as JSON lines, so the
log stays append-only and machine-parseable.
"""

from __future__ import annotations

import json
import socket
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

AUDIT_LOG_NAME = "audit.log"


class AuditEntry(BaseModel):
    """A single structured audit log entry."""

    timestamp: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    event_type: str
    detail: str
    host: str = Field(default_factory=socket.gethostname)
    metadata: Optional[dict] = None


def audit_event(
    home: Path,
    event_type: str,
    detail: str,
    metadata: Optional[dict] = None,
) -> AuditEntry:
    """Append a structured event to the audit log.

    Args:
        home: VaultNote home directory.
        event_type: Event category (SYNC, ENCRYPTION_ENABLE,
            ENCRYPTION_DISABLE, PASSWORD_CHANGE, HISTORY_REWRITE, ...).
        detail: Human-readable event description.
        metadata: Optional dict of extra structured data.

    Returns:
        AuditEntry: The entry that was written.
    """
    security_dir = home / "security"
    security_dir.mkdir(parents=True, exist_ok=True)
    audit_log = security_dir / AUDIT_LOG_NAME

    entry = AuditEntry(event_type=event_type, detail=detail, metadata=metadata)

    with audit_log.open("a", encoding="utf-8") as f:
        f.write(entry.model_dump_json() + "\n")

    return entry


def read_audit_log(home: Path, limit: int = 0) -> list[AuditEntry]:
    """Read and parse the audit log.

    Args:
        home: VaultNote home directory.
        limit: Maximum entries to return (0 = all, newest last).

    Returns:
        list[AuditEntry]: Parsed audit entries. Unparseable lines are
        wrapped with event_type="UNPARSED".
    """
    audit_log = home / "security" / AUDIT_LOG_NAME
    if not audit_log.exists():
        return []

    entries: list[AuditEntry] = []
    for line in audit_log.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            entries.append(AuditEntry.model_validate(json.loads(line)))
        except ValueError:
            entries.append(AuditEntry(event_type="UNPARSED", detail=line))

    if limit > 0:
        entries = entries[-limit:]

    return entries
