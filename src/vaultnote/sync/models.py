"""
Sync data models — remote settings, encryption config, pass results.

Everything here is plain data. The engine, coordinator and client in the
sibling modules operate on these models and persist them through the
local store.
"""

from __future__ import annotations

import json
import os
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

DEFAULT_API_URL = "https://api.github.com"
DEFAULT_TOKEN_ENV_VAR = "VAULTNOTE_GITHUB_TOKEN"


class RemoteConfig(BaseModel):
    """Where the remote repository lives and how to reach it."""

    owner: str = ""
    repo: str = ""
    branch: str = "main"
    token: Optional[str] = None
    token_env_var: str = DEFAULT_TOKEN_ENV_VAR
    api_url: str = DEFAULT_API_URL

    def resolved_token(self) -> Optional[str]:
        """The configured token, falling back to the environment."""
        return self.token or os.environ.get(self.token_env_var) or None

    @property
    def is_configured(self) -> bool:
        return bool(self.resolved_token() and self.owner and self.repo and self.branch)

    @property
    def repo_key(self) -> str:
        return f"{self.owner}/{self.repo}"


class SyncSettings(BaseModel):
    """Tunables for the sync pass and its retry policy."""

    interval_minutes: int = Field(default=2, ge=0, description="0 disables the periodic trigger")
    download_batch_size: int = Field(default=10, ge=1)
    batch_pause_seconds: float = 0.1
    max_attempts: int = Field(default=3, ge=1)
    backoff_base_seconds: float = 1.0
    request_timeout_seconds: float = 10.0
    empty_remote_threshold: int = 5
    lock_ttl_minutes: int = 5
    sync_after_save: bool = True


class EncryptionConfig(BaseModel):
    """The remote singleton describing encryption state and the soft lock.

    Serialized as ``{version, enabled, locked, device, timestamp}`` so
    every device, whatever it runs, reads the same document.
    """

    version: int = 0
    enabled: bool = False
    locked: bool = False
    device: Optional[str] = None
    timestamp: Optional[str] = None

    def is_lock_expired(self, ttl_minutes: int, now: Optional[datetime] = None) -> bool:
        """Whether the soft lock is stale.

        A missing or unparseable timestamp counts as expired. Naive
        timestamps are read as UTC.
        """
        if not self.timestamp:
            return True
        try:
            stamp = datetime.fromisoformat(self.timestamp.replace("Z", "+00:00"))
        except ValueError:
            return True
        if stamp.tzinfo is None:
            stamp = stamp.replace(tzinfo=timezone.utc)
        now = now or datetime.now(timezone.utc)
        return now - stamp > timedelta(minutes=ttl_minutes)

    def is_locked_by_other(self, device_id: str, ttl_minutes: int, now: Optional[datetime] = None) -> bool:
        """True when another device holds a lock that has not yet expired."""
        if not self.locked or self.device == device_id:
            return False
        return not self.is_lock_expired(ttl_minutes, now)

    def to_json(self) -> str:
        return json.dumps(self.model_dump(), indent=2)

    @classmethod
    def from_json(cls, text: str) -> "EncryptionConfig":
        data: Any = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError("encryption config must be a JSON object")
        return cls.model_validate(data)


class EncryptionStatus(str, Enum):
    """Encryption status as observed by this device."""

    UNKNOWN = "unknown"
    DISABLED = "disabled"
    ENABLED_LOCAL_ONLY = "enabled_local_only"
    ENABLED_VERIFIED = "enabled_verified"


class EncryptionSyncResult(str, Enum):
    """Outcome of negotiating encryption state with the remote."""

    OK = "ok"
    NEEDS_PASSWORD = "needs_password"
    VERSION_MISMATCH = "version_mismatch"
    DISABLED_REMOTELY = "disabled_remotely"
    NOT_CONFIGURED = "not_configured"


class ChangePasswordResult(str, Enum):
    """Outcome of a password-affecting operation."""

    SUCCESS = "success"
    WRONG_PASSWORD = "wrong_password"
    LOCKED_BY_ANOTHER_DEVICE = "locked_by_another_device"
    ERROR = "error"


class SyncPhase(str, Enum):
    IDLE = "idle"
    DOWNLOADING = "downloading"
    UPLOADING = "uploading"


class OutcomeKind(str, Enum):
    """What happened to one path during a pass."""

    ADDED = "added"
    UPDATED = "updated"
    DELETED_LOCALLY = "deleted_locally"
    REUPLOAD = "reupload"
    UPLOADED = "uploaded"
    DELETED_REMOTELY = "deleted_remotely"
    CONFLICT = "conflict"
    FAILED = "failed"


class ItemOutcome(BaseModel):
    path: str
    kind: OutcomeKind
    message: str = ""


class SyncReport(BaseModel):
    """Summary of a single sync pass."""

    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None
    outcomes: list[ItemOutcome] = Field(default_factory=list)
    error: Optional[str] = None
    remote_writes: int = 0

    def record(self, path: str, kind: OutcomeKind, message: str = "") -> None:
        self.outcomes.append(ItemOutcome(path=path, kind=kind, message=message))

    def count(self, kind: OutcomeKind) -> int:
        return sum(1 for o in self.outcomes if o.kind == kind)

    @property
    def failures(self) -> list[ItemOutcome]:
        return [o for o in self.outcomes if o.kind in (OutcomeKind.FAILED, OutcomeKind.CONFLICT)]

    @property
    def ok(self) -> bool:
        return self.error is None and not self.failures

    def summary(self) -> str:
        """One-line human summary used in logs and the CLI."""
        parts = [
            f"{self.count(OutcomeKind.ADDED)} added",
            f"{self.count(OutcomeKind.UPDATED)} updated",
            f"{self.count(OutcomeKind.DELETED_LOCALLY)} removed locally",
            f"{self.count(OutcomeKind.UPLOADED)} uploaded",
            f"{self.count(OutcomeKind.DELETED_REMOTELY)} deleted remotely",
        ]
        if self.count(OutcomeKind.REUPLOAD):
            parts.append(f"{self.count(OutcomeKind.REUPLOAD)} queued for re-upload")
        if self.failures:
            parts.append(f"{len(self.failures)} failed")
        return ", ".join(parts)


class SyncState(BaseModel):
    """Persisted summary of recent sync activity."""

    last_sync: Optional[datetime] = None
    last_success: Optional[datetime] = None
    last_error: Optional[str] = None
    passes: int = 0
    uploaded_total: int = 0
    downloaded_total: int = 0
