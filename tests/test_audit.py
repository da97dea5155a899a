"""Tests for the JSONL audit log."""

from __future__ import annotations

from pathlib import Path

from vaultnote.audit import audit_event, read_audit_log


class TestAuditLog:
    def test_append_and_read(self, tmp_vault_home: Path) -> None:
        audit_event(tmp_vault_home, "ENCRYPTION_ENABLED", "v1", {"device": "d"})
        audit_event(tmp_vault_home, "SYNC_PASS", "1 uploaded")
        entries = read_audit_log(tmp_vault_home)
        assert [e.event_type for e in entries] == ["ENCRYPTION_ENABLED", "SYNC_PASS"]
        assert entries[0].metadata == {"device": "d"}

    def test_limit_keeps_newest(self, tmp_vault_home: Path) -> None:
        for i in range(4):
            audit_event(tmp_vault_home, "SYNC_PASS", str(i))
        assert [e.detail for e in read_audit_log(tmp_vault_home, limit=2)] == ["2", "3"]

    def test_unparseable_line(self, tmp_vault_home: Path) -> None:
        audit_event(tmp_vault_home, "SYNC_PASS", "ok")
        with (tmp_vault_home / "security" / "audit.log").open("a") as f:
            f.write("not json\n")
        entries = read_audit_log(tmp_vault_home)
        assert entries[-1].event_type == "UNPARSED"

    def test_missing_log(self, tmp_vault_home: Path) -> None:
        assert read_audit_log(tmp_vault_home) == []
