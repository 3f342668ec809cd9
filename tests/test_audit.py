"""Tests for willpower.data.audit: audit log helpers."""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path

import pytest

from willpower.core.config import Settings
from willpower.data.audit import audit_points, write_audit_entry


class TestWriteAuditEntry:
    def test_appends_entries(self, tmp_path: Path) -> None:
        audit_file = tmp_path / "log.jsonl"
        write_audit_entry(audit_file, {"n": 1})
        write_audit_entry(audit_file, {"n": 2})
        lines = audit_file.read_text().strip().split("\n")
        assert [json.loads(line)["n"] for line in lines] == [1, 2]

    def test_handles_datetime_serialization(self, tmp_path: Path) -> None:
        audit_file = tmp_path / "dt.jsonl"
        now = datetime.now(UTC)
        write_audit_entry(audit_file, {"ts": now})
        entry = json.loads(audit_file.read_text().strip())
        assert str(now) in entry["ts"]

    def test_creates_parent_directories(self, tmp_path: Path) -> None:
        audit_file = tmp_path / "deep" / "nested" / "audit.jsonl"
        write_audit_entry(audit_file, {"ok": True})
        assert audit_file.exists()


class TestAuditPoints:
    def test_writes_points_jsonl(self, tmp_path: Path) -> None:
        config = Settings(data_audit_path=tmp_path)
        audit_points(config, "u1", "challenge_completed", 6, 151, streak=3)
        entry = json.loads((tmp_path / "points.jsonl").read_text().strip())
        assert entry["user_id"] == "u1"
        assert entry["action"] == "challenge_completed"
        assert entry["delta"] == 6
        assert entry["new_total"] == 151
        assert entry["streak"] == 3
        assert "timestamp" in entry

    def test_negative_delta_for_reversal(self, tmp_path: Path) -> None:
        config = Settings(data_audit_path=tmp_path)
        audit_points(config, "u1", "challenge_deleted", -12, 0)
        entry = json.loads((tmp_path / "points.jsonl").read_text().strip())
        assert entry["delta"] == -12

    def test_unwritable_path_is_logged_not_raised(self, tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("")
        config = Settings(data_audit_path=blocker / "audit")
        with caplog.at_level(logging.ERROR, logger="willpower.data.audit"):
            assert audit_points(config, "u1", "challenge_completed", 3, 3) is False
        assert "could not be written" in caplog.text
