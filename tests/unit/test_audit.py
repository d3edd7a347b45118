"""Tests for the batched audit log."""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from unittest.mock import patch

import pytest

from src.config import LoggingConfig
from src.governance.audit import AuditLog
from src.governance.models import (
    AuditEntry,
    AuditEventType,
    AuditResult,
    SecurityViolation,
    ViolationType,
)
from src.models import Severity


def entry(day: int = 5, tool: str = "get-datasets", event: AuditEventType = AuditEventType.AUTH_SUCCESS) -> AuditEntry:
    return AuditEntry(
        timestamp=datetime(2026, 1, day, 9, 30, tzinfo=UTC),
        event_type=event,
        action="authorize",
        result=AuditResult.SUCCESS,
        tool_name=tool,
    )


def read_lines(path: Path) -> list[dict]:
    return [json.loads(line) for line in path.read_text().splitlines()]


class TestBatching:
    def test_flushes_when_batch_is_full(self, tmp_path: Path) -> None:
        audit = AuditLog(tmp_path, batch_size=2)

        audit.record(entry())
        assert audit.pending_count == 1
        assert not (tmp_path / "audit-2026-01-05.jsonl").exists()

        audit.record(entry())

        lines = read_lines(tmp_path / "audit-2026-01-05.jsonl")
        assert len(lines) == 2
        assert lines[0]["event_type"] == "AUTH_SUCCESS"
        assert audit.pending_count == 0

    def test_one_file_per_day(self, tmp_path: Path) -> None:
        audit = AuditLog(tmp_path, batch_size=10)
        audit.record(entry(day=5))
        audit.record(entry(day=6))
        audit.record(entry(day=6))

        assert audit.flush_sync() == 3
        assert len(read_lines(tmp_path / "audit-2026-01-05.jsonl")) == 1
        assert len(read_lines(tmp_path / "audit-2026-01-06.jsonl")) == 2

    def test_appends_across_flushes(self, tmp_path: Path) -> None:
        audit = AuditLog(tmp_path, batch_size=10)
        audit.record(entry())
        audit.flush_sync()
        audit.record(entry())
        audit.flush_sync()
        assert len(read_lines(tmp_path / "audit-2026-01-05.jsonl")) == 2

    def test_failed_write_is_requeued(self, tmp_path: Path) -> None:
        audit = AuditLog(tmp_path, batch_size=10)
        first = audit.record(entry(tool="first"))
        audit.record(entry(tool="second"))

        with patch.object(audit, "_write", side_effect=OSError("disk full")):
            assert audit.flush_sync() == 0
        assert audit.pending_count == 2
        assert audit.get_statistics()["flush_failures"] == 1

        audit.record(entry(tool="third"))
        assert audit.flush_sync() == 3
        lines = read_lines(tmp_path / "audit-2026-01-05.jsonl")
        assert [line["tool_name"] for line in lines] == ["first", "second", "third"]
        assert lines[0]["id"] == first.id

    def test_disabled_log_keeps_memory_views_only(self, tmp_path: Path) -> None:
        audit = AuditLog(tmp_path / "audit", enabled=False, batch_size=1)
        audit.record(entry())

        assert audit.pending_count == 0
        assert not (tmp_path / "audit").exists()
        assert len(audit.get_recent_entries()) == 1

    def test_from_config(self, tmp_path: Path) -> None:
        settings = LoggingConfig(audit_path=str(tmp_path), audit_batch_size=1)
        audit = AuditLog.from_config(settings)
        audit.record(entry())
        assert (tmp_path / "audit-2026-01-05.jsonl").exists()


class TestAsyncFlushing:
    @pytest.mark.asyncio
    async def test_violation_is_flushed_eagerly(
        self, tmp_path: Path, caplog: pytest.LogCaptureFixture
    ) -> None:
        audit = AuditLog(tmp_path, batch_size=100)
        violation = SecurityViolation(
            type=ViolationType.RUNID_HIJACK,
            attempted_tool="create-dataset",
            run_id="run-export-123",
            procedure_id="PROC-EXPORT-V1",
            message="hijack",
        )

        with caplog.at_level(logging.CRITICAL, logger="src.governance.security"):
            recorded = audit.record_violation(violation)

        assert recorded.severity == Severity.CRITICAL
        assert recorded.result == AuditResult.BLOCKED
        assert "RUNID_HIJACK" in caplog.text

        await audit.close()
        [path] = list(tmp_path.glob("audit-*.jsonl"))
        [line] = read_lines(path)
        assert line["event_type"] == "SECURITY_VIOLATION"
        assert line["metadata"]["violation_type"] == "RUNID_HIJACK"

    @pytest.mark.asyncio
    async def test_close_flushes_partial_batch(self, tmp_path: Path) -> None:
        audit = AuditLog(tmp_path, batch_size=100, flush_interval_seconds=60)
        audit.record(entry())
        assert audit.pending_count == 1

        await audit.close()

        assert audit.pending_count == 0
        assert audit.get_statistics()["written"] == 1

    @pytest.mark.asyncio
    async def test_flush_returns_written_count(self, tmp_path: Path) -> None:
        audit = AuditLog(tmp_path, batch_size=100)
        audit.record(entry())
        audit.record(entry())
        assert await audit.flush() == 2
        assert await audit.flush() == 0
        await audit.close()


class TestHelpersAndViews:
    def test_log_auth_failure(self, tmp_path: Path) -> None:
        audit = AuditLog(tmp_path, enabled=False)
        recorded = audit.log_auth_failure("create-dataset", "start a procedure", procedure_id="P1")
        assert recorded.event_type == AuditEventType.AUTH_BLOCKED
        assert recorded.result == AuditResult.BLOCKED
        assert recorded.severity == Severity.WARNING

    def test_log_tool_execution(self, tmp_path: Path) -> None:
        audit = AuditLog(tmp_path, enabled=False)
        ok = audit.log_tool_execution("get-datasets", True, duration_ms=12)
        failed = audit.log_tool_execution("get-datasets", False, error="HTTP 500")
        assert ok.event_type == AuditEventType.TOOL_EXECUTION
        assert ok.metadata == {"duration_ms": 12}
        assert failed.event_type == AuditEventType.TOOL_ERROR
        assert failed.reason == "HTTP 500"

    def test_recent_entries_filters(self, tmp_path: Path) -> None:
        audit = AuditLog(tmp_path, enabled=False)
        audit.record(entry(tool="get-datasets"))
        audit.record(entry(tool="create-dataset", event=AuditEventType.AUTH_BLOCKED))
        audit.log_procedure_event(AuditEventType.PROCEDURE_START, "run-1", "P1", action="start")

        assert len(audit.get_recent_entries()) == 3
        assert len(audit.get_recent_entries(tool_name="create-dataset")) == 1
        assert len(audit.get_recent_entries(event_type=AuditEventType.PROCEDURE_START)) == 1
        assert len(audit.get_recent_entries(run_id="run-1")) == 1
        assert len(audit.get_recent_entries(limit=2)) == 2

    def test_memory_views_are_bounded(self, tmp_path: Path) -> None:
        audit = AuditLog(tmp_path, enabled=False, max_memory_entries=3)
        for _ in range(5):
            audit.record(entry())
        assert len(audit.get_recent_entries()) == 3
        assert audit.get_statistics()["recorded"] == 5
