"""Append-only audit log with batched, non-blocking persistence.

Entries are appended to an in-memory buffer immediately. The buffer is
written out as JSON Lines, one file per UTC calendar day
(``audit-YYYY-MM-DD.jsonl``), when it reaches the batch size or when the
idle timer fires, whichever comes first. A failed write puts the batch back
at the front of the buffer and is retried on the next flush.

Security violations are flushed eagerly and also reported on the
``src.governance.security`` logger at the moment they are recorded.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import Counter, deque
from pathlib import Path
from typing import Any

from src.config import LoggingConfig
from src.governance.models import (
    AuditEntry,
    AuditEventType,
    AuditResult,
    SecurityViolation,
    ViolationType,
)
from src.models import Severity

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("src.governance.security")

VIOLATION_SEVERITY = {
    ViolationType.RUNID_HIJACK: Severity.CRITICAL,
    ViolationType.UNAUTHORIZED_TOOL: Severity.ERROR,
    ViolationType.INVALID_STEP: Severity.WARNING,
    ViolationType.EXPIRED_RUN: Severity.WARNING,
}


class AuditLog:
    """Batched JSONL audit trail with in-memory diagnostic views."""

    def __init__(
        self,
        audit_dir: str | Path,
        enabled: bool = True,
        batch_size: int = 10,
        flush_interval_seconds: float = 5.0,
        max_memory_entries: int = 1000,
    ) -> None:
        """Initialize the audit log.

        Args:
            audit_dir: Directory receiving the daily JSONL files.
            enabled: When False, entries are kept in memory only.
            batch_size: Buffered entries that trigger a flush.
            flush_interval_seconds: Idle time after which a partial batch is flushed.
            max_memory_entries: Size of the in-memory recent/violation views.
        """
        self._dir = Path(audit_dir)
        self._enabled = enabled
        self._batch_size = batch_size
        self._interval = flush_interval_seconds

        self._lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._pending: list[AuditEntry] = []
        self._recent: deque[AuditEntry] = deque(maxlen=max_memory_entries)
        self._violations: deque[AuditEntry] = deque(maxlen=max_memory_entries)
        self._counts: Counter[str] = Counter()
        self._written = 0
        self._flush_failures = 0

        self._timer: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task[int]] = set()

    @classmethod
    def from_config(cls, settings: LoggingConfig) -> AuditLog:
        return cls(
            settings.audit_path,
            enabled=settings.audit_enabled,
            batch_size=settings.audit_batch_size,
            flush_interval_seconds=settings.audit_flush_interval_seconds,
            max_memory_entries=settings.audit_memory_entries,
        )

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    # --- Recording ---

    def record(self, entry: AuditEntry) -> AuditEntry:
        """Append an entry. Never blocks on disk I/O when a loop is running."""
        self._append(entry, urgent=False)
        return entry

    def record_violation(self, violation: SecurityViolation) -> AuditEntry:
        """Record a security violation and report it immediately."""
        entry = AuditEntry(
            event_type=AuditEventType.SECURITY_VIOLATION,
            severity=VIOLATION_SEVERITY[violation.type],
            action=violation.type.value,
            result=AuditResult.BLOCKED,
            tool_name=violation.attempted_tool,
            procedure_id=violation.procedure_id,
            run_id=violation.run_id,
            reason=violation.message,
            timestamp=violation.timestamp,
            metadata={"violation_type": violation.type.value},
        )
        if violation.type == ViolationType.RUNID_HIJACK:
            log = security_logger.critical
        else:
            log = security_logger.error
        log(
            "[SECURITY VIOLATION] %s: tool=%s, run_id=%s, procedure_id=%s, %s",
            violation.type.value,
            violation.attempted_tool,
            violation.run_id,
            violation.procedure_id,
            violation.message,
        )
        self._append(entry, urgent=True)
        return entry

    def _append(self, entry: AuditEntry, urgent: bool) -> None:
        with self._lock:
            self._recent.append(entry)
            if entry.event_type == AuditEventType.SECURITY_VIOLATION:
                self._violations.append(entry)
            self._counts[entry.event_type.value] += 1
            if not self._enabled:
                return
            self._pending.append(entry)
            due = urgent or len(self._pending) >= self._batch_size
        self._schedule(due)

    # --- Convenience recorders ---

    def log_auth_success(
        self,
        tool_name: str,
        run_id: str | None,
        procedure_id: str | None,
        metadata: dict[str, Any] | None = None,
    ) -> AuditEntry:
        return self.record(AuditEntry(
            event_type=AuditEventType.AUTH_SUCCESS,
            action="authorize",
            result=AuditResult.SUCCESS,
            tool_name=tool_name,
            run_id=run_id,
            procedure_id=procedure_id,
            metadata=metadata or {},
        ))

    def log_auth_failure(
        self,
        tool_name: str,
        reason: str,
        run_id: str | None = None,
        procedure_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AuditEntry:
        return self.record(AuditEntry(
            event_type=AuditEventType.AUTH_BLOCKED,
            severity=Severity.WARNING,
            action="authorize",
            result=AuditResult.BLOCKED,
            tool_name=tool_name,
            run_id=run_id,
            procedure_id=procedure_id,
            reason=reason,
            metadata=metadata or {},
        ))

    def log_security_violation(self, violation: SecurityViolation) -> AuditEntry:
        return self.record_violation(violation)

    def log_tool_execution(
        self,
        tool_name: str,
        success: bool,
        run_id: str | None = None,
        procedure_id: str | None = None,
        error: str | None = None,
        duration_ms: int | None = None,
    ) -> AuditEntry:
        return self.record(AuditEntry(
            event_type=AuditEventType.TOOL_EXECUTION if success else AuditEventType.TOOL_ERROR,
            severity=Severity.INFO if success else Severity.ERROR,
            action="execute",
            result=AuditResult.SUCCESS if success else AuditResult.FAILURE,
            tool_name=tool_name,
            run_id=run_id,
            procedure_id=procedure_id,
            reason=error,
            metadata={} if duration_ms is None else {"duration_ms": duration_ms},
        ))

    def log_procedure_event(
        self,
        event_type: AuditEventType,
        run_id: str | None,
        procedure_id: str | None,
        action: str,
        result: AuditResult = AuditResult.SUCCESS,
        reason: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AuditEntry:
        severity = Severity.WARNING if result != AuditResult.SUCCESS else Severity.INFO
        return self.record(AuditEntry(
            event_type=event_type,
            severity=severity,
            action=action,
            result=result,
            run_id=run_id,
            procedure_id=procedure_id,
            reason=reason,
            metadata=metadata or {},
        ))

    # --- Views ---

    def get_security_violations(self, limit: int = 100) -> list[AuditEntry]:
        """Most recent violations, newest last."""
        with self._lock:
            entries = list(self._violations)
        return entries[-limit:] if limit > 0 else []

    def get_recent_entries(
        self,
        limit: int = 100,
        event_type: AuditEventType | None = None,
        severity: Severity | None = None,
        tool_name: str | None = None,
        run_id: str | None = None,
        procedure_id: str | None = None,
    ) -> list[AuditEntry]:
        """Recent entries matching every given filter, newest last.

        Only entries still held in memory are visible; the full history is
        in the JSONL files.
        """
        with self._lock:
            entries = list(self._recent)
        matched = [
            entry
            for entry in entries
            if (event_type is None or entry.event_type == event_type)
            and (severity is None or entry.severity == severity)
            and (tool_name is None or entry.tool_name == tool_name)
            and (run_id is None or entry.run_id == run_id)
            and (procedure_id is None or entry.procedure_id == procedure_id)
        ]
        return matched[-limit:] if limit > 0 else []

    def get_statistics(self) -> dict[str, Any]:
        with self._lock:
            return {
                "recorded": sum(self._counts.values()),
                "pending": len(self._pending),
                "written": self._written,
                "flush_failures": self._flush_failures,
                "violations": self._counts[AuditEventType.SECURITY_VIOLATION.value],
                "by_event_type": dict(self._counts),
            }

    # --- Flushing ---

    async def flush(self) -> int:
        """Write buffered entries off the event loop.

        Returns:
            Number of entries written; 0 if nothing was pending or the
            write failed and the batch was re-queued.
        """
        batch = self._take_batch()
        if not batch:
            return 0
        try:
            await asyncio.to_thread(self._write, batch)
        except OSError:
            self._requeue(batch)
            self._schedule(due=False)
            return 0
        return len(batch)

    def flush_sync(self) -> int:
        """Write buffered entries on the calling thread."""
        batch = self._take_batch()
        if not batch:
            return 0
        try:
            self._write(batch)
        except OSError:
            self._requeue(batch)
            return 0
        return len(batch)

    async def close(self) -> None:
        """Cancel the idle timer and flush everything still buffered."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        await self.flush()

    def _take_batch(self) -> list[AuditEntry]:
        with self._lock:
            batch, self._pending = self._pending, []
            return batch

    def _requeue(self, batch: list[AuditEntry]) -> None:
        with self._lock:
            self._pending[:0] = batch
            self._flush_failures += 1
        logger.error(
            "Audit flush failed, %d entries re-queued: dir=%s", len(batch), self._dir,
            exc_info=True,
        )

    def _write(self, batch: list[AuditEntry]) -> None:
        by_day: dict[str, list[AuditEntry]] = {}
        for entry in batch:
            by_day.setdefault(entry.timestamp.strftime("%Y-%m-%d"), []).append(entry)

        with self._write_lock:
            self._dir.mkdir(parents=True, exist_ok=True)
            for day, entries in by_day.items():
                path = self._dir / f"audit-{day}.jsonl"
                with open(path, "a", encoding="utf-8") as f:
                    f.write("".join(entry.model_dump_json() + "\n" for entry in entries))
        with self._lock:
            self._written += len(batch)

    def _schedule(self, due: bool) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No event loop: write inline once a flush is due.
            if due:
                self.flush_sync()
            return

        if due:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._spawn_flush(loop)
        elif self._timer is None:
            self._timer = loop.call_later(self._interval, self._on_timer, loop)

    def _on_timer(self, loop: asyncio.AbstractEventLoop) -> None:
        self._timer = None
        self._spawn_flush(loop)

    def _spawn_flush(self, loop: asyncio.AbstractEventLoop) -> None:
        task = loop.create_task(self.flush())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
