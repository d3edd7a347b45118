"""Run registry: the single owner of ProcedureRun state.

All transitions happen under one lock, and callers only ever receive
copies, so nothing outside this module can move a run between states.

State machine::

    start -> active -> (advance ...) -> completed
                    -> fail          -> failed
                    -> expires_at    -> expired
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import threading
from datetime import datetime, timedelta
from typing import Any, Callable

from src.config import EnforcementConfig
from src.governance.models import ProcedureRun, RunStatus, utcnow

logger = logging.getLogger(__name__)


class RunNotFoundError(Exception):
    """Raised when a run id is unknown."""

    def __init__(self, run_id: str):
        super().__init__(f"Run not found: {run_id}")
        self.run_id = run_id


class RunLimitExceededError(Exception):
    """Raised when starting a run would exceed the concurrent run cap."""

    def __init__(self, limit: int):
        super().__init__(f"Maximum concurrent runs ({limit}) reached")
        self.limit = limit


class InvalidRunStateError(Exception):
    """Raised when a transition is attempted on a run that is not active."""

    def __init__(self, run_id: str, status: RunStatus):
        super().__init__(f"Run {run_id} is {status.value}, not active")
        self.run_id = run_id
        self.status = status


class RunRegistry:
    """Holds procedure runs keyed by run id."""

    def __init__(
        self,
        settings: EnforcementConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
        on_expired: Callable[[ProcedureRun], None] | None = None,
    ) -> None:
        """Initialize the registry.

        Args:
            settings: Enforcement settings (run expiry, cap, retention).
            clock: Returns the current UTC time, injectable for tests.
            on_expired: Called with a copy of each run as it expires.
        """
        settings = settings or EnforcementConfig()
        self._expiry = timedelta(seconds=settings.run_expiry_seconds)
        self._retention = timedelta(seconds=settings.terminal_run_retention_seconds)
        self._max_active = settings.max_concurrent_runs
        self._sweep_interval = settings.sweep_interval_seconds
        self._clock = clock
        self._on_expired = on_expired

        self._runs: dict[str, ProcedureRun] = {}
        self._lock = threading.RLock()
        self._sweeper: asyncio.Task[None] | None = None

    def set_expiry_hook(self, hook: Callable[[ProcedureRun], None] | None) -> None:
        self._on_expired = hook

    # --- Transitions ---

    def start(
        self,
        procedure_id: str,
        procedure_name: str = "",
        total_steps: int = 1,
        context: dict[str, Any] | None = None,
    ) -> ProcedureRun:
        """Start a new active run.

        Raises:
            RunLimitExceededError: If the concurrent active run cap is reached.
        """
        with self._lock:
            now = self._clock()
            self._expire_due(now)
            if self._count_active() >= self._max_active:
                raise RunLimitExceededError(self._max_active)

            run_id = f"run-{secrets.token_urlsafe(18)}"
            run = ProcedureRun(
                run_id=run_id,
                procedure_id=procedure_id,
                procedure_name=procedure_name,
                total_steps=total_steps,
                context=dict(context or {}),
                started_at=now,
                updated_at=now,
                expires_at=now + self._expiry,
            )
            self._runs[run_id] = run
            logger.info("Started run %s for procedure %s", run_id, procedure_id)
            return run.model_copy(deep=True)

    def advance(self, run_id: str, step_id: str, response: Any = None) -> ProcedureRun:
        """Mark the current step done and move to the next one.

        The run completes when its last step is advanced past.

        Raises:
            RunNotFoundError: If the run is unknown.
            InvalidRunStateError: If the run is not active (or has just expired).
        """
        with self._lock:
            run = self._require_active(run_id)
            now = self._clock()
            run.completed_steps.append(step_id)
            if response is not None:
                run.step_responses[step_id] = response
            run.current_step_index += 1
            run.updated_at = now
            if run.current_step_index >= run.total_steps:
                run.status = RunStatus.COMPLETED
                run.ended_at = now
                logger.info("Run %s completed", run_id)
            return run.model_copy(deep=True)

    def record_attempt(self, run_id: str, step_id: str) -> int:
        """Count an attempt at a step and return the running total."""
        with self._lock:
            run = self._require_active(run_id)
            run.step_attempts[step_id] = run.step_attempts.get(step_id, 0) + 1
            run.updated_at = self._clock()
            return run.step_attempts[step_id]

    def complete(self, run_id: str) -> ProcedureRun:
        return self._finish(run_id, RunStatus.COMPLETED, None)

    def fail(self, run_id: str, reason: str) -> ProcedureRun:
        return self._finish(run_id, RunStatus.FAILED, reason)

    def _finish(self, run_id: str, status: RunStatus, reason: str | None) -> ProcedureRun:
        with self._lock:
            run = self._require_active(run_id)
            run.status = status
            run.failure_reason = reason
            run.ended_at = run.updated_at = self._clock()
            logger.info("Run %s %s%s", run_id, status.value, f": {reason}" if reason else "")
            return run.model_copy(deep=True)

    # --- Queries ---

    def get(self, run_id: str) -> ProcedureRun | None:
        """Return a copy of the run in whatever state it is in."""
        with self._lock:
            self._expire_due(self._clock(), only=run_id)
            run = self._runs.get(run_id)
            return run.model_copy(deep=True) if run else None

    def resume(self, run_id: str) -> ProcedureRun | None:
        """Return the run only if it is still active and unexpired."""
        with self._lock:
            self._expire_due(self._clock(), only=run_id)
            run = self._runs.get(run_id)
            if run is None or run.status != RunStatus.ACTIVE:
                return None
            return run.model_copy(deep=True)

    get_active = resume

    def find_active_for_procedure(self, procedure_id: str) -> ProcedureRun | None:
        with self._lock:
            self._expire_due(self._clock())
            for run in self._runs.values():
                if run.procedure_id == procedure_id and run.status == RunStatus.ACTIVE:
                    return run.model_copy(deep=True)
            return None

    def list_active(self) -> list[ProcedureRun]:
        with self._lock:
            self._expire_due(self._clock())
            return [
                run.model_copy(deep=True)
                for run in self._runs.values()
                if run.status == RunStatus.ACTIVE
            ]

    def statistics(self) -> dict[str, int]:
        with self._lock:
            counts = {status.value: 0 for status in RunStatus}
            for run in self._runs.values():
                counts[run.status.value] += 1
            counts["total"] = len(self._runs)
            return counts

    # --- Expiry ---

    def sweep(self) -> dict[str, int]:
        """Expire lapsed runs and evict terminal runs past the retention period.

        Returns:
            Counts of runs expired and evicted by this sweep.
        """
        with self._lock:
            now = self._clock()
            expired = self._expire_due(now)
            stale = [
                run_id
                for run_id, run in self._runs.items()
                if run.is_terminal() and (run.ended_at or run.updated_at) + self._retention < now
            ]
            for run_id in stale:
                del self._runs[run_id]
        if expired or stale:
            logger.info("Run sweep: expired=%d, evicted=%d", expired, len(stale))
        return {"expired": expired, "evicted": len(stale)}

    def start_sweeper(self) -> None:
        """Run sweep() periodically on the running event loop."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_forever())

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            self.sweep()

    # --- Persistence ---

    def snapshot(self) -> list[dict[str, Any]]:
        """Serialize every run for persistence."""
        with self._lock:
            return [run.model_dump(mode="json") for run in self._runs.values()]

    def restore(self, run: ProcedureRun | dict[str, Any]) -> ProcedureRun:
        """Re-register a previously persisted run."""
        restored = run if isinstance(run, ProcedureRun) else ProcedureRun.model_validate(run)
        with self._lock:
            self._runs[restored.run_id] = restored.model_copy(deep=True)
            self._expire_due(self._clock(), only=restored.run_id)
            return self._runs[restored.run_id].model_copy(deep=True)

    # --- Internals (lock held) ---

    def _require_active(self, run_id: str) -> ProcedureRun:
        self._expire_due(self._clock(), only=run_id)
        run = self._runs.get(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        if run.status != RunStatus.ACTIVE:
            raise InvalidRunStateError(run_id, run.status)
        return run

    def _count_active(self) -> int:
        return sum(1 for run in self._runs.values() if run.status == RunStatus.ACTIVE)

    def _expire_due(self, now: datetime, only: str | None = None) -> int:
        candidates = [self._runs[only]] if only in self._runs else []
        if only is None:
            candidates = list(self._runs.values())
        expired = 0
        for run in candidates:
            if run.status == RunStatus.ACTIVE and run.is_expired(now):
                run.status = RunStatus.EXPIRED
                run.ended_at = run.updated_at = now
                expired += 1
                logger.info("Run %s expired", run.run_id)
                if self._on_expired:
                    self._on_expired(run.model_copy(deep=True))
        return expired
