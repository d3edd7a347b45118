"""Procedure service - main entry point for running procedures.

This module provides the ProcedureService class that orchestrates:
- Starting and resuming runs of a procedure
- Executing the current step of a run (with retry policy)
- Delivering interactive responses (quiz answers, approvals, acknowledgments)
- Advancing, completing and failing runs, with audit events for each
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from src.executor.engine import StepExecutor
from src.executor.interaction import PendingInteractions
from src.executor.models import StepResult
from src.governance.audit import AuditLog
from src.governance.models import (
    AuditEventType,
    AuditResult,
    Procedure,
    ProcedureContext,
    ProcedureRun,
    ProcedureStep,
    QuizStep,
    RunStatus,
)
from src.governance.parser import ProcedureParser
from src.governance.runs import RunRegistry
from src.governance.store import ProcedureStore

logger = logging.getLogger(__name__)


class ProcedureError(Exception):
    """Raised when a procedure operation cannot be carried out."""

    def __init__(self, message: str, code: str, run_id: str | None = None):
        super().__init__(message)
        self.code = code
        self.run_id = run_id


class ProcedureService:
    """Runs procedures step by step on top of the run registry.

    Usage:
        service = ProcedureService(store, registry, executor, audit, channel=channel)

        run = await service.start("PROC-CREATE-DATASET-V1")
        result = await service.execute_current_step(run.run_id)

        # A front end answering a quiz step
        await service.respond(run.run_id, "quiz", {"answer": "B"})
    """

    def __init__(
        self,
        store: ProcedureStore,
        registry: RunRegistry,
        executor: StepExecutor,
        audit: AuditLog,
        parser: ProcedureParser | None = None,
        channel: PendingInteractions | None = None,
    ) -> None:
        """Initialize the service.

        Args:
            store: Procedure definitions.
            registry: Owner of run state.
            executor: Executes individual steps.
            audit: Receives procedure lifecycle events.
            parser: Used to validate procedures before a run starts.
            channel: Interactive channel shared with the executor.
        """
        self._store = store
        self._registry = registry
        self._executor = executor
        self._audit = audit
        self._parser = parser or ProcedureParser()
        self._channel = channel
        self._run_locks: dict[str, asyncio.Lock] = {}

    # --- Procedures ---

    async def list_procedures(self, context: ProcedureContext | None = None) -> list[Procedure]:
        """List procedures, optionally only those applicable to a context."""
        if context is not None:
            return await self._store.find_applicable(context)
        procedures = await self._store.load()
        return [p for p in procedures if p.is_effective()]

    # --- Run lifecycle ---

    async def start(self, procedure_id: str, context: dict[str, Any] | None = None) -> ProcedureRun:
        """Start a run of a procedure.

        Raises:
            ProcedureError: If the procedure is unknown, inactive or invalid.
            RunLimitExceededError: If the concurrent run cap is reached.
        """
        procedure = await self._store.get_procedure(procedure_id)
        if procedure is None:
            raise ProcedureError(f"Procedure not found: {procedure_id}", "PROCEDURE_NOT_FOUND")
        if not procedure.is_effective():
            raise ProcedureError(
                f"Procedure {procedure_id} is not active", "PROCEDURE_INACTIVE"
            )
        errors = self._parser.validate_procedure(procedure)
        if errors:
            raise ProcedureError(
                f"Procedure {procedure_id} is invalid: {'; '.join(errors)}", "INVALID_PROCEDURE"
            )

        run = self._registry.start(
            procedure.id,
            procedure_name=procedure.name,
            total_steps=len(procedure.steps),
            context=context,
        )
        self._audit.log_procedure_event(
            AuditEventType.PROCEDURE_START,
            run.run_id,
            procedure.id,
            action="start",
            metadata={"total_steps": len(procedure.steps)},
        )
        return run

    def resume(self, run_id: str) -> ProcedureRun | None:
        """Return the run if it is still active; None for unknown or terminal runs."""
        return self._registry.resume(run_id)

    def status(self, run_id: str) -> ProcedureRun | None:
        return self._registry.get(run_id)

    async def current_step(self, run_id: str) -> tuple[ProcedureRun, Procedure, ProcedureStep]:
        """Resolve an active run, its procedure and its current step.

        Raises:
            ProcedureError: If the run is not active or its procedure is gone.
        """
        run = self._registry.resume(run_id)
        if run is None:
            raise ProcedureError(f"Run {run_id} is not active", "RUN_NOT_ACTIVE", run_id)
        procedure = await self._store.get_procedure(run.procedure_id)
        if procedure is None:
            raise ProcedureError(
                f"Procedure {run.procedure_id} is no longer available",
                "PROCEDURE_NOT_FOUND",
                run_id,
            )
        step = procedure.step_at(run.current_step_index)
        if step is None:
            raise ProcedureError(f"Run {run_id} has no remaining steps", "NO_CURRENT_STEP", run_id)
        return run, procedure, step

    def cancel(self, run_id: str, reason: str = "cancelled") -> ProcedureRun:
        run = self._registry.fail(run_id, reason)
        self._audit.log_procedure_event(
            AuditEventType.PROCEDURE_FAIL,
            run_id,
            run.procedure_id,
            action="cancel",
            result=AuditResult.FAILURE,
            reason=reason,
        )
        self._forget(run_id)
        return run

    def list_active_runs(self) -> list[ProcedureRun]:
        return self._registry.list_active()

    def statistics(self) -> dict[str, Any]:
        return {
            "runs": self._registry.statistics(),
            "cache": self._store.get_cache_stats(),
            "pending_interactions": len(self._channel.pending()) if self._channel else 0,
        }

    # --- Step execution ---

    async def execute_current_step(
        self,
        run_id: str,
        tool_arguments: dict[str, Any] | None = None,
    ) -> StepResult:
        """Execute the run's current step with the retry policy.

        Success or skip advances the run. A failed required step fails the
        run; a failed optional step is passed over.

        Raises:
            ProcedureError: If the run is not active or has no current step.
        """
        async with self._lock_for(run_id):
            run, procedure, step = await self.current_step(run_id)
            context = dict(run.context)
            if tool_arguments:
                context["tool_arguments"] = tool_arguments

            result = await self._executor.execute_with_retry(
                step, context, run.step_responses, run_id
            )
            self._record_step(run, step, result)

            if result.advances_run:
                self._advance(run, step, result)
            elif step.required:
                self._fail(run, f"Step {step.id} failed: {result.error}")
            else:
                logger.info("Optional step %s failed; continuing run %s", step.id, run_id)
                self._advance(run, step, result)
            return result

    async def respond(
        self,
        run_id: str,
        step_type: str,
        payload: dict[str, Any],
    ) -> StepResult | None:
        """Deliver an interactive response to the run's current step.

        If the step is already executing and waiting, the response is handed
        to it and None is returned. Otherwise the step is executed once with
        the response.

        A failed response leaves the run active so the actor can try again,
        except for quizzes whose allowed attempts are used up.

        Raises:
            ProcedureError: If the run is not active or the current step is
                not of the given type.
        """
        run, _, step = await self.current_step(run_id)
        if step.type != step_type:
            raise ProcedureError(
                f"Current step {step.id} is a {step.type} step, not {step_type}",
                "STEP_MISMATCH",
                run_id,
            )
        if self._channel is not None and self._channel.is_waiting(run_id, step.id):
            self._channel.submit(run_id, step.id, payload)
            return None

        async with self._lock_for(run_id):
            run, _, step = await self.current_step(run_id)
            if step.type != step_type:
                raise ProcedureError(
                    f"Run {run_id} moved on to step {step.id}", "STEP_MISMATCH", run_id
                )
            if self._channel is not None:
                self._channel.submit(run_id, step.id, payload)

            result = await self._executor.execute(step, run.context, run.step_responses, run_id)
            self._record_step(run, step, result)

            if result.advances_run:
                self._advance(run, step, result)
                return result

            attempts = self._registry.record_attempt(run_id, step.id)
            if isinstance(step, QuizStep) and attempts >= step.allowed_attempts:
                self._fail(run, f"Quiz {step.id} failed after {attempts} attempts")
            return result.model_copy(update={"attempts": attempts})

    # --- Internals ---

    def _advance(self, run: ProcedureRun, step: ProcedureStep, result: StepResult) -> None:
        response = dict(result.response)
        response["status"] = result.status.value
        updated = self._registry.advance(run.run_id, step.id, response)
        if updated.status == RunStatus.COMPLETED:
            self._audit.log_procedure_event(
                AuditEventType.PROCEDURE_COMPLETE,
                run.run_id,
                run.procedure_id,
                action="complete",
                metadata={"completed_steps": updated.completed_steps},
            )
            self._forget(run.run_id)

    def _fail(self, run: ProcedureRun, reason: str) -> None:
        self._registry.fail(run.run_id, reason)
        self._audit.log_procedure_event(
            AuditEventType.PROCEDURE_FAIL,
            run.run_id,
            run.procedure_id,
            action="fail",
            result=AuditResult.FAILURE,
            reason=reason,
        )
        self._forget(run.run_id)

    def _record_step(self, run: ProcedureRun, step: ProcedureStep, result: StepResult) -> None:
        self._audit.log_procedure_event(
            AuditEventType.PROCEDURE_STEP,
            run.run_id,
            run.procedure_id,
            action=f"step:{result.status.value}",
            result=AuditResult.FAILURE if result.error else AuditResult.SUCCESS,
            reason=result.error,
            metadata={
                "step_id": step.id,
                "step_type": step.type,
                "step_index": run.current_step_index,
                "attempts": result.attempts,
                "failure_kind": result.failure_kind.value if result.failure_kind else None,
            },
        )

    def _lock_for(self, run_id: str) -> asyncio.Lock:
        lock = self._run_locks.get(run_id)
        if lock is None:
            lock = self._run_locks[run_id] = asyncio.Lock()
        return lock

    def _forget(self, run_id: str) -> None:
        self._run_locks.pop(run_id, None)
        if self._channel is not None:
            self._channel.discard(run_id)

    def handle_expired(self, run: ProcedureRun) -> None:
        """Registry expiry hook: audit the expiry and drop run resources."""
        self._audit.log_procedure_event(
            AuditEventType.PROCEDURE_EXPIRE,
            run.run_id,
            run.procedure_id,
            action="expire",
            result=AuditResult.FAILURE,
            reason="Run expired",
        )
        self._forget(run.run_id)
