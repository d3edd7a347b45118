"""Step execution engine for the executor layer.

This module provides the StepExecutor class for:
- Evaluating skip conditions before a step runs
- Dispatching by step type (tool, quiz, approval, wait, information)
- Bounding each step by its own timeout
- Retrying failed steps with exponential backoff and jitter
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from abc import ABC, abstractmethod
from collections import ChainMap
from datetime import datetime
from typing import Any, Awaitable, Callable, Mapping

from src.config import RetryConfig
from src.executor.conditions import EqualityEvaluator, Evaluator
from src.executor.interaction import InteractionChannel, InteractionKind
from src.executor.models import FailureKind, StepResult, StepStatus
from src.governance.models import (
    ApprovalStep,
    ApprovalType,
    InformationStep,
    ProcedureStep,
    QuizStep,
    ToolResult,
    ToolStep,
    WaitStep,
    WaitType,
    utcnow,
)

logger = logging.getLogger(__name__)

# Called as callback(action_name, step, result) for onSuccess/onFailure/onTimeout
StepCallback = Callable[[str, ProcedureStep, StepResult], Awaitable[None]]

# Called as compensator(action_name, step, error) when a tool step fails
CompensationHook = Callable[[str, ToolStep, str], Awaitable[None]]


class ExecutionError(Exception):
    """Raised when a step fails functionally."""

    def __init__(
        self,
        message: str,
        step_id: str,
        recoverable: bool = False,
        response: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.step_id = step_id
        self.recoverable = recoverable
        self.response = response or {}


class StepTimeoutError(ExecutionError):
    """Raised when a step exceeds its timeout."""

    def __init__(self, step_id: str, timeout_seconds: float):
        super().__init__(
            f"Step {step_id} timed out after {timeout_seconds:g}s", step_id, recoverable=True
        )
        self.timeout_seconds = timeout_seconds


class ToolInvoker(ABC):
    """Abstract adapter for invoking external tools.

    Implementations connect to actual tool providers, e.g. the governance
    backend client, or a mock in tests.
    """

    @abstractmethod
    async def invoke(self, tool_name: str, arguments: dict[str, Any]) -> ToolResult:
        """Invoke a tool and return its result.

        Args:
            tool_name: Name of the tool to invoke.
            arguments: Tool arguments, without reserved keys.

        Returns:
            ToolResult with data or an error message.

        Raises:
            Exception: If the tool could not be reached at all.
        """


class StepExecutor:
    """Runs one procedure step to success, failure or skip."""

    def __init__(
        self,
        tool_invoker: ToolInvoker | None = None,
        evaluator: Evaluator | None = None,
        channel: InteractionChannel | None = None,
        retry: RetryConfig | None = None,
        callback: StepCallback | None = None,
        compensator: CompensationHook | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the step executor.

        Args:
            tool_invoker: Invokes tools for tool steps.
            evaluator: Evaluates skip conditions and external wait conditions.
            channel: Supplies responses for interactive steps. Without one,
                interactive steps fail rather than resolving on their own.
            retry: Backoff settings for execute_with_retry().
            callback: Receives onSuccess/onFailure/onTimeout actions.
            compensator: Receives compensating actions of failed tool steps.
            sleep: Sleep used between retries.
        """
        self._tool_invoker = tool_invoker
        self._evaluator = evaluator or EqualityEvaluator()
        self._channel = channel
        self._retry = retry or RetryConfig()
        self._callback = callback
        self._compensator = compensator
        self._sleep = sleep

    async def execute(
        self,
        step: ProcedureStep,
        context: Mapping[str, Any] | None = None,
        responses: Mapping[str, Any] | None = None,
        run_id: str | None = None,
    ) -> StepResult:
        """Execute a step once.

        Args:
            step: The step to execute.
            context: Run context. External waits re-read it on every poll.
            responses: Responses of earlier steps, keyed by step id.
            run_id: Run the step belongs to, if any.

        Returns:
            StepResult with status success, failure or skipped.
        """
        variables: Mapping[str, Any] = ChainMap(
            {"responses": dict(responses or {})}, context if context is not None else {}
        )
        started_at = utcnow()
        started = time.monotonic()

        skip_reason = self._skip_reason(step, variables)
        if skip_reason:
            logger.info("Skipping step %s: %s", step.id, skip_reason)
            return StepResult(
                step_id=step.id,
                step_type=step.type,
                status=StepStatus.SKIPPED,
                started_at=started_at,
                completed_at=utcnow(),
                skip_reason=skip_reason,
            )

        try:
            response = await asyncio.wait_for(
                self._dispatch(step, variables, run_id), timeout=step.timeout_seconds
            )
        except TimeoutError:
            error = StepTimeoutError(step.id, step.timeout_seconds)
            result = self._failure(step, started_at, started, str(error), FailureKind.TIMEOUT, {})
            logger.warning("Step %s timed out after %ss", step.id, step.timeout_seconds)
            await self._fire(step.on_timeout or step.on_failure, step, result)
            return result
        except ExecutionError as e:
            result = self._failure(step, started_at, started, str(e), FailureKind.FUNCTIONAL, e.response)
            logger.info("Step %s failed: %s", step.id, e)
            await self._fire(step.on_failure, step, result)
            return result

        result = StepResult(
            step_id=step.id,
            step_type=step.type,
            status=StepStatus.SUCCESS,
            started_at=started_at,
            completed_at=utcnow(),
            duration_ms=_elapsed_ms(started),
            response=response,
        )
        await self._fire(step.on_success, step, result)
        return result

    async def execute_with_retry(
        self,
        step: ProcedureStep,
        context: Mapping[str, Any] | None = None,
        responses: Mapping[str, Any] | None = None,
        run_id: str | None = None,
    ) -> StepResult:
        """Execute a step, retrying failures when the step is retryable.

        A retryable step is attempted up to ``max_retries`` times. The final
        failure carries the last error message.
        """
        max_attempts = step.max_retries if step.retryable else 1
        attempt = 0
        while True:
            attempt += 1
            result = await self.execute(step, context, responses, run_id)
            if result.status != StepStatus.FAILURE or attempt >= max_attempts:
                return result.model_copy(update={"attempts": attempt})

            delay = self.backoff_delay(attempt)
            logger.info(
                "Retrying step %s in %.2fs (attempt %d/%d): %s",
                step.id, delay, attempt + 1, max_attempts, result.error,
            )
            await self._sleep(delay)

    def backoff_delay(self, attempt: int) -> float:
        """Delay before the retry that follows ``attempt``.

        ``min(initial * multiplier^(attempt-1), max)`` plus up to
        ``jitter_ratio`` of that as random jitter.
        """
        retry = self._retry
        base = min(
            retry.initial_delay_seconds * retry.backoff_multiplier ** (attempt - 1),
            retry.max_delay_seconds,
        )
        return base + random.uniform(0, retry.jitter_ratio * base)

    # --- Dispatch ---

    async def _dispatch(
        self,
        step: ProcedureStep,
        variables: Mapping[str, Any],
        run_id: str | None,
    ) -> dict[str, Any]:
        if isinstance(step, ToolStep):
            return await self._execute_tool(step, variables)
        if isinstance(step, QuizStep):
            return await self._execute_quiz(step, run_id)
        if isinstance(step, ApprovalStep):
            return await self._execute_approval(step, run_id)
        if isinstance(step, WaitStep):
            return await self._execute_wait(step, variables, run_id)
        if isinstance(step, InformationStep):
            return await self._execute_information(step, run_id)
        raise ExecutionError(f"Unknown step type: {step.type}", step.id)

    async def _execute_tool(self, step: ToolStep, variables: Mapping[str, Any]) -> dict[str, Any]:
        arguments = dict(step.parameters)
        overrides = variables.get("tool_arguments")
        if isinstance(overrides, Mapping):
            arguments.update(overrides)

        missing = [
            rule.field
            for rule in step.validation_rules
            if rule.rule == "required" and arguments.get(rule.field) in (None, "")
        ]
        if missing:
            raise ExecutionError(
                f"Missing required parameters for {step.tool_name}: {', '.join(missing)}",
                step.id,
            )

        if self._tool_invoker is None:
            raise ExecutionError("No tool invoker configured", step.id)

        try:
            result = await self._tool_invoker.invoke(step.tool_name, arguments)
        except Exception as e:
            await self._compensate(step, str(e))
            raise ExecutionError(
                f"Tool {step.tool_name} failed: {e}", step.id, recoverable=True
            ) from e

        if not result.ok:
            await self._compensate(step, result.error or "")
            raise ExecutionError(
                f"Tool {step.tool_name} returned an error: {result.error}",
                step.id,
                recoverable=True,
            )

        if step.output_required:
            data = result.data if isinstance(result.data, Mapping) else {}
            absent = [name for name in step.output_required if name not in data]
            if absent:
                raise ExecutionError(
                    f"Tool {step.tool_name} output is missing fields: {', '.join(absent)}",
                    step.id,
                )

        return {"tool_name": step.tool_name, "result": result.data}

    async def _execute_quiz(self, step: QuizStep, run_id: str | None) -> dict[str, Any]:
        payload = await self._await_actor(run_id, step, InteractionKind.QUIZ_ANSWER)
        answer = payload.get("answer")
        passed = _answer_matches(answer, step.correct_answer)
        response = {"passed": passed, "answer": answer}
        if not passed:
            if step.explanation:
                response["explanation"] = step.explanation
            raise ExecutionError("Incorrect answer", step.id, recoverable=True, response=response)
        return response

    async def _execute_approval(self, step: ApprovalStep, run_id: str | None) -> dict[str, Any]:
        payload = await self._await_actor(run_id, step, InteractionKind.APPROVAL)
        votes = payload.get("approvals")
        if votes is None:
            votes = [payload]

        eligible = set(step.approvers)
        granted: set[str] = set()
        rejected: set[str] = set()
        for vote in votes:
            approver = str(vote.get("approver", ""))
            if eligible and approver not in eligible:
                logger.warning("Ignoring vote from non-approver %s on step %s", approver, step.id)
                continue
            (granted if vote.get("approved") is True else rejected).add(approver)

        if step.approval_type == ApprovalType.SINGLE:
            required = 1
        elif step.approval_type == ApprovalType.UNANIMOUS:
            required = len(eligible) or step.minimum_approvals
        else:
            required = step.minimum_approvals

        approved = len(granted) >= required
        if step.approval_type == ApprovalType.UNANIMOUS and rejected:
            approved = False

        response = {"approved": approved, "approvals": sorted(granted), "required": required}
        if not approved:
            response["rejections"] = sorted(rejected)
            raise ExecutionError(
                f"Approval not granted ({len(granted)}/{required})",
                step.id,
                recoverable=True,
                response=response,
            )
        return response

    async def _execute_wait(
        self,
        step: WaitStep,
        variables: Mapping[str, Any],
        run_id: str | None,
    ) -> dict[str, Any]:
        started = time.monotonic()

        if step.wait_type == WaitType.TIME:
            await asyncio.sleep(step.duration_seconds or 0)
        elif step.wait_type == WaitType.EXTERNAL:
            if not step.condition:
                raise ExecutionError("External wait has no condition", step.id)
            while not self._evaluator.evaluate(step.condition, variables):
                await asyncio.sleep(step.check_interval_seconds)
        else:
            payload = await self._await_actor(run_id, step, InteractionKind.CONFIRMATION)
            if payload.get("confirmed") is not True:
                raise ExecutionError(
                    "Wait was not confirmed",
                    step.id,
                    recoverable=True,
                    response={"waited": False, "wait_type": step.wait_type.value},
                )

        return {
            "waited": True,
            "wait_type": step.wait_type.value,
            "waited_seconds": round(time.monotonic() - started, 3),
        }

    async def _execute_information(
        self,
        step: InformationStep,
        run_id: str | None,
    ) -> dict[str, Any]:
        if not step.acknowledgment_required:
            return {"acknowledged": False, "displayed": True}

        payload = await self._await_actor(run_id, step, InteractionKind.ACKNOWLEDGMENT)
        if payload.get("acknowledged") is not True:
            raise ExecutionError(
                "Acknowledgment required",
                step.id,
                recoverable=True,
                response={"acknowledged": False},
            )
        return {"acknowledged": True, "displayed": True}

    # --- Helpers ---

    async def _await_actor(
        self,
        run_id: str | None,
        step: ProcedureStep,
        kind: InteractionKind,
    ) -> dict[str, Any]:
        if self._channel is None:
            raise ExecutionError(
                f"No interaction channel configured for {step.type} step {step.id}", step.id
            )
        try:
            payload = await self._channel.request(run_id, step, kind)
        except asyncio.CancelledError:
            # A discarded run cancels the waiter, not this task.
            task = asyncio.current_task()
            if task is not None and task.cancelling() == 0:
                raise ExecutionError("Interaction cancelled: run ended", step.id) from None
            raise
        return payload if isinstance(payload, dict) else {}

    def _skip_reason(self, step: ProcedureStep, variables: Mapping[str, Any]) -> str | None:
        for condition in step.skip_conditions:
            if self._evaluator.evaluate(condition, variables):
                return f"Skip condition met: {condition}"
        return None

    async def _compensate(self, step: ToolStep, error: str) -> None:
        if not step.compensating_action or self._compensator is None:
            return
        try:
            await self._compensator(step.compensating_action, step, error)
        except Exception:
            logger.warning(
                "Compensating action failed: step_id=%s, action=%s",
                step.id, step.compensating_action,
                exc_info=True,
            )

    async def _fire(self, action: str | None, step: ProcedureStep, result: StepResult) -> None:
        if not action or self._callback is None:
            return
        try:
            await self._callback(action, step, result)
        except Exception:
            logger.warning(
                "Step callback failed: step_id=%s, action=%s, status=%s",
                step.id, action, result.status.value,
                exc_info=True,
            )

    @staticmethod
    def _failure(
        step: ProcedureStep,
        started_at: datetime,
        started: float,
        error: str,
        kind: FailureKind,
        response: dict[str, Any],
    ) -> StepResult:
        return StepResult(
            step_id=step.id,
            step_type=step.type,
            status=StepStatus.FAILURE,
            started_at=started_at,
            completed_at=utcnow(),
            duration_ms=_elapsed_ms(started),
            response=response,
            error=error,
            failure_kind=kind,
        )


def _answer_matches(answer: Any, correct: str | list[str] | None) -> bool:
    if correct is None:
        return answer is not None
    if isinstance(correct, list):
        given = answer if isinstance(answer, list) else [answer]
        return set(map(str, given)) == set(map(str, correct))
    return str(answer) == correct


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
