"""Interactive channel for steps that wait on a person.

Quiz, approval, confirmation-wait and acknowledged information steps
suspend on InteractionChannel.request() until an interactive front end
supplies a response. PendingInteractions keeps one future per
(run, step); a response submitted before the step asks is buffered and
handed over as soon as it does.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from src.governance.models import (
    ApprovalStep,
    InformationStep,
    ProcedureStep,
    QuizStep,
    WaitStep,
    utcnow,
)

logger = logging.getLogger(__name__)


class InteractionKind(str, Enum):
    """What the step is waiting for."""

    QUIZ_ANSWER = "quiz_answer"
    APPROVAL = "approval"
    ACKNOWLEDGMENT = "acknowledgment"
    CONFIRMATION = "confirmation"


class InteractionRequest(BaseModel):
    """A step waiting for a response, as shown to a front end."""

    model_config = ConfigDict(frozen=True)

    run_id: str | None
    step_id: str
    kind: InteractionKind
    prompt: dict[str, Any] = Field(default_factory=dict)
    requested_at: datetime = Field(default_factory=utcnow)


class InteractionChannel(ABC):
    """Abstract source of responses from a real actor."""

    @abstractmethod
    async def request(
        self,
        run_id: str | None,
        step: ProcedureStep,
        kind: InteractionKind,
    ) -> dict[str, Any]:
        """Wait for the response to a step.

        The caller bounds the wait with the step's timeout.

        Args:
            run_id: Run the step belongs to, if any.
            step: The step asking.
            kind: What kind of response is needed.

        Returns:
            The response payload.
        """


class PendingInteractions(InteractionChannel):
    """Future-backed channel fulfilled through submit()."""

    def __init__(self) -> None:
        self._waiters: dict[tuple[str, str], tuple[InteractionRequest, asyncio.Future[dict[str, Any]]]] = {}
        self._buffered: dict[tuple[str, str], dict[str, Any]] = {}

    async def request(
        self,
        run_id: str | None,
        step: ProcedureStep,
        kind: InteractionKind,
    ) -> dict[str, Any]:
        key = (run_id or "", step.id)
        if key in self._buffered:
            return self._buffered.pop(key)

        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        request = InteractionRequest(run_id=run_id, step_id=step.id, kind=kind, prompt=_prompt(step))
        self._waiters[key] = (request, future)
        logger.info("Step %s of run %s awaiting %s", step.id, run_id, kind.value)
        try:
            return await future
        finally:
            self._waiters.pop(key, None)

    def submit(self, run_id: str | None, step_id: str, payload: dict[str, Any]) -> bool:
        """Deliver a response.

        Returns:
            True if a waiting step received it, False if it was buffered.
        """
        key = (run_id or "", step_id)
        waiter = self._waiters.get(key)
        if waiter is not None and not waiter[1].done():
            waiter[1].set_result(dict(payload))
            return True
        self._buffered[key] = dict(payload)
        return False

    def is_waiting(self, run_id: str | None, step_id: str) -> bool:
        waiter = self._waiters.get((run_id or "", step_id))
        return waiter is not None and not waiter[1].done()

    def pending(self, run_id: str | None = None) -> list[InteractionRequest]:
        return [
            request
            for request, future in self._waiters.values()
            if not future.done() and (run_id is None or request.run_id == run_id)
        ]

    def discard(self, run_id: str) -> None:
        """Drop buffered responses and cancel waiters for a finished run."""
        for key in [k for k in self._buffered if k[0] == run_id]:
            del self._buffered[key]
        for key, (_, future) in list(self._waiters.items()):
            if key[0] == run_id and not future.done():
                future.cancel()


def _prompt(step: ProcedureStep) -> dict[str, Any]:
    if isinstance(step, QuizStep):
        return {
            "question": step.question,
            "options": step.options,
            "multiple_choice": step.multiple_choice,
        }
    if isinstance(step, ApprovalStep):
        return {
            "approvers": step.approvers,
            "approval_type": step.approval_type.value,
            "minimum_approvals": step.minimum_approvals,
        }
    if isinstance(step, InformationStep):
        return {"content": step.content, "format": step.format}
    if isinstance(step, WaitStep):
        return {"message": step.message}
    return {"name": step.name}
