"""Executor layer Pydantic models.

This module defines the execution-focused structures:
- StepStatus: Outcome category of a step
- FailureKind: Why a failed step failed
- StepResult: Outcome of executing a single procedure step
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class StepStatus(str, Enum):
    """Status of a single executed step."""

    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


class FailureKind(str, Enum):
    """Distinguishes timeouts from functional failures."""

    FUNCTIONAL = "functional"
    TIMEOUT = "timeout"


class StepResult(BaseModel):
    """Outcome of executing a single step."""

    model_config = ConfigDict(frozen=True)

    step_id: str
    step_type: str
    status: StepStatus
    started_at: datetime
    completed_at: datetime
    duration_ms: int = Field(default=0, ge=0)

    # Step-specific structured output (quiz score, approvals, tool result...)
    response: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    failure_kind: FailureKind | None = None
    skip_reason: str | None = None

    attempts: int = Field(default=1, ge=0)

    @property
    def succeeded(self) -> bool:
        return self.status == StepStatus.SUCCESS

    @property
    def advances_run(self) -> bool:
        """True when the run may move past this step."""
        return self.status in (StepStatus.SUCCESS, StepStatus.SKIPPED)
