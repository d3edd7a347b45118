"""Governance layer Pydantic models.

This module defines all data models for the governance layer including:
- Procedure definitions (Procedure, ProcedureTriggers, the step union)
- Run tracking (ProcedureRun, RunStatus)
- Authorization (AuthorizationResult, SecurityViolation, ViolationType)
- Auditing (AuditEntry, AuditEventType, AuditResult)
- Tool invocation results (ToolResult)
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from src.models import RiskLevel, Severity


def utcnow() -> datetime:
    return datetime.now(UTC)


# --- Enums ---


class OperationType(str, Enum):
    """Whether a tool reads or changes state."""

    READ = "READ"
    WRITE = "WRITE"


class ProcedurePriority(str, Enum):
    """Priority used to order applicable procedures."""

    CRITICAL = "critical"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    ProcedurePriority.CRITICAL: 0,
    ProcedurePriority.HIGH: 1,
    ProcedurePriority.NORMAL: 2,
    ProcedurePriority.LOW: 3,
}


class ApprovalType(str, Enum):
    """How many approvals an approval step needs."""

    SINGLE = "single"
    MULTIPLE = "multiple"
    UNANIMOUS = "unanimous"


class WaitType(str, Enum):
    """What a wait step waits for."""

    TIME = "time"
    EXTERNAL = "external"
    CONFIRMATION = "confirmation"


class RunStatus(str, Enum):
    """Lifecycle status of a procedure run."""

    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"


class ViolationType(str, Enum):
    """Security character of an authorization denial."""

    RUNID_HIJACK = "RUNID_HIJACK"
    UNAUTHORIZED_TOOL = "UNAUTHORIZED_TOOL"
    EXPIRED_RUN = "EXPIRED_RUN"
    INVALID_STEP = "INVALID_STEP"


class AuditEventType(str, Enum):
    """Kinds of events written to the audit log."""

    AUTH_SUCCESS = "AUTH_SUCCESS"
    AUTH_FAILURE = "AUTH_FAILURE"
    AUTH_BLOCKED = "AUTH_BLOCKED"
    SECURITY_VIOLATION = "SECURITY_VIOLATION"
    PROCEDURE_START = "PROCEDURE_START"
    PROCEDURE_STEP = "PROCEDURE_STEP"
    PROCEDURE_COMPLETE = "PROCEDURE_COMPLETE"
    PROCEDURE_FAIL = "PROCEDURE_FAIL"
    PROCEDURE_EXPIRE = "PROCEDURE_EXPIRE"
    TOOL_EXECUTION = "TOOL_EXECUTION"
    TOOL_BLOCKED = "TOOL_BLOCKED"
    TOOL_ERROR = "TOOL_ERROR"
    SYSTEM_OPERATION = "SYSTEM_OPERATION"
    MISSING_GOVERNANCE = "MISSING_GOVERNANCE"


class AuditResult(str, Enum):
    """Outcome recorded on an audit entry."""

    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    BLOCKED = "BLOCKED"


# --- Procedure Models ---


class ProcedureTriggers(BaseModel):
    """What a procedure claims authority over."""

    model_config = ConfigDict(frozen=True)

    tools: list[str] = Field(default_factory=list)
    operations: list[str] = Field(default_factory=list)
    conditions: list[str] = Field(default_factory=list)
    enforce_on_read: bool = False


class ProcedureMetadata(BaseModel):
    """Descriptive metadata carried by a procedure."""

    model_config = ConfigDict(frozen=True)

    priority: ProcedurePriority = ProcedurePriority.NORMAL
    risk_level: RiskLevel = RiskLevel.LOW
    tags: list[str] = Field(default_factory=list)
    category: str = "general"
    created_by: str = "system"
    estimated_duration_seconds: int = Field(default=300, ge=0)


class ProcedureConstraints(BaseModel):
    """Extra limits applied to WRITE calls made under a run."""

    model_config = ConfigDict(frozen=True)

    # None means unrestricted; "*" in the list also means unrestricted
    allowed_datasets: list[str] | None = None


class ValidationRule(BaseModel):
    """A parameter rule on a tool step."""

    model_config = ConfigDict(frozen=True)

    field: str
    rule: str = "required"
    message: str | None = None


class StepBase(BaseModel):
    """Fields shared by every step variant."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str = ""
    required: bool = True
    retryable: bool = True
    max_retries: int = Field(default=3, ge=1)
    timeout_seconds: float = Field(default=300.0, gt=0)
    skip_conditions: list[str] = Field(default_factory=list)
    tools: list[str] = Field(default_factory=list)
    on_success: str | None = None
    on_failure: str | None = None
    on_timeout: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def declared_tools(self) -> list[str]:
        """Tool names (or patterns) this step declares."""
        return list(self.tools)


class ToolStep(StepBase):
    type: Literal["tool"] = "tool"
    tool_name: str
    parameters: dict[str, Any] = Field(default_factory=dict)
    validation_rules: list[ValidationRule] = Field(default_factory=list)
    output_required: list[str] = Field(default_factory=list)
    side_effects: list[str] = Field(default_factory=list)
    compensating_action: str | None = None

    @property
    def declared_tools(self) -> list[str]:
        tools = list(self.tools)
        if self.tool_name and self.tool_name not in tools:
            tools.append(self.tool_name)
        return tools


class QuizStep(StepBase):
    type: Literal["quiz"] = "quiz"
    question: str
    options: list[str] = Field(default_factory=list)
    correct_answer: str | list[str] | None = None
    multiple_choice: bool = False
    explanation: str | None = None
    allowed_attempts: int = Field(default=3, ge=1)


class ApprovalStep(StepBase):
    type: Literal["approval"] = "approval"
    approvers: list[str] = Field(default_factory=list)
    approval_type: ApprovalType = ApprovalType.SINGLE
    minimum_approvals: int = Field(default=1, ge=1)


class WaitStep(StepBase):
    type: Literal["wait"] = "wait"
    wait_type: WaitType = WaitType.TIME
    duration_seconds: float | None = Field(default=None, ge=0)
    condition: str | None = None
    check_interval_seconds: float = Field(default=5.0, gt=0)
    message: str = "Waiting..."


class InformationStep(StepBase):
    type: Literal["information"] = "information"
    content: str = ""
    format: str = "text"
    acknowledgment_required: bool = True
    display_duration_seconds: float | None = Field(default=None, ge=0)


ProcedureStep = Annotated[
    ToolStep | QuizStep | ApprovalStep | WaitStep | InformationStep,
    Field(discriminator="type"),
]


class Procedure(BaseModel):
    """A declarative, versioned workflow governing tools and operations."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    version: str = "1.0.0"
    description: str = ""
    purpose: str = ""
    triggers: ProcedureTriggers = Field(default_factory=ProcedureTriggers)
    steps: list[ProcedureStep] = Field(min_length=1)
    metadata: ProcedureMetadata = Field(default_factory=ProcedureMetadata)
    constraints: ProcedureConstraints = Field(default_factory=ProcedureConstraints)
    is_active: bool = True
    effective_from: datetime | None = None
    effective_to: datetime | None = None

    @model_validator(mode="after")
    def _check_unique_step_ids(self) -> Procedure:
        seen: set[str] = set()
        for step in self.steps:
            if step.id in seen:
                raise ValueError(f"Duplicate step id {step.id!r} in procedure {self.id!r}")
            seen.add(step.id)
        return self

    def is_effective(self, now: datetime | None = None) -> bool:
        """Check the procedure is active and inside its validity window."""
        if not self.is_active:
            return False
        now = now or utcnow()
        if self.effective_from and self.effective_from > now:
            return False
        if self.effective_to and self.effective_to < now:
            return False
        return True

    def step_at(self, index: int) -> ProcedureStep | None:
        if 0 <= index < len(self.steps):
            return self.steps[index]
        return None


# --- Run Models ---


class ProcedureRun(BaseModel):
    """A live, time-boxed instance of a procedure.

    Owned by RunRegistry. Other components receive copies.
    """

    run_id: str = Field(frozen=True)
    procedure_id: str = Field(frozen=True)
    procedure_name: str = ""
    total_steps: int = Field(default=1, ge=1)
    current_step_index: int = Field(default=0, ge=0)
    status: RunStatus = RunStatus.ACTIVE
    completed_steps: list[str] = Field(default_factory=list)
    step_responses: dict[str, Any] = Field(default_factory=dict)
    step_attempts: dict[str, int] = Field(default_factory=dict)
    context: dict[str, Any] = Field(default_factory=dict)
    started_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime
    updated_at: datetime = Field(default_factory=utcnow)
    ended_at: datetime | None = None
    failure_reason: str | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) > self.expires_at

    def is_terminal(self) -> bool:
        return self.status != RunStatus.ACTIVE


# --- Authorization Models ---


class SecurityViolation(BaseModel):
    """A recorded, audited denial of a specific security character."""

    model_config = ConfigDict(frozen=True)

    type: ViolationType
    attempted_tool: str
    run_id: str
    procedure_id: str | None = None
    message: str
    timestamp: datetime = Field(default_factory=utcnow)


class AuthorizationResult(BaseModel):
    """Outcome of validating a run-bound tool call."""

    model_config = ConfigDict(frozen=True)

    allowed: bool
    reason: str | None = None
    violation: SecurityViolation | None = None
    procedure_id: str | None = None
    governed_tools: list[str] = Field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return self.allowed


class ProcedureContext(BaseModel):
    """What is known about a call when looking for applicable procedures."""

    model_config = ConfigDict(frozen=True)

    tool_name: str | None = None
    operation: OperationType | None = None
    tags: list[str] = Field(default_factory=list)
    purpose: str | None = None


class ToolResult(BaseModel):
    """Result of invoking an external tool."""

    model_config = ConfigDict(frozen=True)

    data: Any | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


# --- Audit Models ---


class AuditEntry(BaseModel):
    """A single audit record. Persisted one per line."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=utcnow)
    event_type: AuditEventType
    severity: Severity = Severity.INFO
    action: str
    result: AuditResult
    tool_name: str | None = None
    procedure_id: str | None = None
    run_id: str | None = None
    user_id: str | None = None
    reason: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
