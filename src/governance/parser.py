"""Procedure parsing.

Converts raw rows and JSON from the governance dataset into typed
Procedure values. This is the only place raw procedure dicts are handled;
everything downstream works on the models in src.governance.models.

Two row formats are accepted:
- Protocol rows: a ``procedures_protocols`` column holding one procedure
  object or a JSON array of them (camelCase keys).
- Bootstrap rows: flat columns ``procedure_id``, ``title``, ``purpose``,
  ``steps`` (a numbered list), ``triggers``, ``procedure_owner`` and
  ``procedure_status``.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import UTC, datetime
from typing import Any, Iterable

from pydantic import ValidationError

from src.governance.models import (
    ApprovalStep,
    InformationStep,
    Procedure,
    ProcedurePriority,
    ProcedureStep,
    ProcedureTriggers,
    QuizStep,
    ToolStep,
    WaitStep,
)

logger = logging.getLogger(__name__)

STEP_TYPES = ("tool", "quiz", "approval", "wait", "information")
DEFAULT_STEP_TIMEOUT_MS = 300_000
DEFAULT_CHECK_INTERVAL_MS = 5_000
_NUMBER_PREFIX = re.compile(r"^\s*\d+[.)]\s*")


class ProcedureParseError(ValueError):
    """Raised when raw procedure data cannot be turned into a Procedure."""

    def __init__(self, message: str, procedure_id: str | None = None):
        super().__init__(message)
        self.procedure_id = procedure_id


class ProcedureParser:
    """Parses external procedure definitions into typed models."""

    def __init__(self, default_max_retries: int = 3) -> None:
        """Initialize the parser.

        Args:
            default_max_retries: maxRetries for steps that do not declare one.
        """
        self._default_max_retries = default_max_retries

    # --- Rows ---

    def parse_rows(self, rows: Iterable[dict[str, Any]]) -> list[Procedure]:
        """Parse dataset rows, skipping (and logging) rows that fail."""
        procedures: list[Procedure] = []
        for row in rows:
            try:
                procedures.extend(self.parse_row(row))
            except ProcedureParseError as e:
                logger.warning(
                    "Skipping unparseable procedure row: procedure_id=%s, error=%s",
                    e.procedure_id or _mapping(row).get("procedure_id"),
                    e,
                )
        return procedures

    def parse_row(self, row: dict[str, Any]) -> list[Procedure]:
        """Parse one dataset row into zero or more procedures.

        Raises:
            ProcedureParseError: If the row is malformed.
        """
        if not isinstance(row, dict):
            raise ProcedureParseError(f"Row must be an object, got {type(row).__name__}")
        protocols = row.get("procedures_protocols")
        if protocols:
            if isinstance(protocols, str):
                return self.parse_protocols(protocols)
            items = protocols if isinstance(protocols, list) else [protocols]
            return [self.parse_procedure(item) for item in items]

        if "procedure_id" in row:
            if row.get("procedure_status") != "Active":
                return []
            return [self._parse_bootstrap_row(row)]

        if "id" in row and "steps" in row:
            return [self.parse_procedure(row)]

        raise ProcedureParseError("Row is neither a protocol row nor a bootstrap row")

    def parse_protocols(self, json_string: str) -> list[Procedure]:
        """Parse a procedures_protocols JSON document.

        Raises:
            ProcedureParseError: If the JSON is invalid or a procedure is malformed.
        """
        try:
            data = json.loads(json_string)
        except json.JSONDecodeError as e:
            raise ProcedureParseError(f"Invalid procedures protocol JSON: {e}") from e
        items = data if isinstance(data, list) else [data]
        return [self.parse_procedure(item) for item in items]

    # --- Procedures ---

    def parse_procedure(self, raw: dict[str, Any]) -> Procedure:
        """Parse a single procedure object.

        Raises:
            ProcedureParseError: If id, name or steps are missing, or a field
                holds an invalid value.
        """
        if not isinstance(raw, dict):
            raise ProcedureParseError("Procedure must be an object")
        procedure_id = raw.get("id")
        if not procedure_id or not raw.get("name") or not raw.get("steps"):
            raise ProcedureParseError(
                "Procedure must have id, name, and steps", procedure_id=procedure_id
            )

        metadata = _mapping(raw.get("metadata"))
        constraints = _mapping(raw.get("constraints"))
        requirements = _mapping(raw.get("requirements"))
        allowed_datasets = constraints.get("allowedDatasets", requirements.get("allowedDatasets"))

        try:
            return Procedure(
                id=procedure_id,
                name=raw["name"],
                version=raw.get("version") or "1.0.0",
                description=raw.get("description") or "",
                purpose=raw.get("purpose") or raw["name"],
                triggers=self.parse_triggers(raw.get("triggers", raw.get("applicableTools"))),
                steps=[self.parse_step(step, i) for i, step in enumerate(raw["steps"])],
                metadata={
                    "priority": _priority(metadata.get("priority")),
                    "risk_level": (metadata.get("riskLevel") or "low").lower(),
                    "tags": metadata.get("tags") or [],
                    "category": metadata.get("category") or "general",
                    "created_by": metadata.get("createdBy") or "system",
                    "estimated_duration_seconds": metadata.get("estimatedDuration") or 300,
                },
                constraints={"allowed_datasets": allowed_datasets},
                is_active=raw.get("isActive") is not False,
                effective_from=_timestamp(raw.get("effectiveFrom")),
                effective_to=_timestamp(raw.get("effectiveTo")),
            )
        except ProcedureParseError:
            raise
        except (ValidationError, ValueError, TypeError, AttributeError, KeyError) as e:
            raise ProcedureParseError(
                f"Invalid procedure {procedure_id}: {e}", procedure_id=procedure_id
            ) from e

    def parse_triggers(self, raw: Any) -> ProcedureTriggers:
        """Parse triggers in legacy (bare array) or current (object) form."""
        if not raw:
            return ProcedureTriggers()

        if isinstance(raw, list):
            tools = [t if isinstance(t, str) else str(t.get("name", "")) for t in raw]
            return ProcedureTriggers(tools=[t for t in tools if t])

        if isinstance(raw, dict):
            return ProcedureTriggers(
                tools=raw.get("tools") or [],
                operations=[str(op).upper() for op in raw.get("operations") or []],
                conditions=raw.get("conditions") or [],
                enforce_on_read=bool(raw.get("enforceOnRead", False)),
            )

        raise ProcedureParseError(f"Unsupported triggers value: {raw!r}")

    # --- Steps ---

    def parse_step(self, raw: dict[str, Any], index: int = 0) -> ProcedureStep:
        """Parse one step, inferring its type when it is not tagged.

        Raises:
            ProcedureParseError: If the step is not an object.
        """
        if not isinstance(raw, dict):
            raise ProcedureParseError(f"Step {index + 1} must be an object, got {type(raw).__name__}")
        step_type = self.determine_step_type(raw)
        validation = _mapping(raw.get("validation"))

        tools = list(raw.get("tools") or [])
        for tool in validation.get("allowedTools") or []:
            if tool not in tools:
                tools.append(tool)

        base: dict[str, Any] = {
            "id": raw.get("id") or f"step-{index + 1}",
            "name": raw.get("name") or raw.get("title") or "Unnamed Step",
            "description": raw.get("description") or "",
            "required": raw.get("required") is not False,
            "retryable": raw.get("retryable") is not False,
            "max_retries": raw.get("maxRetries") or self._default_max_retries,
            "timeout_seconds": _seconds(raw.get("timeout"), DEFAULT_STEP_TIMEOUT_MS),
            "skip_conditions": raw.get("skipConditions") or [],
            "tools": tools,
            "on_success": raw.get("onSuccess"),
            "on_failure": raw.get("onFailure"),
            "on_timeout": raw.get("onTimeout"),
            "metadata": raw.get("metadata") or {},
        }

        if step_type == "quiz":
            quiz = _mapping(raw.get("quiz"))
            return QuizStep(
                **base,
                question=raw.get("question") or quiz.get("question") or "",
                options=raw.get("options") or quiz.get("options") or [],
                correct_answer=raw.get("correctAnswer", quiz.get("correctAnswer")),
                multiple_choice=bool(raw.get("multipleChoice") or quiz.get("multipleChoice")),
                explanation=raw.get("explanation") or quiz.get("explanation"),
                allowed_attempts=raw.get("allowedAttempts") or quiz.get("allowedAttempts") or 3,
            )

        if step_type == "approval":
            approval = _mapping(raw.get("approval"))
            return ApprovalStep(
                **base,
                approvers=raw.get("approvers") or approval.get("approvers") or [],
                approval_type=raw.get("approvalType") or approval.get("approvalType") or "single",
                minimum_approvals=(
                    raw.get("minimumApprovals") or approval.get("minimumApprovals") or 1
                ),
            )

        if step_type == "wait":
            wait = _mapping(raw.get("wait"))
            duration = raw.get("duration", wait.get("duration"))
            return WaitStep(
                **base,
                wait_type=raw.get("waitType") or wait.get("type") or "time",
                duration_seconds=None if duration is None else _seconds(duration, 0),
                condition=raw.get("condition") or wait.get("condition"),
                check_interval_seconds=_seconds(
                    raw.get("checkInterval") or wait.get("checkInterval"),
                    DEFAULT_CHECK_INTERVAL_MS,
                ),
                message=raw.get("message") or wait.get("message") or "Waiting...",
            )

        if step_type == "information":
            info = _mapping(raw.get("information"))
            display = raw.get("displayDuration", info.get("displayDuration"))
            return InformationStep(
                **base,
                content=raw.get("content") or info.get("content") or "",
                format=raw.get("format") or info.get("format") or "text",
                acknowledgment_required=raw.get("acknowledgmentRequired") is not False,
                display_duration_seconds=None if display is None else _seconds(display, 0),
            )

        tool = _mapping(raw.get("tool"))
        output_validation = _mapping(raw.get("outputValidation") or tool.get("outputValidation"))
        return ToolStep(
            **base,
            tool_name=raw.get("toolName") or tool.get("name") or base["name"],
            parameters=raw.get("parameters") or tool.get("parameters") or {},
            validation_rules=[
                _validation_rule(rule)
                for rule in raw.get("validationRules") or tool.get("validationRules") or []
            ],
            output_required=output_validation.get("required") or [],
            side_effects=raw.get("sideEffects") or tool.get("sideEffects") or [],
            compensating_action=raw.get("compensatingAction") or tool.get("compensatingAction"),
        )

    @staticmethod
    def determine_step_type(raw: dict[str, Any]) -> str:
        """Infer a step's type.

        Order: explicit ``type``, then nested variant objects, then shape
        (question+options, approvers, waitType/duration, content with an
        acknowledgment flag). Anything else is a tool step.
        """
        explicit = raw.get("type")
        if explicit in STEP_TYPES:
            return explicit

        for nested in ("quiz", "approval", "wait", "information"):
            if raw.get(nested):
                return nested
        if raw.get("tool") or raw.get("toolName"):
            return "tool"

        if raw.get("question") and raw.get("options"):
            return "quiz"
        if raw.get("approvers"):
            return "approval"
        if raw.get("waitType") or raw.get("duration"):
            return "wait"
        if raw.get("content") and "acknowledgmentRequired" in raw:
            return "information"
        return "tool"

    # --- Validation ---

    @staticmethod
    def validate_procedure(procedure: Procedure) -> list[str]:
        """Report structural problems that make a procedure unusable.

        Returns:
            A list of error messages; empty when the procedure is usable.
        """
        errors: list[str] = []
        for index, step in enumerate(procedure.steps, start=1):
            if not step.name:
                errors.append(f"Step {index} must have a name")
            if isinstance(step, QuizStep):
                if not step.question:
                    errors.append(f"Quiz step {step.name} must have a question")
                if not step.options:
                    errors.append(f"Quiz step {step.name} must have options")
            elif isinstance(step, ApprovalStep):
                if not step.approvers:
                    errors.append(f"Approval step {step.name} must have approvers")
            elif isinstance(step, ToolStep):
                if not step.tool_name:
                    errors.append(f"Tool step {step.name} must have a tool name")
        return errors

    # --- Bootstrap format ---

    def _parse_bootstrap_row(self, row: dict[str, Any]) -> Procedure:
        lines = [line for line in str(row.get("steps") or "").splitlines() if line.strip()]
        steps = []
        for i, line in enumerate(lines):
            text = _NUMBER_PREFIX.sub("", line).strip()
            steps.append({
                "id": f"step-{i + 1}",
                "name": text,
                "type": "information",
                "description": text,
                "content": text,
                "acknowledgmentRequired": True,
            })

        return self.parse_procedure({
            "id": row["procedure_id"],
            "name": row.get("title") or row["procedure_id"],
            "description": row.get("purpose") or "",
            "purpose": row.get("purpose") or "",
            "steps": steps,
            "triggers": _bootstrap_triggers(row.get("triggers")),
            "metadata": {"createdBy": row.get("procedure_owner"), "category": "governance"},
            "isActive": True,
        })


def _bootstrap_triggers(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    text = value.strip()
    if not text:
        return None
    if text[0] in "[{":
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            pass
    return {"operations": [text]}


def _mapping(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _validation_rule(rule: Any) -> dict[str, Any]:
    if isinstance(rule, str):
        return {"field": rule, "rule": "required"}
    return {"field": rule.get("field", ""), "rule": rule.get("rule", "required"),
            "message": rule.get("message")}


def _priority(value: Any) -> ProcedurePriority:
    try:
        return ProcedurePriority(str(value or "normal").lower())
    except ValueError:
        logger.warning("Unknown procedure priority %r, using normal", value)
        return ProcedurePriority.NORMAL


def _seconds(value_ms: Any, default_ms: float) -> float:
    if value_ms is None or value_ms == "":
        value_ms = default_ms
    return float(value_ms) / 1000


def _timestamp(value: Any) -> datetime | None:
    if not value:
        return None
    parsed = value if isinstance(value, datetime) else datetime.fromisoformat(str(value))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
