"""Run authorization: decides whether a run id may authorize a tool call.

A run id is authority only for the tools its own procedure declares, and
only for the tools its current step declares. Validation runs these checks
in order and stops at the first failure:

1. The run exists and has not expired            (EXPIRED_RUN)
2. The run's procedure can be loaded             (INVALID_STEP)
3. Procedure management tools are always allowed
4. The tool is in the procedure's governed set   (RUNID_HIJACK)
5. The tool is in the current step's whitelist   (INVALID_STEP)
6. WRITE calls satisfy procedure constraints     (UNAUTHORIZED_TOOL)

Every denial is recorded as a SecurityViolation in the audit log before
validate() returns.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Any, Mapping

from src.governance.audit import AuditLog
from src.governance.catalogue import ToolCatalogue
from src.governance.classifier import PROCEDURE_MANAGEMENT_TOOLS, OperationClassifier
from src.governance.models import (
    AuthorizationResult,
    OperationType,
    Procedure,
    ProcedureRun,
    SecurityViolation,
    ViolationType,
)
from src.governance.runs import RunRegistry
from src.governance.store import ProcedureStore

logger = logging.getLogger(__name__)

# Arguments naming the dataset a WRITE call targets, by tool
DATASET_NAME_ARGS = {
    "create-dataset": "name",
}


class AuthorizationValidator:
    """Validates run-bound tool calls against the run's procedure."""

    def __init__(
        self,
        registry: RunRegistry,
        store: ProcedureStore,
        audit: AuditLog,
        classifier: OperationClassifier | None = None,
        catalogue: ToolCatalogue | None = None,
        history_size: int = 1000,
    ) -> None:
        """Initialize the validator.

        Args:
            registry: Source of run state. Read only.
            store: Source of procedure definitions.
            audit: Receives one violation entry per denial.
            classifier: READ/WRITE classification for step 6.
            catalogue: Tool names wildcard patterns expand against.
            history_size: Violations kept for get_violations().
        """
        self._registry = registry
        self._store = store
        self._audit = audit
        self._classifier = classifier or OperationClassifier()
        self._catalogue = catalogue or ToolCatalogue()
        self._violations: deque[SecurityViolation] = deque(maxlen=history_size)

    async def validate(
        self,
        run_id: str,
        tool_name: str,
        args: Mapping[str, Any] | None = None,
    ) -> AuthorizationResult:
        """Decide whether run_id authorizes tool_name.

        Args:
            run_id: The ``__runId`` presented with the call.
            tool_name: The tool being called.
            args: Call arguments with reserved keys removed.

        Returns:
            AuthorizationResult. On denial it carries the recorded violation.
        """
        args = args or {}

        run = self._registry.resume(run_id)
        if run is None:
            return self._deny(
                ViolationType.EXPIRED_RUN,
                tool_name,
                run_id,
                None,
                f"Run {run_id} is unknown, expired or no longer active; start a new run",
            )

        procedure = await self._store.get_procedure(run.procedure_id)
        if procedure is None:
            return self._deny(
                ViolationType.INVALID_STEP,
                tool_name,
                run_id,
                run.procedure_id,
                f"Procedure {run.procedure_id} for run {run_id} is not available",
            )

        if tool_name in PROCEDURE_MANAGEMENT_TOOLS:
            return AuthorizationResult(
                allowed=True,
                reason="Procedure management tool",
                procedure_id=procedure.id,
            )

        governed = self.governed_tools(procedure)
        if tool_name not in governed:
            return self._deny(
                ViolationType.RUNID_HIJACK,
                tool_name,
                run_id,
                procedure.id,
                f"Run {run_id} belongs to procedure {procedure.id}, which does not "
                f"govern tool {tool_name}",
            )

        step_tools = self.current_step_tools(procedure, run)
        if step_tools and tool_name not in step_tools:
            return self._deny(
                ViolationType.INVALID_STEP,
                tool_name,
                run_id,
                procedure.id,
                f"Tool {tool_name} is not permitted at step {run.current_step_index + 1}; "
                f"allowed: {', '.join(sorted(step_tools))}",
            )

        if self._classifier.classify(tool_name) == OperationType.WRITE:
            problem = self._check_write_constraints(procedure, tool_name, args)
            if problem:
                return self._deny(
                    ViolationType.UNAUTHORIZED_TOOL, tool_name, run_id, procedure.id, problem
                )

        return AuthorizationResult(
            allowed=True,
            procedure_id=procedure.id,
            governed_tools=sorted(governed),
        )

    def governed_tools(self, procedure: Procedure) -> set[str]:
        """Expanded union of trigger tools and every step's declared tools."""
        patterns = list(procedure.triggers.tools)
        for step in procedure.steps:
            patterns.extend(step.declared_tools)
        return self._catalogue.expand(patterns)

    def current_step_tools(self, procedure: Procedure, run: ProcedureRun) -> set[str]:
        """Expanded tool whitelist of the run's current step (may be empty)."""
        step = procedure.step_at(run.current_step_index)
        if step is None:
            return set()
        return self._catalogue.expand(step.declared_tools)

    def get_violations(self, limit: int = 100) -> list[SecurityViolation]:
        violations = list(self._violations)
        return violations[-limit:] if limit > 0 else []

    def _check_write_constraints(
        self,
        procedure: Procedure,
        tool_name: str,
        args: Mapping[str, Any],
    ) -> str | None:
        operations = procedure.triggers.operations
        if operations and "WRITE" not in operations and "ALL" not in operations:
            return f"Procedure {procedure.id} does not authorize WRITE operations"

        allowed = procedure.constraints.allowed_datasets
        arg_name = DATASET_NAME_ARGS.get(tool_name)
        if allowed is not None and arg_name and "*" not in allowed:
            target = args.get(arg_name)
            if target not in allowed:
                return (
                    f"Dataset {target!r} is not in the allowed datasets of "
                    f"procedure {procedure.id}"
                )
        return None

    def _deny(
        self,
        violation_type: ViolationType,
        tool_name: str,
        run_id: str,
        procedure_id: str | None,
        message: str,
    ) -> AuthorizationResult:
        violation = SecurityViolation(
            type=violation_type,
            attempted_tool=tool_name,
            run_id=run_id,
            procedure_id=procedure_id,
            message=message,
        )
        self._violations.append(violation)
        self._audit.record_violation(violation)
        return AuthorizationResult(
            allowed=False,
            reason=message,
            violation=violation,
            procedure_id=procedure_id,
        )
