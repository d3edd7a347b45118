"""Request gate: the governance check every inbound tool call passes through.

For each call the gate:
- Strips the reserved ``__runId`` and ``__systemOperation`` arguments
- Honors ``__systemOperation`` only for internal calls
- Validates run-bound calls with the AuthorizationValidator
- Requires a procedure run for WRITE calls that a procedure governs
- Notifies the missing-governance hook when nothing governs a WRITE
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping

from src.config import EnforcementConfig
from src.governance.audit import AuditLog
from src.governance.classifier import OperationClassifier
from src.governance.models import (
    AuditEntry,
    AuditEventType,
    AuditResult,
    OperationType,
    Procedure,
    ProcedureContext,
)
from src.governance.runs import RunRegistry
from src.governance.store import ProcedureStore
from src.governance.validator import AuthorizationValidator
from src.models import Severity

logger = logging.getLogger(__name__)

RUN_ID_KEY = "__runId"
SYSTEM_OPERATION_KEY = "__systemOperation"
RESERVED_KEYS = (RUN_ID_KEY, SYSTEM_OPERATION_KEY)

PROCEDURE_REQUIRED = "PROCEDURE_REQUIRED"
PROCEDURE_VIOLATION = "PROCEDURE_VIOLATION"


@dataclass
class GateDecision:
    """Result of gating one tool call."""

    allowed: bool
    tool_name: str
    operation: OperationType
    arguments: dict[str, Any] = field(default_factory=dict)
    run_id: str | None = None
    procedure_id: str | None = None
    payload: dict[str, Any] | None = None
    system_operation: bool = False


@dataclass
class MissingGovernanceEvent:
    """Sent to the missing-governance hook."""

    tool_name: str
    operation: OperationType
    context: ProcedureContext


MissingGovernanceHook = Callable[[MissingGovernanceEvent], Awaitable[None] | None]


class RequestGate:
    """Decides whether an inbound tool call may proceed.

    Denials are returned as structured payloads, never raised, so callers
    can react to them programmatically.
    """

    def __init__(
        self,
        store: ProcedureStore,
        registry: RunRegistry,
        validator: AuthorizationValidator,
        audit: AuditLog,
        classifier: OperationClassifier | None = None,
        settings: EnforcementConfig | None = None,
        missing_governance_hook: MissingGovernanceHook | None = None,
    ) -> None:
        """Initialize the gate.

        Args:
            store: Procedure definitions, for applicability lookups.
            registry: Run state, for active-run hints.
            validator: Validates run-bound calls.
            audit: Receives authorization decisions.
            classifier: READ/WRITE classification and context discovery.
            settings: Enforcement settings.
            missing_governance_hook: Called when no procedure governs a WRITE.
        """
        settings = settings or EnforcementConfig()
        self._store = store
        self._registry = registry
        self._validator = validator
        self._audit = audit
        self._classifier = classifier or OperationClassifier()
        self._enabled = settings.enabled
        self._strict = settings.strict
        self._require_for_write = settings.require_for_write
        self._require_for_read = settings.require_for_read
        self._missing_governance_hook = missing_governance_hook

    @property
    def classifier(self) -> OperationClassifier:
        return self._classifier

    async def evaluate(
        self,
        tool_name: str,
        args: Mapping[str, Any] | None = None,
        internal: bool = False,
    ) -> GateDecision:
        """Gate a tool call.

        Args:
            tool_name: The tool being called.
            args: Raw call arguments, possibly carrying reserved keys.
            internal: True only for calls made by this process itself (the
                procedure loader). External transports must leave it False.

        Returns:
            GateDecision. ``arguments`` never contains reserved keys.
        """
        arguments = dict(args or {})
        system_flag = arguments.pop(SYSTEM_OPERATION_KEY, None)
        run_id = arguments.pop(RUN_ID_KEY, None)
        operation = self._classifier.classify(tool_name)

        def decide(allowed: bool, **kwargs: Any) -> GateDecision:
            return GateDecision(
                allowed=allowed,
                tool_name=tool_name,
                operation=operation,
                arguments=arguments,
                run_id=run_id,
                **kwargs,
            )

        if system_flag is not None:
            if internal:
                self._audit.record(AuditEntry(
                    event_type=AuditEventType.SYSTEM_OPERATION,
                    action=str(system_flag),
                    result=AuditResult.SUCCESS,
                    tool_name=tool_name,
                ))
                return decide(True, system_operation=True)
            logger.warning(
                "Ignoring %s=%r on external call to %s", SYSTEM_OPERATION_KEY, system_flag, tool_name
            )
            self._audit.record(AuditEntry(
                event_type=AuditEventType.SYSTEM_OPERATION,
                severity=Severity.WARNING,
                action=str(system_flag),
                result=AuditResult.BLOCKED,
                tool_name=tool_name,
                reason="System operation flag on an external call was ignored",
            ))

        if not self._enabled or self._classifier.is_management_tool(tool_name):
            return decide(True)

        if run_id is not None:
            result = await self._validator.validate(str(run_id), tool_name, arguments)
            if result.allowed:
                self._audit.log_auth_success(tool_name, str(run_id), result.procedure_id)
                return decide(True, procedure_id=result.procedure_id)
            violation = result.violation
            return decide(
                False,
                procedure_id=result.procedure_id,
                payload={
                    "error": PROCEDURE_VIOLATION,
                    "violationType": violation.type.value if violation else None,
                    "procedureId": result.procedure_id,
                    "reason": result.reason,
                    "runId": run_id,
                },
            )

        if operation == OperationType.WRITE and not self._require_for_write:
            return decide(True)

        context = self._classifier.discover_context(tool_name, arguments)
        applicable = await self._store.find_applicable(context)
        if operation == OperationType.READ and not self._require_for_read:
            # Reads are only gated by procedures that opt in
            applicable = [p for p in applicable if p.triggers.enforce_on_read]
            if not applicable:
                return decide(True)

        if not applicable:
            if operation == OperationType.WRITE:
                await self._notify_missing_governance(tool_name, operation, context)
            if self._strict:
                reason = f"No procedure governs {tool_name} and strict enforcement is on"
                self._audit.log_auth_failure(tool_name, reason)
                return decide(False, payload=self._procedure_required(None, reason, None))
            return decide(True)

        procedure = applicable[0]
        active = self._registry.find_active_for_procedure(procedure.id)
        if active is not None:
            reason = (
                f"Procedure {procedure.id} is in progress; pass {RUN_ID_KEY}={active.run_id} "
                f"to continue"
            )
        else:
            reason = f"Procedure {procedure.id} must be started before calling {tool_name}"
        self._audit.log_auth_failure(
            tool_name,
            reason,
            run_id=active.run_id if active else None,
            procedure_id=procedure.id,
            metadata={"applicable": [p.id for p in applicable]},
        )
        return decide(
            False,
            procedure_id=procedure.id,
            payload=self._procedure_required(procedure, reason, active.run_id if active else None),
        )

    def cleanup(self) -> dict[str, int]:
        """Expire lapsed runs and evict old terminal ones."""
        return self._registry.sweep()

    @staticmethod
    def _procedure_required(
        procedure: Procedure | None,
        reason: str,
        run_id: str | None,
    ) -> dict[str, Any]:
        return {
            "error": PROCEDURE_REQUIRED,
            "procedureId": procedure.id if procedure else None,
            "procedureName": procedure.name if procedure else None,
            "reason": reason,
            "runId": run_id,
            "message": (
                f"Call start-procedure with procedureId={procedure.id} first"
                if procedure and run_id is None
                else reason
            ),
        }

    async def _notify_missing_governance(
        self,
        tool_name: str,
        operation: OperationType,
        context: ProcedureContext,
    ) -> None:
        self._audit.record(AuditEntry(
            event_type=AuditEventType.MISSING_GOVERNANCE,
            severity=Severity.WARNING,
            action="lookup",
            result=AuditResult.SUCCESS,
            tool_name=tool_name,
            reason="No procedure governs this operation",
            metadata={"tags": context.tags},
        ))
        if self._missing_governance_hook is None:
            return
        event = MissingGovernanceEvent(tool_name=tool_name, operation=operation, context=context)
        try:
            outcome = self._missing_governance_hook(event)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:
            logger.warning(
                "Missing governance hook failed: tool=%s, operation=%s",
                tool_name, operation.value,
                exc_info=True,
            )
