"""Tool call handler: the pipeline behind every tool call.

Each call is gated first. Procedure management tools are then answered
from the ProcedureService; everything else is forwarded to the backend
ToolInvoker and its outcome audited.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Callable

from src.config import ProcedureConfig
from src.executor.engine import StepExecutor, ToolInvoker
from src.executor.facade import ProcedureError, ProcedureService
from src.executor.interaction import PendingInteractions
from src.executor.models import StepResult
from src.governance.audit import AuditLog
from src.governance.classifier import OperationClassifier
from src.governance.middleware import MissingGovernanceHook, RequestGate
from src.governance.models import Procedure, ProcedureRun, ToolResult
from src.governance.parser import ProcedureParser
from src.governance.runs import (
    InvalidRunStateError,
    RunLimitExceededError,
    RunNotFoundError,
    RunRegistry,
)
from src.governance.sources import ProcedureSource, ToolCallProcedureSource
from src.governance.store import ProcedureStore
from src.governance.validator import AuthorizationValidator

logger = logging.getLogger(__name__)

RUN_LIMIT_EXCEEDED = "RUN_LIMIT_EXCEEDED"
TOOL_ERROR = "TOOL_ERROR"

# management tool -> (interactive step type, payload builder)
RESPONSE_TOOLS: dict[str, tuple[str, Callable[[dict[str, Any]], dict[str, Any]]]] = {
    "procedure-quiz-answer": ("quiz", lambda args: {"answer": args.get("answer")}),
    "procedure-approval-check": (
        "approval",
        lambda args: {k: args[k] for k in ("approvals", "approver", "approved") if k in args},
    ),
    "procedure-acknowledge": (
        "information",
        lambda args: {"acknowledged": args.get("acknowledged", True)},
    ),
    "procedure-wait-continue": (
        "wait",
        lambda args: {"confirmed": args.get("confirmed", True)},
    ),
}


class ToolCallHandler:
    """Routes gated tool calls to procedure management or the backend.

    Usage:
        handler = ToolCallHandler.from_config(config, invoker=backend_client)

        response = await handler.handle("create-dataset", {"name": "Sales", ...})
        if "error" in response:
            ...  # PROCEDURE_REQUIRED, PROCEDURE_VIOLATION or TOOL_ERROR
    """

    def __init__(
        self,
        gate: RequestGate,
        service: ProcedureService,
        invoker: ToolInvoker | None,
        audit: AuditLog,
        registry: RunRegistry | None = None,
    ) -> None:
        self._gate = gate
        self._registry = registry
        self._service = service
        self._invoker = invoker
        self._audit = audit
        self._management: dict[str, Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]] = {
            "list-procedures": self._list_procedures,
            "start-procedure": self._start_procedure,
            "resume-procedure": self._resume_procedure,
            "procedure-status": self._procedure_status,
            "procedure-execute-step": self._execute_step,
        }

    @classmethod
    def from_config(
        cls,
        config: ProcedureConfig,
        invoker: ToolInvoker | None = None,
        source: ProcedureSource | None = None,
        missing_governance_hook: MissingGovernanceHook | None = None,
    ) -> ToolCallHandler:
        """Wire the full component graph from configuration.

        Args:
            config: Effective configuration.
            invoker: Backend tool invoker. Also used to load procedures when
                no explicit source is given.
            source: Procedure source. Defaults to reading the configured
                dataset through this handler's internal tool path.
            missing_governance_hook: Called when no procedure governs a WRITE.

        Returns:
            A ready handler. The caller owns the sweeper and audit lifecycle.
        """
        audit = AuditLog.from_config(config.logging)
        classifier = OperationClassifier()
        parser = ProcedureParser(default_max_retries=config.retry.max_attempts)
        registry = RunRegistry(config.enforcement)
        channel = PendingInteractions()
        executor = StepExecutor(invoker, channel=channel, retry=config.retry)

        # The store reads through the handler, which does not exist yet
        handler: ToolCallHandler | None = None

        async def call_internal(tool_name: str, arguments: dict[str, Any]) -> ToolResult:
            if handler is None:
                raise RuntimeError("Tool call handler is not initialized")
            return await handler.handle_internal(tool_name, arguments)

        if source is None:
            source = ToolCallProcedureSource(
                call_internal,
                workspace_id=config.source.workspace_id,
                account_id=config.source.account_id,
            )
        store = ProcedureStore(
            source, parser, config.cache, dataset_name=config.source.dataset_name
        )
        validator = AuthorizationValidator(registry, store, audit, classifier)
        gate = RequestGate(
            store,
            registry,
            validator,
            audit,
            classifier=classifier,
            settings=config.enforcement,
            missing_governance_hook=missing_governance_hook,
        )
        service = ProcedureService(store, registry, executor, audit, parser, channel)
        registry.set_expiry_hook(service.handle_expired)

        handler = cls(gate, service, invoker, audit, registry)
        return handler

    @property
    def gate(self) -> RequestGate:
        return self._gate

    @property
    def service(self) -> ProcedureService:
        return self._service

    @property
    def audit(self) -> AuditLog:
        return self._audit

    async def startup(self) -> None:
        """Start periodic run sweeping and warm the procedure cache."""
        if self._registry is not None:
            self._registry.start_sweeper()
        await self._service.list_procedures()

    async def shutdown(self) -> None:
        """Stop sweeping and flush the audit trail."""
        if self._registry is not None:
            await self._registry.stop_sweeper()
        await self._audit.close()

    async def handle(self, tool_name: str, arguments: dict[str, Any] | None = None) -> dict[str, Any]:
        """Handle an external tool call.

        Returns:
            ``{"result": ...}`` on success, otherwise a payload with an
            ``error`` code.
        """
        decision = await self._gate.evaluate(tool_name, arguments)
        if not decision.allowed:
            return decision.payload or {"error": "DENIED", "reason": "Call denied"}

        if self._gate.classifier.is_management_tool(tool_name):
            return await self._handle_management(tool_name, decision.arguments)

        result = await self._invoke(tool_name, decision.arguments, decision.run_id, decision.procedure_id)
        if not result.ok:
            return {"error": TOOL_ERROR, "message": result.error}
        return {"result": result.data}

    async def handle_internal(self, tool_name: str, arguments: dict[str, Any]) -> ToolResult:
        """Handle a call made by this process, e.g. the procedure loader."""
        decision = await self._gate.evaluate(tool_name, arguments, internal=True)
        if not decision.allowed:
            reason = (decision.payload or {}).get("reason", "Call denied")
            return ToolResult(error=str(reason))
        return await self._invoke(tool_name, decision.arguments, decision.run_id, decision.procedure_id)

    async def _invoke(
        self,
        tool_name: str,
        arguments: dict[str, Any],
        run_id: str | None,
        procedure_id: str | None,
    ) -> ToolResult:
        if self._invoker is None:
            return ToolResult(error=f"No tool invoker configured for {tool_name}")
        started = time.monotonic()
        try:
            result = await self._invoker.invoke(tool_name, arguments)
        except Exception as e:
            logger.warning("Tool %s raised: %s", tool_name, e, exc_info=True)
            self._audit.log_tool_execution(
                tool_name, False, run_id, procedure_id, error=str(e),
                duration_ms=_elapsed_ms(started),
            )
            return ToolResult(error=str(e) or type(e).__name__)
        self._audit.log_tool_execution(
            tool_name, result.ok, run_id, procedure_id, error=result.error,
            duration_ms=_elapsed_ms(started),
        )
        return result

    # --- Procedure management ---

    async def _handle_management(self, tool_name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        try:
            if tool_name in RESPONSE_TOOLS:
                return await self._respond(tool_name, arguments)
            return await self._management[tool_name](arguments)
        except ProcedureError as e:
            logger.info("Management tool %s refused: code=%s, run=%s", tool_name, e.code, e.run_id)
            return {"error": e.code, "message": str(e), "runId": e.run_id}
        except RunLimitExceededError as e:
            return {"error": RUN_LIMIT_EXCEEDED, "message": str(e), "limit": e.limit}
        except (RunNotFoundError, InvalidRunStateError) as e:
            logger.info("Management tool %s refused: run %s is not active", tool_name, e.run_id)
            return {"error": "RUN_NOT_ACTIVE", "message": str(e), "runId": e.run_id}

    async def _list_procedures(self, arguments: dict[str, Any]) -> dict[str, Any]:
        context = None
        if arguments.get("toolName"):
            tool = str(arguments["toolName"])
            context = self._gate.classifier.discover_context(tool, arguments.get("arguments") or {})
        procedures = await self._service.list_procedures(context)
        return {"result": {"procedures": [procedure_summary(p) for p in procedures]}}

    async def _start_procedure(self, arguments: dict[str, Any]) -> dict[str, Any]:
        procedure_id = arguments.get("procedureId")
        if not procedure_id:
            return {"error": "INVALID_ARGUMENTS", "message": "procedureId is required"}
        run = await self._service.start(str(procedure_id), arguments.get("context"))
        return await self._run_response(run)

    async def _resume_procedure(self, arguments: dict[str, Any]) -> dict[str, Any]:
        run_id = str(arguments.get("runId", ""))
        run = self._service.resume(run_id)
        if run is None:
            return {"error": "RUN_NOT_ACTIVE", "message": f"Run {run_id} is not active", "runId": run_id}
        return await self._run_response(run)

    async def _procedure_status(self, arguments: dict[str, Any]) -> dict[str, Any]:
        run_id = str(arguments.get("runId", ""))
        run = self._service.status(run_id)
        if run is None:
            return {"error": "RUN_NOT_FOUND", "message": f"Run not found: {run_id}", "runId": run_id}
        return {"result": run.model_dump(mode="json")}

    async def _execute_step(self, arguments: dict[str, Any]) -> dict[str, Any]:
        run_id = str(arguments.get("runId", ""))
        result = await self._service.execute_current_step(run_id, arguments.get("toolArguments"))
        return self._step_response(run_id, result)

    async def _respond(self, tool_name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        step_type, build = RESPONSE_TOOLS[tool_name]
        run_id = str(arguments.get("runId", ""))
        result = await self._service.respond(run_id, step_type, build(arguments))
        if result is None:
            return {"result": {"runId": run_id, "delivered": True}}
        return self._step_response(run_id, result)

    async def _run_response(self, run: ProcedureRun) -> dict[str, Any]:
        body: dict[str, Any] = {"run": run.model_dump(mode="json")}
        try:
            _, _, step = await self._service.current_step(run.run_id)
        except ProcedureError:
            step = None
        if step is not None:
            body["currentStep"] = step.model_dump(mode="json", exclude={"correct_answer"})
        return {"result": body}

    def _step_response(self, run_id: str, result: StepResult) -> dict[str, Any]:
        run = self._service.status(run_id)
        return {
            "result": {
                "step": result.model_dump(mode="json"),
                "run": run.model_dump(mode="json") if run else None,
            }
        }


def procedure_summary(procedure: Procedure) -> dict[str, Any]:
    return {
        "id": procedure.id,
        "name": procedure.name,
        "version": procedure.version,
        "description": procedure.description,
        "priority": procedure.metadata.priority.value,
        "stepCount": len(procedure.steps),
    }


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
