"""Executor layer for procedure steps.

This module provides:
- StepExecutor: Runs one step with skip conditions, timeout and retry
- PendingInteractions: Future-backed channel for interactive steps
- EqualityEvaluator: Minimal ``left==right`` condition matcher
- ProcedureService: Drives runs step by step and records their lifecycle

Example usage:
    from src.executor import PendingInteractions, ProcedureService, StepExecutor

    channel = PendingInteractions()
    executor = StepExecutor(tool_invoker, channel=channel, retry=config.retry)
    service = ProcedureService(store, registry, executor, audit, channel=channel)

    run = await service.start("PROC-CREATE-DATASET-V1")
    result = await service.execute_current_step(run.run_id)
"""

from src.executor.conditions import EqualityEvaluator, Evaluator
from src.executor.engine import (
    CompensationHook,
    ExecutionError,
    StepCallback,
    StepExecutor,
    StepTimeoutError,
    ToolInvoker,
)
from src.executor.facade import ProcedureError, ProcedureService
from src.executor.interaction import (
    InteractionChannel,
    InteractionKind,
    InteractionRequest,
    PendingInteractions,
)
from src.executor.models import FailureKind, StepResult, StepStatus

__all__ = [
    # Models
    "FailureKind",
    "StepResult",
    "StepStatus",
    # Conditions
    "EqualityEvaluator",
    "Evaluator",
    # Interaction
    "InteractionChannel",
    "InteractionKind",
    "InteractionRequest",
    "PendingInteractions",
    # Engine
    "CompensationHook",
    "ExecutionError",
    "StepCallback",
    "StepExecutor",
    "StepTimeoutError",
    "ToolInvoker",
    # Facade
    "ProcedureError",
    "ProcedureService",
]
