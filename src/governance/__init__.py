"""Governance layer for the procedure gate.

This module provides procedure-gated authorization including:
- Operation classification (READ vs WRITE)
- Procedure parsing, loading and caching
- Run tracking with expiry
- Run authorization with hijack prevention
- Batched audit logging

A WRITE operation governed by a procedure is only allowed under an active
run of that procedure. The run id is authority only for the tools its
procedure declares, and only at the step that declares them.
"""

from src.governance.audit import AuditLog
from src.governance.catalogue import KNOWN_TOOLS, ToolCatalogue
from src.governance.classifier import PROCEDURE_MANAGEMENT_TOOLS, OperationClassifier
from src.governance.middleware import (
    GateDecision,
    MissingGovernanceEvent,
    MissingGovernanceHook,
    RequestGate,
)
from src.governance.models import (
    ApprovalStep,
    ApprovalType,
    AuditEntry,
    AuditEventType,
    AuditResult,
    AuthorizationResult,
    InformationStep,
    OperationType,
    Procedure,
    ProcedureConstraints,
    ProcedureContext,
    ProcedureMetadata,
    ProcedurePriority,
    ProcedureRun,
    ProcedureStep,
    ProcedureTriggers,
    QuizStep,
    RunStatus,
    SecurityViolation,
    ToolResult,
    ToolStep,
    ViolationType,
    WaitStep,
    WaitType,
)
from src.governance.parser import ProcedureParseError, ProcedureParser
from src.governance.runs import (
    InvalidRunStateError,
    RunLimitExceededError,
    RunNotFoundError,
    RunRegistry,
)
from src.governance.sources import (
    FileProcedureSource,
    ProcedureSource,
    ProcedureSourceError,
    StaticProcedureSource,
    ToolCallProcedureSource,
)
from src.governance.store import CacheEntry, ProcedureStore
from src.governance.validator import AuthorizationValidator

__all__ = [
    # Exceptions
    "InvalidRunStateError",
    "ProcedureParseError",
    "ProcedureSourceError",
    "RunLimitExceededError",
    "RunNotFoundError",
    # Components
    "AuditLog",
    "AuthorizationValidator",
    "OperationClassifier",
    "ProcedureParser",
    "ProcedureStore",
    "RequestGate",
    "RunRegistry",
    "ToolCatalogue",
    # Sources
    "FileProcedureSource",
    "ProcedureSource",
    "StaticProcedureSource",
    "ToolCallProcedureSource",
    # Constants
    "KNOWN_TOOLS",
    "PROCEDURE_MANAGEMENT_TOOLS",
    # Result types
    "AuthorizationResult",
    "CacheEntry",
    "GateDecision",
    "MissingGovernanceEvent",
    "MissingGovernanceHook",
    "ToolResult",
    # Models - Procedures
    "ApprovalStep",
    "ApprovalType",
    "InformationStep",
    "Procedure",
    "ProcedureConstraints",
    "ProcedureContext",
    "ProcedureMetadata",
    "ProcedurePriority",
    "ProcedureStep",
    "ProcedureTriggers",
    "QuizStep",
    "ToolStep",
    "WaitStep",
    "WaitType",
    # Models - Runs and audit
    "AuditEntry",
    "AuditEventType",
    "AuditResult",
    "OperationType",
    "ProcedureRun",
    "RunStatus",
    "SecurityViolation",
    "ViolationType",
]
