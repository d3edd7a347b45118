"""Operation classification for tool calls.

Maps tool names to READ or WRITE and derives the context used to look up
applicable procedures.
"""

from __future__ import annotations

from typing import Any, Mapping

from src.governance.models import OperationType, ProcedureContext

PROCEDURE_MANAGEMENT_TOOLS = frozenset({
    "start-procedure",
    "list-procedures",
    "resume-procedure",
    "procedure-status",
    "procedure-execute-step",
    "procedure-quiz-answer",
    "procedure-approval-check",
    "procedure-acknowledge",
    "procedure-wait-continue",
})

LARGE_EXPORT_ROWS = 1000
BULK_OPERATION_ROWS = 100


class OperationClassifier:
    """Classifies tools as READ or WRITE from a curated table.

    Tools missing from the table are WRITE: an unknown operation is treated
    as state-changing until someone says otherwise.
    """

    TOOL_OPERATIONS: dict[str, OperationType] = {
        # Reads
        "get-datasets": OperationType.READ,
        "get-dataset-output": OperationType.READ,
        "get-dataset-targetfields": OperationType.READ,
        "get-workspaces": OperationType.READ,
        "get-accounts": OperationType.READ,
        "get-queries": OperationType.READ,
        "get-ai-context": OperationType.READ,
        # Writes
        "execute-ai-query": OperationType.WRITE,
        "create-dataset": OperationType.WRITE,
        "update-dataset": OperationType.WRITE,
        "delete-dataset": OperationType.WRITE,
        "upload-dataset-rows": OperationType.WRITE,
        "update-dataset-rows": OperationType.WRITE,
        "delete-dataset-rows": OperationType.WRITE,
        "update-dataset-targetfields": OperationType.WRITE,
        **{name: OperationType.READ for name in PROCEDURE_MANAGEMENT_TOOLS},
    }

    def __init__(self, overrides: Mapping[str, OperationType] | None = None) -> None:
        """Initialize the classifier.

        Args:
            overrides: Extra or replacement entries for the tool table.
        """
        self._table = dict(self.TOOL_OPERATIONS)
        if overrides:
            self._table.update(overrides)

    def classify(self, tool_name: str) -> OperationType:
        return self._table.get(tool_name, OperationType.WRITE)

    def is_write(self, tool_name: str) -> bool:
        return self.classify(tool_name) == OperationType.WRITE

    @staticmethod
    def is_management_tool(tool_name: str) -> bool:
        return tool_name in PROCEDURE_MANAGEMENT_TOOLS

    def discover_context(self, tool_name: str, args: Mapping[str, Any]) -> ProcedureContext:
        """Build the lookup context for a tool call.

        Args:
            tool_name: Name of the tool being called.
            args: Call arguments with reserved keys already removed.

        Returns:
            ProcedureContext carrying the operation and data tags.
        """
        operation = self.classify(tool_name)
        tags = ["write-operation" if operation == OperationType.WRITE else "read-operation"]

        if tool_name == "get-dataset-output":
            tags.append("data-export")
            if _as_int(args.get("max")) > LARGE_EXPORT_ROWS:
                tags.append("large-export")
        elif tool_name == "upload-dataset-rows":
            tags.append("data-import")
            rows = args.get("data")
            if isinstance(rows, list) and len(rows) > BULK_OPERATION_ROWS:
                tags.append("bulk-operation")
        elif tool_name in ("delete-dataset", "delete-dataset-rows"):
            tags.append("data-deletion")
        elif tool_name == "create-dataset":
            tags.append("data-creation")
        elif tool_name in ("update-dataset", "update-dataset-rows", "update-dataset-targetfields"):
            tags.append("data-modification")

        if str(args.get("scope", "")).upper() == "PUBLISHED":
            tags.append("published-data")

        return ProcedureContext(tool_name=tool_name, operation=operation, tags=tags)


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0
