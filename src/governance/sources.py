"""Sources of raw procedure rows.

A source answers one question: what rows does the named dataset hold?
``None`` means the dataset does not exist, which is a legitimate state
(no governance has been defined yet), not an error.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Awaitable, Callable

from src.governance.models import ToolResult

logger = logging.getLogger(__name__)

SYSTEM_OPERATION_KEY = "__systemOperation"
PROCEDURE_LOADING = "procedure-loading"
PUBLISHED_ACTIVE_FILTER = "vscope=PUBLISHED and vstate=ACTIVE"
MAX_PROCEDURE_ROWS = 1000

ToolCaller = Callable[[str, dict[str, Any]], Awaitable[ToolResult]]


class ProcedureSourceError(Exception):
    """Raised when a source cannot be read."""

    def __init__(self, message: str, dataset_name: str | None = None):
        super().__init__(message)
        self.dataset_name = dataset_name


class ProcedureSource(ABC):
    """Abstract provider of procedure dataset rows."""

    @abstractmethod
    async def fetch_rows(self, dataset_name: str) -> list[dict[str, Any]] | None:
        """Fetch all rows of a dataset.

        Args:
            dataset_name: Name of the dataset to read.

        Returns:
            The rows, or None if the dataset does not exist.

        Raises:
            ProcedureSourceError: If the dataset exists but cannot be read.
        """


class StaticProcedureSource(ProcedureSource):
    """In-memory source, keyed by dataset name."""

    def __init__(self, datasets: dict[str, list[dict[str, Any]]] | None = None) -> None:
        self._datasets = dict(datasets or {})
        self.fetch_count = 0

    def set_rows(self, dataset_name: str, rows: list[dict[str, Any]]) -> None:
        self._datasets[dataset_name] = list(rows)

    async def fetch_rows(self, dataset_name: str) -> list[dict[str, Any]] | None:
        self.fetch_count += 1
        rows = self._datasets.get(dataset_name)
        return None if rows is None else list(rows)


class FileProcedureSource(ProcedureSource):
    """Reads datasets from a local JSON file.

    The file holds either an object mapping dataset names to row lists, or
    a bare list of rows served under every dataset name.
    """

    def __init__(self, path: str) -> None:
        self._path = Path(path).expanduser()

    async def fetch_rows(self, dataset_name: str) -> list[dict[str, Any]] | None:
        return await asyncio.to_thread(self._read, dataset_name)

    def _read(self, dataset_name: str) -> list[dict[str, Any]] | None:
        if not self._path.exists():
            return None
        try:
            data = json.loads(self._path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise ProcedureSourceError(
                f"Cannot read procedure file {self._path}: {e}", dataset_name
            ) from e
        if isinstance(data, list):
            return data
        return data.get(dataset_name)


class ToolCallProcedureSource(ProcedureSource):
    """Reads datasets through the tool-calling path.

    Calls are flagged with ``__systemOperation`` so the gate lets the loader
    read governance data without itself needing a procedure. The gate only
    honors the flag when the call is marked internal, which is what the
    ``call_tool`` given here must do.
    """

    def __init__(
        self,
        call_tool: ToolCaller,
        workspace_id: int | None = None,
        account_id: int | None = None,
    ) -> None:
        """Initialize the source.

        Args:
            call_tool: Internal tool invocation, e.g. a bound RequestGate.handle_internal.
            workspace_id: Workspace holding the governance datasets.
            account_id: Account owning the workspace.
        """
        self._call_tool = call_tool
        self._workspace_id = workspace_id
        self._account_id = account_id

    async def fetch_rows(self, dataset_name: str) -> list[dict[str, Any]] | None:
        if self._workspace_id is None or self._account_id is None:
            logger.warning(
                "Procedure source has no workspace/account configured; dataset=%s",
                dataset_name,
            )
            return None

        scope = {"workspaceId": self._workspace_id, "accountId": self._account_id}
        listing = await self._call_tool("get-datasets", {
            **scope,
            "filter": PUBLISHED_ACTIVE_FILTER,
            SYSTEM_OPERATION_KEY: PROCEDURE_LOADING,
        })
        if not listing.ok:
            raise ProcedureSourceError(f"Dataset lookup failed: {listing.error}", dataset_name)

        dataset = next(
            (d for d in _items(listing.data, "datasets") if d.get("name") == dataset_name),
            None,
        )
        if dataset is None:
            return None

        output = await self._call_tool("get-dataset-output", {
            **scope,
            "datasetId": dataset.get("id"),
            "filter": PUBLISHED_ACTIVE_FILTER,
            "max": MAX_PROCEDURE_ROWS,
            SYSTEM_OPERATION_KEY: PROCEDURE_LOADING,
        })
        if not output.ok:
            raise ProcedureSourceError(f"Dataset read failed: {output.error}", dataset_name)
        return _items(output.data, "data")


def _items(data: Any, key: str) -> list[dict[str, Any]]:
    if isinstance(data, dict):
        data = data.get(key) or []
    if not isinstance(data, list):
        return []
    return [item for item in data if isinstance(item, dict)]
