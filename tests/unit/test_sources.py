"""Tests for procedure row sources."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import pytest

from src.governance.models import ToolResult
from src.governance.sources import (
    FileProcedureSource,
    ProcedureSourceError,
    ToolCallProcedureSource,
)


class TestFileProcedureSource:
    @pytest.mark.asyncio
    async def test_named_datasets(self, tmp_path: Path) -> None:
        path = tmp_path / "procedures.json"
        path.write_text(json.dumps({"AI_Agent_Procedures": [{"procedure_id": "P1"}]}))
        source = FileProcedureSource(str(path))

        assert await source.fetch_rows("AI_Agent_Procedures") == [{"procedure_id": "P1"}]
        assert await source.fetch_rows("AI_Agent_Definitions") is None

    @pytest.mark.asyncio
    async def test_bare_list_served_for_any_dataset(self, tmp_path: Path) -> None:
        path = tmp_path / "rows.json"
        path.write_text(json.dumps([{"procedure_id": "P1"}]))
        assert await FileProcedureSource(str(path)).fetch_rows("anything") == [{"procedure_id": "P1"}]

    @pytest.mark.asyncio
    async def test_missing_file_means_no_dataset(self, tmp_path: Path) -> None:
        assert await FileProcedureSource(str(tmp_path / "nope.json")).fetch_rows("x") is None

    @pytest.mark.asyncio
    async def test_corrupt_file(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.json"
        path.write_text("[oops")
        with pytest.raises(ProcedureSourceError):
            await FileProcedureSource(str(path)).fetch_rows("x")


class TestToolCallProcedureSource:
    @pytest.mark.asyncio
    async def test_reads_published_rows(self) -> None:
        responses = {
            "get-datasets": ToolResult(data={"datasets": [
                {"id": 3, "name": "Other"},
                {"id": 8, "name": "AI_Agent_Procedures"},
            ]}),
            "get-dataset-output": ToolResult(data={"data": [{"procedure_id": "P1"}, "junk"]}),
        }
        calls: list[tuple[str, dict[str, Any]]] = []

        async def call_tool(tool_name: str, arguments: dict[str, Any]) -> ToolResult:
            calls.append((tool_name, arguments))
            return responses[tool_name]

        source = ToolCallProcedureSource(call_tool, workspace_id=2, account_id=1)
        rows = await source.fetch_rows("AI_Agent_Procedures")

        assert rows == [{"procedure_id": "P1"}]
        output_args = calls[1][1]
        assert output_args["datasetId"] == 8
        assert output_args["__systemOperation"] == "procedure-loading"
        assert output_args["filter"] == "vscope=PUBLISHED and vstate=ACTIVE"

    @pytest.mark.asyncio
    async def test_absent_dataset(self) -> None:
        call_tool = AsyncMock(return_value=ToolResult(data={"datasets": []}))
        source = ToolCallProcedureSource(call_tool, workspace_id=2, account_id=1)
        assert await source.fetch_rows("AI_Agent_Procedures") is None
        call_tool.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_lookup_error(self) -> None:
        call_tool = AsyncMock(return_value=ToolResult(error="HTTP error! status: 401"))
        source = ToolCallProcedureSource(call_tool, workspace_id=2, account_id=1)
        with pytest.raises(ProcedureSourceError, match="401"):
            await source.fetch_rows("AI_Agent_Procedures")

    @pytest.mark.asyncio
    async def test_unconfigured_workspace(self) -> None:
        call_tool = AsyncMock()
        assert await ToolCallProcedureSource(call_tool).fetch_rows("AI_Agent_Procedures") is None
        call_tool.assert_not_awaited()
