"""Integration tests for the HTTP surface and the tool call handler."""

from __future__ import annotations

from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import pytest
from httpx import ASGITransport, AsyncClient

from src.config import EnforcementConfig, LoggingConfig, ProcedureConfig, SourceConfig
from src.executor.engine import ToolInvoker
from src.governance.models import AuditEventType, RunStatus, ToolResult
from src.governance.runs import InvalidRunStateError, RunNotFoundError
from src.governance.sources import StaticProcedureSource
from src.proxy.app import create_app
from src.proxy.handler import RUN_LIMIT_EXCEEDED, TOOL_ERROR, ToolCallHandler

TOKEN = "integration-test-token-xyz"


class BackendStub(ToolInvoker):
    """Answers tool calls from a table of canned results."""

    def __init__(self, responses: dict[str, Any] | None = None) -> None:
        self.responses = responses or {}
        self.calls: list[tuple[str, dict[str, Any]]] = []

    async def invoke(self, tool_name: str, arguments: dict[str, Any]) -> ToolResult:
        self.calls.append((tool_name, arguments))
        response = self.responses.get(tool_name, {"ok": True})
        if isinstance(response, Exception):
            raise response
        if isinstance(response, ToolResult):
            return response
        return ToolResult(data=response)


def config(tmp_path: Path, **enforcement: Any) -> ProcedureConfig:
    return ProcedureConfig(
        logging=LoggingConfig(audit_enabled=False, audit_path=str(tmp_path / "audit")),
        enforcement=EnforcementConfig(**enforcement),
    )


@pytest.fixture
def backend() -> BackendStub:
    return BackendStub({"get-datasets": {"datasets": [{"id": 1, "name": "Sales"}]}})


@pytest.fixture
def handler(tmp_path: Path, backend: BackendStub, source: StaticProcedureSource) -> ToolCallHandler:
    return ToolCallHandler.from_config(config(tmp_path), invoker=backend, source=source)


@pytest.fixture
def client(handler: ToolCallHandler) -> AsyncClient:
    app = create_app(handler, token=TOKEN)
    return AsyncClient(
        transport=ASGITransport(app=app),  # type: ignore[arg-type]
        base_url="http://test",
        headers={"Authorization": f"Bearer {TOKEN}"},
    )


async def call(client: AsyncClient, name: str, arguments: dict[str, Any] | None = None) -> dict[str, Any]:
    resp = await client.post("/tools/call", json={"name": name, "arguments": arguments or {}})
    assert resp.status_code == 200
    return resp.json()


class TestAuth:
    @pytest.mark.asyncio
    async def test_health_needs_no_token(self, handler: ToolCallHandler) -> None:
        transport = ASGITransport(app=create_app(handler, token=TOKEN))  # type: ignore[arg-type]
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            resp = await client.get("/health")
            assert resp.status_code == 200
            assert resp.json() == {"status": "ok"}

    @pytest.mark.asyncio
    async def test_missing_token_rejected(self, handler: ToolCallHandler) -> None:
        transport = ASGITransport(app=create_app(handler, token=TOKEN))  # type: ignore[arg-type]
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            resp = await client.get("/procedures")
            assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_wrong_token_rejected(self, handler: ToolCallHandler) -> None:
        transport = ASGITransport(app=create_app(handler, token=TOKEN))  # type: ignore[arg-type]
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            resp = await client.post(
                "/tools/call",
                json={"name": "get-datasets"},
                headers={"Authorization": "Bearer wrong-token"},
            )
            assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_no_token_configured(self, handler: ToolCallHandler) -> None:
        transport = ASGITransport(app=create_app(handler))  # type: ignore[arg-type]
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            resp = await client.get("/procedures")
            assert resp.status_code == 200

    @pytest.mark.asyncio
    async def test_empty_tool_name_rejected(self, client: AsyncClient) -> None:
        async with client:
            resp = await client.post("/tools/call", json={"name": "", "arguments": {}})
            assert resp.status_code == 422


class TestProcedureFlow:
    @pytest.mark.asyncio
    async def test_write_without_run_is_refused(self, client: AsyncClient, backend: BackendStub) -> None:
        async with client:
            body = await call(client, "create-dataset", {"name": "Sales"})

        assert body["error"] == "PROCEDURE_REQUIRED"
        assert body["procedureId"] == "PROC-CREATE-DATASET-V1"
        assert backend.calls == []

    @pytest.mark.asyncio
    async def test_full_procedure_over_http(self, client: AsyncClient, backend: BackendStub) -> None:
        async with client:
            started = await call(client, "start-procedure", {"procedureId": "PROC-CREATE-DATASET-V1"})
            run_id = started["result"]["run"]["run_id"]
            assert started["result"]["currentStep"]["id"] == "step-1"

            ack = await call(client, "procedure-acknowledge", {"runId": run_id})
            assert ack["result"]["step"]["status"] == "success"
            assert ack["result"]["run"]["current_step_index"] == 1

            # Wildcard step tools allow direct reads while the run sits at step 2
            listed = await call(client, "get-datasets", {"workspaceId": 2, "__runId": run_id})
            assert listed == {"result": {"datasets": [{"id": 1, "name": "Sales"}]}}

            inspected = await call(client, "procedure-execute-step", {"runId": run_id})
            assert inspected["result"]["run"]["current_step_index"] == 2

            created = await call(client, "create-dataset", {"name": "Sales", "__runId": run_id})
            assert created == {"result": {"ok": True}}

            status = await call(client, "procedure-status", {"runId": run_id})
            assert status["result"]["status"] == "active"

        assert ("create-dataset", {"name": "Sales"}) in backend.calls

    @pytest.mark.asyncio
    async def test_hijack_surfaces_in_violations(self, client: AsyncClient) -> None:
        async with client:
            started = await call(client, "start-procedure", {"procedureId": "PROC-EXPORT-V1"})
            run_id = started["result"]["run"]["run_id"]

            denied = await call(client, "create-dataset", {"name": "Sales", "__runId": run_id})
            assert denied["error"] == "PROCEDURE_VIOLATION"
            assert denied["violationType"] == "RUNID_HIJACK"

            resp = await client.get("/audit/violations")
            [violation] = resp.json()["violations"]
            assert violation["run_id"] == run_id
            assert violation["severity"] == "CRITICAL"

            recent = await client.get("/audit/recent", params={"event_type": "PROCEDURE_START"})
            assert len(recent.json()["entries"]) == 1

    @pytest.mark.asyncio
    async def test_listing_endpoints(self, client: AsyncClient) -> None:
        async with client:
            await call(client, "start-procedure", {"procedureId": "PROC-EXPORT-V1"})

            procedures = (await client.get("/procedures")).json()["procedures"]
            assert {p["id"] for p in procedures} == {"PROC-EXPORT-V1", "PROC-CREATE-DATASET-V1"}

            runs = (await client.get("/runs")).json()
            assert len(runs["runs"]) == 1
            assert runs["statistics"]["runs"]["active"] == 1

            listed = await call(client, "list-procedures", {"toolName": "create-dataset"})
            assert [p["id"] for p in listed["result"]["procedures"]] == ["PROC-CREATE-DATASET-V1"]


class TestHandler:
    @pytest.mark.asyncio
    async def test_management_errors(self, handler: ToolCallHandler) -> None:
        assert (await handler.handle("start-procedure", {}))["error"] == "INVALID_ARGUMENTS"
        assert (await handler.handle("start-procedure", {"procedureId": "PROC-NOPE"}))[
            "error"
        ] == "PROCEDURE_NOT_FOUND"
        assert (await handler.handle("resume-procedure", {"runId": "run-x"}))["error"] == "RUN_NOT_ACTIVE"
        assert (await handler.handle("procedure-status", {"runId": "run-x"}))["error"] == "RUN_NOT_FOUND"
        assert (await handler.handle("procedure-quiz-answer", {"runId": "run-x", "answer": "A"}))[
            "error"
        ] == "RUN_NOT_ACTIVE"

    @pytest.mark.asyncio
    async def test_run_limit(self, tmp_path: Path, backend: BackendStub, source: StaticProcedureSource) -> None:
        handler = ToolCallHandler.from_config(
            config(tmp_path, max_concurrent_runs=1), invoker=backend, source=source
        )
        await handler.handle("start-procedure", {"procedureId": "PROC-EXPORT-V1"})

        body = await handler.handle("start-procedure", {"procedureId": "PROC-EXPORT-V1"})

        assert body["error"] == RUN_LIMIT_EXCEEDED
        assert body["limit"] == 1

    @pytest.mark.asyncio
    async def test_resume_active_run(self, handler: ToolCallHandler) -> None:
        started = await handler.handle("start-procedure", {"procedureId": "PROC-CREATE-DATASET-V1"})
        run_id = started["result"]["run"]["run_id"]

        resumed = await handler.handle("resume-procedure", {"runId": run_id})

        assert resumed["result"]["run"]["run_id"] == run_id
        assert resumed["result"]["currentStep"]["type"] == "information"

    @pytest.mark.asyncio
    async def test_tool_error_is_reported_and_audited(
        self, tmp_path: Path, source: StaticProcedureSource
    ) -> None:
        backend = BackendStub({"get-accounts": ToolResult(error="HTTP error! status: 502")})
        handler = ToolCallHandler.from_config(config(tmp_path), invoker=backend, source=source)

        body = await handler.handle("get-accounts", {})

        assert body == {"error": TOOL_ERROR, "message": "HTTP error! status: 502"}
        [entry] = handler.audit.get_recent_entries(event_type=AuditEventType.TOOL_ERROR)
        assert entry.tool_name == "get-accounts"

    @pytest.mark.asyncio
    async def test_invoker_exception_becomes_tool_error(
        self, tmp_path: Path, source: StaticProcedureSource
    ) -> None:
        backend = BackendStub({"get-accounts": ConnectionError("backend unreachable")})
        handler = ToolCallHandler.from_config(config(tmp_path), invoker=backend, source=source)

        body = await handler.handle("get-accounts", {})

        assert body == {"error": TOOL_ERROR, "message": "backend unreachable"}
        [entry] = handler.audit.get_recent_entries(event_type=AuditEventType.TOOL_ERROR)
        assert entry.tool_name == "get-accounts"

    @pytest.mark.asyncio
    async def test_invoker_exception_over_http(self, tmp_path: Path, source: StaticProcedureSource) -> None:
        backend = BackendStub({"get-accounts": ConnectionError("backend unreachable")})
        handler = ToolCallHandler.from_config(config(tmp_path), invoker=backend, source=source)
        transport = ASGITransport(app=create_app(handler))  # type: ignore[arg-type]
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            body = await call(client, "get-accounts")

        assert body["error"] == TOOL_ERROR

    @pytest.mark.asyncio
    async def test_run_state_errors_map_to_run_not_active(
        self, handler: ToolCallHandler, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(
            handler.service,
            "execute_current_step",
            AsyncMock(side_effect=InvalidRunStateError("run-x", RunStatus.EXPIRED)),
        )
        body = await handler.handle("procedure-execute-step", {"runId": "run-x"})
        assert body["error"] == "RUN_NOT_ACTIVE"
        assert body["runId"] == "run-x"

        handler.service.execute_current_step.side_effect = RunNotFoundError("run-y")
        body = await handler.handle("procedure-execute-step", {"runId": "run-y"})
        assert body == {"error": "RUN_NOT_ACTIVE", "message": "Run not found: run-y", "runId": "run-y"}

    @pytest.mark.asyncio
    async def test_loads_procedures_through_internal_calls(
        self, tmp_path: Path, procedure_rows: list[dict[str, Any]]
    ) -> None:
        backend = BackendStub({
            "get-datasets": {"datasets": [{"id": 31, "name": "AI_Agent_Procedures"}]},
            "get-dataset-output": {"data": procedure_rows},
        })
        settings = ProcedureConfig(
            logging=LoggingConfig(audit_enabled=False, audit_path=str(tmp_path)),
            source=SourceConfig(workspace_id=2, account_id=1),
        )
        handler = ToolCallHandler.from_config(settings, invoker=backend)

        procedures = await handler.service.list_procedures()

        assert {p.id for p in procedures} == {"PROC-EXPORT-V1", "PROC-CREATE-DATASET-V1"}
        tool, arguments = backend.calls[1]
        assert tool == "get-dataset-output"
        assert arguments["datasetId"] == 31
        assert "__systemOperation" not in arguments
        assert handler.audit.get_recent_entries(event_type=AuditEventType.SYSTEM_OPERATION)

    @pytest.mark.asyncio
    async def test_startup_and_shutdown(self, handler: ToolCallHandler) -> None:
        await handler.startup()
        await handler.shutdown()
        assert handler.service.statistics()["cache"]["size"] == 2
