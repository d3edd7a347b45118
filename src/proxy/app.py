"""FastAPI service surface for the procedure gate."""

from __future__ import annotations

import hmac
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query
from pydantic import BaseModel, Field

from src.governance.models import AuditEventType
from src.proxy.handler import ToolCallHandler, procedure_summary

logger = logging.getLogger(__name__)


class ToolCallRequest(BaseModel):
    """Body of POST /tools/call."""

    name: str = Field(min_length=1)
    arguments: dict[str, Any] = Field(default_factory=dict)


def create_app(handler: ToolCallHandler, token: str | None = None) -> FastAPI:
    """Create the HTTP app.

    Args:
        handler: Fully wired tool call handler.
        token: Bearer token required on every route except /health. When
            None, routes are served without authentication.

    Returns:
        The FastAPI application.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await handler.startup()
        try:
            yield
        finally:
            await handler.shutdown()

    async def verify_token(authorization: str | None = Header(default=None)) -> None:
        if token is None:
            return
        if not authorization or not authorization.startswith("Bearer "):
            raise HTTPException(status_code=401, detail="Missing bearer token")
        supplied = authorization.removeprefix("Bearer ").strip()
        if not hmac.compare_digest(supplied.encode(), token.encode()):
            logger.warning("Rejected request with invalid bearer token")
            raise HTTPException(status_code=403, detail="Invalid token")

    app = FastAPI(title="Procedure Gate", lifespan=lifespan)
    router = APIRouter(dependencies=[Depends(verify_token)])

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @router.post("/tools/call")
    async def call_tool(request: ToolCallRequest) -> dict[str, Any]:
        return await handler.handle(request.name, request.arguments)

    @router.get("/procedures")
    async def list_procedures() -> dict[str, Any]:
        procedures = await handler.service.list_procedures()
        return {"procedures": [procedure_summary(p) for p in procedures]}

    @router.get("/runs")
    async def list_runs() -> dict[str, Any]:
        return {
            "runs": [run.model_dump(mode="json") for run in handler.service.list_active_runs()],
            "statistics": handler.service.statistics(),
        }

    @router.get("/audit/violations")
    async def audit_violations(limit: int = Query(default=100, ge=1, le=1000)) -> dict[str, Any]:
        entries = handler.audit.get_security_violations(limit)
        return {"violations": [entry.model_dump(mode="json") for entry in entries]}

    @router.get("/audit/recent")
    async def audit_recent(
        limit: int = Query(default=100, ge=1, le=1000),
        event_type: AuditEventType | None = None,
        tool_name: str | None = None,
        run_id: str | None = None,
        procedure_id: str | None = None,
    ) -> dict[str, Any]:
        entries = handler.audit.get_recent_entries(
            limit,
            event_type=event_type,
            tool_name=tool_name,
            run_id=run_id,
            procedure_id=procedure_id,
        )
        return {
            "entries": [entry.model_dump(mode="json") for entry in entries],
            "statistics": handler.audit.get_statistics(),
        }

    app.include_router(router)
    return app
