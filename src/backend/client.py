"""HTTP client for the governance data backend.

A thin ToolInvoker over the backend's REST API: each tool name maps to
one endpoint. Path placeholders are filled from the tool arguments; the
remaining arguments become query parameters (GET) or the JSON body (POST).
"""

from __future__ import annotations

import logging
import os
import string
from typing import Any

import httpx

from src.config import BackendConfig
from src.executor.engine import ToolInvoker
from src.governance.models import ToolResult

logger = logging.getLogger(__name__)

WORKSPACE_PATH = "/ai/accounts/{accountId}/workspaces/{workspaceId}"

# tool name -> (HTTP method, path template)
ROUTES: dict[str, tuple[str, str]] = {
    "get-accounts": ("GET", "/ai/ai-accounts"),
    "get-workspaces": ("GET", "/ai/accounts/{accountId}/ai-list"),
    "get-datasets": ("GET", WORKSPACE_PATH + "/datasets"),
    "get-dataset-output": ("GET", WORKSPACE_PATH + "/datasets/{datasetId}/dout-data"),
    "get-dataset-targetfields": ("GET", WORKSPACE_PATH + "/datasets/{datasetId}/targetfields"),
    "get-ai-context": ("GET", WORKSPACE_PATH + "/ai-context"),
    "get-queries": ("GET", WORKSPACE_PATH + "/list-queries-through-mcp"),
    "execute-ai-query": ("POST", WORKSPACE_PATH + "/ai-query"),
    "create-dataset": ("POST", WORKSPACE_PATH + "/save-dataset-through-mcp"),
}


class BackendClientError(Exception):
    """Raised when the backend cannot be reached."""

    def __init__(self, message: str, tool_name: str | None = None):
        super().__init__(message)
        self.tool_name = tool_name


class GovernanceBackendClient(ToolInvoker):
    """Invokes backend tools over HTTP with ApiKey authentication."""

    def __init__(
        self,
        settings: BackendConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            settings: Backend URL, API key and timeout. The API key falls back
                to the PROCEDURE_GATE_API_KEY environment variable.
            transport: Optional httpx transport, e.g. httpx.MockTransport in tests.

        Raises:
            BackendClientError: If no API key is configured.
        """
        settings = settings or BackendConfig()
        api_key = settings.api_key or os.getenv("PROCEDURE_GATE_API_KEY")
        if not api_key:
            raise BackendClientError(
                "No backend API key configured. Set backend.api_key or "
                "PROCEDURE_GATE_API_KEY."
            )
        self._client = httpx.AsyncClient(
            base_url=settings.base_url.rstrip("/"),
            headers={
                "Authorization": f"ApiKey {api_key}",
                "Accept": "application/json, text/plain, */*",
            },
            timeout=settings.timeout_seconds,
            transport=transport,
        )

    @property
    def tools(self) -> list[str]:
        return sorted(ROUTES)

    async def invoke(self, tool_name: str, arguments: dict[str, Any]) -> ToolResult:
        """Call the endpoint behind a tool.

        Returns:
            ToolResult with the decoded JSON body, or the backend's error
            message for non-2xx responses.

        Raises:
            BackendClientError: On transport failures (connection, timeout).
        """
        route = ROUTES.get(tool_name)
        if route is None:
            return ToolResult(error=f"Unknown tool: {tool_name}")
        method, template = route

        placeholders = {name for _, name, _, _ in string.Formatter().parse(template) if name}
        missing = sorted(name for name in placeholders if arguments.get(name) in (None, ""))
        if missing:
            return ToolResult(error=f"Missing required arguments: {', '.join(missing)}")
        path = template.format(**{name: arguments[name] for name in placeholders})
        rest = {k: v for k, v in arguments.items() if k not in placeholders}

        try:
            if method == "GET":
                response = await self._client.get(path, params=rest)
            else:
                response = await self._client.request(method, path, json=rest)
        except httpx.HTTPError as e:
            logger.error("Backend request failed: tool=%s, error=%s", tool_name, e)
            raise BackendClientError(f"Backend request failed: {e}", tool_name) from e

        try:
            body = response.json()
        except ValueError:
            body = {"message": response.text}

        if response.is_error:
            message = body.get("message") if isinstance(body, dict) else None
            return ToolResult(error=message or f"HTTP error! status: {response.status_code}")
        return ToolResult(data=body)

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> GovernanceBackendClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()
