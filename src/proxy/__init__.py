"""Service surface for the procedure gate.

This module provides:
- ToolCallHandler: Gates tool calls, answers procedure management tools
  and forwards everything else to the backend
- create_app: FastAPI app exposing tool calls, runs and the audit trail
"""

from src.proxy.app import ToolCallRequest, create_app
from src.proxy.handler import RESPONSE_TOOLS, ToolCallHandler

__all__ = [
    "RESPONSE_TOOLS",
    "ToolCallHandler",
    "ToolCallRequest",
    "create_app",
]
