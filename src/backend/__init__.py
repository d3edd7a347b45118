"""Backend adapters: tool invocation against the governance data API."""

from src.backend.client import ROUTES, BackendClientError, GovernanceBackendClient

__all__ = [
    "BackendClientError",
    "GovernanceBackendClient",
    "ROUTES",
]
