from __future__ import annotations

from flow_sync.server.app import RequestIdMiddleware, create_app
from flow_sync.server.errors import ErrorResponse
from flow_sync.server.repository import InMemoryItemRepository

__all__ = [
    "ErrorResponse",
    "InMemoryItemRepository",
    "RequestIdMiddleware",
    "create_app",
]
