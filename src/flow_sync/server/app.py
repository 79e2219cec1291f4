from __future__ import annotations

import logging
import uuid
from typing import cast

from fastapi import FastAPI
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from flow_sync.config import settings, setup_logging
from flow_sync.server.errors import register_error_handlers
from flow_sync.server.repository import InMemoryItemRepository
from flow_sync.server.routers import router

logger = logging.getLogger(__name__)


class RequestIdMiddleware:
    def __init__(self, app: ASGIApp) -> None:
        self.app: ASGIApp = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        request_id_header: bytes | None = None
        inbound_headers = cast(list[tuple[bytes, bytes]], scope.get("headers") or [])
        for key, value in inbound_headers:
            if key.lower() == b"x-request-id":
                value = value.strip()
                if value:
                    request_id_header = value
                break

        if request_id_header is None:
            request_id = str(uuid.uuid4())
            request_id_header = request_id.encode("ascii")
        else:
            # latin-1 is a 1-1 mapping for bytes -> str.
            request_id = request_id_header.decode("latin-1")

        scope.setdefault("state", {})["request_id"] = request_id

        async def send_wrapper(message: Message) -> None:
            if message.get("type") == "http.response.start":
                headers = cast(list[tuple[bytes, bytes]], message.get("headers", []))
                headers = [(k, v) for (k, v) in headers if k.lower() != b"x-request-id"]
                headers.append((b"x-request-id", request_id_header))
                message["headers"] = headers
            await send(message)

        await self.app(scope, receive, send_wrapper)


def create_app(repository: InMemoryItemRepository | None = None) -> FastAPI:
    """Reference server for the content-sync wire contract (in-memory)."""
    setup_logging()
    app = FastAPI(title=f"{settings.app_name} reference server")
    app.state.repository = repository if repository is not None else InMemoryItemRepository()
    app.add_middleware(RequestIdMiddleware)
    register_error_handlers(app)

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    app.include_router(router, prefix=settings.api_prefix)
    logger.info("reference server routes mounted prefix=%s", settings.api_prefix)
    return app
