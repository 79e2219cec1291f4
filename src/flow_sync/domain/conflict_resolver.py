from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Literal


logger = logging.getLogger(__name__)

ConflictStrategy = Literal["client-wins", "server-wins", "last-modified", "merge", "user-choice"]

MERGE_SEPARATOR = "\n\n--- Merged with server version ---\n\n"


class ConflictResolutionError(RuntimeError):
    pass


@dataclass(frozen=True)
class Conflict:
    client: dict[str, Any]
    server: dict[str, Any]


@dataclass(frozen=True)
class UserChoiceRequest:
    """Handed to the UI; the UI must call ``resolve`` exactly once."""

    conflict: Conflict
    resolve: Callable[[dict[str, Any]], None]


def timestamp_ms(value: object) -> int | None:
    """Parse epoch ms / ISO-8601 / datetime. Returns None when unparsable."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return int(dt.timestamp() * 1000)
    if isinstance(value, str):
        raw = value.strip()
        if not raw:
            return None
        if raw.lstrip("-").isdigit():
            return int(raw)
        try:
            dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return int(dt.timestamp() * 1000)
    return None


def _modified_ms(obj: dict[str, Any]) -> int | None:
    updated = timestamp_ms(obj.get("updatedAt"))
    if updated is not None:
        return updated
    return timestamp_ms(obj.get("createdAt"))


def client_wins(conflict: Conflict) -> dict[str, Any]:
    return conflict.client


def server_wins(conflict: Conflict) -> dict[str, Any]:
    return conflict.server


def last_modified_wins(conflict: Conflict) -> dict[str, Any]:
    client_ms = _modified_ms(conflict.client)
    server_ms = _modified_ms(conflict.server)
    if client_ms is None:
        return conflict.server
    if server_ms is None or client_ms > server_ms:
        return conflict.client
    # Ties favor server so repeated resolution never oscillates.
    return conflict.server


def merge_content(client_content: str, server_content: str) -> str:
    if client_content == server_content:
        return client_content
    if not client_content.strip():
        return server_content
    if not server_content.strip():
        return client_content
    return f"{client_content}{MERGE_SEPARATOR}{server_content}"


def merge_changes(conflict: Conflict) -> dict[str, Any]:
    """Last-resort heuristic. Not a real merge: content is concatenated."""
    client, server = conflict.client, conflict.server
    merged = dict(server)

    if "title" in client and client.get("title") != server.get("title"):
        merged["title"] = client["title"]

    client_content = client.get("content")
    server_content = server.get("content")
    if client_content != server_content:
        merged["content"] = merge_content(str(client_content or ""), str(server_content or ""))

    client_ms = timestamp_ms(client.get("updatedAt"))
    server_ms = timestamp_ms(server.get("updatedAt"))
    if client_ms is not None and (server_ms is None or client_ms > server_ms):
        merged["updatedAt"] = client["updatedAt"]
    elif server_ms is not None:
        merged["updatedAt"] = server["updatedAt"]
    return merged


_SYNC_STRATEGIES: dict[str, Callable[[Conflict], dict[str, Any]]] = {
    "client-wins": client_wins,
    "server-wins": server_wins,
    "last-modified": last_modified_wins,
    "merge": merge_changes,
}


def resolve(conflict: Conflict, strategy: str = "last-modified") -> dict[str, Any]:
    """Pure resolution for every strategy except ``user-choice``.

    - No storage/network/time.
    - Deterministic.
    """
    if strategy == "user-choice":
        raise ConflictResolutionError("user-choice needs ConflictResolver.resolve (async)")
    resolver = _SYNC_STRATEGIES.get(strategy)
    if resolver is None:
        raise ConflictResolutionError(f"Unknown conflict resolution strategy: {strategy}")
    return resolver(conflict)


class ConflictResolver:
    """Strategy dispatcher; ``user-choice`` suspends until the UI answers."""

    def __init__(
        self,
        *,
        default_strategy: str = "last-modified",
        on_user_choice: Callable[[UserChoiceRequest], None] | None = None,
    ) -> None:
        self._default_strategy = default_strategy
        self._on_user_choice = on_user_choice

    def set_user_choice_handler(
        self, handler: Callable[[UserChoiceRequest], None] | None
    ) -> None:
        self._on_user_choice = handler

    async def resolve(self, conflict: Conflict, strategy: str | None = None) -> dict[str, Any]:
        name = strategy or self._default_strategy
        if name != "user-choice":
            return resolve(conflict, name)
        return await self._user_choice(conflict)

    async def _user_choice(self, conflict: Conflict) -> dict[str, Any]:
        handler = self._on_user_choice
        if handler is None:
            raise ConflictResolutionError("no user-choice handler registered")

        loop = asyncio.get_running_loop()
        future: asyncio.Future[dict[str, Any]] = loop.create_future()

        def _resolve(value: dict[str, Any]) -> None:
            if future.done():
                logger.warning("user-choice resolved more than once; ignoring")
                return
            loop.call_soon_threadsafe(_set_result, value)

        def _set_result(value: dict[str, Any]) -> None:
            if not future.done():
                future.set_result(value)

        handler(UserChoiceRequest(conflict=conflict, resolve=_resolve))
        return await future
