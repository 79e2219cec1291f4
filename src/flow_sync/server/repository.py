from __future__ import annotations

import asyncio
import copy
import uuid
from typing import Any, Literal

from flow_sync.models import now_ms

ItemKind = Literal["note", "task"]

# Server-owned fields; client payloads never overwrite them.
_RESERVED_FIELDS = frozenset({"id", "kind", "version", "createdAt", "updatedAt", "tempId", "synced"})


class InMemoryItemRepository:
    """Notes and tasks share one id space so ``PATCH /items/{id}`` can address either."""

    def __init__(self) -> None:
        self._items: dict[str, dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def get(self, item_id: str) -> dict[str, Any] | None:
        item = self._items.get(item_id)
        return copy.deepcopy(item) if item is not None else None

    async def list_items(self, kind: ItemKind) -> list[dict[str, Any]]:
        return [copy.deepcopy(it) for it in self._items.values() if it["kind"] == kind]

    async def create(self, kind: ItemKind, data: dict[str, Any]) -> dict[str, Any]:
        ts = now_ms()
        item: dict[str, Any] = {k: v for k, v in data.items() if k not in _RESERVED_FIELDS}
        item.setdefault("title", "")
        item.setdefault("content", "")
        item.update(
            {
                "id": str(uuid.uuid4()),
                "kind": kind,
                "version": 1,
                "createdAt": ts,
                "updatedAt": ts,
            }
        )
        async with self._lock:
            self._items[item["id"]] = item
        return copy.deepcopy(item)

    async def update(
        self, kind: ItemKind, item_id: str, data: dict[str, Any]
    ) -> dict[str, Any] | None:
        async with self._lock:
            item = self._items.get(item_id)
            if item is None or item["kind"] != kind:
                return None
            changes = {k: v for k, v in data.items() if k not in _RESERVED_FIELDS}
            if any(item.get(k) != v for k, v in changes.items()):
                item.update(changes)
                item["version"] += 1
                item["updatedAt"] = now_ms()
            return copy.deepcopy(item)

    async def delete(self, kind: ItemKind, item_id: str) -> bool:
        async with self._lock:
            item = self._items.get(item_id)
            if item is None or item["kind"] != kind:
                return False
            del self._items[item_id]
            return True

    async def patch_content(
        self,
        item_id: str,
        *,
        content: str,
        direction: str | None,
        expected_version: int | None,
    ) -> tuple[dict[str, Any] | None, bool]:
        """Returns ``(item, applied)``; ``applied`` is False on a version mismatch."""
        async with self._lock:
            item = self._items.get(item_id)
            if item is None:
                return None, False
            if expected_version is not None and expected_version != item["version"]:
                return copy.deepcopy(item), False
            unchanged = item.get("content") == content and (
                direction is None or item.get("direction") == direction
            )
            if not unchanged:
                item["content"] = content
                if direction is not None:
                    item["direction"] = direction
                item["version"] += 1
                item["updatedAt"] = now_ms()
            return copy.deepcopy(item), True

    def seed(self, item: dict[str, Any]) -> None:
        """Insert a fully-formed item (fixtures/demo data)."""
        ts = now_ms()
        stored = {"kind": "note", "version": 1, "createdAt": ts, "updatedAt": ts, **item}
        self._items[stored["id"]] = stored
