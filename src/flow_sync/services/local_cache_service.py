from __future__ import annotations

import logging
from typing import Any, Literal

from flow_sync.integrations.storage.durable_store import DurableStore

logger = logging.getLogger(__name__)

LocalKind = Literal["notes", "tasks"]

TREE_DATA_NAMESPACE = "treeData"
TREE_KEY = "notes_tree"
LOCAL_ITEMS_NAMESPACE = "localItems"


def safe_stringify(value: object) -> str:
    """Coerce editor content to a string; never produce "[object Object]"-style junk."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, dict):
        content = value.get("content")
        if isinstance(content, str):
            logger.warning("extracting content from object payload")
            return content
        logger.warning("refusing to stringify object as content")
        return ""
    if isinstance(value, (list, tuple)):
        logger.warning("refusing to stringify sequence as content")
        return ""
    return str(value)


def update_item_in_tree(
    items: list[dict[str, Any]], item_id: str, updated: dict[str, Any]
) -> list[dict[str, Any]]:
    """Return a new tree with ``updated`` merged into the node ``item_id``."""
    out: list[dict[str, Any]] = []
    for item in items:
        if not isinstance(item, dict):
            out.append(item)
            continue
        if item.get("id") == item_id:
            safe_updated = dict(updated)
            if "content" in safe_updated and not isinstance(safe_updated["content"], str):
                safe_updated["content"] = safe_stringify(safe_updated["content"])
            out.append({**item, **safe_updated})
            continue
        children = item.get("children")
        if isinstance(children, list):
            out.append({**item, "children": update_item_in_tree(children, item_id, updated)})
            continue
        out.append(item)
    return out


def find_item_in_tree(items: list[dict[str, Any]], item_id: str) -> dict[str, Any] | None:
    for item in items:
        if not isinstance(item, dict):
            continue
        if item.get("id") == item_id:
            return item
        children = item.get("children")
        if isinstance(children, list):
            found = find_item_in_tree(children, item_id)
            if found is not None:
                return found
    return None


class LocalCacheService:
    """Locally cached server state so UI reads don't wait for a round trip."""

    def __init__(self, store: DurableStore) -> None:
        self._store = store

    async def get_tree(self) -> list[dict[str, Any]]:
        tree = await self._store.get(TREE_DATA_NAMESPACE, TREE_KEY, [])
        return tree if isinstance(tree, list) else []

    async def set_tree(self, tree: list[dict[str, Any]]) -> None:
        await self._store.set(TREE_DATA_NAMESPACE, TREE_KEY, tree)

    async def update_tree_item(self, item_id: str, updated: dict[str, Any]) -> bool:
        tree = await self.get_tree()
        if find_item_in_tree(tree, item_id) is None:
            return False
        await self.set_tree(update_item_in_tree(tree, item_id, updated))
        return True

    async def list_local(self, kind: LocalKind) -> list[dict[str, Any]]:
        items = await self._store.get(LOCAL_ITEMS_NAMESPACE, kind, [])
        if not isinstance(items, list):
            return []
        return [it for it in items if isinstance(it, dict)]

    async def _save_local(self, kind: LocalKind, items: list[dict[str, Any]]) -> None:
        await self._store.set(LOCAL_ITEMS_NAMESPACE, kind, items)

    async def upsert_local(self, kind: LocalKind, item: dict[str, Any]) -> None:
        """Record an offline edit; the item stays unsynced until the server confirms it."""
        items = await self.list_local(kind)
        match_key = "tempId" if item.get("tempId") and not item.get("id") else "id"
        match_value = item.get(match_key)
        replaced = False
        for i, existing in enumerate(items):
            if match_value is not None and existing.get(match_key) == match_value:
                items[i] = {**existing, **item, "synced": False}
                replaced = True
                break
        if not replaced:
            items.append({**item, "synced": False})
        await self._save_local(kind, items)

    async def list_unsynced(self, kind: LocalKind) -> list[dict[str, Any]]:
        return [it for it in await self.list_local(kind) if not it.get("synced")]

    async def reconcile_created(
        self, kind: LocalKind, temp_id: object, server_item: dict[str, Any]
    ) -> None:
        if temp_id is None:
            return
        items = await self.list_local(kind)
        for i, existing in enumerate(items):
            if existing.get("tempId") == temp_id:
                items[i] = {**server_item, "synced": True}
                await self._save_local(kind, items)
                return

    async def reconcile_updated(
        self, kind: LocalKind, item_id: object, server_item: dict[str, Any]
    ) -> None:
        items = await self.list_local(kind)
        for i, existing in enumerate(items):
            if existing.get("id") == item_id:
                items[i] = {**server_item, "synced": True}
                await self._save_local(kind, items)
                return

    async def remove(self, kind: LocalKind, item_id: object) -> None:
        items = await self.list_local(kind)
        kept = [it for it in items if it.get("id") != item_id]
        if len(kept) != len(items):
            await self._save_local(kind, kept)
