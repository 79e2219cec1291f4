from __future__ import annotations

import pytest

from flow_sync.integrations.storage import MemoryDurableStore
from flow_sync.services.local_cache_service import (
    LocalCacheService,
    find_item_in_tree,
    safe_stringify,
    update_item_in_tree,
)


def test_update_item_in_tree_is_recursive_and_pure():
    tree = [
        {"id": "root", "children": [{"id": "n1", "content": "old"}, {"id": "n2"}]},
        {"id": "n3"},
    ]
    out = update_item_in_tree(tree, "n1", {"content": "new", "version": 3})

    assert find_item_in_tree(out, "n1") == {"id": "n1", "content": "new", "version": 3}
    assert find_item_in_tree(tree, "n1") == {"id": "n1", "content": "old"}
    assert find_item_in_tree(out, "missing") is None


@pytest.mark.parametrize(
    "value, expected",
    [
        (None, ""),
        ("text", "text"),
        (3, "3"),
        ({"content": "inner"}, "inner"),
        ({"nested": True}, ""),
        (["a"], ""),
    ],
)
def test_safe_stringify(value: object, expected: str):
    assert safe_stringify(value) == expected


@pytest.mark.anyio
async def test_update_tree_item_missing_returns_false():
    cache = LocalCacheService(MemoryDurableStore())
    await cache.set_tree([{"id": "n1"}])
    assert not await cache.update_tree_item("n2", {"content": "x"})
    assert await cache.update_tree_item("n1", {"content": {"content": "x"}})
    assert (await cache.get_tree())[0]["content"] == "x"


@pytest.mark.anyio
async def test_local_items_lifecycle():
    cache = LocalCacheService(MemoryDurableStore())
    await cache.upsert_local("notes", {"tempId": "tmp-1", "title": "draft"})
    await cache.upsert_local("notes", {"tempId": "tmp-1", "title": "draft 2"})
    await cache.upsert_local("notes", {"id": "n9", "title": "other", "modified": True})

    unsynced = await cache.list_unsynced("notes")
    assert [n["title"] for n in unsynced] == ["draft 2", "other"]

    await cache.reconcile_created("notes", "tmp-1", {"id": "n1", "title": "draft 2", "version": 1})
    await cache.reconcile_updated("notes", "n9", {"id": "n9", "title": "other", "version": 2})
    assert await cache.list_unsynced("notes") == []

    await cache.remove("notes", "n1")
    assert [n["id"] for n in await cache.list_local("notes")] == ["n9"]
