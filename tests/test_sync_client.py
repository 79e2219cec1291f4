from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from flow_sync.schemas_sync import ContentPatch
from flow_sync.server import InMemoryItemRepository, create_app
from flow_sync.sync_client import (
    PermanentClientError,
    SyncApiClient,
    TransientNetworkError,
    VersionConflictError,
    parse_version_conflict,
)


def _make_api(repo: InMemoryItemRepository | None = None) -> SyncApiClient:
    transport = httpx.ASGITransport(app=create_app(repo))
    return SyncApiClient("http://test/api", token="tok", transport=transport)


def _mock_api(handler, *, timeout_seconds: float = 30.0) -> SyncApiClient:  # type: ignore[no-untyped-def]
    return SyncApiClient(
        "http://test/api",
        transport=httpx.MockTransport(handler),
        timeout_seconds=timeout_seconds,
    )


@pytest.mark.anyio
async def test_notes_and_tasks_crud_against_reference_server():
    api = _make_api()

    note = await api.create_note({"title": "t", "content": "hello", "tempId": "tmp-1"})
    assert note["version"] == 1
    assert "tempId" not in note

    updated = await api.update_note(note["id"], {"title": "t2"})
    assert updated["title"] == "t2"
    assert updated["version"] == 2

    task = await api.create_task({"title": "do it"})
    _ = await api.update_task(task["id"], {"completed": True})
    assert await api.delete_task(task["id"]) == {"ok": True}
    assert await api.delete_note(note["id"]) == {"ok": True}

    with pytest.raises(PermanentClientError) as exc_info:
        _ = await api.delete_note(note["id"])
    assert exc_info.value.status_code == 404


@pytest.mark.anyio
async def test_patch_item_versions_and_conflict():
    repo = InMemoryItemRepository()
    repo.seed({"id": "n1", "content": "a", "version": 4})
    api = _make_api(repo)

    item = await api.patch_item("n1", ContentPatch(content="b", expected_version=4))
    assert item["version"] == 5
    assert item["content"] == "b"

    with pytest.raises(VersionConflictError) as exc_info:
        _ = await api.patch_item("n1", ContentPatch(content="c", expected_version=4))
    conflict = exc_info.value.conflict
    assert conflict.item_id == "n1"
    assert conflict.client_version == 4
    assert conflict.server_version == 5
    assert conflict.server_item["content"] == "b"


@pytest.mark.anyio
async def test_replayed_patch_does_not_change_server_state():
    repo = InMemoryItemRepository()
    repo.seed({"id": "n1", "content": "a", "version": 1})
    api = _make_api(repo)

    patch = ContentPatch(content="b", expected_version=1)
    _ = await api.patch_item("n1", patch)
    before = await repo.get("n1")

    with pytest.raises(VersionConflictError):
        _ = await api.patch_item("n1", patch)
    assert await repo.get("n1") == before

    # Without a version the same content is a no-op too.
    _ = await api.patch_item("n1", ContentPatch(content="b"))
    assert await repo.get("n1") == before


@pytest.mark.anyio
async def test_error_body_follows_error_response_contract():
    transport = httpx.ASGITransport(app=create_app())
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        r = await client.patch(
            "/api/items/missing",
            json={"content": "x"},
            headers={"X-Request-Id": "rid-1"},
        )
    assert r.status_code == 404
    assert r.headers["x-request-id"] == "rid-1"
    body = r.json()
    assert body["error"] == "not_found"
    assert body["request_id"] == "rid-1"


@pytest.mark.anyio
@pytest.mark.parametrize("status_code", [408, 429, 500, 503])
async def test_transient_statuses(status_code: int):
    api = _mock_api(lambda request: httpx.Response(status_code, json={"message": "nope"}))
    with pytest.raises(TransientNetworkError) as exc_info:
        _ = await api.create_note({"title": "x"})
    assert exc_info.value.status_code == status_code


@pytest.mark.anyio
@pytest.mark.parametrize("status_code", [400, 401, 403, 404, 422])
async def test_permanent_statuses(status_code: int):
    api = _mock_api(lambda request: httpx.Response(status_code, json={"message": "nope"}))
    with pytest.raises(PermanentClientError):
        _ = await api.patch_item("n1", ContentPatch(content="x"))


@pytest.mark.anyio
async def test_connect_error_is_transient():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("offline", request=request)

    with pytest.raises(TransientNetworkError):
        _ = await _mock_api(handler).create_task({"title": "x"})


@pytest.mark.anyio
async def test_slow_request_times_out():
    async def handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(1)
        return httpx.Response(200, json={})

    with pytest.raises(TransientNetworkError):
        _ = await _mock_api(handler, timeout_seconds=0.05).update_note("n1", {"title": "x"})


@pytest.mark.anyio
async def test_409_without_version_is_permanent():
    api = _mock_api(lambda request: httpx.Response(409, json={"message": "duplicate"}))
    with pytest.raises(PermanentClientError):
        _ = await api.patch_item("n1", ContentPatch(content="x"))


@pytest.mark.anyio
async def test_request_sends_bearer_and_alias_body():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"id": "n1", "version": 2})

    api = SyncApiClient("http://test/api/", token="secret", transport=httpx.MockTransport(handler))
    _ = await api.patch_item("n1", ContentPatch(content="x", direction="rtl", expected_version=1))

    assert seen[0].url == httpx.URL("http://test/api/items/n1")
    assert seen[0].headers["Authorization"] == "Bearer secret"
    assert json.loads(seen[0].content) == {"content": "x", "direction": "rtl", "expectedVersion": 1}


def test_parse_version_conflict_shapes():
    top = parse_version_conflict(
        "n1", {"serverVersion": 5, "serverItem": {"content": "b"}}, client_version=4
    )
    assert top is not None and top.server_version == 5

    nested = parse_version_conflict(
        "n1",
        {"error": "conflict", "details": {"serverVersion": 7, "serverItem": {}}},
        client_version=None,
    )
    assert nested is not None and nested.server_version == 7

    assert parse_version_conflict("n1", {"message": "x"}, client_version=1) is None
    assert parse_version_conflict("n1", "text", client_version=1) is None
