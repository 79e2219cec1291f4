from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any

import pytest

from flow_sync.domain.conflict_resolver import (
    MERGE_SEPARATOR,
    Conflict,
    ConflictResolutionError,
    ConflictResolver,
    UserChoiceRequest,
    resolve,
    timestamp_ms,
)


@pytest.mark.parametrize(
    "case",
    [
        {
            "name": "client-wins returns client verbatim",
            "strategy": "client-wins",
            "client": {"id": "n1", "content": "mine", "updatedAt": 1},
            "server": {"id": "n1", "content": "theirs", "updatedAt": 99},
            "expect": {"id": "n1", "content": "mine", "updatedAt": 1},
        },
        {
            "name": "server-wins returns server verbatim",
            "strategy": "server-wins",
            "client": {"id": "n1", "content": "mine", "updatedAt": 99},
            "server": {"id": "n1", "content": "theirs", "updatedAt": 1},
            "expect": {"id": "n1", "content": "theirs", "updatedAt": 1},
        },
        {
            "name": "last-modified picks newer client",
            "strategy": "last-modified",
            "client": {"content": "mine", "updatedAt": 200},
            "server": {"content": "theirs", "updatedAt": 100},
            "expect": {"content": "mine", "updatedAt": 200},
        },
        {
            "name": "last-modified picks newer server",
            "strategy": "last-modified",
            "client": {"content": "mine", "updatedAt": "2024-01-01T00:00:00Z"},
            "server": {"content": "theirs", "updatedAt": "2024-01-02T00:00:00Z"},
            "expect": {"content": "theirs", "updatedAt": "2024-01-02T00:00:00Z"},
        },
        {
            "name": "last-modified tie favors server",
            "strategy": "last-modified",
            "client": {"content": "mine", "updatedAt": 100},
            "server": {"content": "theirs", "updatedAt": 100},
            "expect": {"content": "theirs", "updatedAt": 100},
        },
        {
            "name": "last-modified falls back to createdAt",
            "strategy": "last-modified",
            "client": {"content": "mine", "createdAt": 300},
            "server": {"content": "theirs", "createdAt": 100},
            "expect": {"content": "mine", "createdAt": 300},
        },
        {
            "name": "last-modified without timestamps favors server",
            "strategy": "last-modified",
            "client": {"content": "mine"},
            "server": {"content": "theirs"},
            "expect": {"content": "theirs"},
        },
        {
            "name": "merge concatenates differing content",
            "strategy": "merge",
            "client": {"title": "A", "content": "mine", "updatedAt": 200},
            "server": {"title": "B", "content": "theirs", "updatedAt": 100, "version": 4},
            "expect": {
                "title": "A",
                "content": "mine" + MERGE_SEPARATOR + "theirs",
                "updatedAt": 200,
                "version": 4,
            },
        },
        {
            "name": "merge keeps non-empty side",
            "strategy": "merge",
            "client": {"content": "   "},
            "server": {"content": "theirs", "updatedAt": 100},
            "expect": {"content": "theirs", "updatedAt": 100},
        },
    ],
    ids=lambda c: c["name"],
)
def test_resolve_strategies(case: dict[str, Any]):
    conflict = Conflict(client=case["client"], server=case["server"])
    assert resolve(conflict, case["strategy"]) == case["expect"]


def test_resolve_rejects_unknown_and_user_choice():
    conflict = Conflict(client={}, server={})
    with pytest.raises(ConflictResolutionError):
        _ = resolve(conflict, "coin-flip")
    with pytest.raises(ConflictResolutionError):
        _ = resolve(conflict, "user-choice")


def test_resolve_is_deterministic():
    conflict = Conflict(
        client={"content": "x", "updatedAt": 5},
        server={"content": "y", "updatedAt": 5},
    )
    results = {repr(resolve(conflict, "merge")) for _ in range(5)}
    assert len(results) == 1


def test_timestamp_ms_formats():
    dt = datetime(2024, 1, 1, tzinfo=timezone.utc)
    expected = int(dt.timestamp() * 1000)
    assert timestamp_ms(expected) == expected
    assert timestamp_ms(str(expected)) == expected
    assert timestamp_ms("2024-01-01T00:00:00Z") == expected
    assert timestamp_ms(dt) == expected
    assert timestamp_ms("not a date") is None
    assert timestamp_ms(True) is None


@pytest.mark.anyio
async def test_user_choice_waits_for_ui():
    requests: list[UserChoiceRequest] = []
    resolver = ConflictResolver(on_user_choice=requests.append)
    conflict = Conflict(client={"content": "mine"}, server={"content": "theirs"})

    task = asyncio.create_task(resolver.resolve(conflict, "user-choice"))
    await asyncio.sleep(0)
    assert len(requests) == 1
    assert not task.done()

    requests[0].resolve({"content": "picked"})
    requests[0].resolve({"content": "ignored"})
    assert await task == {"content": "picked"}


@pytest.mark.anyio
async def test_user_choice_without_handler_raises():
    resolver = ConflictResolver()
    with pytest.raises(ConflictResolutionError):
        _ = await resolver.resolve(Conflict(client={}, server={}), "user-choice")


@pytest.mark.anyio
async def test_default_strategy_is_used():
    resolver = ConflictResolver(default_strategy="server-wins")
    conflict = Conflict(client={"content": "mine"}, server={"content": "theirs"})
    assert await resolver.resolve(conflict) == {"content": "theirs"}
