from __future__ import annotations

import asyncio

import pytest

from flow_sync.connectivity import ConnectivityMonitor
from flow_sync.events import RecordingEventBus
from flow_sync.integrations.storage import MemoryDurableStore
from flow_sync.schemas_sync import PendingEdit
from flow_sync.services.auto_save import DebouncedAutoSaver
from flow_sync.services.sync_queue_service import SyncQueueManager
from flow_sync.sync_client import TransientNetworkError


@pytest.mark.anyio
async def test_debounce_saves_latest_edit_once():
    saved: list[str] = []

    async def save(edit: PendingEdit) -> None:
        saved.append(edit.content)

    saver = DebouncedAutoSaver(save, delay_ms=50)
    for content in ("a", "ab", "abc"):
        saver.debounced_save(PendingEdit(id="n1", content=content))
        await asyncio.sleep(0.01)
    assert saved == []

    await asyncio.sleep(0.15)
    await saver.wait_idle()

    assert saved == ["abc"]
    assert not saver.has_unsaved_changes
    assert saver.last_saved is not None


@pytest.mark.anyio
async def test_force_save_skips_the_timer():
    saved: list[str] = []

    async def save(edit: PendingEdit) -> None:
        saved.append(edit.content)

    saver = DebouncedAutoSaver(save, delay_ms=10_000)
    saver.debounced_save({"id": "n1", "content": "now"})
    await saver.force_save()

    assert saved == ["now"]
    saver.destroy()


@pytest.mark.anyio
async def test_failed_save_is_queued_for_retry():
    async def save(edit: PendingEdit) -> None:
        raise TransientNetworkError("offline")

    queue = SyncQueueManager(
        store=MemoryDurableStore(),
        api=None,  # type: ignore[arg-type]
        connectivity=ConnectivityMonitor(online=False),
        events=RecordingEventBus(),
    )
    saver = DebouncedAutoSaver(save, queue=queue, delay_ms=10)
    saver.debounced_save(PendingEdit(id="n1", content="x", direction="ltr"))
    await asyncio.sleep(0.05)
    await saver.wait_idle()

    assert saver.save_error == "offline"
    assert saver.has_unsaved_changes
    assert [q.operation.type for q in queue.queue] == ["UPDATE_CONTENT"]
    assert queue.queue[0].operation.data == {"id": "n1", "content": "x", "direction": "ltr"}


@pytest.mark.anyio
async def test_reset_clears_pending_state():
    async def save(edit: PendingEdit) -> None:
        raise AssertionError("should not save")

    saver = DebouncedAutoSaver(save, delay_ms=20)
    saver.debounced_save(PendingEdit(id="n1", content="x"))
    saver.reset()
    await asyncio.sleep(0.05)

    assert not saver.has_unsaved_changes
    assert saver.save_error is None
