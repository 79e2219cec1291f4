"""离线同步队列（SyncQueueManager）。

约定：
- 队列与 lastSyncTime 持久化在 syncQueue 命名空间；失败项持久化在 failedSyncs/items（保留 7 天）
- drain() 只处理调用时的快照（FIFO），期间新入队的操作留给下一次 drain
- drain() 内部不做延时重试：失败项留在队列里，等下一次触发（入队/上线/30s 定时）再试
- 同一时刻只有一个 drain 在执行（锁）；离线时不 drain
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from flow_sync.config import settings
from flow_sync.connectivity import ConnectivityMonitor
from flow_sync.events import SYNC_FAILURE, VERSION_CONFLICT_DETECTED, EventBus
from flow_sync.integrations.storage.durable_store import DurableStore
from flow_sync.models import now_ms
from flow_sync.schemas_sync import (
    FAILED_ITEMS_KEY,
    FAILED_SYNCS_NAMESPACE,
    LAST_SYNC_TIME_KEY,
    QUEUE_KEY,
    SYNC_QUEUE_NAMESPACE,
    ContentPatch,
    FailedSyncItem,
    ForceSyncResult,
    SyncOperation,
    SyncQueueItem,
    SyncStatus,
)
from flow_sync.services.local_cache_service import LocalCacheService, LocalKind, safe_stringify
from flow_sync.sync_client import (
    PermanentClientError,
    SyncApiClient,
    VersionConflictError,
)

logger = logging.getLogger(__name__)

SYNC_FAILURE_MESSAGE = "Sync failed for some items. Will retry when connection improves."

_DAY_MS = 24 * 60 * 60 * 1000


def _new_item_id() -> str:
    return f"{now_ms()}_{secrets.token_hex(5)}"


def _require_id(data: dict[str, Any], op_type: str) -> str:
    item_id = str(data.get("id") or "").strip()
    if not item_id:
        raise PermanentClientError(f"{op_type} requires data.id")
    return item_id


@dataclass
class _DrainOperation:
    cancelled: bool = False


@dataclass
class DrainResult:
    skipped: bool = False
    attempted: list[str] = field(default_factory=list)
    succeeded: list[str] = field(default_factory=list)
    retrying: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


class SyncQueueManager:
    def __init__(
        self,
        *,
        store: DurableStore,
        api: SyncApiClient,
        connectivity: ConnectivityMonitor,
        events: EventBus,
        cache: LocalCacheService | None = None,
        max_attempts: int | None = None,
        sync_interval_seconds: float | None = None,
        failed_retention_days: int | None = None,
        cleanup_interval_seconds: float | None = None,
    ) -> None:
        self._store = store
        self._api = api
        self._connectivity = connectivity
        self._events = events
        self._cache = cache
        self._max_attempts = max_attempts or settings.sync_max_attempts
        self._interval = sync_interval_seconds or settings.sync_interval_seconds
        self._retention_days = failed_retention_days or settings.failed_sync_retention_days
        self._cleanup_interval = (
            cleanup_interval_seconds or settings.failed_sync_cleanup_interval_seconds
        )

        self._queue: list[SyncQueueItem] = []
        self._last_sync_time = 0
        self._loaded = False
        self._load_lock = asyncio.Lock()
        self._drain_lock = asyncio.Lock()
        self._current_drain: _DrainOperation | None = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self._periodic_task: asyncio.Task[None] | None = None
        self._remove_listener: Callable[[], None] | None = None
        self._started = False
        self._destroyed = False

        self._handlers: dict[str, Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]] = {
            "CREATE_NOTE": self._sync_create_note,
            "UPDATE_NOTE": self._sync_update_note,
            "UPDATE_CONTENT": self._sync_update_content,
            "DELETE_NOTE": self._sync_delete_note,
            "CREATE_TASK": self._sync_create_task,
            "UPDATE_TASK": self._sync_update_task,
            "DELETE_TASK": self._sync_delete_task,
        }

    @property
    def queue(self) -> list[SyncQueueItem]:
        return list(self._queue)

    @property
    def last_sync_time(self) -> int:
        return self._last_sync_time

    # --- lifecycle ---

    async def start(self) -> None:
        if self._started or self._destroyed:
            return
        self._started = True
        await self._ensure_loaded()
        self._remove_listener = self._connectivity.add_listener(self._on_connectivity_change)
        self._periodic_task = asyncio.create_task(self._periodic_loop())
        await self.cleanup_failed()
        if self._connectivity.is_online and self._queue:
            self._schedule_drain()
        logger.info("sync queue started items=%d", len(self._queue))

    async def destroy(self) -> None:
        self._destroyed = True
        if self._current_drain is not None:
            self._current_drain.cancelled = True
        if self._remove_listener is not None:
            self._remove_listener()
            self._remove_listener = None
        tasks = list(self._tasks)
        if self._periodic_task is not None:
            tasks.append(self._periodic_task)
            self._periodic_task = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()

    async def wait_idle(self) -> None:
        """Wait for drains scheduled in the background (enqueue/online)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _on_connectivity_change(self, online: bool) -> None:
        if online:
            logger.info("back online; draining sync queue")
            self._schedule_drain()

    def _schedule_drain(self) -> None:
        if self._destroyed:
            return
        task = asyncio.create_task(self._drain_safely())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _drain_safely(self) -> None:
        try:
            await self.drain()
        except Exception:
            logger.exception("background drain failed")

    async def _periodic_loop(self) -> None:
        last_cleanup = time.monotonic()
        while not self._destroyed:
            await asyncio.sleep(self._interval)
            if self._connectivity.is_online:
                await self._drain_safely()
            if time.monotonic() - last_cleanup >= self._cleanup_interval:
                last_cleanup = time.monotonic()
                await self.cleanup_failed()

    # --- persistence ---

    async def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        async with self._load_lock:
            if self._loaded:
                return
            await self._load_from_storage()
            self._loaded = True

    async def _load_from_storage(self) -> None:
        raw = await self._store.get(SYNC_QUEUE_NAMESPACE, QUEUE_KEY, [])
        items: list[SyncQueueItem] = []
        if isinstance(raw, list):
            for entry in raw:
                try:
                    items.append(SyncQueueItem.model_validate(entry))
                except ValidationError:
                    logger.warning("dropping unreadable sync queue entry: %r", entry)
        else:
            logger.warning("sync queue in storage is not a list; starting empty")
        self._queue = items

        last = await self._store.get(SYNC_QUEUE_NAMESPACE, LAST_SYNC_TIME_KEY, 0)
        self._last_sync_time = last if isinstance(last, int) and not isinstance(last, bool) else 0
        logger.info("loaded %d sync items from storage", len(items))

    async def _save_queue(self) -> None:
        payload = [item.model_dump(by_alias=True, mode="json") for item in self._queue]
        await self._store.set(SYNC_QUEUE_NAMESPACE, QUEUE_KEY, payload)

    async def _load_failed_raw(self) -> list[dict[str, Any]]:
        raw = await self._store.get(FAILED_SYNCS_NAMESPACE, FAILED_ITEMS_KEY, [])
        if not isinstance(raw, list):
            return []
        return [entry for entry in raw if isinstance(entry, dict)]

    async def _save_failed_raw(self, entries: list[dict[str, Any]]) -> None:
        await self._store.set(FAILED_SYNCS_NAMESPACE, FAILED_ITEMS_KEY, entries)

    # --- queue operations ---

    def _append(self, operation: SyncOperation) -> SyncQueueItem:
        item = SyncQueueItem(
            id=_new_item_id(),
            timestamp=now_ms(),
            operation=operation,
            attempts=0,
            max_attempts=self._max_attempts,
        )
        self._queue.append(item)
        return item

    def _remove(self, item_id: str) -> None:
        self._queue = [q for q in self._queue if q.id != item_id]

    async def enqueue(self, operation: SyncOperation | dict[str, Any]) -> str:
        if not isinstance(operation, SyncOperation):
            try:
                operation = SyncOperation.model_validate(operation)
            except ValidationError as exc:
                raise PermanentClientError(f"malformed sync operation: {exc}") from exc

        await self._ensure_loaded()
        item = self._append(operation)
        await self._save_queue()
        logger.info("queued sync item id=%s type=%s", item.id, operation.type)

        if self._connectivity.is_online:
            self._schedule_drain()
        return item.id

    async def drain(self) -> DrainResult:
        if self._destroyed or not self._connectivity.is_online:
            return DrainResult(skipped=True)

        async with self._drain_lock:
            await self._ensure_loaded()
            if not self._connectivity.is_online or not self._queue:
                return DrainResult(skipped=True)

            op = _DrainOperation()
            self._current_drain = op
            result = DrainResult()
            snapshot = list(self._queue)
            try:
                for item in snapshot:
                    if op.cancelled:
                        break
                    result.attempted.append(item.id)
                    await self._process_snapshot_item(item, op, result)
            finally:
                if self._current_drain is op:
                    self._current_drain = None

            await self._save_queue()
            self._last_sync_time = now_ms()
            await self._store.set(SYNC_QUEUE_NAMESPACE, LAST_SYNC_TIME_KEY, self._last_sync_time)
            logger.info(
                "drain finished attempted=%d ok=%d retrying=%d failed=%d",
                len(result.attempted),
                len(result.succeeded),
                len(result.retrying),
                len(result.failed),
            )
            return result

    async def _process_snapshot_item(
        self, item: SyncQueueItem, op: _DrainOperation, result: DrainResult
    ) -> None:
        try:
            await self.process_item(item)
        except VersionConflictError as exc:
            if op.cancelled:
                return
            logger.warning("sync item id=%s hit a version conflict", item.id)
            item.attempts += 1
            await self._move_to_failed(item, error=str(exc), notify=False)
            result.failed.append(item.id)
            self._events.publish(
                VERSION_CONFLICT_DETECTED,
                {"source": "queue", "queueItemId": item.id, **exc.conflict.model_dump(by_alias=True)},
            )
        except PermanentClientError as exc:
            if op.cancelled:
                return
            logger.error("sync item id=%s rejected permanently: %s", item.id, exc)
            item.attempts += 1
            await self._move_to_failed(item, error=str(exc))
            result.failed.append(item.id)
        except Exception as exc:
            if op.cancelled:
                return
            item.attempts += 1
            logger.warning(
                "sync failed for item id=%s attempt=%d/%d: %s",
                item.id,
                item.attempts,
                item.max_attempts,
                exc,
            )
            if item.exhausted:
                logger.error("max retry attempts reached for sync item id=%s", item.id)
                await self._move_to_failed(item, error=str(exc))
                result.failed.append(item.id)
            else:
                result.retrying.append(item.id)
        else:
            if op.cancelled:
                # Superseded drain: leave the item queued; replay is rejected by version checks.
                return
            self._remove(item.id)
            result.succeeded.append(item.id)

    async def process_item(self, item: SyncQueueItem) -> dict[str, Any]:
        operation = item.operation
        handler = self._handlers.get(operation.type)
        if handler is None:
            raise PermanentClientError(f"Unknown sync operation type: {operation.type}")
        return await handler(dict(operation.data))

    async def _move_to_failed(
        self, item: SyncQueueItem, *, error: str, notify: bool = True
    ) -> FailedSyncItem:
        self._remove(item.id)
        failed = FailedSyncItem.model_validate(
            {**item.model_dump(), "failed_at": now_ms(), "last_error": error}
        )
        entries = await self._load_failed_raw()
        entries.append(failed.model_dump(by_alias=True, mode="json"))
        await self._save_failed_raw(entries)
        if notify:
            self._events.publish(
                SYNC_FAILURE,
                {
                    "message": SYNC_FAILURE_MESSAGE,
                    "itemId": item.id,
                    "operationType": item.operation.type,
                    "error": error,
                },
            )
        return failed

    # --- one REST call per operation ---

    async def _sync_create_note(self, data: dict[str, Any]) -> dict[str, Any]:
        server_note = await self._api.create_note(data)
        if self._cache is not None:
            await self._cache.reconcile_created("notes", data.get("tempId"), server_note)
        return server_note

    async def _sync_update_note(self, data: dict[str, Any]) -> dict[str, Any]:
        note_id = _require_id(data, "UPDATE_NOTE")
        server_note = await self._api.update_note(note_id, data)
        if self._cache is not None:
            await self._cache.reconcile_updated("notes", note_id, server_note)
        return server_note

    async def _sync_update_content(self, data: dict[str, Any]) -> dict[str, Any]:
        item_id = _require_id(data, "UPDATE_CONTENT")
        expected = data.get("expectedVersion")
        patch = ContentPatch(
            content=safe_stringify(data.get("content")),
            direction=data.get("direction") or None,
            expected_version=expected if isinstance(expected, int) else None,
        )
        updated = await self._api.patch_item(item_id, patch)
        if self._cache is not None:
            await self._cache.update_tree_item(item_id, updated)
        return updated

    async def _sync_delete_note(self, data: dict[str, Any]) -> dict[str, Any]:
        note_id = _require_id(data, "DELETE_NOTE")
        await self._api.delete_note(note_id)
        if self._cache is not None:
            await self._cache.remove("notes", note_id)
        return {"success": True}

    async def _sync_create_task(self, data: dict[str, Any]) -> dict[str, Any]:
        server_task = await self._api.create_task(data)
        if self._cache is not None:
            await self._cache.reconcile_created("tasks", data.get("tempId"), server_task)
        return server_task

    async def _sync_update_task(self, data: dict[str, Any]) -> dict[str, Any]:
        task_id = _require_id(data, "UPDATE_TASK")
        server_task = await self._api.update_task(task_id, data)
        if self._cache is not None:
            await self._cache.reconcile_updated("tasks", task_id, server_task)
        return server_task

    async def _sync_delete_task(self, data: dict[str, Any]) -> dict[str, Any]:
        task_id = _require_id(data, "DELETE_TASK")
        await self._api.delete_task(task_id)
        if self._cache is not None:
            await self._cache.remove("tasks", task_id)
        return {"success": True}

    # --- status / maintenance ---

    async def get_sync_status(self) -> SyncStatus:
        await self._ensure_loaded()
        failed = await self._load_failed_raw()
        using_primary = getattr(self._store, "using_primary", None)
        return SyncStatus(
            is_online=self._connectivity.is_online,
            queue_length=len(self._queue),
            last_sync_time=self._last_sync_time,
            failed_syncs=len(failed),
            using_primary_store=bool(using_primary()) if callable(using_primary) else True,
        )

    def _is_queued(self, op_type: str, data: dict[str, Any]) -> bool:
        for queued in self._queue:
            if queued.operation.type != op_type:
                continue
            qdata = queued.operation.data
            if data.get("tempId") is not None and qdata.get("tempId") == data.get("tempId"):
                return True
            if data.get("id") is not None and qdata.get("id") == data.get("id"):
                return True
        return False

    async def force_sync_all(self) -> ForceSyncResult:
        if not self._connectivity.is_online:
            return ForceSyncResult(success=False, message="Cannot sync while offline")

        await self._ensure_loaded()
        queued = 0
        if self._cache is not None:
            plan: tuple[tuple[LocalKind, str, str], ...] = (
                ("notes", "CREATE_NOTE", "UPDATE_NOTE"),
                ("tasks", "CREATE_TASK", "UPDATE_TASK"),
            )
            for kind, create_type, update_type in plan:
                for local in await self._cache.list_unsynced(kind):
                    if local.get("tempId"):
                        op_type = create_type
                    elif local.get("modified"):
                        op_type = update_type
                    else:
                        continue
                    data = {k: v for k, v in local.items() if k != "synced"}
                    if self._is_queued(op_type, data):
                        continue
                    self._append(SyncOperation.model_validate({"type": op_type, "data": data}))
                    queued += 1
            if queued:
                await self._save_queue()

        result = await self.drain()
        if result.failed or result.retrying:
            return ForceSyncResult(
                success=False,
                message=f"{len(result.failed) + len(result.retrying)} item(s) did not sync",
                queued=queued,
            )
        return ForceSyncResult(success=True, message="All data synced successfully", queued=queued)

    async def list_failed(self) -> list[FailedSyncItem]:
        out: list[FailedSyncItem] = []
        for entry in await self._load_failed_raw():
            try:
                out.append(FailedSyncItem.model_validate(entry))
            except ValidationError:
                logger.warning("skipping unreadable failed sync entry: %r", entry)
        return out

    async def cleanup_failed(self) -> int:
        """Drop failed items past the retention window. Returns the number removed."""
        cutoff = now_ms() - self._retention_days * _DAY_MS
        entries = await self._load_failed_raw()
        recent = [e for e in entries if isinstance(e.get("failedAt"), int) and e["failedAt"] > cutoff]
        removed = len(entries) - len(recent)
        if removed:
            await self._save_failed_raw(recent)
            logger.info("cleaned up %d old failed syncs", removed)
        return removed

    async def retry_failed(self, ids: list[str] | None = None) -> int:
        """Move failed items back into the live queue with a fresh attempt budget."""
        await self._ensure_loaded()
        selected = set(ids) if ids is not None else None
        kept: list[dict[str, Any]] = []
        requeued = 0
        for entry in await self._load_failed_raw():
            try:
                failed = FailedSyncItem.model_validate(entry)
            except ValidationError:
                # Unreadable entries stay in the log for manual recovery.
                kept.append(entry)
                continue
            if selected is not None and failed.id not in selected:
                kept.append(entry)
                continue
            self._queue.append(
                SyncQueueItem(
                    id=failed.id,
                    timestamp=failed.timestamp,
                    operation=failed.operation,
                    attempts=0,
                    max_attempts=failed.max_attempts,
                )
            )
            requeued += 1
        if requeued:
            await self._save_failed_raw(kept)
            await self._save_queue()
            if self._connectivity.is_online:
                self._schedule_drain()
        return requeued

    async def clear_failed(self) -> None:
        await self._store.remove(FAILED_SYNCS_NAMESPACE, FAILED_ITEMS_KEY)
