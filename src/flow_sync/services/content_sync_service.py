from __future__ import annotations

import logging
from typing import Any

from flow_sync.schemas_sync import ContentPatch, PendingEdit, SyncOperation
from flow_sync.services.local_cache_service import LocalCacheService, safe_stringify
from flow_sync.services.sync_queue_service import SyncQueueManager
from flow_sync.sync_client import SyncApiClient, TransientNetworkError

logger = logging.getLogger(__name__)


def update_content_operation(edit: PendingEdit) -> SyncOperation:
    data: dict[str, Any] = {"id": edit.id, "content": safe_stringify(edit.content)}
    if edit.direction is not None:
        data["direction"] = edit.direction
    if edit.expected_version is not None:
        data["expectedVersion"] = edit.expected_version
    return SyncOperation(type="UPDATE_CONTENT", data=data)


class ContentSyncService:
    """Save function used by the schedulers: versioned ``PATCH /items/{id}``.

    With ``queue_on_failure`` a transient failure becomes a queued
    UPDATE_CONTENT and the call returns ``None``; the queue owns the retry.
    Conflicts and permanent errors always propagate to the caller.
    """

    def __init__(
        self,
        api: SyncApiClient,
        *,
        cache: LocalCacheService | None = None,
        queue: SyncQueueManager | None = None,
        queue_on_failure: bool = False,
    ) -> None:
        self._api = api
        self._cache = cache
        self._queue = queue
        self._queue_on_failure = queue_on_failure and queue is not None

    async def save(self, edit: PendingEdit) -> dict[str, Any] | None:
        patch = ContentPatch(
            content=safe_stringify(edit.content),
            direction=edit.direction,
            expected_version=edit.expected_version,
        )
        try:
            updated = await self._api.patch_item(edit.id, patch)
        except TransientNetworkError as exc:
            if not self._queue_on_failure or self._queue is None:
                raise
            logger.warning("direct save failed item=%s, queueing: %s", edit.id, exc)
            await self._queue.enqueue(update_content_operation(edit))
            return None

        if self._cache is not None:
            await self._cache.update_tree_item(edit.id, updated)
        return updated
