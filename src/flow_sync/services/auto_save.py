from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

from flow_sync.config import settings
from flow_sync.schemas_sync import PendingEdit
from flow_sync.services.content_sync_service import update_content_operation
from flow_sync.services.save_scheduler import SaveFunction
from flow_sync.services.sync_queue_service import SyncQueueManager

logger = logging.getLogger(__name__)


class DebouncedAutoSaver:
    """Older debounce-on-typing saver (1.5s). Failed saves go to the sync queue."""

    def __init__(
        self,
        save_function: SaveFunction,
        *,
        queue: SyncQueueManager | None = None,
        delay_ms: int | None = None,
    ) -> None:
        self._save_function = save_function
        self._queue = queue
        self._delay = (settings.autosave_debounce_ms if delay_ms is None else delay_ms) / 1000

        self._pending: PendingEdit | None = None
        self._handle: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self.is_saving = False
        self.has_unsaved_changes = False
        self.last_saved: datetime | None = None
        self.save_error: str | None = None

    def debounced_save(self, edit: PendingEdit | dict[str, Any]) -> None:
        if not isinstance(edit, PendingEdit):
            edit = PendingEdit.model_validate(edit)
        self._pending = edit
        self.has_unsaved_changes = True
        self.save_error = None
        self._cancel_timer()
        self._handle = asyncio.get_running_loop().call_later(self._delay, self._on_timer)

    async def force_save(self) -> None:
        self._cancel_timer()
        if self._pending is not None:
            await self._perform_save(self._pending)

    def reset(self) -> None:
        self._cancel_timer()
        self._pending = None
        self.has_unsaved_changes = False
        self.save_error = None
        self.is_saving = False
        self.last_saved = None

    def destroy(self) -> None:
        self._cancel_timer()
        for task in list(self._tasks):
            task.cancel()

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _on_timer(self) -> None:
        self._handle = None
        if self._pending is None:
            return
        task = asyncio.create_task(self._perform_save(self._pending))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _cancel_timer(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    async def _perform_save(self, edit: PendingEdit) -> None:
        self.is_saving = True
        self.save_error = None
        try:
            await self._save_function(edit)
        except Exception as exc:
            logger.warning("auto-save failed item=%s: %s", edit.id, exc)
            self.save_error = str(exc) or "Save failed"
            if self._queue is not None:
                await self._queue.enqueue(update_content_operation(edit))
                logger.info("added failed save to sync queue item=%s", edit.id)
        else:
            self.last_saved = datetime.now(timezone.utc)
            if self._pending is edit or self._pending == edit:
                self._pending = None
                self.has_unsaved_changes = False
        finally:
            self.is_saving = False
