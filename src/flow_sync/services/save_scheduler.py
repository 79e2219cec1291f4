"""Intent-based save scheduler.

Edits are only *recorded*; the network write happens on an intent event
(item switch, tab hidden, window blur, page hide, Ctrl/Cmd+S, force save) or
when one of the two timers elapses:

- inactivity: 30s after the last change (reset on every change)
- safety backup: 2min after the first unsaved change (never reset by edits)

State priority (what ``save_state`` reports):
conflict > saving > error > pending > saved > idle

Accepting the server version lands in idle until the next edit or save.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from flow_sync.config import settings
from flow_sync.events import (
    SAVE_STATE_CHANGED,
    VERSION_CONFLICT_DETECTED,
    VERSION_CONFLICT_RESOLVED,
    EventBus,
)
from flow_sync.schemas_sync import PendingEdit, SaveState, VersionConflict
from flow_sync.sync_client import (
    PermanentClientError,
    TransientNetworkError,
    VersionConflictError,
)

logger = logging.getLogger(__name__)

SaveFunction = Callable[[PendingEdit], Awaitable[object]]

CONFLICT_MESSAGE = "Content has been modified by another client. Please resolve the conflict."


class Intent(str, Enum):
    ITEM_SWITCH = "item-switch"
    TAB_HIDDEN = "tab-hidden"
    WINDOW_BLUR = "window-blur"
    PAGE_HIDE = "page-hide"
    KEYBOARD_SHORTCUT = "keyboard-shortcut"
    FORCED = "forced"
    INACTIVITY = "inactivity"
    SAFETY_BACKUP = "safety-backup"
    EDITOR_BLUR = "editor-blur"
    PAGE_UNLOAD = "page-unload"
    COMPONENT_UNMOUNT = "component-unmount"
    RETRY = "retry"
    CONFLICT_RESOLUTION = "conflict-resolution"


# Explicit requests are never deferred by the min-interval window.
_UNDEFERRED = frozenset({Intent.FORCED, Intent.PAGE_UNLOAD, Intent.CONFLICT_RESOLUTION})


@dataclass
class _SaveOperation:
    edit: PendingEdit
    intent: Intent
    cancelled: bool = False


class IntentSaveScheduler:
    def __init__(
        self,
        save_function: SaveFunction,
        *,
        events: EventBus | None = None,
        inactivity_seconds: float | None = None,
        safety_seconds: float | None = None,
        min_interval_ms: int | None = None,
        timeout_seconds: float | None = None,
        retry_max_attempts: int | None = None,
        retry_base_delay_seconds: float | None = None,
        retry_max_delay_seconds: float | None = None,
    ) -> None:
        self._save_function = save_function
        self._events = events or EventBus()
        self._inactivity = (
            settings.save_inactivity_seconds if inactivity_seconds is None else inactivity_seconds
        )
        self._safety = settings.save_safety_seconds if safety_seconds is None else safety_seconds
        self._min_interval = (
            settings.save_min_interval_ms if min_interval_ms is None else min_interval_ms
        ) / 1000
        self._timeout = (
            settings.request_timeout_seconds if timeout_seconds is None else timeout_seconds
        )
        self._retry_max = (
            settings.save_retry_max_attempts if retry_max_attempts is None else retry_max_attempts
        )
        self._retry_base = (
            settings.save_retry_base_delay_seconds
            if retry_base_delay_seconds is None
            else retry_base_delay_seconds
        )
        self._retry_cap = (
            settings.save_retry_max_delay_seconds
            if retry_max_delay_seconds is None
            else retry_max_delay_seconds
        )

        self._pending: PendingEdit | None = None
        self._has_unsaved = False
        self._current: _SaveOperation | None = None
        self._save_error: str | None = None
        self._conflict: VersionConflict | None = None
        self._last_saved: datetime | None = None
        self._last_saved_at: float | None = None  # loop clock
        self._retry_attempts = 0
        self._resolved_to_server = False

        self._inactivity_handle: asyncio.TimerHandle | None = None
        self._safety_handle: asyncio.TimerHandle | None = None
        self._deferred_handle: asyncio.TimerHandle | None = None
        self._retry_handle: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self._published_state: SaveState | None = None
        self._destroyed = False

    # --- read-only state ---

    @property
    def save_state(self) -> SaveState:
        if self._conflict is not None:
            return SaveState.CONFLICT
        if self.is_saving:
            return SaveState.SAVING
        if self._save_error:
            return SaveState.ERROR
        if self._has_unsaved:
            return SaveState.PENDING
        if self._resolved_to_server:
            return SaveState.IDLE
        if self._last_saved is not None:
            return SaveState.SAVED
        return SaveState.IDLE

    @property
    def pending_edit(self) -> PendingEdit | None:
        return self._pending

    @property
    def has_unsaved_changes(self) -> bool:
        return self._has_unsaved

    @property
    def is_saving(self) -> bool:
        return self._current is not None and not self._current.cancelled

    @property
    def last_saved(self) -> datetime | None:
        return self._last_saved

    @property
    def save_error(self) -> str | None:
        return self._save_error

    @property
    def version_conflict(self) -> VersionConflict | None:
        return self._conflict

    @property
    def has_version_conflict(self) -> bool:
        return self._conflict is not None

    @property
    def content_length(self) -> int:
        return len(self._pending.content) if self._pending is not None else 0

    @property
    def retry_attempts(self) -> int:
        return self._retry_attempts

    # --- recording ---

    def record_content_change(self, edit: PendingEdit | dict[str, Any]) -> None:
        """Record the latest editor content. Never touches the network."""
        if self._destroyed:
            return
        if not isinstance(edit, PendingEdit):
            edit = PendingEdit.model_validate(edit)

        previous = self._pending
        self._pending = edit
        changed = (
            previous is None
            or previous.content != edit.content
            or previous.direction != edit.direction
        )
        if not changed:
            return

        self._has_unsaved = True
        self._resolved_to_server = False
        if self._conflict is not None:
            # Keep typing, but nothing is saved until the conflict is resolved.
            self._notify()
            return

        self._save_error = None
        self._arm_inactivity_timer()
        if self._safety_handle is None:
            self._safety_handle = self._call_later(self._safety, self._on_safety_timer)
        logger.debug("content change recorded item=%s len=%d", edit.id, len(edit.content))
        self._notify()

    # --- intents ---

    async def save_on_intent(self, intent: Intent | str = Intent.FORCED) -> None:
        intent = Intent(intent)
        if self._conflict is not None:
            logger.info("save on %s skipped: unresolved version conflict", intent.value)
            return
        if self._pending is None or not self._has_unsaved:
            return
        await self._perform_save(self._pending, intent)

    async def handle_key(self, key: str, *, ctrl: bool = False, meta: bool = False) -> bool:
        """Ctrl+S / Cmd+S. Returns True when the key was consumed."""
        if not (ctrl or meta) or key.lower() != "s":
            return False
        await self.save_on_intent(Intent.KEYBOARD_SHORTCUT)
        return True

    async def force_save(self, intent: Intent | str = Intent.FORCED) -> None:
        intent = Intent(intent)
        if self._conflict is not None:
            logger.info("force save ignored: unresolved version conflict")
            return
        self._cancel_current()
        if self._pending is None:
            return
        await self._perform_save(self._pending, intent, defer=False)

    # --- conflict resolution ---

    async def accept_server_version(self) -> None:
        conflict = self._conflict
        if conflict is None:
            return
        logger.info("accepting server version item=%s", conflict.item_id)
        self._conflict = None
        self._save_error = None
        self._has_unsaved = False
        self._pending = None
        self._resolved_to_server = True
        self._cancel_timers()
        self._events.publish(
            VERSION_CONFLICT_RESOLVED,
            {
                "itemId": conflict.item_id,
                "resolution": "server",
                "serverItem": conflict.server_item,
            },
        )
        self._notify()

    async def force_client_version(self) -> None:
        conflict = self._conflict
        if conflict is None or self._pending is None:
            return
        logger.info("forcing client version item=%s", conflict.item_id)
        edit = self._pending.model_copy(update={"expected_version": conflict.server_version})
        self._pending = edit
        self._conflict = None
        self._save_error = None
        await self._perform_save(edit, Intent.CONFLICT_RESOLUTION, defer=False)
        if self._conflict is None and self._save_error is None:
            self._events.publish(
                VERSION_CONFLICT_RESOLVED,
                {"itemId": conflict.item_id, "resolution": "client", "serverItem": None},
            )
        elif self._conflict is None:
            self._save_error = "Failed to resolve conflict. Please try again."
            self._notify()

    # --- lifecycle ---

    def reset(self) -> None:
        self._cancel_current()
        self._cancel_timers()
        self._pending = None
        self._has_unsaved = False
        self._save_error = None
        self._conflict = None
        self._last_saved = None
        self._last_saved_at = None
        self._retry_attempts = 0
        self._resolved_to_server = False
        self._notify()

    def destroy(self) -> None:
        self._destroyed = True
        self._cancel_current()
        self._cancel_timers()
        for task in list(self._tasks):
            task.cancel()

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # --- internals ---

    async def _perform_save(self, edit: PendingEdit, intent: Intent, *, defer: bool = True) -> None:
        if self._destroyed:
            return
        if self.is_saving:
            logger.info("save already in progress; dropping %s request", intent.value)
            return

        if defer and intent not in _UNDEFERRED:
            remaining = self._deferral_remaining()
            if remaining > 0:
                if self._deferred_handle is None:
                    logger.debug("deferring %s save by %.3fs", intent.value, remaining)
                    self._deferred_handle = self._call_later(remaining, self._on_deferred, intent)
                return

        self._cancel_timers()
        if intent is not Intent.RETRY:
            # A fresh save episode gets the full backoff budget.
            self._retry_attempts = 0
        op = _SaveOperation(edit=edit, intent=intent)
        self._current = op
        self._save_error = None
        self._notify()
        logger.info("save triggered by %s item=%s", intent.value, edit.id)

        try:
            await asyncio.wait_for(self._save_function(edit), timeout=self._timeout)
        except VersionConflictError as exc:
            if op.cancelled:
                return
            logger.warning(
                "version conflict item=%s server_version=%d",
                exc.conflict.item_id,
                exc.conflict.server_version,
            )
            self._conflict = exc.conflict
            self._save_error = CONFLICT_MESSAGE
            self._events.publish(
                VERSION_CONFLICT_DETECTED,
                {"source": "scheduler", **exc.conflict.model_dump(by_alias=True)},
            )
        except (TransientNetworkError, asyncio.TimeoutError) as exc:
            if op.cancelled:
                return
            logger.warning("save failed item=%s: %s", edit.id, str(exc) or "timed out")
            self._save_error = str(exc) or "Save timed out"
            self._schedule_retry()
        except PermanentClientError as exc:
            if op.cancelled:
                return
            logger.error("save rejected item=%s: %s", edit.id, exc)
            self._save_error = str(exc) or "Save failed"
        except Exception as exc:
            if op.cancelled:
                return
            logger.exception("save failed item=%s", edit.id)
            self._save_error = str(exc) or "Save failed"
        else:
            if op.cancelled:
                logger.info("save result discarded (cancelled) item=%s", edit.id)
                return
            self._last_saved = datetime.now(timezone.utc)
            self._last_saved_at = asyncio.get_running_loop().time()
            self._retry_attempts = 0
            self._resolved_to_server = False
            if self._pending is edit or self._pending == edit:
                self._pending = None
                self._has_unsaved = False
                self._cancel_timers()
            logger.info("save completed item=%s", edit.id)
        finally:
            if self._current is op:
                self._current = None
            self._notify()

    def _deferral_remaining(self) -> float:
        if self._last_saved_at is None or self._min_interval <= 0:
            return 0.0
        elapsed = asyncio.get_running_loop().time() - self._last_saved_at
        return self._min_interval - elapsed

    def _schedule_retry(self) -> None:
        if self._retry_attempts >= self._retry_max:
            logger.warning("save retries exhausted after %d attempts", self._retry_attempts)
            return
        self._retry_attempts += 1
        delay = min(self._retry_base * 2 ** (self._retry_attempts - 1), self._retry_cap)
        logger.info("retrying save in %.2fs (attempt %d)", delay, self._retry_attempts)
        if self._retry_handle is not None:
            self._retry_handle.cancel()
        self._retry_handle = self._call_later(delay, self._on_retry_timer)

    def _call_later(self, delay: float, callback: Callable[..., None], *args: Any) -> asyncio.TimerHandle:
        return asyncio.get_running_loop().call_later(delay, callback, *args)

    def _arm_inactivity_timer(self) -> None:
        if self._inactivity_handle is not None:
            self._inactivity_handle.cancel()
        self._inactivity_handle = self._call_later(self._inactivity, self._on_inactivity_timer)

    def _on_inactivity_timer(self) -> None:
        self._inactivity_handle = None
        self._spawn(self.save_on_intent(Intent.INACTIVITY))

    def _on_safety_timer(self) -> None:
        self._safety_handle = None
        self._spawn(self.save_on_intent(Intent.SAFETY_BACKUP))

    def _on_retry_timer(self) -> None:
        self._retry_handle = None
        self._spawn(self.save_on_intent(Intent.RETRY))

    def _on_deferred(self, intent: Intent) -> None:
        self._deferred_handle = None
        self._spawn(self.save_on_intent(intent))

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        if self._destroyed:
            coro.close()
            return
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _cancel_timers(self) -> None:
        for name in ("_inactivity_handle", "_safety_handle", "_deferred_handle", "_retry_handle"):
            handle: asyncio.TimerHandle | None = getattr(self, name)
            if handle is not None:
                handle.cancel()
                setattr(self, name, None)

    def _cancel_current(self) -> None:
        if self._current is not None:
            self._current.cancelled = True
            self._current = None

    def _notify(self) -> None:
        state = self.save_state
        if state == self._published_state:
            return
        self._published_state = state
        self._events.publish(
            SAVE_STATE_CHANGED,
            {
                "state": state.value,
                "itemId": self._pending.id if self._pending is not None else None,
                "error": self._save_error,
            },
        )
