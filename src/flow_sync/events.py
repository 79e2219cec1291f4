from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable
from typing import Any


logger = logging.getLogger(__name__)

# UI-facing events (consumed by the presentation layer).
SYNC_FAILURE = "sync-failure"
VERSION_CONFLICT_DETECTED = "version-conflict-detected"
VERSION_CONFLICT_RESOLVED = "version-conflict-resolved"
SAVE_STATE_CHANGED = "save-state-changed"
CONFLICT_RESOLUTION_REQUESTED = "conflict-resolution-requested"

EventHandler = Callable[[dict[str, Any]], None]


class EventBus:
    def __init__(self) -> None:
        self._handlers: defaultdict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event: str, handler: EventHandler) -> Callable[[], None]:
        self._handlers[event].append(handler)

        def _unsubscribe() -> None:
            handlers = self._handlers.get(event)
            if handlers and handler in handlers:
                handlers.remove(handler)

        return _unsubscribe

    def has_subscribers(self, event: str) -> bool:
        return bool(self._handlers.get(event))

    def publish(self, event: str, payload: dict[str, Any]) -> None:
        # A broken UI handler must never break the sync engine.
        for handler in list(self._handlers.get(event, ())):
            try:
                handler(payload)
            except Exception:
                logger.exception("event handler failed event=%s", event)


class RecordingEventBus(EventBus):
    """EventBus that also keeps every published event (diagnostics/tests)."""

    def __init__(self) -> None:
        super().__init__()
        self.published: list[tuple[str, dict[str, Any]]] = []

    def publish(self, event: str, payload: dict[str, Any]) -> None:
        self.published.append((event, payload))
        super().publish(event, payload)

    def of(self, event: str) -> list[dict[str, Any]]:
        return [payload for name, payload in self.published if name == event]
