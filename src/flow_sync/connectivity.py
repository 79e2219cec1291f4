from __future__ import annotations

import logging
from collections.abc import Callable


logger = logging.getLogger(__name__)


class ConnectivityMonitor:
    """Online/offline flag fed by the host (browser events, OS probes, tests)."""

    def __init__(self, online: bool = True) -> None:
        self._online = online
        self._listeners: list[Callable[[bool], None]] = []

    @property
    def is_online(self) -> bool:
        return self._online

    def add_listener(self, listener: Callable[[bool], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def set_online(self, online: bool) -> None:
        if online == self._online:
            return
        self._online = online
        logger.info("connectivity changed online=%s", online)
        for listener in list(self._listeners):
            try:
                listener(online)
            except Exception:
                logger.exception("connectivity listener failed")
