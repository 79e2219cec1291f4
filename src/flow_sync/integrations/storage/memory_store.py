from __future__ import annotations

import copy
from typing import Any


class MemoryDurableStore:
    """Last link of the chain; lives as long as the process."""

    def __init__(self) -> None:
        self._data: dict[tuple[str, str], Any] = {}

    async def get(self, namespace: str, key: str, default: Any = None) -> Any:
        if (namespace, key) not in self._data:
            return default
        return copy.deepcopy(self._data[(namespace, key)])

    async def set(self, namespace: str, key: str, value: Any) -> None:
        self._data[(namespace, key)] = copy.deepcopy(value)

    async def remove(self, namespace: str, key: str) -> None:
        self._data.pop((namespace, key), None)
