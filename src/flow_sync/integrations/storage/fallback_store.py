"""存储兜底链（primary -> fallback -> ... ）。

约定：
- 调用方可以假设存储“总是可用”：任何一层出错都只记录日志，不向上抛异常
- 某一层失败后即被标记为不可用，后续读写直接走下一层，保证“写到哪就从哪读”
- 所有层都失败时：get 返回 default，set/remove 静默丢弃
"""

from __future__ import annotations

import logging
from typing import Any

from .durable_store import DurableStore

logger = logging.getLogger(__name__)


class FallbackDurableStore:
    def __init__(self, *stores: DurableStore) -> None:
        if not stores:
            raise ValueError("at least one store is required")
        self._stores: list[DurableStore] = list(stores)
        self._active = 0

    @property
    def active_store(self) -> DurableStore | None:
        if self._active >= len(self._stores):
            return None
        return self._stores[self._active]

    def using_primary(self) -> bool:
        return self._active == 0

    def _degrade(self, failed_index: int, op: str, namespace: str, key: str) -> None:
        if failed_index != self._active:
            return
        self._active += 1
        nxt = self.active_store
        if nxt is None:
            logger.error("all durable stores failed op=%s %s:%s", op, namespace, key)
        else:
            logger.warning(
                "durable store %s failed op=%s %s:%s; falling back to %s",
                type(self._stores[failed_index]).__name__,
                op,
                namespace,
                key,
                type(nxt).__name__,
            )

    async def get(self, namespace: str, key: str, default: Any = None) -> Any:
        while self._active < len(self._stores):
            index = self._active
            try:
                return await self._stores[index].get(namespace, key, default)
            except Exception:
                logger.warning("failed to get %s:%s", namespace, key, exc_info=True)
                self._degrade(index, "get", namespace, key)
        return default

    async def set(self, namespace: str, key: str, value: Any) -> None:
        while self._active < len(self._stores):
            index = self._active
            try:
                await self._stores[index].set(namespace, key, value)
                return
            except Exception:
                logger.warning("failed to set %s:%s", namespace, key, exc_info=True)
                self._degrade(index, "set", namespace, key)

    async def remove(self, namespace: str, key: str) -> None:
        while self._active < len(self._stores):
            index = self._active
            try:
                await self._stores[index].remove(namespace, key)
                return
            except Exception:
                logger.warning("failed to remove %s:%s", namespace, key, exc_info=True)
                self._degrade(index, "remove", namespace, key)
