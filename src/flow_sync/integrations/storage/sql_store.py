from __future__ import annotations

import asyncio
from typing import Any

from sqlmodel import select

from flow_sync.db import init_db, session_scope
from flow_sync.models import StoreEntry, utc_now


class SqlDurableStore:
    """Primary store: one JSON row per (namespace, key) in SQLite."""

    def __init__(self, *, database_url: str) -> None:
        self._database_url = database_url
        self._ready = False
        self._init_lock = asyncio.Lock()

    @property
    def database_url(self) -> str:
        return self._database_url

    async def _ensure_ready(self) -> None:
        if self._ready:
            return
        async with self._init_lock:
            if not self._ready:
                await init_db(self._database_url)
                self._ready = True

    async def get(self, namespace: str, key: str, default: Any = None) -> Any:
        await self._ensure_ready()
        async with session_scope(self._database_url) as session:
            stmt = (
                select(StoreEntry)
                .where(StoreEntry.namespace == namespace)
                .where(StoreEntry.key == key)
            )
            row = (await session.exec(stmt)).first()
            if row is None or row.value_json is None:
                return default
            return row.value_json

    async def set(self, namespace: str, key: str, value: Any) -> None:
        await self._ensure_ready()
        async with session_scope(self._database_url) as session:
            stmt = (
                select(StoreEntry)
                .where(StoreEntry.namespace == namespace)
                .where(StoreEntry.key == key)
            )
            row = (await session.exec(stmt)).first()
            if row is None:
                row = StoreEntry(namespace=namespace, key=key)
            row.value_json = value
            row.updated_at = utc_now()
            session.add(row)
            await session.commit()

    async def remove(self, namespace: str, key: str) -> None:
        await self._ensure_ready()
        async with session_scope(self._database_url) as session:
            stmt = (
                select(StoreEntry)
                .where(StoreEntry.namespace == namespace)
                .where(StoreEntry.key == key)
            )
            row = (await session.exec(stmt)).first()
            if row is None:
                return
            await session.delete(row)
            await session.commit()
