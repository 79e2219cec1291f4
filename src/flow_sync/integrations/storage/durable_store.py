from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from flow_sync.config import settings

if TYPE_CHECKING:
    from .fallback_store import FallbackDurableStore


class DurableStore(Protocol):
    async def get(self, namespace: str, key: str, default: Any = None) -> Any: ...

    async def set(self, namespace: str, key: str, value: Any) -> None: ...

    async def remove(self, namespace: str, key: str) -> None: ...


def build_durable_store(
    *,
    database_url: str | None = None,
    fallback_dir: str | Path | None = None,
) -> "FallbackDurableStore":
    # Pinned chain: SQLite -> JSON files -> memory (in-memory-only mode).
    from .fallback_store import FallbackDurableStore
    from .local_store import JsonFileDurableStore
    from .memory_store import MemoryDurableStore
    from .sql_store import SqlDurableStore

    return FallbackDurableStore(
        SqlDurableStore(database_url=database_url or settings.store_database_url),
        JsonFileDurableStore(root_dir=str(fallback_dir or settings.store_fallback_dir)),
        MemoryDurableStore(),
    )

