from __future__ import annotations

from .durable_store import DurableStore, build_durable_store
from .fallback_store import FallbackDurableStore
from .local_store import JsonFileDurableStore
from .memory_store import MemoryDurableStore
from .sql_store import SqlDurableStore

__all__ = [
    "DurableStore",
    "FallbackDurableStore",
    "JsonFileDurableStore",
    "MemoryDurableStore",
    "SqlDurableStore",
    "build_durable_store",
]
