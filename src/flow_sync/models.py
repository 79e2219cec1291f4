from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import Column, UniqueConstraint
from sqlalchemy.types import JSON as SAJSON
from sqlmodel import Field, SQLModel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


class StoreEntry(SQLModel, table=True):
    __tablename__ = "store_entries"  # pyright: ignore[reportAssignmentType]

    __table_args__ = (
        UniqueConstraint("namespace", "key", name="uq_store_entries_namespace_key"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)

    namespace: str = Field(min_length=1, max_length=64, index=True)
    key: str = Field(min_length=1, max_length=128, index=True)

    # Any JSON value: arrays for queues/logs, scalars for lastSyncTime.
    value_json: Any = Field(default=None, sa_column=Column(SAJSON))

    updated_at: datetime = Field(default_factory=utc_now, index=True)
