from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


SyncOperationType = Literal[
    "CREATE_NOTE",
    "UPDATE_NOTE",
    "UPDATE_CONTENT",
    "DELETE_NOTE",
    "CREATE_TASK",
    "UPDATE_TASK",
    "DELETE_TASK",
]

# Pinned storage layout (namespace, key).
SYNC_QUEUE_NAMESPACE = "syncQueue"
QUEUE_KEY = "queue"
LAST_SYNC_TIME_KEY = "lastSyncTime"
FAILED_SYNCS_NAMESPACE = "failedSyncs"
FAILED_ITEMS_KEY = "items"


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class SyncOperation(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: SyncOperationType
    data: dict[str, Any] = Field(default_factory=dict)


class SyncQueueItem(_CamelModel):
    id: str = Field(min_length=1, max_length=64)
    # Creation time, epoch milliseconds.
    timestamp: int
    operation: SyncOperation
    attempts: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=3, ge=1, alias="maxAttempts")

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_attempts


class FailedSyncItem(SyncQueueItem):
    failed_at: int = Field(alias="failedAt")
    last_error: str | None = Field(default=None, alias="lastError")


class PendingEdit(_CamelModel):
    id: str = Field(min_length=1)
    content: str = ""
    direction: str | None = None
    expected_version: int | None = Field(default=None, alias="expectedVersion")


class VersionConflict(_CamelModel):
    item_id: str = Field(alias="itemId")
    client_version: int | None = Field(default=None, alias="clientVersion")
    server_version: int = Field(alias="serverVersion")
    server_item: dict[str, Any] = Field(default_factory=dict, alias="serverItem")


class SaveState(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    SAVING = "saving"
    SAVED = "saved"
    ERROR = "error"
    CONFLICT = "conflict"


class ContentPatch(_CamelModel):
    """Body of ``PATCH /items/{id}``."""

    content: str
    direction: str | None = None
    expected_version: int | None = Field(default=None, alias="expectedVersion")


class SyncStatus(_CamelModel):
    is_online: bool = Field(alias="isOnline")
    queue_length: int = Field(alias="queueLength")
    last_sync_time: int = Field(alias="lastSyncTime")
    failed_syncs: int = Field(alias="failedSyncs")
    using_primary_store: bool = Field(alias="usingPrimaryStore")


class ForceSyncResult(BaseModel):
    success: bool
    message: str
    queued: int = 0
