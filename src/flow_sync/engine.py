from __future__ import annotations

import logging
from typing import Any

import httpx

from flow_sync.config import settings, setup_logging
from flow_sync.connectivity import ConnectivityMonitor
from flow_sync.db import dispose_engines
from flow_sync.domain.conflict_resolver import (
    Conflict,
    ConflictResolutionError,
    ConflictResolver,
    UserChoiceRequest,
)
from flow_sync.events import CONFLICT_RESOLUTION_REQUESTED, EventBus
from flow_sync.integrations.storage.durable_store import DurableStore, build_durable_store
from flow_sync.services.auto_save import DebouncedAutoSaver
from flow_sync.services.content_sync_service import ContentSyncService
from flow_sync.services.local_cache_service import LocalCacheService
from flow_sync.services.save_scheduler import IntentSaveScheduler
from flow_sync.services.sync_queue_service import SyncQueueManager
from flow_sync.sync_client import SyncApiClient

logger = logging.getLogger(__name__)


class SyncEngine:
    """Composition root: one instance per app session, ``destroy()`` on shutdown."""

    def __init__(
        self,
        *,
        store: DurableStore,
        api: SyncApiClient,
        connectivity: ConnectivityMonitor | None = None,
        events: EventBus | None = None,
        resolver: ConflictResolver | None = None,
        max_attempts: int | None = None,
        sync_interval_seconds: float | None = None,
    ) -> None:
        self.store = store
        self.api = api
        self.connectivity = connectivity or ConnectivityMonitor()
        self.events = events or EventBus()
        self.resolver = resolver or ConflictResolver(
            default_strategy=settings.conflict_default_strategy
        )
        # user-choice requests are forwarded to whatever UI listens on the bus.
        self.resolver.set_user_choice_handler(self._request_user_choice)
        self.cache = LocalCacheService(store)
        self.queue = SyncQueueManager(
            store=store,
            api=api,
            connectivity=self.connectivity,
            events=self.events,
            cache=self.cache,
            max_attempts=max_attempts,
            sync_interval_seconds=sync_interval_seconds,
        )
        self._schedulers: list[IntentSaveScheduler] = []
        self._auto_savers: list[DebouncedAutoSaver] = []

    @classmethod
    def from_settings(
        cls,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        online: bool = True,
    ) -> "SyncEngine":
        setup_logging()
        store = build_durable_store()
        api = SyncApiClient(
            settings.api_root(),
            token=settings.api_token,
            timeout_seconds=settings.request_timeout_seconds,
            transport=transport,
        )
        return cls(store=store, api=api, connectivity=ConnectivityMonitor(online=online))

    async def start(self) -> None:
        for msg in settings.security_warnings():
            logger.warning("SECURITY WARNING: %s", msg)
        await self.queue.start()

    def content_sync(self, *, queue_on_failure: bool = True) -> ContentSyncService:
        return ContentSyncService(
            self.api, cache=self.cache, queue=self.queue, queue_on_failure=queue_on_failure
        )

    def create_scheduler(
        self, *, queue_on_failure: bool = True, **kwargs: Any
    ) -> IntentSaveScheduler:
        """One scheduler per editor session.

        With ``queue_on_failure`` transient failures are handed to the queue;
        without it the scheduler retries them itself with backoff.
        """
        service = self.content_sync(queue_on_failure=queue_on_failure)
        scheduler = IntentSaveScheduler(service.save, events=self.events, **kwargs)
        self._schedulers.append(scheduler)
        return scheduler

    def create_auto_saver(self, *, delay_ms: int | None = None) -> DebouncedAutoSaver:
        service = self.content_sync(queue_on_failure=False)
        saver = DebouncedAutoSaver(service.save, queue=self.queue, delay_ms=delay_ms)
        self._auto_savers.append(saver)
        return saver

    async def resolve_conflict(
        self, client: dict[str, Any], server: dict[str, Any], strategy: str | None = None
    ) -> dict[str, Any]:
        return await self.resolver.resolve(Conflict(client=client, server=server), strategy)

    def _request_user_choice(self, request: UserChoiceRequest) -> None:
        if not self.events.has_subscribers(CONFLICT_RESOLUTION_REQUESTED):
            raise ConflictResolutionError("no UI is listening for conflict resolution requests")
        self.events.publish(
            CONFLICT_RESOLUTION_REQUESTED,
            {
                "client": request.conflict.client,
                "server": request.conflict.server,
                "resolve": request.resolve,
            },
        )

    async def destroy(self) -> None:
        for scheduler in self._schedulers:
            scheduler.destroy()
        for saver in self._auto_savers:
            saver.destroy()
        self._schedulers.clear()
        self._auto_savers.clear()
        await self.queue.destroy()
        await dispose_engines()
