"""
PosClient - builds and wires the resilience layer.

    client = await PosClient.create()
    client.start()
    products = await client.coordinator.get("/products", {"outlet": 42})
    await client.close()
"""

from datetime import datetime, timedelta
from typing import Any, Callable

import httpx
from loguru import logger

from posclient.auth.credentials import CredentialStore
from posclient.auth.manager import AuthManager
from posclient.auth.refresher import TokenRefresher
from posclient.auth.session import SessionTimer
from posclient.datastore import Database, KeyValueStore, SqlKeyValueStore
from posclient.scheduler import ResilienceScheduler
from posclient.services.batcher import (
    BatchConfig,
    RequestBatcher,
    transport_batch_dispatcher,
)
from posclient.services.cache import CacheStrategy, TimedCache
from posclient.services.connectivity import ConnectivityMonitor
from posclient.services.coordinator import RequestCoordinator
from posclient.services.deduplicator import RequestDeduplicator
from posclient.services.priority_queue import PriorityRequestQueue
from posclient.services.sync_queue import (
    OfflineSyncQueue,
    SyncOperation,
    transport_sync_executor,
)
from posclient.services.transport import RetryConfig, RetryingTransport
from posclient.settings import Settings, global_settings


class PosClient:
    """Composition root: one instance per running front end."""

    def __init__(
        self,
        storage: KeyValueStore,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
        database: Database | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        s = settings or global_settings
        self.settings = s
        self.storage = storage
        self._database = database
        self._owns_http_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(
            base_url=s.api_base_url, timeout=s.request_timeout
        )

        lifetime = timedelta(minutes=s.session_lifetime_minutes)
        self.credentials = CredentialStore(storage, session_lifetime=lifetime, clock=clock)
        self.transport = RetryingTransport(
            self.http_client,
            self.credentials,
            retry_config=RetryConfig(
                max_retries=s.max_retries,
                base_delay=s.retry_base_delay,
                max_delay=s.retry_max_delay,
                jitter=s.retry_jitter,
            ),
            default_timeout=s.request_timeout,
        )
        self.refresher = TokenRefresher(
            self.http_client, self.credentials, timeout=s.auth_timeout
        )
        self.transport.set_refresher(self.refresher)

        self.session_timer = SessionTimer(
            lifetime=lifetime,
            warning_window=timedelta(minutes=s.session_warning_minutes),
            clock=clock,
            persist_start=self.credentials.set_session_start,
        )
        self.auth = AuthManager(
            self.transport,
            self.credentials,
            self.session_timer,
            login_timeout=s.login_timeout,
            auth_timeout=s.auth_timeout,
            clock=clock,
        )

        default_ttl = timedelta(seconds=s.default_cache_ttl_seconds)
        self.memory_cache = TimedCache(
            name="memory",
            max_size=s.memory_cache_max_entries,
            default_ttl=default_ttl,
            clock=clock,
            debug=s.debug,
        )
        self.persistent_cache = TimedCache(
            name="persistent",
            max_size=s.persistent_cache_max_entries,
            default_ttl=default_ttl,
            strategy=CacheStrategy.PERSISTENT,
            storage=storage,
            clock=clock,
            debug=s.debug,
        )

        self.connectivity = ConnectivityMonitor(self.http_client, s.health_path)
        self.sync_queue = OfflineSyncQueue(
            storage,
            executor=transport_sync_executor(self.transport),
            is_online=lambda: self.connectivity.is_online,
            max_retries=s.sync_max_retries,
            debug=s.debug,
        )
        self.batcher = RequestBatcher(
            transport_batch_dispatcher(self.transport, s.batch_path, s.bulk_timeout),
            BatchConfig(max_batch_size=s.batch_max_size, window=s.batch_window_ms / 1000),
            debug=s.debug,
        )
        self.coordinator = RequestCoordinator(
            self.transport,
            cache=self.memory_cache,
            persistent_cache=self.persistent_cache,
            deduplicator=RequestDeduplicator(debug=s.debug),
            queue=PriorityRequestQueue(s.max_concurrent_requests, debug=s.debug),
            batcher=self.batcher,
            sync_queue=self.sync_queue,
            connectivity=self.connectivity,
        )
        self.scheduler = ResilienceScheduler(
            self.auth,
            self.sync_queue,
            self.connectivity,
            self.coordinator.caches,
            settings=s,
        )

        self.connectivity.went_online.subscribe(self._on_online)
        self.sync_queue.synced.subscribe(self._on_synced)

    @classmethod
    async def create(
        cls,
        settings: Settings | None = None,
        storage: KeyValueStore | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> "PosClient":
        """Open durable storage (unless given one), build and load the client."""
        settings = settings or global_settings
        database = None
        if storage is None:
            database = Database(settings.database_url, settings.database_echo)
            await database.init()
            storage = SqlKeyValueStore(database.session_factory)

        client = cls(storage, settings=settings, http_client=http_client, database=database)
        await client.load()
        return client

    async def load(self) -> None:
        """Reload durable state: persistent cache, pending writes, credential."""
        await self.persistent_cache.load()
        await self.sync_queue.load()
        if await self.auth.restore():
            logger.info("Session restored")

    def start(self) -> None:
        self.scheduler.start()

    async def _on_online(self) -> None:
        await self.auth.revalidate_if_pending()
        if self.sync_queue.pending_count:
            await self.sync_queue.drain()

    async def _on_synced(self, operation: SyncOperation, result: Any) -> None:
        await self.coordinator.invalidate_related(operation.entity)

    def get_health_status(self) -> dict[str, Any]:
        return {
            "online": self.connectivity.is_online,
            "session": self.auth.session_info(),
            "coordinator": self.coordinator.get_stats(),
            "refresh_count": self.refresher.refresh_count,
            "scheduler_running": self.scheduler.is_running(),
        }

    async def close(self) -> None:
        if self.scheduler.is_running():
            self.scheduler.stop()
        await self.coordinator.close()
        if self._owns_http_client:
            await self.transport.close()
        if self._database is not None:
            await self._database.close()
        logger.debug("PosClient closed")

    async def __aenter__(self) -> "PosClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
