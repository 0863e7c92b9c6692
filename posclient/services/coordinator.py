"""
RequestCoordinator - single entry point for reads and writes.

Reads: cache -> deduplicator -> priority queue -> transport -> cache.
Writes: transport, or the offline sync queue when the device is offline,
the write fails for a network reason, or earlier writes to the same
record are still queued.
"""

import asyncio
import re
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Awaitable, Callable

from loguru import logger

from posclient.services.batcher import BatchRequest, RequestBatcher
from posclient.services.cache import (
    CacheStrategy,
    Matcher,
    TimedCache,
    generate_key,
)
from posclient.services.cache_policies import (
    data_type_for_key,
    get_policy,
    related_patterns,
)
from posclient.services.connectivity import ConnectivityMonitor
from posclient.services.deduplicator import RequestDeduplicator
from posclient.services.errors import ApiError
from posclient.services.priority_queue import Priority, PriorityRequestQueue
from posclient.services.sync_queue import (
    MutationKind,
    OfflineSyncQueue,
    mutation_route,
)
from posclient.services.transport import RetryingTransport


@dataclass
class Mutation:
    kind: MutationKind
    entity: str
    payload: Any = None
    entity_id: str | int | None = None


@dataclass
class MutationResult:
    queued: bool
    data: Any = None
    operation_id: str | None = None


@dataclass
class CoordinatorStats:
    requests: int = 0
    cache_hits: int = 0
    fetches: int = 0
    mutations: int = 0
    queued_mutations: int = 0
    prefetches: int = 0
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "requests": self.requests,
            "cache_hits": self.cache_hits,
            "fetches": self.fetches,
            "mutations": self.mutations,
            "queued_mutations": self.queued_mutations,
            "prefetches": self.prefetches,
            **self.extra,
        }


class RequestCoordinator:
    """
    Usage:
        coordinator = RequestCoordinator(transport, cache=TimedCache("memory"))

        products = await coordinator.get("/products", {"outlet": 42})
        await coordinator.mutate(Mutation("update", "products", {"price": 9}, 7))
    """

    def __init__(
        self,
        transport: RetryingTransport,
        cache: TimedCache,
        persistent_cache: TimedCache | None = None,
        deduplicator: RequestDeduplicator | None = None,
        queue: PriorityRequestQueue | None = None,
        batcher: RequestBatcher | None = None,
        sync_queue: OfflineSyncQueue | None = None,
        connectivity: ConnectivityMonitor | None = None,
    ):
        self._transport = transport
        self._cache = cache
        self._persistent_cache = persistent_cache
        self._dedup = deduplicator or RequestDeduplicator()
        self._queue = queue or PriorityRequestQueue()
        self._batcher = batcher
        self._sync_queue = sync_queue
        self._connectivity = connectivity
        self._background: set[asyncio.Task[Any]] = set()
        self._stats = CoordinatorStats()

    @property
    def caches(self) -> list[TimedCache]:
        caches = [self._cache]
        if self._persistent_cache is not None:
            caches.append(self._persistent_cache)
        return caches

    def _cache_for(self, key: str) -> TimedCache:
        policy = get_policy(data_type_for_key(key))
        if (
            policy.strategy == CacheStrategy.PERSISTENT
            and self._persistent_cache is not None
        ):
            return self._persistent_cache
        return self._cache

    def _is_online(self) -> bool:
        return self._connectivity is None or self._connectivity.is_online

    async def request(
        self,
        key: str,
        fetcher: Callable[[], Awaitable[Any]],
        priority: Priority = Priority.MEDIUM,
        ttl: timedelta | None = None,
        use_cache: bool = True,
        tags: list[str] | None = None,
    ) -> Any:
        """
        Coordinated read.

        Args:
            key: Logical identity of the read (see generate_key)
            fetcher: Performs the actual call on a miss
            priority: Scheduling tier
            ttl: Cache lifetime; defaults to the data type's policy
            use_cache: Skip the cache lookup and store when False
            tags: Labels stored with the entry for invalidate_tag

        Returns:
            Cached or freshly fetched data
        """
        self._stats.requests += 1
        cache = self._cache_for(key)

        if use_cache:
            cached = await cache.get(key)
            if cached is not None:
                self._stats.cache_hits += 1
                return cached

        async def run() -> Any:
            self._stats.fetches += 1
            data = await fetcher()
            if use_cache and data is not None:
                duration = (
                    ttl if ttl is not None else get_policy(data_type_for_key(key)).duration
                )
                await cache.set(key, data, duration, tags=tags)
            return data

        return await self._dedup.execute(
            key, lambda: self._queue.submit(key, run, priority)
        )

    async def get(
        self,
        path: str,
        params: dict[str, Any] | None = None,
        priority: Priority = Priority.MEDIUM,
        ttl: timedelta | None = None,
        timeout: float | None = None,
        use_cache: bool = True,
        tags: list[str] | None = None,
    ) -> Any:
        key = generate_key(path, params)
        return await self.request(
            key,
            lambda: self._transport.request("GET", path, params=params, timeout=timeout),
            priority=priority,
            ttl=ttl,
            use_cache=use_cache,
            tags=tags,
        )

    async def prefetch(
        self,
        key: str,
        fetcher: Callable[[], Awaitable[Any]],
        ttl: timedelta | None = None,
    ) -> bool:
        """Warm the cache at low priority. Failures are logged, not raised."""
        if await self._cache_for(key).has(key):
            return False
        self._stats.prefetches += 1
        try:
            await self.request(key, fetcher, priority=Priority.LOW, ttl=ttl)
        except ApiError as e:
            logger.debug(f"Prefetch of {key[:50]} failed: {e.message}")
            return False
        return True

    async def batch(self, request: BatchRequest) -> Any:
        """Send through the batcher, or directly when batching is disabled."""
        if self._batcher is None:
            return await self._transport.request(
                request.method,
                request.path,
                params=request.params,
                json_data=request.body,
            )
        return await self._batcher.add(request)

    async def mutate(self, mutation: Mutation) -> MutationResult:
        """
        Send a write, or queue it for later replay.

        Writes are queued when offline, when earlier writes to the same
        record are still queued (replay order is kept), or when the send
        fails for a network reason. Other failures propagate.
        """
        self._stats.mutations += 1
        method, path = mutation_route(mutation.kind, mutation.entity, mutation.entity_id)

        if self._sync_queue is not None:
            online = self._is_online()
            if not online or self._sync_queue.has_pending(
                mutation.entity, mutation.entity_id
            ):
                return await self._queue_mutation(mutation, drain=online)

        body = None if mutation.kind == "delete" else mutation.payload
        try:
            data = await self._transport.request(method, path, json_data=body)
        except ApiError as e:
            if e.is_network_related and self._sync_queue is not None:
                logger.warning(
                    f"{method} {path} failed ({e.code.value}), queued for sync"
                )
                return await self._queue_mutation(mutation, drain=False)
            raise

        await self.invalidate_related(mutation.entity)
        return MutationResult(queued=False, data=data)

    async def _queue_mutation(self, mutation: Mutation, drain: bool) -> MutationResult:
        operation = await self._sync_queue.enqueue(
            mutation.kind,
            mutation.entity,
            payload=mutation.payload,
            entity_id=mutation.entity_id,
        )
        self._stats.queued_mutations += 1
        if drain:
            self._spawn(self._sync_queue.drain())
        return MutationResult(queued=True, operation_id=operation.id)

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Background sync failed: {task.exception()}")

    async def invalidate_pattern(self, matcher: Matcher) -> int:
        removed = 0
        for cache in self.caches:
            removed += await cache.invalidate_pattern(matcher)
        return removed

    async def invalidate_tag(self, tag: str) -> int:
        removed = 0
        for cache in self.caches:
            removed += await cache.invalidate_tag(tag)
        return removed

    async def invalidate_related(self, entity: str) -> int:
        """Drop cached reads made stale by a write to entity."""
        removed = 0
        for pattern in related_patterns(entity):
            removed += await self.invalidate_pattern(re.escape(pattern))
        if removed:
            logger.debug(f"Invalidated {removed} cached entries after {entity} write")
        return removed

    def get_stats(self) -> dict[str, Any]:
        self._stats.extra = {
            "cache": {c.name: c.get_stats().to_dict() for c in self.caches},
            "deduplicator": self._dedup.get_stats().to_dict(),
            "queue": self._queue.get_queue_stats(),
        }
        if self._sync_queue is not None:
            self._stats.extra["sync"] = self._sync_queue.get_sync_stats()
        return self._stats.to_dict()

    async def close(self) -> None:
        if self._batcher is not None:
            self._batcher.clear()
        await self._dedup.close()
        await self._queue.cancel_all()
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
