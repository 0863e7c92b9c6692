import asyncio
from datetime import timedelta

import httpx
import pytest

from conftest import path_of
from posclient.services.cache import CacheStrategy, TimedCache
from posclient.services.connectivity import ConnectivityMonitor
from posclient.services.coordinator import Mutation, RequestCoordinator
from posclient.services.errors import ValidationError
from posclient.services.priority_queue import Priority
from posclient.services.sync_queue import OfflineSyncQueue, transport_sync_executor


class Backend:
    """Answers reads with their path and records every call."""

    def __init__(self):
        self.calls: list[tuple[str, str]] = []
        self.gate: asyncio.Event | None = None
        self.fail_with: Exception | httpx.Response | None = None

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append((request.method, path_of(request)))
        if self.gate is not None:
            await self.gate.wait()
        if isinstance(self.fail_with, Exception):
            raise self.fail_with
        if isinstance(self.fail_with, httpx.Response):
            return httpx.Response(self.fail_with.status_code, json={"message": "rejected"})
        return httpx.Response(200, json={"path": path_of(request), "params": dict(request.url.params)})


@pytest.fixture
def backend():
    return Backend()


@pytest.fixture
def parts(build_transport, backend, store, clock):
    transport, _ = build_transport(backend, max_retries=0)
    memory = TimedCache("memory", clock=clock)
    persistent = TimedCache(
        "persistent", strategy=CacheStrategy.PERSISTENT, storage=store, clock=clock
    )
    connectivity = ConnectivityMonitor()
    sync_queue = OfflineSyncQueue(
        store,
        executor=transport_sync_executor(transport),
        is_online=lambda: connectivity.is_online,
    )
    coordinator = RequestCoordinator(
        transport,
        cache=memory,
        persistent_cache=persistent,
        sync_queue=sync_queue,
        connectivity=connectivity,
    )
    return coordinator, memory, persistent, sync_queue, connectivity


class TestReads:
    async def test_duplicate_product_list_requests(self, parts, backend):
        """Two screens ask for the same product list at once."""
        coordinator, memory, *_ = parts
        backend.gate = asyncio.Event()

        first = asyncio.create_task(coordinator.get("/products", {"outlet": 42}))
        second = asyncio.create_task(coordinator.get("/products", {"outlet": 42}))
        await asyncio.sleep(0.01)
        backend.gate.set()
        a, b = await asyncio.gather(first, second)

        assert a == b == {"path": "/products", "params": {"outlet": "42"}}
        assert backend.calls == [("GET", "/products")]
        assert memory.keys() == ["/products?outlet=42"]

        backend.gate = None
        assert await coordinator.get("/products", {"outlet": 42}) == a
        assert len(backend.calls) == 1

    async def test_ttl_follows_data_type_policy(self, parts):
        coordinator, memory, *_ = parts

        await coordinator.get("/sales/today")
        await coordinator.get("/products")

        assert memory.get_entry("/sales/today").duration == timedelta(seconds=30)
        assert memory.get_entry("/products").duration == timedelta(minutes=2)

    async def test_explicit_ttl_wins(self, parts):
        coordinator, memory, *_ = parts
        await coordinator.get("/products", ttl=timedelta(seconds=5))
        assert memory.get_entry("/products").duration == timedelta(seconds=5)

    async def test_zero_ttl_is_not_replaced_by_policy(self, parts, backend):
        coordinator, memory, *_ = parts

        await coordinator.get("/inventory", ttl=timedelta(0))
        await coordinator.get("/inventory", ttl=timedelta(0))

        assert memory.get_entry("/inventory").duration == timedelta(0)
        assert len(backend.calls) == 2

    async def test_tagged_reads_invalidate_together(self, parts):
        coordinator, memory, persistent, *_ = parts
        await coordinator.get("/products", {"outlet": 1}, tags=["outlet:1"])
        await coordinator.get("/outlets/1", tags=["outlet:1"])
        await coordinator.get("/products", {"outlet": 2}, tags=["outlet:2"])

        assert await coordinator.invalidate_tag("outlet:1") == 2
        assert memory.keys() == ["/products?outlet=2"]
        assert persistent.keys() == []

    async def test_stable_data_goes_to_persistent_cache(self, parts, store):
        coordinator, memory, persistent, *_ = parts

        await coordinator.get("/settings")

        assert persistent.keys() == ["/settings"]
        assert memory.keys() == []
        assert "/settings" in (await store.get("cache:persistent"))

    async def test_use_cache_false_always_fetches(self, parts, backend):
        coordinator, memory, *_ = parts

        await coordinator.get("/inventory", use_cache=False)
        await coordinator.get("/inventory", use_cache=False)

        assert len(backend.calls) == 2
        assert memory.keys() == []

    async def test_custom_fetcher(self, parts):
        coordinator, memory, *_ = parts

        async def fetch():
            return {"total": 99}

        result = await coordinator.request("/reports/daily-summary", fetch, Priority.HIGH)
        assert result == {"total": 99}
        assert await memory.get("/reports/daily-summary") == {"total": 99}

    async def test_prefetch(self, parts, backend):
        coordinator, memory, *_ = parts

        async def fetch():
            return ["food", "drinks"]

        assert await coordinator.prefetch("/menu", fetch) is True
        assert await coordinator.prefetch("/menu", fetch) is False

        async def broken():
            raise ValidationError("nope")

        assert await coordinator.prefetch("/broken", broken) is False


class TestInvalidation:
    async def test_pattern_invalidation(self, parts):
        coordinator, memory, *_ = parts
        await coordinator.get("/products", {"outlet": 1})
        await coordinator.get("/products/7")
        await coordinator.get("/sales/today")

        removed = await coordinator.invalidate_pattern(r"^/products")

        assert removed == 2
        assert memory.keys() == ["/sales/today"]

    async def test_successful_write_invalidates_related_reads(self, parts, backend):
        coordinator, memory, *_ = parts
        for path in ("/products", "/dashboard/summary", "/users"):
            await coordinator.get(path)

        result = await coordinator.mutate(
            Mutation("update", "products", {"price": 12}, entity_id=7)
        )

        assert result.queued is False
        assert backend.calls[-1] == ("PUT", "/products/7")
        assert memory.keys() == ["/users"]


class TestWrites:
    async def test_offline_write_is_queued(self, parts, backend):
        coordinator, _, _, sync_queue, connectivity = parts
        await connectivity.set_online(False)

        result = await coordinator.mutate(Mutation("create", "sales", {"total": 4}))

        assert result.queued is True
        assert result.operation_id == sync_queue.operations()[0].id
        assert backend.calls == []

    async def test_network_failure_queues_write(self, parts, backend):
        coordinator, _, _, sync_queue, _ = parts
        backend.fail_with = httpx.ConnectError("offline")

        result = await coordinator.mutate(Mutation("delete", "products", entity_id=3))

        assert result.queued is True
        assert sync_queue.has_pending("products", 3)

    async def test_rejected_write_propagates(self, parts, backend):
        coordinator, _, _, sync_queue, _ = parts
        backend.fail_with = httpx.Response(422)

        with pytest.raises(ValidationError):
            await coordinator.mutate(Mutation("create", "products", {"name": ""}))
        assert sync_queue.pending_count == 0

    async def test_write_behind_queued_write_keeps_order(self, parts, backend):
        coordinator, _, _, sync_queue, connectivity = parts
        await connectivity.set_online(False)
        await coordinator.mutate(Mutation("update", "products", {"price": 1}, entity_id=7))
        await connectivity.set_online(True)

        result = await coordinator.mutate(
            Mutation("update", "products", {"price": 2}, entity_id=7)
        )
        assert result.queued is True

        await sync_queue.drain()
        await asyncio.sleep(0)

        assert backend.calls == [("PUT", "/products/7"), ("PUT", "/products/7")]
        assert sync_queue.pending_count == 0

    async def test_write_during_running_drain_is_sent_by_that_drain(self, parts, backend):
        coordinator, _, _, sync_queue, connectivity = parts
        await connectivity.set_online(False)
        await coordinator.mutate(Mutation("update", "products", {"price": 1}, entity_id=7))
        await connectivity.set_online(True)

        backend.gate = asyncio.Event()
        running = asyncio.create_task(sync_queue.drain())
        await asyncio.sleep(0.01)
        result = await coordinator.mutate(
            Mutation("update", "products", {"price": 2}, entity_id=7)
        )
        await asyncio.sleep(0)
        backend.gate.set()

        assert result.queued is True
        assert await running == 2
        assert backend.calls == [("PUT", "/products/7"), ("PUT", "/products/7")]
        assert sync_queue.pending_count == 0

    async def test_update_requires_entity_id(self, parts):
        coordinator, *_ = parts
        with pytest.raises(ValueError):
            await coordinator.mutate(Mutation("update", "products", {"price": 1}))


class TestStats:
    async def test_stats_aggregate_components(self, parts):
        coordinator, *_ = parts
        await coordinator.get("/products")
        await coordinator.get("/products")

        stats = coordinator.get_stats()
        assert stats["requests"] == 2
        assert stats["cache_hits"] == 1
        assert stats["fetches"] == 1
        assert set(stats["cache"]) == {"memory", "persistent"}
        assert "deduplicator" in stats
        assert "queue" in stats
        assert stats["sync"]["pending"] == 0
