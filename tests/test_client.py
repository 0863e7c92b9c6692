import httpx
import pytest

from conftest import BASE_URL, make_http_client, path_of
from posclient.client import PosClient
from posclient.datastore import MemoryKeyValueStore
from posclient.services.coordinator import Mutation
from posclient.settings import Settings

USER = {"id": 1, "name": "Mo", "role": "manager"}


class Backend:
    def __init__(self):
        self.calls: list[tuple[str, str]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = path_of(request)
        self.calls.append((request.method, path))
        if path == "/auth/login":
            return httpx.Response(200, json={"access_token": "tok", "user": USER})
        if path == "/auth/logout":
            return httpx.Response(204)
        if request.method == "GET":
            return httpx.Response(200, json={"path": path})
        return httpx.Response(200, json={"ok": True})


@pytest.fixture
def backend():
    return Backend()


@pytest.fixture
def settings():
    return Settings(api_base_url=BASE_URL, max_retries=0, retry_base_delay=0)


@pytest.fixture
async def client(backend, settings, clock):
    pos = PosClient(
        MemoryKeyValueStore(),
        settings=settings,
        http_client=make_http_client(backend),
        clock=clock,
    )
    await pos.load()
    yield pos
    await pos.close()


class TestPosClient:
    async def test_offline_writes_replay_when_back_online(self, client, backend):
        await client.coordinator.get("/products")
        await client.coordinator.get("/users")
        await client.connectivity.set_online(False)

        result = await client.coordinator.mutate(
            Mutation("update", "products", {"price": 3}, entity_id=5)
        )
        assert result.queued is True
        assert ("PUT", "/products/5") not in backend.calls

        await client.connectivity.set_online(True)

        assert backend.calls[-1] == ("PUT", "/products/5")
        assert client.sync_queue.pending_count == 0
        assert client.memory_cache.keys() == ["/users"]

    async def test_pending_writes_survive_restart(self, backend, settings, clock):
        storage = MemoryKeyValueStore()
        first = PosClient(
            storage, settings=settings, http_client=make_http_client(backend), clock=clock
        )
        await first.connectivity.set_online(False)
        await first.coordinator.mutate(Mutation("create", "sales", {"total": 10}))
        await first.close()

        second = PosClient(
            storage, settings=settings, http_client=make_http_client(backend), clock=clock
        )
        await second.load()
        try:
            assert second.sync_queue.pending_count == 1
            assert second.sync_queue.operations()[0].entity == "sales"
        finally:
            await second.close()

    async def test_login_and_health_status(self, client):
        await client.auth.login("mo@shop.test", "pw")

        health = client.get_health_status()
        assert set(health) == {
            "online",
            "session",
            "coordinator",
            "refresh_count",
            "scheduler_running",
        }
        assert health["online"] is True
        assert health["session"]["authenticated"] is True
        assert health["session"]["status"] == "healthy"
        assert health["session"]["role"] == "manager"
        assert health["scheduler_running"] is False

        await client.auth.logout()
        assert client.get_health_status()["session"]["authenticated"] is False

    async def test_start_and_close(self, backend, settings, clock):
        async with PosClient(
            MemoryKeyValueStore(),
            settings=settings,
            http_client=make_http_client(backend),
            clock=clock,
        ) as pos:
            pos.start()
            assert pos.get_health_status()["scheduler_running"] is True
        assert pos.scheduler.is_running() is False

    async def test_create_with_database(self, tmp_path, backend):
        settings = Settings(
            api_base_url=BASE_URL,
            database_url=f"sqlite+aiosqlite:///{tmp_path / 'pos.db'}",
        )
        pos = await PosClient.create(settings, http_client=make_http_client(backend))
        try:
            await pos.connectivity.set_online(False)
            await pos.coordinator.mutate(Mutation("delete", "products", entity_id=2))
            assert await pos.storage.get("sync_queue") is not None
        finally:
            await pos.close()
