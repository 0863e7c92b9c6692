import pytest

from posclient.datastore import Database, MemoryKeyValueStore, SqlKeyValueStore
from posclient.services.errors import StorageError


@pytest.fixture
async def database(tmp_path):
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'client.db'}", echo=False)
    await db.init()
    yield db
    await db.close()


class TestSqlKeyValueStore:
    async def test_set_get_delete(self, database):
        store = SqlKeyValueStore(database.session_factory)

        await store.set("user", {"id": 1, "role": "cashier"})
        assert await store.get("user") == {"id": 1, "role": "cashier"}

        await store.set("user", {"id": 1, "role": "manager"})
        assert await store.get("user") == {"id": 1, "role": "manager"}

        await store.delete("user")
        assert await store.get("user") is None

    async def test_missing_key(self, database):
        store = SqlKeyValueStore(database.session_factory)
        assert await store.get("nothing") is None
        await store.delete("nothing")

    async def test_values_survive_reopen(self, tmp_path):
        url = f"sqlite+aiosqlite:///{tmp_path / 'durable.db'}"
        first = Database(url)
        await first.init()
        await SqlKeyValueStore(first.session_factory).set(
            "sync_queue", [{"id": "a", "kind": "create"}]
        )
        await first.close()

        second = Database(url)
        await second.init()
        try:
            value = await SqlKeyValueStore(second.session_factory).get("sync_queue")
        finally:
            await second.close()

        assert value == [{"id": "a", "kind": "create"}]

    async def test_unserializable_value(self, database):
        store = SqlKeyValueStore(database.session_factory)
        with pytest.raises(StorageError):
            await store.set("bad", object())


class TestDatabase:
    def test_session_factory_requires_init(self):
        with pytest.raises(RuntimeError):
            Database("sqlite+aiosqlite:///:memory:").session_factory


class TestMemoryKeyValueStore:
    async def test_values_are_copied(self):
        store = MemoryKeyValueStore()
        value = {"items": [1, 2]}
        await store.set("k", value)
        value["items"].append(3)

        assert await store.get("k") == {"items": [1, 2]}
        assert store.keys() == ["k"]

    async def test_unserializable_value(self):
        with pytest.raises(StorageError):
            await MemoryKeyValueStore().set("bad", {1, 2})
