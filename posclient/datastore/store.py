"""
Key/value storage used for durable client state.

Two implementations share one protocol:
- MemoryKeyValueStore: process-lifetime only
- SqlKeyValueStore: SQLAlchemy-backed, survives restarts

Values are JSON-serializable objects; both stores keep them as JSON text.
"""

import json
from typing import Any, Protocol

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from posclient.datastore.repositories import StorageEntryRepository
from posclient.services.errors import StorageError


class KeyValueStore(Protocol):
    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any) -> None: ...

    async def delete(self, key: str) -> None: ...


def _encode(key: str, value: Any) -> str:
    try:
        return json.dumps(value, ensure_ascii=False)
    except (TypeError, ValueError) as e:
        raise StorageError(f"Value for '{key}' is not serializable: {e}") from e


def _decode(key: str, raw: str | None) -> Any | None:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning(f"Discarding unreadable storage entry '{key}': {e}")
        return None


class MemoryKeyValueStore:
    """Volatile store backed by a dict."""

    def __init__(self):
        self._data: dict[str, str] = {}

    async def get(self, key: str) -> Any | None:
        return _decode(key, self._data.get(key))

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = _encode(key, value)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data.keys())


class SqlKeyValueStore:
    """
    Durable store on top of the storage_entries table.

    Usage:
        database = Database("sqlite+aiosqlite:///./posclient.db")
        await database.init()
        store = SqlKeyValueStore(database.session_factory)
        await store.set("sync_queue", [])
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get(self, key: str) -> Any | None:
        try:
            async with self._session_factory() as session:
                raw = await StorageEntryRepository(session).get(key)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to read '{key}': {e}") from e
        return _decode(key, raw)

    async def set(self, key: str, value: Any) -> None:
        encoded = _encode(key, value)
        try:
            async with self._session_factory() as session:
                await StorageEntryRepository(session).put(key, encoded)
                await session.commit()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to write '{key}': {e}") from e

    async def delete(self, key: str) -> None:
        try:
            async with self._session_factory() as session:
                await StorageEntryRepository(session).delete(key)
                await session.commit()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to delete '{key}': {e}") from e
