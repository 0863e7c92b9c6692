"""
Repository layer - data access for storage entries.
"""

from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from posclient.datastore.models import StorageEntryDB


class StorageEntryRepository:
    """Key/value entries Repository"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, key: str) -> str | None:
        result = await self.session.execute(
            select(StorageEntryDB.value).where(StorageEntryDB.key == key)
        )
        return result.scalar_one_or_none()

    async def put(self, key: str, value: str) -> None:
        """Insert or update the entry for key."""
        existing = await self.session.execute(
            select(StorageEntryDB).where(StorageEntryDB.key == key)
        )
        entry = existing.scalar_one_or_none()

        if entry:
            entry.value = value
            entry.updated_at = datetime.now()
        else:
            self.session.add(
                StorageEntryDB(key=key, value=value, updated_at=datetime.now())
            )

    async def delete(self, key: str) -> None:
        await self.session.execute(
            delete(StorageEntryDB).where(StorageEntryDB.key == key)
        )

    async def keys(self) -> list[str]:
        result = await self.session.execute(select(StorageEntryDB.key))
        return list(result.scalars().all())
