"""
Database engine management.
Async SQLAlchemy engine over SQLite (aiosqlite driver).
"""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from posclient.datastore.models import Base
from posclient.settings import global_settings


class Database:
    """Owns the async engine and the session factory."""

    def __init__(self, database_url: str | None = None, echo: bool | None = None):
        self.database_url = database_url or global_settings.database_url
        self.echo = global_settings.database_echo if echo is None else echo
        self.engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    async def init(self) -> None:
        """Create the engine, the session factory and all tables."""
        self.engine = create_async_engine(
            self.database_url,
            echo=self.echo,
            future=True,
        )

        self._session_factory = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            raise RuntimeError("Database not initialized. Call init() first.")
        return self._session_factory

    async def close(self) -> None:
        if self.engine:
            await self.engine.dispose()
            self.engine = None
            self._session_factory = None
