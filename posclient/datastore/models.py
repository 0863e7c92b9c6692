"""
Database models for durable client state.
SQLAlchemy 2.0 declarative mapping.
"""

from datetime import datetime

from sqlalchemy import DateTime, String, Text
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all models."""

    pass


class StorageEntryDB(Base):
    """One origin-scoped key/value pair (credential, cache table, sync queue)."""

    __tablename__ = "storage_entries"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.now, onupdate=datetime.now, nullable=False
    )

    def __repr__(self) -> str:
        return f"<StorageEntry(key={self.key}, size={len(self.value)})>"
