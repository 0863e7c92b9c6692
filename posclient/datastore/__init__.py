"""
Durable key/value storage for credentials, cache tables and the sync queue.
"""

from posclient.datastore.engine import Database
from posclient.datastore.store import (
    KeyValueStore,
    MemoryKeyValueStore,
    SqlKeyValueStore,
)

__all__ = [
    "Database",
    "KeyValueStore",
    "MemoryKeyValueStore",
    "SqlKeyValueStore",
]
