"""
TimedCache - Async-compatible cache with per-entry TTL and LRU eviction.

Features:
- Per-entry duration (TTL); expired entries are evicted on read
- Capacity bound with strict least-recently-used eviction
- Volatile (memory) or durable (persistent) backing, chosen per instance
- Pattern invalidation for classes of keys
"""

import asyncio
import hashlib
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Generic, TypeVar, Union

from loguru import logger

if TYPE_CHECKING:
    from posclient.datastore.store import KeyValueStore

T = TypeVar("T")

Matcher = Union[str, re.Pattern[str], Callable[[str], bool]]


class CacheStrategy(str, Enum):
    """Backing strategy of a cache instance."""

    MEMORY = "memory"
    PERSISTENT = "persistent"


@dataclass
class CacheEntry(Generic[T]):
    """A single cache entry with metadata."""

    data: T
    created_at: datetime
    duration: timedelta
    access_count: int = 0
    last_accessed: datetime | None = None
    tags: list[str] = field(default_factory=list)

    def is_expired(self, now: datetime) -> bool:
        """Visible only while now - created_at < duration."""
        return now - self.created_at >= self.duration

    def to_dict(self) -> dict[str, Any]:
        return {
            "data": self.data,
            "created_at": self.created_at.isoformat(),
            "duration": self.duration.total_seconds(),
            "access_count": self.access_count,
            "tags": self.tags,
            "last_accessed": (
                self.last_accessed.isoformat() if self.last_accessed else None
            ),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "CacheEntry[Any]":
        created_at = datetime.fromisoformat(raw["created_at"])
        last_accessed = raw.get("last_accessed")
        return cls(
            data=raw["data"],
            created_at=created_at,
            duration=timedelta(seconds=float(raw["duration"])),
            access_count=int(raw.get("access_count", 0)),
            last_accessed=(
                datetime.fromisoformat(last_accessed) if last_accessed else created_at
            ),
            tags=list(raw.get("tags") or []),
        )


@dataclass
class CacheStats:
    """Cache statistics."""

    hits: int = 0
    misses: int = 0
    evictions: int = 0
    expirations: int = 0
    size: int = 0
    max_size: int = 0

    @property
    def hit_rate(self) -> float:
        """Calculate cache hit rate."""
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return self.hits / total

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "expirations": self.expirations,
            "size": self.size,
            "max_size": self.max_size,
            "hit_rate": f"{self.hit_rate:.2%}",
        }


def generate_key(path: str, params: dict[str, Any] | None = None) -> str:
    """Build a logical request key from a path and its query params."""
    if params:
        sorted_params = "&".join(
            f"{k}={v}" for k, v in sorted(params.items()) if v is not None
        )
        full_key = f"{path}?{sorted_params}" if sorted_params else path
    else:
        full_key = path

    # Hash long keys
    if len(full_key) > 200:
        hash_val = hashlib.md5(full_key.encode()).hexdigest()[:16]
        return f"{path.split('?')[0][:64]}#{hash_val}"

    return full_key


def _compile_matcher(matcher: Matcher) -> Callable[[str], bool]:
    if callable(matcher) and not isinstance(matcher, (str, re.Pattern)):
        return matcher
    regex = re.compile(matcher) if isinstance(matcher, str) else matcher
    return lambda key: regex.search(key) is not None


class TimedCache:
    """
    Cache with TTL and LRU eviction over a volatile or durable backing.

    Usage:
        cache = TimedCache(name="products", max_size=200)

        data = await cache.get("/products?outlet=42")
        if data is None:
            data = await fetch_products()
            await cache.set("/products?outlet=42", data, timedelta(minutes=2))

    A persistent cache must be loaded once before use:
        cache = TimedCache(
            name="outlets",
            strategy=CacheStrategy.PERSISTENT,
            storage=store,
        )
        await cache.load()
    """

    def __init__(
        self,
        name: str = "default",
        max_size: int = 100,
        default_ttl: timedelta = timedelta(minutes=5),
        strategy: CacheStrategy = CacheStrategy.MEMORY,
        storage: "KeyValueStore | None" = None,
        clock: Callable[[], datetime] = datetime.now,
        debug: bool = False,
    ):
        if strategy == CacheStrategy.PERSISTENT and storage is None:
            raise ValueError("A persistent cache requires a storage backend")

        self.name = name
        self.strategy = strategy
        self._memory: dict[str, CacheEntry[Any]] = {}
        self._max_size = max_size
        self._default_ttl = default_ttl
        self._storage = storage
        self._clock = clock
        self._debug = debug
        self._persist_lock = asyncio.Lock()
        self._stats = CacheStats()

    @property
    def storage_key(self) -> str:
        return f"cache:{self.name}"

    async def load(self) -> int:
        """Reload entries from durable storage. Returns number of live entries."""
        if self.strategy != CacheStrategy.PERSISTENT or self._storage is None:
            return 0

        stored = await self._storage.get(self.storage_key)
        if not stored:
            return 0

        now = self._clock()
        loaded: dict[str, CacheEntry[Any]] = {}
        for key, raw in stored.items():
            try:
                entry = CacheEntry.from_dict(raw)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"[TimedCache:{self.name}] Skipping bad entry {key}: {e}")
                continue
            if not entry.is_expired(now):
                loaded[key] = entry

        self._memory = loaded
        self._log(f"LOAD: {len(loaded)} entries")
        if len(loaded) != len(stored):
            await self._persist()
        return len(loaded)

    async def get(self, key: str) -> Any | None:
        """Return the cached value, or None on miss or expiry."""
        entry = self._memory.get(key)
        if entry is None:
            self._stats.misses += 1
            self._log(f"MISS: {key[:50]}")
            return None

        now = self._clock()
        if entry.is_expired(now):
            del self._memory[key]
            self._stats.misses += 1
            self._stats.expirations += 1
            self._log(f"EXPIRED: {key[:50]}")
            await self._persist()
            return None

        entry.access_count += 1
        entry.last_accessed = now
        self._stats.hits += 1
        self._log(f"HIT: {key[:50]}")
        return entry.data

    async def set(
        self,
        key: str,
        data: Any,
        duration: timedelta | None = None,
        tags: list[str] | None = None,
    ) -> None:
        """Insert or refresh an entry."""
        if duration is None:
            duration = self._default_ttl
        now = self._clock()

        if len(self._memory) >= self._max_size and key not in self._memory:
            self._evict_lru()

        self._memory[key] = CacheEntry(
            data=data,
            created_at=now,
            duration=duration,
            access_count=0,
            last_accessed=now,
            tags=list(tags or []),
        )
        self._log(f"SET: {key[:50]} (TTL: {duration.total_seconds()}s)")
        await self._persist()

    async def has(self, key: str) -> bool:
        """Check for a live entry without touching its access metadata."""
        entry = self._memory.get(key)
        if entry is None:
            return False
        if entry.is_expired(self._clock()):
            del self._memory[key]
            self._stats.expirations += 1
            await self._persist()
            return False
        return True

    async def delete(self, key: str) -> bool:
        """Delete a specific key from cache."""
        if key not in self._memory:
            return False
        del self._memory[key]
        self._log(f"DELETE: {key[:50]}")
        await self._persist()
        return True

    async def invalidate_pattern(self, matcher: Matcher) -> int:
        """
        Remove every key matching the matcher in one pass.

        Args:
            matcher: regex string (search semantics), compiled pattern,
                or predicate over the key

        Returns:
            Number of entries invalidated
        """
        matches = _compile_matcher(matcher)
        keys_to_delete = [k for k in self._memory if matches(k)]
        for key in keys_to_delete:
            del self._memory[key]

        if keys_to_delete:
            self._log(f"INVALIDATE: {len(keys_to_delete)} entries matching {matcher!r}")
            await self._persist()

        return len(keys_to_delete)

    async def invalidate_tag(self, tag: str) -> int:
        """Remove every entry stored with the given tag."""
        tagged = [k for k, entry in self._memory.items() if tag in entry.tags]
        for key in tagged:
            del self._memory[key]

        if tagged:
            self._log(f"INVALIDATE_TAG: {len(tagged)} entries tagged {tag!r}")
            await self._persist()

        return len(tagged)

    async def clear(self) -> None:
        """Clear all cache entries."""
        count = len(self._memory)
        self._memory.clear()
        self._log(f"CLEAR: {count} entries removed")
        if self.strategy == CacheStrategy.PERSISTENT and self._storage is not None:
            async with self._persist_lock:
                await self._storage.delete(self.storage_key)

    async def cleanup_expired(self) -> int:
        """Remove all expired entries. Returns count of removed entries."""
        now = self._clock()
        expired_keys = [k for k, v in self._memory.items() if v.is_expired(now)]
        for key in expired_keys:
            del self._memory[key]

        if expired_keys:
            self._stats.expirations += len(expired_keys)
            self._log(f"CLEANUP: {len(expired_keys)} expired entries removed")
            await self._persist()

        return len(expired_keys)

    def keys(self) -> list[str]:
        return list(self._memory.keys())

    def get_entry(self, key: str) -> CacheEntry[Any] | None:
        """Raw entry access for diagnostics; no TTL check."""
        return self._memory.get(key)

    def __len__(self) -> int:
        return len(self._memory)

    def _evict_lru(self) -> None:
        """Evict the entry with the oldest last access."""
        if not self._memory:
            return

        lru_key = min(
            self._memory.keys(),
            key=lambda k: self._memory[k].last_accessed or self._memory[k].created_at,
        )
        del self._memory[lru_key]
        self._stats.evictions += 1
        self._log(f"EVICT: {lru_key[:50]}")

    async def _persist(self) -> None:
        """Write the current table; the snapshot is taken under the lock."""
        if self.strategy != CacheStrategy.PERSISTENT or self._storage is None:
            return
        async with self._persist_lock:
            snapshot = {k: v.to_dict() for k, v in self._memory.items()}
            await self._storage.set(self.storage_key, snapshot)

    def get_stats(self) -> CacheStats:
        """Get cache statistics."""
        self._stats.size = len(self._memory)
        self._stats.max_size = self._max_size
        return self._stats

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[TimedCache:{self.name}] {message}")
