"""
Cache durations per data type and cache invalidation after writes.

Realtime data (sales, stock levels, open shifts) lives for seconds,
reference data (outlets, categories, settings) for tens of minutes.
"""

from dataclasses import dataclass
from datetime import timedelta

from posclient.services.cache import CacheStrategy


@dataclass(frozen=True)
class CachePolicy:
    duration: timedelta
    strategy: CacheStrategy = CacheStrategy.MEMORY


DEFAULT_DURATION = timedelta(minutes=5)

CACHE_POLICIES: dict[str, CachePolicy] = {
    # Realtime
    "sales": CachePolicy(timedelta(seconds=30)),
    "inventory": CachePolicy(timedelta(seconds=60)),
    "shifts": CachePolicy(timedelta(seconds=30)),
    # Frequent
    "products": CachePolicy(timedelta(minutes=2)),
    "users": CachePolicy(timedelta(minutes=5)),
    "reports": CachePolicy(timedelta(minutes=5)),
    # Stable
    "outlets": CachePolicy(timedelta(minutes=10), CacheStrategy.PERSISTENT),
    "categories": CachePolicy(timedelta(minutes=30), CacheStrategy.PERSISTENT),
    "settings": CachePolicy(timedelta(hours=1), CacheStrategy.PERSISTENT),
}

# Entity written -> key patterns whose cached reads become stale.
INVALIDATION_RULES: dict[str, list[str]] = {
    "product": ["products", "inventory", "dashboard"],
    "sale": ["sales", "reports", "dashboard", "daily-summary"],
    "inventory": ["inventory", "products", "dashboard"],
    "user": ["users", "staff-performance"],
}


def data_type_for_key(key: str) -> str:
    """First path segment of a logical key: '/products?outlet=1' -> 'products'."""
    path = key.split("?", 1)[0].strip("/")
    return path.split("/", 1)[0]


def get_policy(data_type: str) -> CachePolicy:
    return CACHE_POLICIES.get(data_type, CachePolicy(DEFAULT_DURATION))


def get_duration(data_type: str) -> timedelta:
    return get_policy(data_type).duration


def related_patterns(entity: str) -> list[str]:
    """
    Patterns to invalidate after a write to ``entity``.

    Unknown entities fall back to their own plural collection name.
    """
    entity = entity.strip("/").lower()
    if entity in INVALIDATION_RULES:
        return list(INVALIDATION_RULES[entity])
    singular = entity[:-1] if entity.endswith("s") else entity
    if singular in INVALIDATION_RULES:
        return list(INVALIDATION_RULES[singular])
    return [entity if entity.endswith("s") else f"{entity}s"]
