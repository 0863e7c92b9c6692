"""
Service layer infrastructure - resilience patterns for backend calls.

Provides:
- RetryingTransport: credential attachment, error taxonomy, retry with backoff
- TimedCache: TTL + LRU cache over volatile or durable storage
- RequestDeduplicator: one network call per logical key in flight
- PriorityRequestQueue: concurrency-limited scheduling by tier
- RequestBatcher: coalesces requests within a short window
- OfflineSyncQueue: persisted writes replayed when back online
- RequestCoordinator: combines all of the above
"""

from posclient.services.errors import (
    ApiError,
    AuthError,
    ClientError,
    NetworkError,
    RateLimitError,
    RequestTimeoutError,
    ServerError,
    StorageError,
    ValidationError,
)
from posclient.services.cache import CacheEntry, CacheStrategy, TimedCache, generate_key
from posclient.services.deduplicator import RequestDeduplicator
from posclient.services.priority_queue import Priority, PriorityRequestQueue
from posclient.services.batcher import BatchRequest, RequestBatcher
from posclient.services.sync_queue import OfflineSyncQueue, SyncOperation
from posclient.services.connectivity import ConnectivityMonitor
from posclient.services.transport import RetryConfig, RetryingTransport
from posclient.services.coordinator import Mutation, MutationResult, RequestCoordinator

__all__ = [
    # Errors
    "ApiError",
    "AuthError",
    "ClientError",
    "NetworkError",
    "RateLimitError",
    "RequestTimeoutError",
    "ServerError",
    "StorageError",
    "ValidationError",
    # Cache
    "CacheEntry",
    "CacheStrategy",
    "TimedCache",
    "generate_key",
    # Coordination
    "RequestDeduplicator",
    "Priority",
    "PriorityRequestQueue",
    "BatchRequest",
    "RequestBatcher",
    "OfflineSyncQueue",
    "SyncOperation",
    "ConnectivityMonitor",
    # Transport
    "RetryConfig",
    "RetryingTransport",
    # Coordinator
    "Mutation",
    "MutationResult",
    "RequestCoordinator",
]
