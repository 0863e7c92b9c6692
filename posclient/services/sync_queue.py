"""
OfflineSyncQueue - durable queue of writes that could not reach the backend.

Operations are appended when the device is offline or a write fails for a
network reason, persisted under ``sync_queue`` after every change, and
replayed in FIFO order once connectivity returns.

Replay rules:
- success removes the operation and emits ``synced``
- failure increments retry_count while it is below max_retries
- a failure at max_retries drops the operation and emits ``abandoned``
- a failed operation holds back later operations with the same logical
  key (entity + entity id) until the next pass
"""

import asyncio
import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Literal

import pydantic
from loguru import logger
from pydantic import BaseModel, Field

from posclient.events import EventHook
from posclient.services.errors import ApiError, classify_exception

if TYPE_CHECKING:
    from posclient.datastore.store import KeyValueStore
    from posclient.services.transport import RetryingTransport

SYNC_QUEUE_KEY = "sync_queue"

MutationKind = Literal["create", "update", "delete"]


class SyncOperation(BaseModel):
    """A pending write."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    kind: MutationKind
    entity: str
    entity_id: str | int | None = None
    payload: Any = None
    enqueued_at: datetime = Field(default_factory=datetime.now)
    retry_count: int = 0
    max_retries: int = 3

    @property
    def logical_key(self) -> str:
        return logical_key(self.entity, self.entity_id)


def logical_key(entity: str, entity_id: str | int | None = None) -> str:
    entity = entity.strip("/")
    return entity if entity_id is None else f"{entity}/{entity_id}"


def mutation_route(
    kind: MutationKind, entity: str, entity_id: str | int | None = None
) -> tuple[str, str]:
    """HTTP method and path for a write: POST /e, PUT /e/id, DELETE /e/id."""
    path = f"/{entity.strip('/')}"
    if kind == "create":
        return "POST", path
    if entity_id is None:
        raise ValueError(f"A {kind} of {entity} requires an entity id")
    method = "PUT" if kind == "update" else "DELETE"
    return method, f"{path}/{entity_id}"


SyncExecutor = Callable[[SyncOperation], Awaitable[Any]]


def transport_sync_executor(transport: "RetryingTransport") -> SyncExecutor:
    """Replay through the transport without its own retry loop."""

    async def execute(operation: SyncOperation) -> Any:
        method, path = mutation_route(
            operation.kind, operation.entity, operation.entity_id
        )
        body = None if operation.kind == "delete" else operation.payload
        return await transport.request(method, path, json_data=body, retry=False)

    return execute


class OfflineSyncQueue:
    """
    Persisted FIFO of pending writes.

    Usage:
        queue = OfflineSyncQueue(storage=store, executor=executor)
        await queue.load()
        await queue.enqueue("update", "products", {"price": 12}, entity_id=7)
        await queue.drain()
    """

    def __init__(
        self,
        storage: "KeyValueStore",
        executor: SyncExecutor | None = None,
        is_online: Callable[[], bool] | None = None,
        max_retries: int = 3,
        debug: bool = False,
    ):
        self._storage = storage
        self._executor = executor
        self._is_online = is_online or (lambda: True)
        self.max_retries = max_retries
        self._operations: list[SyncOperation] = []
        self._drain_task: asyncio.Task[int] | None = None
        self._rerun_requested = False
        self._persist_lock = asyncio.Lock()
        self._debug = debug

        self.synced = EventHook("synced")
        self.abandoned = EventHook("abandoned")

        self.synced_count = 0
        self.abandoned_count = 0
        self.failed_attempts = 0
        self.last_drain_at: datetime | None = None

    def set_executor(self, executor: SyncExecutor) -> None:
        self._executor = executor

    @property
    def pending_count(self) -> int:
        return len(self._operations)

    @property
    def is_draining(self) -> bool:
        return self._drain_task is not None

    def operations(self) -> list[SyncOperation]:
        return list(self._operations)

    def has_pending(self, entity: str, entity_id: str | int | None = None) -> bool:
        key = logical_key(entity, entity_id)
        return any(op.logical_key == key for op in self._operations)

    async def load(self) -> int:
        """Restore persisted operations. Returns how many were loaded."""
        stored = await self._storage.get(SYNC_QUEUE_KEY)
        if not stored:
            return 0

        operations: list[SyncOperation] = []
        for raw in stored:
            try:
                operations.append(SyncOperation.model_validate(raw))
            except pydantic.ValidationError as e:
                logger.warning(f"Skipping unreadable sync operation: {e}")

        self._operations = operations
        if operations:
            logger.info(f"Loaded {len(operations)} pending sync operations")
        return len(operations)

    async def enqueue(
        self,
        kind: MutationKind,
        entity: str,
        payload: Any = None,
        entity_id: str | int | None = None,
    ) -> SyncOperation:
        operation = SyncOperation(
            kind=kind,
            entity=entity,
            entity_id=entity_id,
            payload=payload,
            max_retries=self.max_retries,
        )
        self._operations.append(operation)
        logger.info(
            f"Queued {kind} {operation.logical_key} for sync "
            f"({len(self._operations)} pending)"
        )
        await self._persist()
        return operation

    async def drain(self) -> int:
        """
        Replay pending operations, joining a drain already in progress.

        Returns:
            Number of operations synced by the drain
        """
        task = self._drain_task
        if task is None:
            task = asyncio.create_task(self._run_drain())
            self._drain_task = task
        else:
            # The running pass works on a snapshot; writes queued since then
            # get another pass before the drain settles.
            self._rerun_requested = True
        return await asyncio.shield(task)

    async def _run_drain(self) -> int:
        attempted: set[str] = set()
        synced = 0
        try:
            while True:
                self._rerun_requested = False
                synced += await self._drain_once(attempted)
                if not self._rerun_requested or all(
                    op.id in attempted for op in self._operations
                ):
                    return synced
                self._log("operations queued during the pass, draining again")
        finally:
            self._drain_task = None

    async def _drain_once(self, attempted: set[str]) -> int:
        """
        One pass over a snapshot of the queue.

        Operations already tried by this drain are not replayed again; they
        only hold back later writes to the same record.
        """
        if not self._operations:
            return 0
        if self._executor is None:
            logger.warning("Sync queue has no executor, skipping drain")
            return 0
        if not self._is_online():
            self._log("offline, drain skipped")
            return 0

        self.last_drain_at = datetime.now()
        snapshot = list(self._operations)
        held_back: set[str] = set()
        synced = 0

        for operation in snapshot:
            if not self._is_online():
                logger.info("Connection lost during sync, stopping drain")
                break
            if operation.logical_key in held_back:
                continue
            if operation.id in attempted:
                held_back.add(operation.logical_key)
                continue
            attempted.add(operation.id)

            try:
                result = await self._executor(operation)
            except Exception as e:
                held_back.add(operation.logical_key)
                await self._record_failure(operation, classify_exception(e))
                continue

            self._remove(operation.id)
            synced += 1
            self.synced_count += 1
            self._log(f"synced {operation.kind} {operation.logical_key}")
            await self._persist()
            await self.synced.emit(operation, result)

        logger.info(
            f"Sync pass finished: {synced}/{len(snapshot)} synced, "
            f"{len(self._operations)} pending"
        )
        return synced

    async def _record_failure(self, operation: SyncOperation, error: ApiError) -> None:
        self.failed_attempts += 1
        if operation.retry_count < operation.max_retries:
            operation.retry_count += 1
            logger.warning(
                f"Sync of {operation.kind} {operation.logical_key} failed "
                f"(retry {operation.retry_count}/{operation.max_retries}): "
                f"{error.message}"
            )
            await self._persist()
            return

        self._remove(operation.id)
        self.abandoned_count += 1
        logger.error(
            f"Abandoning {operation.kind} {operation.logical_key} after "
            f"{operation.retry_count} retries: {error.message}"
        )
        await self._persist()
        await self.abandoned.emit(operation, error)

    def _remove(self, operation_id: str) -> None:
        self._operations = [op for op in self._operations if op.id != operation_id]

    async def clear(self) -> None:
        self._operations = []
        await self._persist()

    async def _persist(self) -> None:
        async with self._persist_lock:
            snapshot = [op.model_dump(mode="json") for op in self._operations]
            await self._storage.set(SYNC_QUEUE_KEY, snapshot)

    def get_sync_stats(self) -> dict[str, Any]:
        return {
            "pending": len(self._operations),
            "synced": self.synced_count,
            "abandoned": self.abandoned_count,
            "failed_attempts": self.failed_attempts,
            "draining": self.is_draining,
            "last_drain_at": (
                self.last_drain_at.isoformat() if self.last_drain_at else None
            ),
        }

    def _log(self, message: str) -> None:
        if self._debug:
            logger.debug(f"[SyncQueue] {message}")
