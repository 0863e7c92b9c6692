"""
RequestBatcher - coalesces requests issued within a short window.

Requests accumulate until the batch is full or the window elapses, then go
out as one dispatch. Each caller resolves independently by request id.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable

import httpx
from loguru import logger

from posclient.services.errors import (
    ApiError,
    ClientError,
    classify_exception,
    classify_response,
)

if TYPE_CHECKING:
    from posclient.services.transport import RetryingTransport


@dataclass
class BatchConfig:
    max_batch_size: int = 10
    window: float = 0.05  # seconds


@dataclass
class BatchRequest:
    path: str
    method: str = "GET"
    params: dict[str, Any] | None = None
    body: Any = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "method": self.method,
            "path": self.path,
            "params": self.params,
            "body": self.body,
        }


@dataclass
class BatchResponse:
    id: str
    status: int
    data: Any = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status < 400

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "BatchResponse":
        return cls(
            id=str(raw["id"]),
            status=int(raw.get("status", 200)),
            data=raw.get("data"),
            error=raw.get("error"),
        )


BatchDispatcher = Callable[[list[BatchRequest]], Awaitable[list[BatchResponse]]]


def _error_for_status(response: BatchResponse) -> ApiError:
    """Classify an item's embedded status the same way a direct call would be."""
    raw = httpx.Response(
        response.status,
        json={"message": response.error} if response.error else None,
    )
    return classify_response(raw)


def transport_batch_dispatcher(
    transport: "RetryingTransport",
    path: str = "/batch",
    timeout: float | None = None,
) -> BatchDispatcher:
    """Dispatcher that posts a batch envelope through the transport."""

    async def dispatch(requests: list[BatchRequest]) -> list[BatchResponse]:
        payload = await transport.request(
            "POST",
            path,
            json_data={"requests": [r.to_dict() for r in requests]},
            timeout=timeout,
        )
        items = payload.get("responses", []) if isinstance(payload, dict) else []
        return [BatchResponse.from_dict(item) for item in items]

    return dispatch


class RequestBatcher:
    """
    Collects requests and flushes them together.

    Usage:
        batcher = RequestBatcher(transport_batch_dispatcher(transport))
        stock = await batcher.add(BatchRequest(path="/inventory/17"))
    """

    def __init__(
        self,
        dispatch: BatchDispatcher,
        config: BatchConfig | None = None,
        debug: bool = False,
    ):
        self._dispatch = dispatch
        self.config = config or BatchConfig()
        self._pending: list[tuple[BatchRequest, asyncio.Future]] = []
        self._timer: asyncio.TimerHandle | None = None
        self._flushes: set[asyncio.Task[None]] = set()
        self._debug = debug
        self.batches_sent = 0

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def add(self, request: BatchRequest) -> Any:
        """Queue a request and wait for its own response data."""
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        self._pending.append((request, future))

        if len(self._pending) >= self.config.max_batch_size:
            self._schedule_flush()
        elif self._timer is None:
            self._timer = loop.call_later(self.config.window, self._schedule_flush)

        return await future

    def _schedule_flush(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        batch, self._pending = self._pending, []
        if not batch:
            return
        task = asyncio.ensure_future(self._send(batch))
        self._flushes.add(task)
        task.add_done_callback(self._flushes.discard)

    async def flush(self) -> None:
        """Send whatever is pending now and wait for every open dispatch."""
        self._schedule_flush()
        if self._flushes:
            await asyncio.gather(*list(self._flushes), return_exceptions=True)

    async def _send(self, batch: list[tuple[BatchRequest, asyncio.Future]]) -> None:
        self.batches_sent += 1
        self._log(f"FLUSH: {len(batch)} requests")
        try:
            responses = await self._dispatch([request for request, _ in batch])
        except Exception as e:
            error = classify_exception(e)
            logger.warning(f"Batch of {len(batch)} failed: {error.message}")
            for _, future in batch:
                if not future.done():
                    future.set_exception(error)
            return

        by_id = {response.id: response for response in responses}
        for request, future in batch:
            if future.done():
                continue
            response = by_id.get(request.id)
            if response is None:
                future.set_exception(
                    ClientError(f"No response for batched request {request.path}")
                )
            elif response.ok:
                future.set_result(response.data)
            else:
                future.set_exception(_error_for_status(response))

    def clear(self) -> None:
        """Fail every request that has not been dispatched yet."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        batch, self._pending = self._pending, []
        for _, future in batch:
            if not future.done():
                future.set_exception(ClientError("Batch cleared before dispatch"))

    def _log(self, message: str) -> None:
        if self._debug:
            logger.debug(f"[Batcher] {message}")
