"""
PriorityRequestQueue - concurrency-limited scheduling by priority tier.

A fixed number of slots run at once. When a slot frees up, the oldest
waiting request of the highest non-empty tier starts next. There is no
aging: a steady stream of high-priority work can starve lower tiers.
"""

import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import IntEnum
from typing import Any, Awaitable, Callable

from loguru import logger


class Priority(IntEnum):
    """Priority tiers, highest first."""

    CRITICAL = 0
    HIGH = 1
    MEDIUM = 2
    LOW = 3


@dataclass
class PendingRequest:
    """A request waiting for (or occupying) a slot."""

    key: str
    priority: Priority
    fn: Callable[[], Awaitable[Any]]
    future: asyncio.Future
    enqueued_at: datetime = field(default_factory=datetime.now)


class PriorityRequestQueue:
    """
    Runs submitted coroutines with at most ``max_concurrent`` in flight.

    Usage:
        queue = PriorityRequestQueue(max_concurrent=3)
        result = await queue.submit(
            "/sales/today", lambda: transport.request("GET", "/sales/today"),
            priority=Priority.HIGH,
        )
    """

    def __init__(self, max_concurrent: int = 3, debug: bool = False):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = max_concurrent
        self._tiers: dict[Priority, deque[PendingRequest]] = {
            p: deque() for p in Priority
        }
        self._active: set[asyncio.Task[Any]] = set()
        self._debug = debug
        self.completed = 0
        self.failed = 0

    @property
    def active_count(self) -> int:
        return len(self._active)

    @property
    def waiting_count(self) -> int:
        return sum(len(q) for q in self._tiers.values())

    async def submit(
        self,
        key: str,
        fn: Callable[[], Awaitable[Any]],
        priority: Priority = Priority.MEDIUM,
    ) -> Any:
        """Queue fn and wait for its outcome."""
        future = asyncio.get_running_loop().create_future()
        request = PendingRequest(key=key, priority=priority, fn=fn, future=future)
        self._tiers[priority].append(request)
        self._log(f"QUEUE: {key[:50]} ({priority.name})")
        self._pump()
        return await future

    def _next(self) -> PendingRequest | None:
        for priority in Priority:
            tier = self._tiers[priority]
            while tier:
                request = tier.popleft()
                # Callers that gave up before their turn are skipped.
                if not request.future.done():
                    return request
        return None

    def _pump(self) -> None:
        while len(self._active) < self.max_concurrent:
            request = self._next()
            if request is None:
                return
            task = asyncio.create_task(self._run(request))
            self._active.add(task)
            task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._active.discard(task)
        self._pump()

    async def _run(self, request: PendingRequest) -> None:
        self._log(f"START: {request.key[:50]}")
        try:
            result = await request.fn()
        except asyncio.CancelledError:
            if not request.future.done():
                request.future.cancel()
            raise
        except Exception as e:
            self.failed += 1
            if not request.future.done():
                request.future.set_exception(e)
        else:
            self.completed += 1
            if not request.future.done():
                request.future.set_result(result)

    async def cancel_all(self) -> None:
        """Drop waiting requests and cancel running ones (teardown only)."""
        for tier in self._tiers.values():
            while tier:
                request = tier.popleft()
                if not request.future.done():
                    request.future.cancel()
        tasks = list(self._active)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.debug(f"PriorityRequestQueue cancelled {len(tasks)} running requests")

    def get_queue_stats(self) -> dict[str, Any]:
        return {
            "active": self.active_count,
            "waiting": self.waiting_count,
            "max_concurrent": self.max_concurrent,
            "by_priority": {p.name.lower(): len(self._tiers[p]) for p in Priority},
            "completed": self.completed,
            "failed": self.failed,
        }

    def _log(self, message: str) -> None:
        if self._debug:
            logger.debug(f"[PriorityQueue] {message}")
