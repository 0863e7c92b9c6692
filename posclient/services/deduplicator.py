"""
Single-flight execution of identical reads.

Two screens asking for `/products?outlet=42` at the same time share one
backend call: the first caller starts it, later callers join it and see the
same result or the same error. The key is released the moment the call
settles, so the next caller after that starts a fresh call.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

T = TypeVar("T")


@dataclass
class DeduplicatorStats:
    total: int = 0  # executions started
    deduplicated: int = 0  # callers that joined an execution
    in_flight: int = 0

    @property
    def joined_ratio(self) -> float:
        callers = self.total + self.deduplicated
        return self.deduplicated / callers if callers else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "executions": self.total,
            "joined": self.deduplicated,
            "in_flight": self.in_flight,
            "joined_ratio": f"{self.joined_ratio:.2%}",
        }


class RequestDeduplicator:
    """Shares one in-flight execution per logical key."""

    def __init__(self, debug: bool = False):
        self._executions: dict[str, asyncio.Task[Any]] = {}
        self._stats = DeduplicatorStats()
        self._debug = debug

    async def execute(self, key: str, fetcher: Callable[[], Awaitable[T]]) -> T:
        execution = self._executions.get(key)
        if execution is None:
            self._stats.total += 1
            execution = asyncio.create_task(self._settle(key, fetcher))
            self._executions[key] = execution
            self._log(f"START {key[:50]}")
        else:
            self._stats.deduplicated += 1
            self._log(f"JOIN {key[:50]}")

        # A caller that goes away must not cancel the shared call.
        return await asyncio.shield(execution)

    async def _settle(self, key: str, fetcher: Callable[[], Awaitable[T]]) -> T:
        try:
            return await fetcher()
        finally:
            self._executions.pop(key, None)
            self._log(f"SETTLED {key[:50]}")

    def has_pending(self, key: str) -> bool:
        return key in self._executions

    @property
    def in_flight_keys(self) -> list[str]:
        return list(self._executions)

    async def close(self) -> int:
        """Cancel every shared execution. Used at shutdown only."""
        executions = list(self._executions.values())
        self._executions.clear()
        for execution in executions:
            execution.cancel()
        if executions:
            await asyncio.gather(*executions, return_exceptions=True)
            logger.debug(f"Cancelled {len(executions)} in-flight reads")
        return len(executions)

    def get_stats(self) -> DeduplicatorStats:
        self._stats.in_flight = len(self._executions)
        return self._stats

    def _log(self, message: str) -> None:
        if self._debug:
            logger.debug(f"[Dedup] {message}")
