"""
EventHook - explicit observer registration for layer events.

Handlers may be plain callables or coroutine functions. ``subscribe`` returns
an unsubscribe callable.
"""

import inspect
from typing import Any, Callable

from loguru import logger

Handler = Callable[..., Any]


class EventHook:
    """
    A named event with a list of subscribers.

    Usage:
        session_expired = EventHook("session_expired")
        unsubscribe = session_expired.subscribe(on_expired)
        await session_expired.emit()
        unsubscribe()
    """

    def __init__(self, name: str):
        self.name = name
        self._handlers: list[Handler] = []

    def subscribe(self, handler: Handler) -> Callable[[], None]:
        """Register a handler and return a callable that removes it."""
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    async def emit(self, *args: Any) -> None:
        """Call every handler; a failing handler does not stop the others."""
        for handler in list(self._handlers):
            try:
                result = handler(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Handler for '{self.name}' failed: {e}")

    @property
    def handler_count(self) -> int:
        return len(self._handlers)
