"""
SessionTimer - countdown from session start to a fixed session lifetime.

States:
- IDLE: no session
- ACTIVE: session running, outside the warning window
- WARNING: remaining time is inside the warning window
- EXPIRED: remaining time reached zero; the session is force-terminated

Transitions happen in tick(), which the scheduler calls once per minute.
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Awaitable, Callable

from loguru import logger

from posclient.events import EventHook


class SessionState(str, Enum):
    """Session timer states."""

    IDLE = "IDLE"
    ACTIVE = "ACTIVE"
    WARNING = "WARNING"
    EXPIRED = "EXPIRED"


class SessionTimer:
    """
    Tracks remaining session time and raises warning/expiry events.

    Usage:
        timer = SessionTimer(lifetime=timedelta(hours=16))
        timer.warning.subscribe(show_banner)
        timer.expired.subscribe(force_logout)
        await timer.start(login_time)
        await timer.tick()
    """

    def __init__(
        self,
        lifetime: timedelta = timedelta(hours=16),
        warning_window: timedelta = timedelta(minutes=30),
        clock: Callable[[], datetime] = datetime.now,
        persist_start: Callable[[datetime], Awaitable[None]] | None = None,
    ):
        if warning_window >= lifetime:
            raise ValueError("warning_window must be shorter than the session lifetime")
        self.lifetime = lifetime
        self.warning_window = warning_window
        self._clock = clock
        self._persist_start = persist_start
        self._started_at: datetime | None = None
        self._state = SessionState.IDLE
        self.warning = EventHook("session_warning")
        self.expired = EventHook("session_expired")

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def started_at(self) -> datetime | None:
        return self._started_at

    @property
    def expires_at(self) -> datetime | None:
        if self._started_at is None:
            return None
        return self._started_at + self.lifetime

    @property
    def is_expiring(self) -> bool:
        return self._state == SessionState.WARNING

    def time_remaining(self) -> timedelta | None:
        expires_at = self.expires_at
        if expires_at is None:
            return None
        return max(timedelta(0), expires_at - self._clock())

    async def start(self, started_at: datetime | None = None) -> None:
        """Begin counting down from started_at (default: now)."""
        self._started_at = started_at or self._clock()
        self._state = SessionState.ACTIVE
        logger.info(f"Session timer started, expires at {self.expires_at:%Y-%m-%d %H:%M}")
        await self.tick()

    async def extend(self) -> None:
        """Restart the countdown from now and persist the new start."""
        if self._started_at is None:
            return
        now = self._clock()
        self._started_at = now
        self._state = SessionState.ACTIVE
        logger.info("Session extended")
        if self._persist_start is not None:
            await self._persist_start(now)
        await self.tick()

    def stop(self) -> None:
        self._started_at = None
        self._state = SessionState.IDLE

    async def tick(self) -> SessionState:
        """Recompute remaining time and apply state transitions."""
        remaining = self.time_remaining()
        if remaining is None or self._state in (SessionState.IDLE, SessionState.EXPIRED):
            return self._state

        # Handlers may stop the timer; report the state this tick reached.
        if remaining <= timedelta(0):
            self._state = SessionState.EXPIRED
            logger.warning("Session expired")
            await self.expired.emit()
            return SessionState.EXPIRED

        if remaining <= self.warning_window and self._state != SessionState.WARNING:
            self._state = SessionState.WARNING
            logger.info(f"Session expiring in {format_time_remaining(remaining)}")
            await self.warning.emit(remaining)
            return SessionState.WARNING

        return self._state

    def status(self) -> str:
        """Coarse status for display: healthy, warning, critical or unknown."""
        remaining = self.time_remaining()
        if remaining is None:
            return "unknown"
        minutes = remaining.total_seconds() // 60
        if minutes <= 5:
            return "critical"
        if remaining <= self.warning_window:
            return "warning"
        return "healthy"


def format_time_remaining(remaining: timedelta | None) -> str | None:
    if remaining is None:
        return None
    total = int(remaining.total_seconds())
    minutes, seconds = divmod(total, 60)
    if minutes > 0:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"
