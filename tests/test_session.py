from datetime import timedelta

import pytest

from posclient.auth.session import SessionState, SessionTimer, format_time_remaining


@pytest.fixture
def timer(clock):
    return SessionTimer(
        lifetime=timedelta(hours=16),
        warning_window=timedelta(minutes=30),
        clock=clock,
    )


class TestSessionCountdown:
    """A 16 hour session with a 30 minute warning window."""

    async def test_warning_then_expiry(self, timer, clock):
        warnings = []
        expirations = []
        timer.warning.subscribe(warnings.append)
        timer.expired.subscribe(lambda: expirations.append(clock.now))

        await timer.start(clock.now)
        assert timer.state == SessionState.ACTIVE

        clock.advance(hours=15, minutes=29)
        assert await timer.tick() == SessionState.ACTIVE
        assert warnings == []

        clock.advance(minutes=2)
        assert await timer.tick() == SessionState.WARNING
        assert warnings == [timedelta(minutes=29)]

        clock.advance(minutes=10)
        await timer.tick()
        assert len(warnings) == 1

        clock.advance(minutes=19)
        assert await timer.tick() == SessionState.EXPIRED
        assert len(expirations) == 1

        await timer.tick()
        assert len(expirations) == 1

    async def test_start_in_the_past_expires_immediately(self, timer, clock):
        expired = []
        timer.expired.subscribe(lambda: expired.append(True))

        await timer.start(clock.now - timedelta(hours=17))

        assert timer.state == SessionState.EXPIRED
        assert expired == [True]

    async def test_tick_without_session_is_idle(self, timer):
        assert await timer.tick() == SessionState.IDLE
        assert timer.time_remaining() is None


class TestExtend:
    async def test_extend_restarts_countdown_and_persists(self, clock):
        persisted = []

        async def persist(started_at):
            persisted.append(started_at)

        timer = SessionTimer(clock=clock, persist_start=persist)
        await timer.start(clock.now)
        clock.advance(hours=15, minutes=45)
        await timer.tick()
        assert timer.is_expiring

        await timer.extend()

        assert timer.state == SessionState.ACTIVE
        assert timer.started_at == clock.now
        assert timer.time_remaining() == timedelta(hours=16)
        assert persisted == [clock.now]

    async def test_extend_without_session_does_nothing(self, timer):
        await timer.extend()
        assert timer.state == SessionState.IDLE

    async def test_stop(self, timer, clock):
        await timer.start(clock.now)
        timer.stop()
        assert timer.state == SessionState.IDLE
        assert timer.expires_at is None


class TestStatus:
    async def test_status_levels(self, timer, clock):
        await timer.start(clock.now)
        assert timer.status() == "healthy"

        clock.advance(hours=15, minutes=40)
        assert timer.status() == "warning"

        clock.advance(minutes=16)
        assert timer.status() == "critical"

    def test_status_unknown_without_session(self, timer):
        assert timer.status() == "unknown"

    def test_format_time_remaining(self):
        assert format_time_remaining(timedelta(minutes=4, seconds=5)) == "4m 5s"
        assert format_time_remaining(timedelta(seconds=45)) == "45s"
        assert format_time_remaining(None) is None

    def test_warning_window_must_fit_in_lifetime(self):
        with pytest.raises(ValueError):
            SessionTimer(lifetime=timedelta(minutes=10), warning_window=timedelta(minutes=30))
