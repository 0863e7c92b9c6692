"""Shared fixtures: fake clock, in-memory storage and mocked HTTP."""

from datetime import datetime, timedelta
from typing import Any, Callable

import httpx
import jwt
import pytest

from posclient.auth.credentials import CredentialStore
from posclient.auth.refresher import TokenRefresher
from posclient.datastore.store import MemoryKeyValueStore
from posclient.services.transport import RetryConfig, RetryingTransport

BASE_URL = "http://pos.test/api"
SIGNING_SECRET = "posclient-test-signing-secret-0123456789"


class FakeClock:
    """Injectable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 3, 1, 8, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class SleepRecorder:
    """Stands in for asyncio.sleep and records requested delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class RequestLog:
    """Records requests seen by a MockTransport handler."""

    def __init__(self):
        self.requests: list[httpx.Request] = []

    def add(self, request: httpx.Request) -> None:
        self.requests.append(request)

    def paths(self) -> list[str]:
        return [r.url.path.removeprefix("/api") for r in self.requests]

    def calls(self) -> list[tuple[str, str]]:
        return [(r.method, r.url.path.removeprefix("/api")) for r in self.requests]

    def count(self, path: str) -> int:
        return self.paths().count(path)


def make_http_client(handler: Callable[[httpx.Request], Any]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=BASE_URL)


def make_token(clock: FakeClock, expires_in: timedelta, **claims: Any) -> str:
    exp = int((clock.now + expires_in).timestamp())
    payload = {"sub": "1", "exp": exp, **claims}
    return jwt.encode(payload, SIGNING_SECRET, algorithm="HS256")


def path_of(request: httpx.Request) -> str:
    return request.url.path.removeprefix("/api")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> MemoryKeyValueStore:
    return MemoryKeyValueStore()


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def request_log() -> RequestLog:
    return RequestLog()


@pytest.fixture
def credentials(store, clock) -> CredentialStore:
    return CredentialStore(store, clock=clock)


@pytest.fixture
def build_transport(credentials, sleeper):
    """Factory: transport + refresher over a MockTransport handler."""

    def build(
        handler: Callable[[httpx.Request], Any],
        max_retries: int = 3,
    ) -> tuple[RetryingTransport, TokenRefresher]:
        client = make_http_client(handler)
        transport = RetryingTransport(
            client,
            credentials,
            retry_config=RetryConfig(max_retries=max_retries),
            sleep=sleeper,
        )
        refresher = TokenRefresher(client, credentials)
        transport.set_refresher(refresher)
        return transport, refresher

    return build
