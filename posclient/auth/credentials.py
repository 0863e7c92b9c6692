"""
CredentialStore - owns the bearer token, user profile and session start.

State changes are applied in memory (and mirrored into the side-channel
cookies) before durable storage is awaited, so readers never observe a
half-written credential.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable

import httpx
import jwt
from loguru import logger

from posclient.events import EventHook

if TYPE_CHECKING:
    from posclient.datastore.store import KeyValueStore

TOKEN_KEY = "auth_token"
USER_KEY = "user"
SESSION_START_KEY = "session_start"

ROLE_COOKIE = "user_role"


def decode_claims(token: str) -> dict[str, Any]:
    """Read the token's claims without verifying its signature."""
    try:
        return jwt.decode(
            token,
            options={"verify_signature": False, "verify_exp": False},
        )
    except jwt.PyJWTError:
        return {}


def token_expiry(token: str) -> datetime | None:
    """Expiry instant from the ``exp`` claim; None for opaque tokens."""
    exp = decode_claims(token).get("exp")
    if exp is None:
        return None
    try:
        return datetime.fromtimestamp(float(exp))
    except (TypeError, ValueError, OverflowError):
        return None


@dataclass
class Credential:
    """Bearer token with its derived expiry and the session start."""

    token: str
    expires_at: datetime | None
    session_started_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now >= self.expires_at

    @property
    def authorization_header(self) -> str:
        return f"Bearer {self.token}"


@dataclass
class _MirroredValue:
    value: str
    expires_at: datetime


class SessionCookieMirror:
    """
    Short-lived, non-durable copy of the credential and role.

    Read by request-time consumers that cannot reach the store itself
    (edge routing checks); exported as httpx cookies.
    """

    def __init__(self, clock: Callable[[], datetime] = datetime.now):
        self.clock = clock
        self._values: dict[str, _MirroredValue] = {}

    def write(self, name: str, value: str, max_age: timedelta) -> None:
        self._values[name] = _MirroredValue(value, self.clock() + max_age)

    def remove(self, name: str) -> None:
        self._values.pop(name, None)

    def get(self, name: str) -> str | None:
        item = self._values.get(name)
        if item is None:
            return None
        if self.clock() >= item.expires_at:
            del self._values[name]
            return None
        return item.value

    def as_cookies(self) -> httpx.Cookies:
        cookies = httpx.Cookies()
        for name in list(self._values):
            value = self.get(name)
            if value is not None:
                cookies.set(name, value)
        return cookies


class CredentialStore:
    """
    Single owner of the current credential.

    Usage:
        store = CredentialStore(storage=kv_store)
        await store.set_credential(token, user={"role": "cashier"})
        credential = store.get_credential()
        await store.clear()
    """

    def __init__(
        self,
        storage: "KeyValueStore",
        session_lifetime: timedelta = timedelta(hours=16),
        mirror: SessionCookieMirror | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._storage = storage
        self._session_lifetime = session_lifetime
        self._clock = clock
        self.mirror = mirror or SessionCookieMirror(clock=clock)
        self._credential: Credential | None = None
        self._user: dict[str, Any] | None = None
        self._persist_lock = asyncio.Lock()
        self.changed = EventHook("credential_changed")

    @property
    def token(self) -> str | None:
        """Raw token, expired or not (the refresh endpoint needs it)."""
        return self._credential.token if self._credential else None

    @property
    def user(self) -> dict[str, Any] | None:
        return self._user

    @property
    def role(self) -> str | None:
        if self._user and self._user.get("role"):
            return str(self._user["role"])
        if self._credential:
            role = decode_claims(self._credential.token).get("role")
            return str(role) if role else None
        return None

    def get_credential(self) -> Credential | None:
        """Current credential, or None when absent or past its expiry."""
        credential = self._credential
        if credential is None or credential.is_expired(self._clock()):
            return None
        return credential

    async def set_credential(
        self,
        token: str | None,
        user: dict[str, Any] | None = None,
        session_started_at: datetime | None = None,
    ) -> Credential | None:
        """
        Install a new token (login, refresh, restore) or clear with None.

        Args:
            token: Bearer token, or None to clear
            user: Profile to store alongside; keeps the current one if omitted
            session_started_at: Session start; keeps the current one if omitted,
                or now when there is no current session
        """
        if token is None:
            await self.clear()
            return None

        if session_started_at is None:
            session_started_at = (
                self._credential.session_started_at
                if self._credential
                else self._clock()
            )

        self._credential = Credential(
            token=token,
            expires_at=token_expiry(token),
            session_started_at=session_started_at,
        )
        if user is not None:
            self._user = user
        self._write_mirror()

        await self._persist()
        await self.changed.emit(self._credential)
        return self._credential

    async def set_user(self, user: dict[str, Any]) -> None:
        self._user = user
        self._write_mirror()
        async with self._persist_lock:
            await self._storage.set(USER_KEY, user)

    async def set_session_start(self, started_at: datetime) -> None:
        if self._credential is None:
            return
        self._credential.session_started_at = started_at
        self._write_mirror()
        async with self._persist_lock:
            await self._storage.set(SESSION_START_KEY, started_at.isoformat())

    async def clear(self) -> None:
        """Drop the credential from memory, the mirror and durable storage."""
        had_credential = self._credential is not None
        self._credential = None
        self._user = None
        self.mirror.remove(TOKEN_KEY)
        self.mirror.remove(ROLE_COOKIE)

        async with self._persist_lock:
            await self._storage.delete(TOKEN_KEY)
            await self._storage.delete(USER_KEY)
            await self._storage.delete(SESSION_START_KEY)

        if had_credential:
            logger.info("Credential cleared")
            await self.changed.emit(None)

    async def restore(self) -> Credential | None:
        """
        Load a persisted credential into memory.

        Returns None when nothing is stored or the stored token has expired
        (in which case the stored state is discarded).
        """
        token = await self._storage.get(TOKEN_KEY)
        if not token:
            return None

        user = await self._storage.get(USER_KEY)
        raw_start = await self._storage.get(SESSION_START_KEY)
        started_at: datetime | None = None
        if raw_start:
            try:
                started_at = datetime.fromisoformat(raw_start)
            except (TypeError, ValueError):
                logger.warning(f"Ignoring unreadable session start: {raw_start!r}")

        expires_at = token_expiry(token)
        if expires_at is not None and self._clock() >= expires_at:
            logger.info("Stored credential has expired, discarding it")
            await self.clear()
            return None

        if started_at is None:
            started_at = self._clock()

        self._credential = Credential(
            token=token, expires_at=expires_at, session_started_at=started_at
        )
        self._user = user if isinstance(user, dict) else None
        self._write_mirror()

        if raw_start is None:
            async with self._persist_lock:
                await self._storage.set(SESSION_START_KEY, started_at.isoformat())

        logger.info("Restored stored credential")
        return self._credential

    def _write_mirror(self) -> None:
        if self._credential is None:
            return
        remaining = (
            self._credential.session_started_at
            + self._session_lifetime
            - self._clock()
        )
        if remaining <= timedelta(0):
            self.mirror.remove(TOKEN_KEY)
            self.mirror.remove(ROLE_COOKIE)
            return
        self.mirror.write(TOKEN_KEY, self._credential.token, remaining)
        role = self.role
        if role:
            self.mirror.write(ROLE_COOKIE, role, remaining)
        else:
            self.mirror.remove(ROLE_COOKIE)

    async def _persist(self) -> None:
        async with self._persist_lock:
            credential = self._credential
            if credential is None:
                return
            await self._storage.set(TOKEN_KEY, credential.token)
            await self._storage.set(
                SESSION_START_KEY, credential.session_started_at.isoformat()
            )
            if self._user is not None:
                await self._storage.set(USER_KEY, self._user)
