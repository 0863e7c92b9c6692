"""
AuthManager - login, logout, restore and session extension.

Owns the link between the credential store, the session timer and the
transport's auth failure signal. Downstream code subscribes to session
events through on_session_warning / on_session_expired.
"""

from datetime import datetime
from typing import Any, Callable

from loguru import logger

from posclient.auth.credentials import Credential, CredentialStore
from posclient.auth.session import SessionState, SessionTimer, format_time_remaining
from posclient.events import EventHook, Handler
from posclient.services.errors import ApiError, AuthError, ValidationError
from posclient.services.transport import RetryingTransport


class AuthManager:
    """
    Usage:
        auth = AuthManager(transport, credentials, timer)
        await auth.restore()
        if not auth.is_authenticated:
            await auth.login("cashier@example.com", "secret")
        auth.on_session_warning(lambda remaining: ...)
    """

    def __init__(
        self,
        transport: RetryingTransport,
        credentials: CredentialStore,
        timer: SessionTimer,
        login_timeout: float = 15.0,
        auth_timeout: float = 10.0,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._transport = transport
        self._credentials = credentials
        self._timer = timer
        self._login_timeout = login_timeout
        self._auth_timeout = auth_timeout
        self._clock = clock
        self.validation_pending = False

        self.logged_in = EventHook("logged_in")
        self.logged_out = EventHook("logged_out")

        timer.expired.subscribe(self._on_session_expired)
        transport.auth_failed.subscribe(self._on_auth_failed)

    @property
    def is_authenticated(self) -> bool:
        return self._credentials.get_credential() is not None

    @property
    def user(self) -> dict[str, Any] | None:
        return self._credentials.user

    @property
    def timer(self) -> SessionTimer:
        return self._timer

    def get_credential(self) -> Credential | None:
        return self._credentials.get_credential()

    def on_session_warning(self, handler: Handler) -> Callable[[], None]:
        return self._timer.warning.subscribe(handler)

    def on_session_expired(self, handler: Handler) -> Callable[[], None]:
        return self._timer.expired.subscribe(handler)

    def on_logout(self, handler: Handler) -> Callable[[], None]:
        return self.logged_out.subscribe(handler)

    async def login(self, email: str, password: str) -> dict[str, Any] | None:
        """
        Authenticate and start a new session.

        Raises:
            AuthError: credentials rejected
            ApiError: any other classified failure
        """
        payload = await self._transport.request(
            "POST",
            "/auth/login",
            json_data={"email": email, "password": password},
            timeout=self._login_timeout,
            refresh_on_auth=False,
        )
        token = payload.get("access_token") if isinstance(payload, dict) else None
        if not token:
            raise ValidationError("Login response did not contain a token")

        user = payload.get("user")
        user = user if isinstance(user, dict) else None
        started_at = self._clock()
        await self._credentials.set_credential(
            token, user=user, session_started_at=started_at
        )
        self.validation_pending = False
        await self._timer.start(started_at)

        logger.info(f"Logged in as {email}")
        await self.logged_in.emit(user)
        return user

    async def logout(self, reason: str = "user") -> None:
        """Tell the backend (best effort, no retry), then clear local state."""
        if self._credentials.token is not None:
            try:
                await self._transport.request(
                    "POST",
                    "/auth/logout",
                    timeout=self._auth_timeout,
                    retry=False,
                    refresh_on_auth=False,
                )
            except ApiError as e:
                logger.warning(f"Server logout failed, clearing locally: {e.message}")
        await self._end_session(reason)

    async def restore(self) -> bool:
        """
        Reload a stored credential and re-validate it against /auth/me.

        Returns:
            True when a session is active afterwards (validated, or kept
            optimistically with validation pending)
        """
        credential = await self._credentials.restore()
        if credential is None:
            return False

        await self._timer.start(credential.session_started_at)
        if self._credentials.token is None:
            # The stored session had already run out.
            return False

        return await self._validate()

    async def revalidate_if_pending(self) -> bool:
        if not self.validation_pending or self._credentials.token is None:
            return False
        logger.info("Retrying pending credential validation")
        return await self._validate()

    async def _validate(self) -> bool:
        try:
            me = await self._transport.request(
                "GET", "/auth/me", timeout=self._auth_timeout
            )
        except AuthError:
            logger.warning("Stored credential was rejected, discarding it")
            await self._end_session("invalid")
            return False
        except ApiError as e:
            self.validation_pending = True
            logger.warning(
                f"Could not validate stored credential ({e.code.value}), "
                "keeping it until the next check"
            )
            return True

        if isinstance(me, dict):
            profile = me.get("user", me)
            if isinstance(profile, dict):
                await self._credentials.set_user(profile)
        self.validation_pending = False
        return True

    async def extend_session(self) -> bool:
        if self._credentials.token is None:
            return False
        await self._timer.extend()
        return True

    def session_info(self) -> dict[str, Any]:
        remaining = self._timer.time_remaining()
        return {
            "authenticated": self.is_authenticated,
            "state": self._timer.state.value,
            "status": self._timer.status(),
            "time_remaining": format_time_remaining(remaining),
            "validation_pending": self.validation_pending,
            "role": self._credentials.role,
        }

    async def _end_session(self, reason: str) -> None:
        was_active = (
            self._credentials.token is not None
            or self._timer.state != SessionState.IDLE
        )
        await self._credentials.clear()
        self._timer.stop()
        self.validation_pending = False
        if was_active:
            logger.info(f"Session ended ({reason})")
            await self.logged_out.emit(reason)

    async def _on_session_expired(self) -> None:
        await self.logout(reason="expired")

    async def _on_auth_failed(self, error: AuthError) -> None:
        await self._end_session("auth_failed")
