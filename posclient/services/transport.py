"""
RetryingTransport - async HTTP transport with resilience patterns.

Every call:
- attaches the current bearer credential
- classifies failures into the ApiError taxonomy
- retries retryable classes with exponential backoff and jitter
- routes AuthError through the TokenRefresher for one refresh-and-retry
"""

import asyncio
import random
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable

import httpx
from loguru import logger

from posclient.events import EventHook
from posclient.services.errors import (
    ApiError,
    AuthError,
    ClientError,
    classify_exception,
    classify_response,
)

if TYPE_CHECKING:
    from posclient.auth.credentials import CredentialStore
    from posclient.auth.refresher import TokenRefresher


@dataclass
class RetryConfig:
    """Configuration for retry with exponential backoff."""

    max_retries: int = 3
    base_delay: float = 1.0  # seconds
    max_delay: float = 10.0  # seconds
    jitter: float = 0.25  # +/- fraction of the delay


def compute_backoff(
    attempt: int,
    config: RetryConfig,
    rng: random.Random | None = None,
) -> float:
    """min(base * 2**attempt, cap) scaled by a random factor in [1 - j, 1 + j]."""
    exponential = min(config.base_delay * (2**attempt), config.max_delay)
    spread = (rng or random).uniform(-config.jitter, config.jitter)
    return max(0.0, exponential * (1 + spread))


class RetryingTransport:
    """
    HTTP transport used by every component that talks to the backend.

    Usage:
        transport = RetryingTransport(
            client=httpx.AsyncClient(base_url="http://localhost:3001/api"),
            credentials=credential_store,
        )
        transport.set_refresher(refresher)

        products = await transport.request(
            "GET", "/products", params={"outlet": 42}
        )
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        credentials: "CredentialStore",
        retry_config: RetryConfig | None = None,
        default_timeout: float = 30.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ):
        self._client = client
        self._credentials = credentials
        self._refresher: "TokenRefresher | None" = None
        self.retry_config = retry_config or RetryConfig()
        self._default_timeout = default_timeout
        self._sleep = sleep
        self._rng = rng
        self.auth_failed = EventHook("auth_failed")

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client

    def set_refresher(self, refresher: "TokenRefresher") -> None:
        self._refresher = refresher

    def compute_delay(self, attempt: int) -> float:
        return compute_backoff(attempt, self.retry_config, self._rng)

    async def request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_data: Any = None,
        headers: dict[str, str] | None = None,
        timeout: float | None = None,
        retry: bool = True,
        refresh_on_auth: bool = True,
    ) -> Any:
        """
        Send a request through the retry loop.

        Args:
            method: HTTP method
            path: Path relative to the client's base URL
            params: Query parameters
            json_data: JSON body
            headers: Extra headers
            timeout: Per-call deadline in seconds
            retry: Retry retryable failures (False for fire-once calls)
            refresh_on_auth: Try a token refresh on AuthError (False for login)

        Returns:
            Decoded JSON body, or None for empty responses

        Raises:
            ApiError: classified failure after retries are exhausted
        """
        req_timeout = timeout or self._default_timeout
        max_retries = self.retry_config.max_retries if retry else 0
        attempt = 0
        refreshed = False

        while True:
            sent_token = self._credentials.token
            try:
                return await self._send(
                    method, path, params, json_data, headers, req_timeout
                )
            except ApiError as error:
                if isinstance(error, AuthError):
                    if refresh_on_auth and not refreshed and self._can_refresh():
                        refreshed = True
                        if await self._try_refresh():
                            logger.info(f"Retrying {method} {path} with refreshed credential")
                            continue
                        if self._credentials.token not in (None, sent_token):
                            # A new login replaced the credential meanwhile.
                            logger.info(f"Retrying {method} {path} with the new credential")
                            continue
                    if refresh_on_auth:
                        await self._handle_auth_failure(error)
                    raise

                if not error.retryable or attempt >= max_retries:
                    if error.retryable and max_retries:
                        logger.warning(
                            f"{method} {path} failed after {attempt + 1} attempts: "
                            f"{error.code.value}"
                        )
                    raise

                delay = self.compute_delay(attempt)
                logger.warning(
                    f"{method} {path} failed (attempt {attempt + 1}/{max_retries + 1}, "
                    f"{error.code.value}). Retrying in {delay:.2f}s..."
                )
                attempt += 1
                await self._sleep(delay)

    async def _send(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None,
        json_data: Any,
        headers: dict[str, str] | None,
        timeout: float,
    ) -> Any:
        """Execute one attempt and classify any failure."""
        req_headers: dict[str, str] = {}
        if headers:
            req_headers.update(headers)

        # Read at send time so a retry after refresh carries the new token.
        credential = self._credentials.get_credential()
        if credential is not None:
            req_headers["Authorization"] = credential.authorization_header

        try:
            response = await self._client.request(
                method=method,
                url=path,
                params=params,
                headers=req_headers,
                json=json_data,
                timeout=timeout,
            )
        except Exception as e:
            raise classify_exception(e, timeout=timeout) from e

        if response.status_code >= 400:
            raise classify_response(response)

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise ClientError(
                f"Invalid JSON in response from {path}",
                status_code=response.status_code,
                details=response.text[:200],
            ) from e

    def _can_refresh(self) -> bool:
        return self._refresher is not None and self._credentials.token is not None

    async def _try_refresh(self) -> bool:
        try:
            await self._refresher.refresh()
            return True
        except ApiError as e:
            logger.warning(f"Token refresh failed: {e.message}")
            return False

    async def _handle_auth_failure(self, error: AuthError) -> None:
        """Clear the session and notify listeners (forced re-authentication)."""
        if self._credentials.token is not None:
            await self._credentials.clear()
        await self.auth_failed.emit(error)

    async def close(self) -> None:
        await self._client.aclose()
        logger.debug("RetryingTransport closed")
