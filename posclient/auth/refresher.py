"""
TokenRefresher - single-flight credential renewal.

Concurrent callers share one in-flight refresh. Success installs the new
token for everybody; failure clears the credential for everybody.
"""

import asyncio
from typing import Any

import httpx
from loguru import logger

from posclient.auth.credentials import CredentialStore
from posclient.services.errors import (
    ApiError,
    AuthError,
    ValidationError,
    classify_exception,
    classify_response,
)


class TokenRefresher:
    def __init__(
        self,
        client: httpx.AsyncClient,
        credentials: CredentialStore,
        refresh_path: str = "/auth/refresh",
        timeout: float = 10.0,
    ):
        self._client = client
        self._credentials = credentials
        self._refresh_path = refresh_path
        self._timeout = timeout
        self._in_flight: asyncio.Task[str] | None = None
        self.refresh_count = 0

    @property
    def is_refreshing(self) -> bool:
        return self._in_flight is not None

    async def refresh(self) -> str:
        """
        Renew the credential, joining a refresh already in flight.

        Returns:
            The new token

        Raises:
            AuthError: when renewal failed; the credential has been cleared
        """
        task = self._in_flight
        if task is None:
            task = asyncio.create_task(self._run())
            self._in_flight = task
        return await asyncio.shield(task)

    async def _run(self) -> str:
        try:
            return await self._refresh_once()
        finally:
            self._in_flight = None

    async def _refresh_once(self) -> str:
        token = self._credentials.token
        if token is None:
            raise AuthError("No credential available for refresh")

        self.refresh_count += 1
        try:
            payload = await self._post_refresh(token)
            new_token = payload.get("access_token") if isinstance(payload, dict) else None
            if not new_token:
                raise ValidationError("Refresh response did not contain a token")
        except ApiError as e:
            logger.warning(f"Token refresh failed ({e.code.value}): {e.message}")
            if self._credentials.token == token:
                await self._credentials.clear()
            if isinstance(e, AuthError):
                raise
            raise AuthError(
                f"Token refresh failed: {e.message}", status_code=e.status_code
            ) from e

        if self._credentials.token != token:
            # Logged out or replaced while the refresh was in flight.
            logger.info("Discarding refreshed token, credential changed meanwhile")
            raise AuthError("Credential changed during refresh")

        user = payload.get("user")
        # Refresh renews the token only; the session start is kept.
        await self._credentials.set_credential(
            new_token, user=user if isinstance(user, dict) else None
        )
        logger.info("Token refreshed successfully")
        return new_token

    async def _post_refresh(self, token: str) -> Any:
        try:
            response = await self._client.post(
                self._refresh_path,
                json={},
                headers={"Authorization": f"Bearer {token}"},
                timeout=self._timeout,
            )
        except Exception as e:
            raise classify_exception(e, timeout=self._timeout) from e

        if response.status_code >= 400:
            raise classify_response(response)
        try:
            return response.json()
        except ValueError as e:
            raise ValidationError("Refresh response was not JSON") from e
