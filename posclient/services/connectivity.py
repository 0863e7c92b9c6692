"""Online/offline tracking with a health-endpoint probe."""

import httpx
from loguru import logger

from posclient.events import EventHook


class ConnectivityMonitor:
    """
    Holds the current connectivity state and announces transitions.

    The runtime feeds it through set_online(); probe() checks the backend
    directly and is run periodically by the scheduler.
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        health_path: str = "/health",
        timeout: float = 5.0,
        initially_online: bool = True,
    ):
        self._client = client
        self._health_path = health_path
        self._timeout = timeout
        self._online = initially_online
        self.went_online = EventHook("went_online")
        self.went_offline = EventHook("went_offline")

    @property
    def is_online(self) -> bool:
        return self._online

    async def set_online(self, online: bool) -> None:
        if online == self._online:
            return
        self._online = online
        if online:
            logger.info("Connection restored")
            await self.went_online.emit()
        else:
            logger.warning("Connection lost, working offline")
            await self.went_offline.emit()

    async def probe(self) -> bool:
        """HEAD the health endpoint; a 2xx answer counts as online."""
        if self._client is None:
            return self._online
        try:
            response = await self._client.head(self._health_path, timeout=self._timeout)
            online = response.is_success
        except httpx.HTTPError as e:
            logger.debug(f"Health probe failed: {e}")
            online = False
        await self.set_online(online)
        return online
