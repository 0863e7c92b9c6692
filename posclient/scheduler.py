"""
Periodic maintenance jobs, run by APScheduler on the client's event loop.

- session tick (once a minute)
- offline sync drain
- pending credential revalidation
- connectivity probe
- expired cache cleanup
"""

from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from loguru import logger

from posclient.settings import Settings, global_settings
from posclient.utils import logged_job

if TYPE_CHECKING:
    from posclient.auth.manager import AuthManager
    from posclient.services.cache import TimedCache
    from posclient.services.connectivity import ConnectivityMonitor
    from posclient.services.sync_queue import OfflineSyncQueue


class ResilienceScheduler:
    """Owns the background jobs of a PosClient."""

    def __init__(
        self,
        auth: "AuthManager",
        sync_queue: "OfflineSyncQueue",
        connectivity: "ConnectivityMonitor",
        caches: list["TimedCache"],
        settings: Settings | None = None,
    ):
        self.scheduler = AsyncIOScheduler()
        self.settings = settings or global_settings
        self._auth = auth
        self._sync_queue = sync_queue
        self._connectivity = connectivity
        self._caches = caches
        self._is_running = False

    @logged_job
    async def session_tick_job(self) -> None:
        await self._auth.timer.tick()

    @logged_job
    async def sync_job(self) -> None:
        if self._sync_queue.pending_count:
            await self._sync_queue.drain()

    @logged_job
    async def revalidate_job(self) -> None:
        await self._auth.revalidate_if_pending()

    @logged_job
    async def connectivity_job(self) -> None:
        await self._connectivity.probe()

    @logged_job
    async def cache_cleanup_job(self) -> None:
        removed = 0
        for cache in self._caches:
            removed += await cache.cleanup_expired()
        if removed:
            logger.info(f"Cache cleanup removed {removed} expired entries")

    def _add_jobs(self) -> None:
        s = self.settings
        jobs = [
            (self.session_tick_job, s.session_check_interval_seconds, "session_tick"),
            (self.sync_job, s.sync_interval_seconds, "sync_drain"),
            (self.revalidate_job, s.sync_interval_seconds, "auth_revalidate"),
            (
                self.connectivity_job,
                s.connectivity_check_interval_seconds,
                "connectivity_probe",
            ),
            (self.cache_cleanup_job, s.cache_cleanup_interval_seconds, "cache_cleanup"),
        ]
        for func, seconds, job_id in jobs:
            self.scheduler.add_job(
                func,
                trigger="interval",
                seconds=seconds,
                id=job_id,
                name=job_id.replace("_", " ").title(),
                replace_existing=True,
            )

    def start(self) -> None:
        if self._is_running:
            logger.warning("Resilience scheduler is already running")
            return

        self._add_jobs()
        self.scheduler.start()
        self._is_running = True
        logger.info(
            f"Resilience scheduler started: sync every {self.settings.sync_interval_seconds}s, "
            f"session check every {self.settings.session_check_interval_seconds}s"
        )

    def stop(self) -> None:
        if not self._is_running:
            logger.warning("Resilience scheduler is not running")
            return

        self.scheduler.shutdown(wait=False)
        self._is_running = False
        logger.info("Resilience scheduler stopped")

    def is_running(self) -> bool:
        return self._is_running

    def job_ids(self) -> list[str]:
        return [job.id for job in self.scheduler.get_jobs()]

    async def run_all_now(self) -> None:
        """Run every job once immediately (manual trigger)."""
        await self.connectivity_job()
        await self.session_tick_job()
        await self.revalidate_job()
        await self.sync_job()
        await self.cache_cleanup_job()
