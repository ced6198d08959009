"""
Periodic background maintenance for the content store
"""
import asyncio
import logging
from pathlib import Path
from typing import Optional

from .exceptions import CacheError
from .fetcher import cleanup_temp_files
from .store import ContentStore

logger = logging.getLogger(__name__)


class MaintenanceScheduler:
    """
    Runs store upkeep on a fixed interval while the service is up.

    Intent:
    Each run reconciles catalog and filesystem, evicts one batch of the
    oldest entries, and clears abandoned downloads from the temp directory.
    A failing run is logged and the schedule continues; the next run gets
    another chance.
    """

    def __init__(
        self,
        store: ContentStore,
        interval_seconds: float = 6 * 60 * 60,
        temp_dir: Optional[Path] = None,
        temp_max_age: float = 3600.0,
    ):
        self.store = store
        self.interval_seconds = interval_seconds
        self.temp_dir = temp_dir
        self.temp_max_age = temp_max_age
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="trailer-cache-maintenance")
        logger.info("Cleanup scheduler started (every %.1f hours)", self.interval_seconds / 3600)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Cleanup scheduler stopped")

    async def run_once(self) -> dict[str, int]:
        """
        Perform one maintenance pass.

        Returns:
            Counts for each step: ``deactivated``, ``orphans_removed``,
            ``evicted`` and ``temp_removed``
        """
        summary = await self.store.reconcile()
        summary["evicted"] = await self.store.cleanup()
        summary["temp_removed"] = (
            cleanup_temp_files(self.temp_dir, self.temp_max_age) if self.temp_dir is not None else 0
        )

        if summary["evicted"] > 0:
            logger.info("Scheduled cleanup removed %d videos", summary["evicted"])
        return summary

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.run_once()
            except (CacheError, OSError) as e:
                logger.error("Scheduled cleanup failed: %s", e)
