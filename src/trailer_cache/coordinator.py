"""
Acquisition coordinator: deduplicated download-and-store
"""
import asyncio
import logging
from pathlib import Path
from typing import Optional

from .exceptions import AcquisitionFailedError, FetchFailedError, LockTimeoutError
from .interfaces import ICatalog, IFetcher, ILockTable
from .locks import wait_until_free
from .metrics import CacheMetrics
from .models import AcquisitionMetadata
from .store import ContentStore

logger = logging.getLogger(__name__)


class AcquisitionCoordinator:
    """
    Ensures at most one download-and-store sequence per content id.

    Intent:
    Downloads are the most expensive thing this service does. When many
    clients ask for the same uncached trailer at once, exactly one of them
    downloads it; the rest wait on the content lock and reuse the result,
    or give up after a bounded wait with a retryable ``LockTimeoutError``.

    Key design decisions:
    - The catalog is checked three times: before locking (fast path, no
      lock at all on a hit), after each wait (someone else may have just
      finished), and once more under the lock (closes the gap between the
      first check and taking the lock)
    - The lock table is injected and shared with the content store, so
      eviction never removes an id that is being acquired
    - The lock is released in ``finally``; a failed fetch or commit never
      wedges a content id
    - Fetch failures are not retried here; the caller decides
    """

    def __init__(
        self,
        catalog: ICatalog,
        store: ContentStore,
        fetcher: IFetcher,
        lock_table: Optional[ILockTable] = None,
        lock_timeout: float = 30.0,
        poll_interval: float = 1.0,
        metrics: Optional[CacheMetrics] = None,
    ):
        """
        Args:
            catalog: Durable index of cached assets
            store: Content store commits go through
            fetcher: Downloads remote assets to temp files
            lock_table: Per-id locks; defaults to the store's table
            lock_timeout: Default wait for a held lock, in seconds
            poll_interval: How often a waiter re-checks the lock
            metrics: Optional counters for downloads and lock waits
        """
        self.catalog = catalog
        self.store = store
        self.fetcher = fetcher
        self.lock_table = lock_table if lock_table is not None else store.lock_table
        self.lock_timeout = lock_timeout
        self.poll_interval = poll_interval
        self.metrics = metrics

    async def find_verified(self, content_id: str) -> Optional[Path]:
        """
        Return the path of an active entry whose file exists.

        An active entry with a missing file is self-healed (marked inactive)
        and treated as absent.
        """
        entry = await self.catalog.find_active(content_id)
        if entry is None:
            return None

        if entry.local_path is not None and entry.local_path.is_file():
            return entry.local_path

        logger.warning("File missing, marking as inactive: %s", content_id)
        await self.catalog.mark_inactive(content_id)
        if self.metrics:
            self.metrics.self_heals += 1
        return None

    async def acquire_and_store(
        self,
        content_id: str,
        remote_locator: str,
        metadata: AcquisitionMetadata,
        lock_timeout: Optional[float] = None,
    ) -> Path:
        """
        Return a local path for ``content_id``, downloading it at most once.

        Args:
            content_id: Cache key
            remote_locator: URL handed to the fetcher on a miss
            metadata: Descriptive fields for the catalog row
            lock_timeout: Override for how long to wait on a held lock

        Returns:
            Path of the stored file

        Raises:
            LockTimeoutError: Another acquisition held the lock past the wait
            FetchFailedError: The download failed
            CommitFailedError: Storing or registering the download failed
        """
        # Fast path: advisory only, no lock
        existing = await self.find_verified(content_id)
        if existing is not None:
            logger.info("Video already exists: %s", content_id)
            return existing

        timeout = self.lock_timeout if lock_timeout is None else lock_timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while not await self.lock_table.try_acquire(content_id):
            logger.info("Waiting for lock: %s", content_id)
            remaining = deadline - loop.time()
            freed = remaining > 0 and await wait_until_free(
                self.lock_table, content_id, remaining, self.poll_interval
            )
            if not freed:
                if self.metrics:
                    self.metrics.lock_timeouts += 1
                raise LockTimeoutError(
                    f"Timeout waiting for lock: {content_id} ({timeout:.1f}s)", content_id
                )

            existing = await self.find_verified(content_id)
            if existing is not None:
                logger.info("Another request already downloaded: %s", content_id)
                return existing

        try:
            existing = await self.find_verified(content_id)
            if existing is not None:
                logger.info("Another request already downloaded: %s", content_id)
                return existing

            return await self._fetch_and_commit(content_id, remote_locator, metadata)
        finally:
            await self.lock_table.release(content_id)

    async def _fetch_and_commit(
        self,
        content_id: str,
        remote_locator: str,
        metadata: AcquisitionMetadata,
    ) -> Path:
        logger.info("Acquiring %s from %s", content_id, remote_locator)
        if self.metrics:
            self.metrics.downloads_started += 1

        try:
            temp_path = await self.fetcher.fetch(remote_locator, metadata.title or content_id)
        except FetchFailedError as e:
            if self.metrics:
                self.metrics.downloads_failed += 1
            e.content_id = e.content_id or content_id
            raise
        except Exception as e:
            # Any fetcher may fail in its own way; callers only see FetchFailedError
            if self.metrics:
                self.metrics.downloads_failed += 1
            raise FetchFailedError(f"Fetch failed for {content_id}: {e}", content_id, cause=e) from e

        # Renew the lease so the commit runs under a full one
        if not await self.lock_table.refresh(content_id):
            logger.warning("Lock for %s lapsed during download, committing anyway", content_id)

        try:
            result = await self.store.commit(content_id, temp_path, metadata)
        except AcquisitionFailedError:
            if self.metrics:
                self.metrics.downloads_failed += 1
            raise
        finally:
            # commit consumes the temp file on success; drop it on failure too
            temp_path.unlink(missing_ok=True)

        if self.metrics:
            self.metrics.downloads_completed += 1
        logger.info("Stored: %s", content_id)
        return result.final_path

    async def in_flight(self) -> set[str]:
        """Content ids currently being acquired by this process."""
        return await self.lock_table.held()
