"""
Filesystem content store for cached videos
"""
import asyncio
import logging
import os
from pathlib import Path
from typing import Optional

import aiofiles

from .exceptions import CacheError, CatalogError, CommitFailedError, InvalidContentIdError
from .integrity import FileIntegrityChecker
from .interfaces import ICatalog, ILockTable
from .locks import LockTable, try_hold
from .metrics import CacheMetrics
from .models import (
    BYTES_PER_MB,
    AcquisitionMetadata,
    CatalogEntry,
    CommitResult,
    IntegrityStatus,
    StoreStats,
    is_valid_content_id,
)

logger = logging.getLogger(__name__)


class ContentStore:
    """
    Directory of video files named by content id, with capacity-based eviction.

    Intent:
    Owns the bytes on disk and keeps them consistent with the catalog. Every
    file is ``{content_id}.{extension}`` directly under the storage directory,
    so the mapping from id to path is a pure function and distinct ids never
    collide.

    Key design decisions:
    - Commit is copy-then-verify-then-register. The copy goes to a ``.part``
      sibling first and is renamed into place with ``os.replace``, so readers
      never see a half-written file under the final name
    - If registering in the catalog fails, the placed file is removed again
    - Eviction walks catalog candidates (lowest priority, least recently
      used first) a batch at a time and skips any id whose acquisition lock
      is held
    - Usage stats come from scanning the directory, counting only files with
      the store's extension
    """

    def __init__(
        self,
        storage_dir: Path,
        catalog: ICatalog,
        lock_table: Optional[ILockTable] = None,
        max_storage_bytes: int = 1000 * 1024 * 1024 * 1024,
        max_files: int = 500,
        eviction_batch_size: int = 10,
        capacity_threshold: float = 0.9,
        eviction_max_priority: Optional[int] = None,
        integrity_checker: Optional[FileIntegrityChecker] = None,
        extension: str = "mp4",
        chunk_size: int = 1024 * 1024,
        metrics: Optional[CacheMetrics] = None,
    ):
        """
        Initialize the content store.

        Args:
            storage_dir: Directory holding the video files
            catalog: Catalog the store registers commits in
            lock_table: Acquisition locks consulted before evicting
            max_storage_bytes: Size limit for the whole store
            max_files: File count limit
            eviction_batch_size: Candidates evicted per pass
            capacity_threshold: Fraction of either limit that triggers eviction
            eviction_max_priority: Tiers above this are never evicted (None: all tiers)
            integrity_checker: Copy verifier
            extension: File extension of the single encoding profile
            chunk_size: Copy buffer size
            metrics: Optional counters for evictions
        """
        self.storage_dir = storage_dir
        self.catalog = catalog
        self.lock_table = lock_table if lock_table is not None else LockTable()
        self.max_storage_bytes = max_storage_bytes
        self.max_files = max_files
        self.eviction_batch_size = eviction_batch_size
        self.capacity_threshold = capacity_threshold
        self.eviction_max_priority = eviction_max_priority
        self.integrity_checker = integrity_checker or FileIntegrityChecker()
        self.extension = extension
        self.chunk_size = chunk_size
        self.metrics = metrics
        self._eviction_lock = asyncio.Lock()

    def initialize(self) -> None:
        self.storage_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, content_id: str) -> Path:
        """
        Map a content id to its file path.

        Raises:
            InvalidContentIdError: If the id could escape the storage directory
        """
        if not is_valid_content_id(content_id):
            raise InvalidContentIdError(f"Invalid content id: {content_id!r}")
        return self.storage_dir / f"{content_id}.{self.extension}"

    def exists(self, content_id: str) -> bool:
        return self.path_for(content_id).is_file()

    async def commit(self, content_id: str, temp_path: Path, metadata: AcquisitionMetadata) -> CommitResult:
        """
        Move a downloaded temp file into the store and register it.

        Intent:
        One logical unit: either the file is in place *and* the catalog row
        points at it with a measured size, or neither change survives. Copy
        (rather than rename) is used because the fetcher's temp directory may
        be on another device than the store.

        After a successful commit the capacity check runs; a failure there is
        logged and does not undo the commit.

        Args:
            content_id: Cache key
            temp_path: File produced by the fetcher
            metadata: Descriptive fields for the catalog row

        Returns:
            CommitResult with the final path and size in MB

        Raises:
            CommitFailedError: On any filesystem or catalog failure
        """
        final_path = self.path_for(content_id)
        part_path = final_path.with_name(f"{final_path.name}.part")

        if not temp_path.is_file():
            raise CommitFailedError(f"Temp file not found: {temp_path}", content_id)

        self.storage_dir.mkdir(parents=True, exist_ok=True)
        placed = False

        try:
            await self._copy(temp_path, part_path)

            status = await self.integrity_checker.verify_copy(temp_path, part_path)
            if status != IntegrityStatus.VALID:
                raise CommitFailedError(
                    f"Copy verification failed for {content_id}: {status.value}", content_id
                )

            os.replace(part_path, final_path)
            placed = True

            size_mb = final_path.stat().st_size / BYTES_PER_MB
            logger.info("Saving %s to %s (%.2fMB)", content_id, final_path, size_mb)

            await self.catalog.upsert(content_id, {
                "external_id": metadata.external_id,
                "media_kind": metadata.media_kind,
                "title": metadata.title,
                "local_path": final_path,
                "file_size_mb": size_mb,
                "quality": metadata.quality,
                "format": self.extension,
                "priority": metadata.priority,
            })
        except CommitFailedError:
            self._discard_failed(content_id, part_path, final_path if placed else None)
            raise
        except (OSError, CatalogError, ValueError) as e:
            self._discard_failed(content_id, part_path, final_path if placed else None)
            raise CommitFailedError(f"Commit failed for {content_id}: {e}", content_id, cause=e) from e
        except BaseException:
            self._discard_failed(content_id, part_path, final_path if placed else None)
            raise

        temp_path.unlink(missing_ok=True)

        try:
            await self.check_and_cleanup()
        except (CacheError, OSError) as e:
            logger.error("Capacity check after committing %s failed: %s", content_id, e)

        return CommitResult(final_path=final_path, size_mb=size_mb)

    async def _copy(self, source: Path, destination: Path) -> None:
        async with aiofiles.open(source, 'rb') as src, aiofiles.open(destination, 'wb') as dst:
            while chunk := await src.read(self.chunk_size):
                await dst.write(chunk)

    def _discard_failed(self, content_id: str, part_path: Path, final_path: Optional[Path]) -> None:
        for path in (part_path, final_path):
            if path is None:
                continue
            try:
                if path.exists():
                    path.unlink()
                    logger.info("Cleaned up failed save for %s: %s", content_id, path)
            except OSError as e:
                logger.error("Could not remove %s after failed commit: %s", path, e)

    async def stats(self) -> StoreStats:
        """
        Scan the store directory.

        Only files with the store's extension count; foreign files dropped
        into the directory are ignored, and files that vanish mid-scan are
        skipped.
        """
        file_count = 0
        used_bytes = 0

        if self.storage_dir.exists():
            for path in self.storage_dir.glob(f"*.{self.extension}"):
                try:
                    if not path.is_file():
                        continue
                    used_bytes += path.stat().st_size
                    file_count += 1
                except OSError as e:
                    logger.debug("Could not stat %s: %s", path, e)

        return StoreStats(
            file_count=file_count,
            used_bytes=used_bytes,
            limit_bytes=self.max_storage_bytes,
            max_files=self.max_files,
        )

    async def evict_one(self, entry: CatalogEntry) -> bool:
        """
        Delete an entry's file and deactivate its catalog row.

        Intent:
        A missing file is treated as already evicted: the row is still
        deactivated so the catalog stops advertising it.

        Returns:
            True if a file was removed from disk
        """
        path = entry.local_path or self.path_for(entry.content_id)
        removed = False

        if path.exists():
            path.unlink()
            removed = True

        await self.catalog.mark_inactive(entry.content_id)
        if self.metrics is not None:
            self.metrics.evictions += 1
        logger.info("Evicted %s (%s)", entry.content_id, entry.title or path.name)
        return removed

    async def _evict_batch(self, skip: set[str]) -> tuple[int, int]:
        """
        Evict up to one batch of candidates, skipping locked ids.

        Ids that could not be evicted (locked, or deletion failed) are added
        to ``skip`` so later batches move on to the next candidates.

        Returns:
            (entries evicted, candidates examined)
        """
        candidates = await self.catalog.list_eviction_candidates(
            self.eviction_batch_size,
            max_priority=self.eviction_max_priority,
            exclude=skip,
        )

        evicted = 0
        for entry in candidates:
            async with try_hold(self.lock_table, entry.content_id) as acquired:
                if not acquired:
                    logger.debug("Skipping eviction of %s: acquisition in progress", entry.content_id)
                    skip.add(entry.content_id)
                    continue
                try:
                    await self.evict_one(entry)
                    evicted += 1
                except (OSError, CatalogError) as e:
                    logger.warning("Failed to evict %s: %s", entry.content_id, e)
                    skip.add(entry.content_id)

        return evicted, len(candidates)

    async def cleanup(self) -> int:
        """
        Evict one batch immediately, regardless of usage.

        Returns:
            Number of entries evicted
        """
        async with self._eviction_lock:
            logger.info("Starting storage cleanup...")
            evicted, _ = await self._evict_batch(set())
            logger.info("Cleanup completed: %d videos removed", evicted)
            return evicted

    async def check_and_cleanup(self) -> int:
        """
        Evict until usage is back under the capacity threshold.

        Intent:
        Runs after every commit and from the periodic maintenance task. When
        size or file count crosses ``capacity_threshold`` of its limit,
        batches are evicted until usage drops below it or no evictable
        candidate remains. Not being able to get under the limit (everything
        left is locked or protected) is a soft condition: it is logged and
        new commits still proceed.

        Returns:
            Number of entries evicted
        """
        async with self._eviction_lock:
            stats = await self.stats()
            if not stats.over_threshold(self.capacity_threshold):
                return 0

            logger.info(
                "Storage near limit (%d files, %.2fGB), starting cleanup...",
                stats.file_count, stats.used_gb,
            )

            total = 0
            skip: set[str] = set()
            while stats.over_threshold(self.capacity_threshold):
                evicted, examined = await self._evict_batch(skip)
                total += evicted
                if examined == 0:
                    break
                stats = await self.stats()

            if stats.over_threshold(self.capacity_threshold):
                logger.warning(
                    "CapacityExceeded: store still at %d files / %.2fGB after evicting %d entries",
                    stats.file_count, stats.used_gb, total,
                )
            else:
                logger.info("Cleanup completed: %d videos removed", total)

            return total

    async def reconcile(self) -> dict[str, int]:
        """
        Bring catalog and filesystem back in line.

        Intent:
        Crash recovery for the two halves of a commit. Active rows whose file
        vanished are deactivated; ``.{extension}`` files no active row points
        at, and leftover ``.part`` files, are deleted. Ids with an acquisition
        in flight are left alone.

        Returns:
            Counts of deactivated rows and removed orphan files
        """
        active = await self.catalog.all_active()
        statuses = await self.integrity_checker.check_batch(active)

        deactivated = 0
        for entry in active:
            status = statuses[entry.content_id]
            if status == IntegrityStatus.FILE_MISSING:
                async with try_hold(self.lock_table, entry.content_id) as acquired:
                    if acquired and await self.catalog.mark_inactive(entry.content_id):
                        logger.warning("File missing, marked inactive: %s", entry.content_id)
                        deactivated += 1
            elif status == IntegrityStatus.SIZE_MISMATCH:
                logger.warning("Size on disk differs from catalog for %s", entry.content_id)

        referenced = {
            entry.local_path.resolve()
            for entry in active
            if entry.local_path is not None and statuses[entry.content_id] != IntegrityStatus.FILE_MISSING
        }

        orphans_removed = 0
        if self.storage_dir.exists():
            leftovers = list(self.storage_dir.glob(f"*.{self.extension}"))
            leftovers += list(self.storage_dir.glob(f"*.{self.extension}.part"))
            for path in leftovers:
                if path.resolve() in referenced:
                    continue
                content_id = path.name.split(".", 1)[0]
                async with try_hold(self.lock_table, content_id) as acquired:
                    if not acquired:
                        continue
                    # Re-read under the lock; a commit may have just landed
                    entry = await self.catalog.find_active(content_id)
                    if entry is not None and entry.local_path is not None and entry.local_path.resolve() == path.resolve():
                        continue
                    try:
                        path.unlink()
                        orphans_removed += 1
                        logger.info("Removed orphan file: %s", path)
                    except FileNotFoundError:
                        pass

        return {"deactivated": deactivated, "orphans_removed": orphans_removed}
