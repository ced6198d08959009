"""
File integrity checking functionality
"""
import asyncio
import hashlib
from pathlib import Path

import aiofiles

from .models import BYTES_PER_MB, CatalogEntry, IntegrityStatus


class FileIntegrityChecker:
    """
    Verifies copies made into the store and files referenced by the catalog.

    Intent:
    Commits are copy-then-verify-then-register: a copy that came out short
    (disk full, cross-device hiccup) must never be registered. The cheap
    check (size) always runs; SHA-256 comparison runs when ``verify_hash``
    is enabled.

    Key design decisions:
    - Tiered verification: existence -> size -> content hash
    - Chunked async reads keep memory flat for multi-GB videos
    """

    def __init__(self, verify_hash: bool = True, chunk_size: int = 1024 * 1024):
        """
        Args:
            verify_hash: Whether to compare SHA-256 digests after the size check
            chunk_size: Read size for hashing
        """
        self.verify_hash = verify_hash
        self.chunk_size = chunk_size

    async def compute_file_hash(self, file_path: Path) -> str:
        """
        Compute SHA-256 hash of file contents asynchronously.

        Returns:
            Hexadecimal SHA-256 hash of file contents
        """
        sha256_hash = hashlib.sha256()

        async with aiofiles.open(file_path, 'rb') as f:
            while chunk := await f.read(self.chunk_size):
                sha256_hash.update(chunk)

        return sha256_hash.hexdigest()

    async def verify_copy(self, source: Path, copy: Path) -> IntegrityStatus:
        """
        Check that ``copy`` is a faithful copy of ``source``.

        Args:
            source: Original file (the fetcher's temp download)
            copy: File written into the store

        Returns:
            IntegrityStatus indicating the verification result
        """
        if not copy.exists():
            return IntegrityStatus.FILE_MISSING

        if copy.stat().st_size != source.stat().st_size:
            return IntegrityStatus.SIZE_MISMATCH

        if self.verify_hash:
            source_hash, copy_hash = await asyncio.gather(
                self.compute_file_hash(source),
                self.compute_file_hash(copy),
            )
            if source_hash != copy_hash:
                return IntegrityStatus.CONTENT_CHANGED

        return IntegrityStatus.VALID

    async def check_entry(self, entry: CatalogEntry) -> IntegrityStatus:
        """
        Check that an active catalog row still points at its file.

        Size is compared at MB granularity with a small tolerance, since the
        catalog stores a float.
        """
        if entry.local_path is None:
            return IntegrityStatus.FILE_MISSING

        try:
            stat = entry.local_path.stat()
        except OSError:
            return IntegrityStatus.FILE_MISSING

        if abs(stat.st_size / BYTES_PER_MB - entry.file_size_mb) > 0.01:
            return IntegrityStatus.SIZE_MISMATCH

        return IntegrityStatus.VALID

    async def check_batch(self, entries: list[CatalogEntry]) -> dict[str, IntegrityStatus]:
        """
        Check many catalog rows concurrently.

        Returns:
            Dictionary mapping content ids to their integrity status
        """
        tasks = [self.check_entry(entry) for entry in entries]
        results = await asyncio.gather(*tasks)

        return {entry.content_id: status for entry, status in zip(entries, results)}
