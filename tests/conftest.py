"""
Shared fixtures and fakes for the trailer cache tests
"""
import asyncio
import tempfile
import time
from datetime import datetime
from pathlib import Path
from typing import Optional

import pytest

from trailer_cache.catalog import SQLiteCatalog, _timestamp
from trailer_cache.exceptions import FetchFailedError
from trailer_cache.locks import LockTable
from trailer_cache.models import AcquisitionMetadata, MediaKind
from trailer_cache.store import ContentStore


class FakeFetcher:
    """
    Fetcher that writes fixed bytes to the temp directory.

    Counts calls so tests can assert how many downloads actually ran.
    """

    def __init__(self, temp_dir: Path, payload: bytes = b"\x00" * 2048, delay: float = 0.0,
                 error: Optional[Exception] = None):
        self.temp_dir = temp_dir
        self.payload = payload
        self.delay = delay
        self.error = error
        self.calls: list[str] = []

    async def fetch(self, remote_locator: str, title_hint: str) -> Path:
        self.calls.append(remote_locator)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        temp_file = self.temp_dir / f"{title_hint}_{len(self.calls)}.mp4"
        temp_file.write_bytes(self.payload)
        return temp_file


class FailingFetcher(FakeFetcher):
    def __init__(self, temp_dir: Path):
        super().__init__(temp_dir, error=FetchFailedError("remote returned 404"))


class MockRedis:
    """Mock Redis client supporting the commands the lock table uses"""

    def __init__(self):
        self.data = {}
        self.expiry = {}
        self.closed = False

    def _expire_stale(self, key):
        deadline = self.expiry.get(key)
        if deadline is not None and time.monotonic() >= deadline:
            self.data.pop(key, None)
            self.expiry.pop(key, None)

    async def set(self, key, value, nx=False, px=None):
        """Mock set with NX and PX"""
        self._expire_stale(key)
        if nx and key in self.data:
            return None
        self.data[key] = value
        if px is not None:
            self.expiry[key] = time.monotonic() + px / 1000
        return True

    async def exists(self, key):
        """Mock exists"""
        self._expire_stale(key)
        return 1 if key in self.data else 0

    async def eval(self, script, numkeys, key, token, *args):
        """Mock of the token-checked release and refresh scripts"""
        self._expire_stale(key)
        if self.data.get(key) != token:
            return 0
        if "pexpire" in script:
            self.expiry[key] = time.monotonic() + int(args[0]) / 1000
            return 1
        del self.data[key]
        self.expiry.pop(key, None)
        return 1

    async def aclose(self):
        self.closed = True


def movie_metadata(external_id: str = "550", title: str = "Fight Club", priority: int = 1) -> AcquisitionMetadata:
    return AcquisitionMetadata(
        external_id=external_id,
        media_kind=MediaKind.MOVIE,
        title=title,
        priority=priority,
    )


async def set_last_accessed(catalog: SQLiteCatalog, content_id: str, when: datetime) -> None:
    """Pin a row's last_accessed so ordering tests do not depend on timing."""
    async with catalog._get_connection() as conn:
        await conn.execute(
            "UPDATE catalog_entries SET last_accessed = ? WHERE content_id = ?",
            (_timestamp(when), content_id),
        )


@pytest.fixture
def temp_root():
    """
    Temporary directory holding storage, temp downloads and the database
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
async def catalog(temp_root):
    catalog = SQLiteCatalog(temp_root / "catalog.db", pool_size=5)
    await catalog.initialize()

    yield catalog

    await catalog.close()


@pytest.fixture
def lock_table():
    return LockTable()


@pytest.fixture
def store(temp_root, catalog, lock_table):
    store = ContentStore(
        storage_dir=temp_root / "storage",
        catalog=catalog,
        lock_table=lock_table,
        max_storage_bytes=1024 * 1024 * 1024,
        max_files=100,
        eviction_batch_size=10,
    )
    store.initialize()
    return store


@pytest.fixture
def fetcher(temp_root):
    return FakeFetcher(temp_root / "temp")
