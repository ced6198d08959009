"""
Interface definitions for trailer cache components.

Intent:
Defines abstract interfaces (protocols) for the collaborators the cache core
depends on. The coordinator, store and handler are written against these
protocols so tests can plug in fakes (a counting fetcher, a dict resolver)
and deployments can swap implementations (in-process vs Redis lock table)
without touching dependent code.
"""
from collections.abc import Iterable
from pathlib import Path
from typing import Any, Mapping, Optional, Protocol, runtime_checkable

from .models import CatalogEntry, CatalogStats, ResolvedSource


@runtime_checkable
class ICatalog(Protocol):
    """
    Interface for the durable index of cached assets.

    All implementations must make ``upsert`` atomic per content id and must
    never let ``bump_access`` raise.
    """

    async def initialize(self) -> None:
        """
        Create schema/connections. Idempotent.

        Raises:
            CatalogError: If initialization fails
        """
        ...

    async def find(self, content_id: str) -> Optional[CatalogEntry]:
        """Read-only lookup, active or not."""
        ...

    async def find_active(self, content_id: str) -> Optional[CatalogEntry]:
        """Lookup filtered to ``is_active``."""
        ...

    async def upsert(self, content_id: str, fields: Mapping[str, Any]) -> CatalogEntry:
        """
        Create or update the row for ``content_id`` and mark it active.

        Raises:
            CatalogError: If the write fails (nothing is partially applied)
        """
        ...

    async def mark_inactive(self, content_id: str) -> bool:
        """Soft-delete: ``is_active=False``, ``local_path=None``."""
        ...

    async def bump_access(self, content_id: str) -> None:
        """Increment ``access_count`` and set ``last_accessed``. Best effort."""
        ...

    async def list_eviction_candidates(
        self,
        limit: int,
        max_priority: Optional[int] = None,
        exclude: Iterable[str] = (),
    ) -> list[CatalogEntry]:
        """Active rows, lowest priority and least recently used first."""
        ...

    async def aggregate_stats(self) -> CatalogStats:
        ...

    async def list_active(self, limit: int = 50, offset: int = 0) -> list[CatalogEntry]:
        ...

    async def close(self) -> None:
        ...


@runtime_checkable
class ILockTable(Protocol):
    """
    Interface for per-content-id exclusive locks.

    Intent:
    The single point of serialization for acquisitions. ``try_acquire`` must
    be an atomic test-and-set: two concurrent callers can never both get
    ``True`` for the same id.
    """

    async def try_acquire(self, content_id: str) -> bool:
        """Take the lock if free. Returns whether it was taken."""
        ...

    async def release(self, content_id: str) -> None:
        """Release a lock held by this process. Releasing a free lock is a no-op."""
        ...

    async def refresh(self, content_id: str) -> bool:
        """
        Extend a lock this process holds. Returns False if it is no longer held.
        """
        ...

    async def is_locked(self, content_id: str) -> bool:
        ...

    async def held(self) -> set[str]:
        """Snapshot of content ids locked by this process."""
        ...


@runtime_checkable
class IFetcher(Protocol):
    """
    Interface for downloading a remote asset to a local temp file.

    Not safe to call twice concurrently for the same asset; the acquisition
    coordinator guarantees it never does.
    """

    async def fetch(self, remote_locator: str, title_hint: str) -> Path:
        """
        Download ``remote_locator`` and return the temp file path.

        Raises:
            FetchFailedError: On network/process error or timeout
        """
        ...


@runtime_checkable
class ISourceResolver(Protocol):
    """
    Interface for the trailer-discovery collaborator.

    Given a content id, decides which remote asset to fetch. Returns None
    when nothing suitable exists.
    """

    async def resolve(self, content_id: str) -> Optional[ResolvedSource]:
        ...
