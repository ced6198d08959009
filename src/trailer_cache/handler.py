"""
Cache request handler: lookup, self-healing and acquisition on a miss
"""
import logging
from typing import Optional

from .coordinator import AcquisitionCoordinator
from .exceptions import AcquisitionFailedError, CacheRequestError, NotAvailableError
from .interfaces import ICatalog, ISourceResolver
from .metrics import CacheMetrics, MetricsCollector
from .models import CacheResult
from .store import ContentStore

logger = logging.getLogger(__name__)


class CacheRequestHandler:
    """
    Turns a content id into a playable local path.

    Intent:
    This is the single entry point the HTTP layer calls. A hit bumps the
    access statistics and returns immediately; a miss asks the resolver for
    a remote source and hands it to the coordinator. Acquisition failures
    are converted into ``CacheRequestError`` so the caller only deals with
    one error shape carrying a fallback hint and a retry flag.

    Key design decisions:
    - The content id is validated up front, before the catalog is touched
    - A catalog row whose file disappeared is repaired in place and the
      request proceeds as a miss
    - Every call is timed and counted, including failed ones
    """

    def __init__(
        self,
        catalog: ICatalog,
        store: ContentStore,
        coordinator: AcquisitionCoordinator,
        metrics: Optional[CacheMetrics] = None,
    ):
        """
        Args:
            catalog: Durable index of cached assets
            store: Content store serving and evicting files
            coordinator: Runs acquisitions on a miss
            metrics: Counters for this handler; defaults to the coordinator's,
                and is handed to the coordinator and store if they have none
        """
        if metrics is None:
            metrics = coordinator.metrics if coordinator.metrics is not None else CacheMetrics()
        if coordinator.metrics is None:
            coordinator.metrics = metrics
        if store.metrics is None:
            store.metrics = metrics

        self.catalog = catalog
        self.store = store
        self.coordinator = coordinator
        self.metrics = metrics

    async def handle(self, content_id: str, resolver: ISourceResolver) -> CacheResult:
        """
        Resolve ``content_id`` to a local file, acquiring it on a miss.

        Args:
            content_id: Cache key such as ``movie_550``
            resolver: Maps the id to a fetchable source on a miss

        Returns:
            CacheResult with the local path and whether it was already cached

        Raises:
            InvalidContentIdError: If the id cannot name a store file
            NotAvailableError: If the resolver knows no source for the id
            CacheRequestError: If acquisition failed (see ``retryable``)
        """
        with MetricsCollector(self.metrics) as collector:
            self.store.path_for(content_id)

            path = await self.coordinator.find_verified(content_id)
            if path is not None:
                await self.catalog.bump_access(content_id)
                collector.mark_cache_hit()
                logger.debug("Cache hit: %s", content_id)
                return CacheResult(content_id=content_id, path=path, from_cache=True)

            source = await resolver.resolve(content_id)
            if source is None:
                raise NotAvailableError(
                    f"No source available for {content_id}", content_id, fallback="backdrop"
                )

            logger.info("Cache miss, acquiring: %s", content_id)
            try:
                path = await self.coordinator.acquire_and_store(
                    content_id, source.remote_locator, source.metadata
                )
            except AcquisitionFailedError as e:
                logger.error("Acquisition failed for %s: %s", content_id, e)
                raise CacheRequestError(
                    f"Failed to acquire {content_id}: {e}",
                    content_id,
                    fallback="youtube",
                    retryable=e.retryable,
                    cause=e,
                ) from e

            return CacheResult(content_id=content_id, path=path, from_cache=False)
