"""
HTTP surface for the trailer cache (FastAPI)
"""
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from .catalog import SQLiteCatalog
from .config import CacheConfig
from .coordinator import AcquisitionCoordinator
from .exceptions import (
    CacheConfigurationError,
    CacheError,
    CacheRequestError,
    ContentNotFoundError,
    FetchFailedError,
    InvalidContentIdError,
    LockTimeoutError,
    RangeNotSatisfiableError,
)
from .fetcher import HttpFetcher, YtDlpFetcher, cleanup_temp_files
from .handler import CacheRequestHandler
from .integrity import FileIntegrityChecker
from .interfaces import IFetcher, ILockTable, ISourceResolver
from .locks import LockTable
from .maintenance import MaintenanceScheduler
from .metrics import CacheMetrics
from .redis_locks import RedisLockTable
from .resolvers import MappingResolver
from .store import ContentStore
from .streaming import StreamServer

logger = logging.getLogger(__name__)


@dataclass
class CacheServices:
    """Wired components of one running service instance."""

    config: CacheConfig
    catalog: SQLiteCatalog
    store: ContentStore
    coordinator: AcquisitionCoordinator
    handler: CacheRequestHandler
    streamer: StreamServer
    resolver: ISourceResolver
    lock_table: ILockTable
    metrics: CacheMetrics
    maintenance: MaintenanceScheduler
    redis_client: Any = None
    owns_redis: bool = False

    async def close(self) -> None:
        await self.maintenance.stop()
        if isinstance(self.lock_table, RedisLockTable):
            await self.lock_table.close()
        await self.catalog.close()
        if self.owns_redis and self.redis_client is not None:
            await self.redis_client.aclose()


def _connect_redis(redis_url: str):
    try:
        from redis.asyncio import Redis
    except ImportError as e:
        raise CacheConfigurationError(
            "REDIS_URL is set but redis is not installed. Install with: pip install trailer-cache[redis]"
        ) from e
    return Redis.from_url(redis_url, decode_responses=True)


def _default_fetcher(config: CacheConfig) -> IFetcher:
    if config.fetcher == "http":
        return HttpFetcher(config.temp_dir, timeout=config.download_timeout)
    return YtDlpFetcher(config.temp_dir, timeout=config.download_timeout)


async def build_services(
    config: CacheConfig,
    resolver: Optional[ISourceResolver] = None,
    fetcher: Optional[IFetcher] = None,
    redis_client: Any = None,
) -> CacheServices:
    """
    Construct and initialize every component from configuration.

    Collaborators passed in explicitly take precedence over the ones the
    configuration would create.

    Raises:
        CacheConfigurationError: If a configured collaborator cannot be set up
        CatalogError: If the catalog database cannot be opened
    """
    config.storage_dir.mkdir(parents=True, exist_ok=True)
    config.temp_dir.mkdir(parents=True, exist_ok=True)

    owns_redis = False
    if redis_client is None and config.redis_url:
        redis_client = _connect_redis(config.redis_url)
        owns_redis = True

    lock_table: ILockTable
    if redis_client is not None:
        # Lease covers a full wait plus a full download and is renewed before commit
        lock_table = RedisLockTable(
            redis_client, lease_seconds=config.download_timeout + config.lock_timeout
        )
    else:
        lock_table = LockTable()

    if resolver is None:
        if config.source_manifest is not None:
            resolver = MappingResolver.from_manifest(config.source_manifest)
        else:
            resolver = MappingResolver()

    metrics = CacheMetrics()
    catalog = SQLiteCatalog(config.catalog_path, pool_size=config.db_pool_size)
    await catalog.initialize()

    store = ContentStore(
        storage_dir=config.storage_dir,
        catalog=catalog,
        lock_table=lock_table,
        max_storage_bytes=config.max_storage_bytes,
        max_files=config.max_files,
        eviction_batch_size=config.eviction_batch_size,
        capacity_threshold=config.capacity_threshold,
        eviction_max_priority=config.eviction_max_priority,
        integrity_checker=FileIntegrityChecker(verify_hash=config.verify_copy),
        metrics=metrics,
    )
    store.initialize()

    coordinator = AcquisitionCoordinator(
        catalog=catalog,
        store=store,
        fetcher=fetcher or _default_fetcher(config),
        lock_table=lock_table,
        lock_timeout=config.lock_timeout,
        poll_interval=config.lock_poll_interval,
        metrics=metrics,
    )

    return CacheServices(
        config=config,
        catalog=catalog,
        store=store,
        coordinator=coordinator,
        handler=CacheRequestHandler(catalog, store, coordinator, metrics),
        streamer=StreamServer(),
        resolver=resolver,
        lock_table=lock_table,
        metrics=metrics,
        maintenance=MaintenanceScheduler(
            store,
            interval_seconds=config.cleanup_interval_hours * 3600,
            temp_dir=config.temp_dir,
            temp_max_age=config.temp_max_age,
        ),
        redis_client=redis_client,
        owns_redis=owns_redis,
    )


def get_services(request: Request) -> CacheServices:
    return request.app.state.services


def _error_response(status_code: int, error: CacheError, fallback: Optional[str] = None,
                    retryable: bool = False, headers: Optional[dict[str, str]] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": str(error), "fallback": fallback, "retryable": retryable},
        headers=headers,
    )


def _status_for_acquisition_failure(error: CacheRequestError) -> int:
    if isinstance(error.cause, LockTimeoutError):
        return 503
    if isinstance(error.cause, FetchFailedError):
        return 502
    return 500


def register_error_handlers(app: FastAPI) -> None:
    """Map cache exceptions onto structured JSON responses."""

    @app.exception_handler(InvalidContentIdError)
    async def invalid_id(request: Request, exc: InvalidContentIdError) -> JSONResponse:
        return _error_response(400, exc)

    @app.exception_handler(ContentNotFoundError)
    async def not_found(request: Request, exc: ContentNotFoundError) -> JSONResponse:
        return _error_response(404, exc, fallback=exc.fallback)

    @app.exception_handler(CacheRequestError)
    async def acquisition_failed(request: Request, exc: CacheRequestError) -> JSONResponse:
        status_code = _status_for_acquisition_failure(exc)
        headers = {"Retry-After": "5"} if exc.retryable else None
        return _error_response(status_code, exc, fallback=exc.fallback, retryable=exc.retryable, headers=headers)

    @app.exception_handler(RangeNotSatisfiableError)
    async def range_not_satisfiable(request: Request, exc: RangeNotSatisfiableError) -> JSONResponse:
        return _error_response(416, exc, headers={"Content-Range": f"bytes */{exc.file_size}"})

    @app.exception_handler(CacheError)
    async def cache_error(request: Request, exc: CacheError) -> JSONResponse:
        logger.error("Unhandled cache error on %s: %s", request.url.path, exc)
        return _error_response(500, exc)


def create_app(
    config: Optional[CacheConfig] = None,
    resolver: Optional[ISourceResolver] = None,
    fetcher: Optional[IFetcher] = None,
    redis_client: Any = None,
    run_maintenance: bool = True,
) -> FastAPI:
    """
    Create the FastAPI application.

    Intent:
    Components are built in the lifespan and hung off ``app.state`` instead
    of living in module globals, so tests can create isolated apps with
    fake fetchers and resolvers.

    Args:
        config: Service configuration (defaults read from the environment)
        resolver: Source resolver used on cache misses
        fetcher: Fetcher override, mainly for tests
        redis_client: Async Redis client for shared locks
        run_maintenance: Start the periodic cleanup task
    """
    config = config or CacheConfig()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services = await build_services(config, resolver=resolver, fetcher=fetcher, redis_client=redis_client)
        app.state.services = services

        cleanup_temp_files(config.temp_dir, config.temp_max_age)
        await services.store.check_and_cleanup()
        if run_maintenance:
            services.maintenance.start()

        logger.info("Trailer cache ready: %s", config.storage_dir.resolve())
        try:
            yield
        finally:
            await services.close()
            logger.info("Trailer cache stopped")

    app = FastAPI(title="Trailer Cache", lifespan=lifespan)
    register_error_handlers(app)

    # Static routes are declared before the content id route
    @app.get("/cache/status")
    async def cache_status(services: CacheServices = Depends(get_services)) -> dict:
        stats = await services.store.stats()
        catalog_stats = await services.catalog.aggregate_stats()
        services.metrics.disk_usage_bytes = stats.used_bytes
        services.metrics.total_entries = catalog_stats.count

        return {
            "success": True,
            **stats.to_dict(),
            "catalog": catalog_stats.model_dump(),
            "in_flight": sorted(await services.coordinator.in_flight()),
        }

    @app.get("/cache/health")
    async def cache_health(services: CacheServices = Depends(get_services)) -> dict:
        stats = await services.store.stats()
        return {
            "success": True,
            "status": "OK",
            **stats.to_dict(),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.post("/cache/cleanup")
    async def cache_cleanup(services: CacheServices = Depends(get_services)) -> dict:
        deleted = await services.store.cleanup()
        return {"success": True, "deleted_count": deleted}

    @app.get("/cache/list")
    async def cache_list(
        limit: int = Query(50, ge=1, le=500),
        offset: int = Query(0, ge=0),
        services: CacheServices = Depends(get_services),
    ) -> dict:
        entries = await services.catalog.list_active(limit=limit, offset=offset)
        return {
            "success": True,
            "total": await services.catalog.count_active(),
            "count": len(entries),
            "offset": offset,
            "videos": [entry.model_dump(mode="json") for entry in entries],
        }

    @app.get("/cache/metrics", response_class=PlainTextResponse)
    async def cache_metrics(services: CacheServices = Depends(get_services)) -> str:
        stats = await services.store.stats()
        services.metrics.disk_usage_bytes = stats.used_bytes
        return services.metrics.to_prometheus()

    @app.get("/cache/{content_id}")
    async def get_content(
        content_id: str,
        request: Request,
        services: CacheServices = Depends(get_services),
    ) -> Response:
        result = await services.handler.handle(content_id, services.resolver)
        return await services.streamer.serve(request, result.path)

    return app
