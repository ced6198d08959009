"""
Trailer Cache - on-demand video acquisition with a deduplicating local cache
"""
from .catalog import SQLiteCatalog
from .config import CacheConfig
from .coordinator import AcquisitionCoordinator
from .exceptions import (
    AcquisitionFailedError,
    CacheConfigurationError,
    CacheError,
    CacheRequestError,
    CatalogError,
    CommitFailedError,
    ContentNotFoundError,
    FetchFailedError,
    InvalidContentIdError,
    LockTimeoutError,
    NotAvailableError,
    RangeNotSatisfiableError,
)
from .fetcher import HttpFetcher, YtDlpFetcher
from .handler import CacheRequestHandler
from .interfaces import ICatalog, IFetcher, ILockTable, ISourceResolver
from .locks import LockTable
from .models import (
    AcquisitionMetadata,
    CacheResult,
    CatalogEntry,
    MediaKind,
    ResolvedSource,
    make_content_id,
)
from .redis_locks import RedisLockTable
from .resolvers import MappingResolver
from .store import ContentStore
from .streaming import StreamServer

__version__ = "0.1.0"
__all__ = [
    "SQLiteCatalog",
    "CacheConfig",
    "AcquisitionCoordinator",
    "CacheRequestHandler",
    "ContentStore",
    "StreamServer",
    "LockTable",
    "RedisLockTable",
    "YtDlpFetcher",
    "HttpFetcher",
    "MappingResolver",
    "CatalogEntry",
    "AcquisitionMetadata",
    "ResolvedSource",
    "CacheResult",
    "MediaKind",
    "make_content_id",
    "ICatalog",
    "IFetcher",
    "ILockTable",
    "ISourceResolver",
    "CacheError",
    "CacheConfigurationError",
    "CatalogError",
    "InvalidContentIdError",
    "ContentNotFoundError",
    "NotAvailableError",
    "AcquisitionFailedError",
    "LockTimeoutError",
    "FetchFailedError",
    "CommitFailedError",
    "RangeNotSatisfiableError",
    "CacheRequestError",
]
