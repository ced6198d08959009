"""
Metrics and monitoring for the trailer cache
"""
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from .models import BYTES_PER_MB


@dataclass
class CacheMetrics:
    """
    Counters and timings for cache requests, downloads and eviction.

    Intent:
    Answers the operational questions for this service: how often requests
    hit the cache, how many downloads run and fail, how often callers give
    up waiting on a lock, and how much storage is in use.

    Key design decisions:
    - Plain counters mutated from the event loop, no locking needed
    - Hit and miss latency are kept apart; a miss includes a download and
      would drown the hit latency in a single average
    - Provides both dict and Prometheus export formats
    """
    # Request counters
    total_requests: int = 0
    cache_hits: int = 0
    cache_misses: int = 0

    # Acquisition counters
    downloads_started: int = 0
    downloads_completed: int = 0
    downloads_failed: int = 0
    lock_timeouts: int = 0
    self_heals: int = 0

    # Eviction
    evictions: int = 0

    # Latency, seconds
    hit_seconds_total: float = 0.0
    miss_seconds_total: float = 0.0
    slowest_request: Optional[float] = None

    # Storage gauges, refreshed on status requests
    disk_usage_bytes: int = 0
    total_entries: int = 0

    errors: dict[str, int] = field(default_factory=dict)

    started_at: datetime = field(default_factory=datetime.now)
    last_reset_at: datetime = field(default_factory=datetime.now)

    @property
    def hit_rate(self) -> float:
        """
        Fraction of requests served from the cache (0.0 when idle).
        """
        if not self.total_requests:
            return 0.0
        return self.cache_hits / self.total_requests

    @property
    def avg_hit_seconds(self) -> float:
        return self.hit_seconds_total / self.cache_hits if self.cache_hits else 0.0

    @property
    def avg_miss_seconds(self) -> float:
        return self.miss_seconds_total / self.cache_misses if self.cache_misses else 0.0

    def record_request(self, elapsed: float, cache_hit: bool) -> None:
        """
        Record a single handled request.

        Args:
            elapsed: Seconds from request start to a local path (or failure)
            cache_hit: Whether the file was already cached
        """
        self.total_requests += 1
        if cache_hit:
            self.cache_hits += 1
            self.hit_seconds_total += elapsed
        else:
            self.cache_misses += 1
            self.miss_seconds_total += elapsed

        if self.slowest_request is None or elapsed > self.slowest_request:
            self.slowest_request = elapsed

    def record_error(self, error_type: str) -> None:
        self.errors[error_type] = self.errors.get(error_type, 0) + 1

    def to_dict(self) -> dict:
        """
        Convert metrics to dictionary for JSON export.
        """
        return {
            "requests": {
                "total": self.total_requests,
                "hits": self.cache_hits,
                "misses": self.cache_misses,
                "hit_rate": self.hit_rate,
                "avg_hit_ms": self.avg_hit_seconds * 1000,
                "avg_miss_ms": self.avg_miss_seconds * 1000,
                "slowest_ms": None if self.slowest_request is None else self.slowest_request * 1000,
            },
            "downloads": {
                "started": self.downloads_started,
                "completed": self.downloads_completed,
                "failed": self.downloads_failed,
                "lock_timeouts": self.lock_timeouts,
            },
            "self_heals": self.self_heals,
            "evictions": self.evictions,
            "disk_usage_mb": self.disk_usage_bytes / BYTES_PER_MB,
            "total_entries": self.total_entries,
            "errors": dict(self.errors),
            "uptime_seconds": (datetime.now() - self.started_at).total_seconds(),
        }

    def to_prometheus(self) -> str:
        """
        Export metrics in Prometheus exposition format.
        """
        lines = [
            "# HELP trailer_cache_requests_total Cache requests by outcome",
            "# TYPE trailer_cache_requests_total counter",
            f'trailer_cache_requests_total{{outcome="hit"}} {self.cache_hits}',
            f'trailer_cache_requests_total{{outcome="miss"}} {self.cache_misses}',
            "",
            "# HELP trailer_cache_hit_ratio Fraction of requests served from the cache",
            "# TYPE trailer_cache_hit_ratio gauge",
            f"trailer_cache_hit_ratio {self.hit_rate}",
            "",
            "# HELP trailer_cache_request_seconds Time to resolve a request to a local file",
            "# TYPE trailer_cache_request_seconds summary",
            f'trailer_cache_request_seconds_sum{{outcome="hit"}} {self.hit_seconds_total}',
            f'trailer_cache_request_seconds_count{{outcome="hit"}} {self.cache_hits}',
            f'trailer_cache_request_seconds_sum{{outcome="miss"}} {self.miss_seconds_total}',
            f'trailer_cache_request_seconds_count{{outcome="miss"}} {self.cache_misses}',
            "",
            "# HELP trailer_cache_downloads_total Downloads by outcome",
            "# TYPE trailer_cache_downloads_total counter",
            f'trailer_cache_downloads_total{{outcome="started"}} {self.downloads_started}',
            f'trailer_cache_downloads_total{{outcome="completed"}} {self.downloads_completed}',
            f'trailer_cache_downloads_total{{outcome="failed"}} {self.downloads_failed}',
            "",
            "# HELP trailer_cache_lock_timeouts_total Callers that gave up waiting on a content lock",
            "# TYPE trailer_cache_lock_timeouts_total counter",
            f"trailer_cache_lock_timeouts_total {self.lock_timeouts}",
            "",
            "# HELP trailer_cache_self_heals_total Catalog rows deactivated because their file was gone",
            "# TYPE trailer_cache_self_heals_total counter",
            f"trailer_cache_self_heals_total {self.self_heals}",
            "",
            "# HELP trailer_cache_evictions_total Entries evicted",
            "# TYPE trailer_cache_evictions_total counter",
            f"trailer_cache_evictions_total {self.evictions}",
            "",
            "# HELP trailer_cache_disk_usage_bytes Bytes used by stored videos",
            "# TYPE trailer_cache_disk_usage_bytes gauge",
            f"trailer_cache_disk_usage_bytes {self.disk_usage_bytes}",
        ]

        if self.errors:
            lines.extend([
                "",
                "# HELP trailer_cache_errors_total Failed requests by error type",
                "# TYPE trailer_cache_errors_total counter",
            ])
            lines.extend(
                f'trailer_cache_errors_total{{type="{error_type}"}} {count}'
                for error_type, count in sorted(self.errors.items())
            )

        return "\n".join(lines) + "\n"

    def reset(self) -> None:
        """
        Zero every counter, keeping ``started_at``.
        """
        fresh = CacheMetrics(started_at=self.started_at)
        self.__dict__.update(fresh.__dict__)


class MetricsCollector:
    """
    Context manager that times one request.

    Intent:
    Records elapsed time and the error type if the block raised, without
    instrumenting every return path by hand. Requests count as misses
    unless ``mark_cache_hit`` is called.
    """
    def __init__(self, metrics: CacheMetrics):
        self.metrics = metrics
        self.cache_hit = False
        self._started: Optional[float] = None

    def __enter__(self):
        self._started = time.monotonic()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._started is not None:
            self.metrics.record_request(time.monotonic() - self._started, self.cache_hit)
        if exc_type is not None:
            self.metrics.record_error(exc_type.__name__)
        return False

    def mark_cache_hit(self) -> None:
        self.cache_hit = True
