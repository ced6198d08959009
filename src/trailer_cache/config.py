"""
Configuration module for the trailer cache
"""
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

load_dotenv()


def _optional_int(name: str) -> Optional[int]:
    value = os.getenv(name)
    return int(value) if value not in (None, "") else None


class CacheConfig(BaseModel):
    """
    Configuration for the trailer cache with environment variable support.

    Intent:
    Centralizes storage limits, timeouts and collaborator choices with
    defaults that work for local development. Environment variables (and a
    ``.env`` file) override the defaults so deployments can tune capacity
    without code changes.

    Key design decisions:
    - Capacity is bounded twice: total size (GB) and file count
    - Lock wait timeout is kept strictly shorter than the download timeout so
      waiting callers fail fast while the downloader is still working
    - The Redis URL is optional; without it the lock table is process-local
    """

    storage_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("STORAGE_DIR", "./trailer_storage"))
    )
    catalog_db: Optional[Path] = Field(
        default_factory=lambda: Path(os.environ["CATALOG_DB"]) if os.getenv("CATALOG_DB") else None
    )
    temp_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("TEMP_DIR", "./temp-downloads"))
    )
    max_storage_gb: float = Field(
        default_factory=lambda: float(os.getenv("MAX_STORAGE_GB", "1000"))
    )
    max_files: int = Field(default_factory=lambda: int(os.getenv("MAX_VIDEOS", "500")))
    eviction_batch_size: int = Field(
        default_factory=lambda: int(os.getenv("EVICTION_BATCH_SIZE", "10"))
    )
    capacity_threshold: float = Field(
        default_factory=lambda: float(os.getenv("CAPACITY_THRESHOLD", "0.9"))
    )
    # Tiers above this priority are never evicted; None means every tier is eligible
    eviction_max_priority: Optional[int] = Field(
        default_factory=lambda: _optional_int("EVICTION_MAX_PRIORITY")
    )
    lock_timeout: float = Field(default_factory=lambda: float(os.getenv("LOCK_TIMEOUT", "30")))
    lock_poll_interval: float = Field(
        default_factory=lambda: float(os.getenv("LOCK_POLL_INTERVAL", "1.0"))
    )
    download_timeout: float = Field(
        default_factory=lambda: float(os.getenv("DOWNLOAD_TIMEOUT", "300"))
    )
    cleanup_interval_hours: float = Field(
        default_factory=lambda: float(os.getenv("CLEANUP_INTERVAL_HOURS", "6"))
    )
    temp_max_age: float = Field(default_factory=lambda: float(os.getenv("TEMP_MAX_AGE", "3600")))
    verify_copy: bool = Field(
        default_factory=lambda: os.getenv("VERIFY_COPY", "true").lower() == "true"
    )
    db_pool_size: int = Field(default_factory=lambda: int(os.getenv("DB_POOL_SIZE", "10")))
    redis_url: Optional[str] = Field(default_factory=lambda: os.getenv("REDIS_URL") or None)
    source_manifest: Optional[Path] = Field(
        default_factory=lambda: Path(os.environ["SOURCE_MANIFEST"]) if os.getenv("SOURCE_MANIFEST") else None
    )
    fetcher: str = Field(default_factory=lambda: os.getenv("FETCHER", "yt-dlp"))
    log_level: str = Field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    debug: bool = Field(default_factory=lambda: os.getenv("DEBUG", "false").lower() == "true")

    model_config = ConfigDict(validate_assignment=True)

    @property
    def catalog_path(self) -> Path:
        """SQLite file backing the catalog."""
        return self.catalog_db or self.storage_dir / "catalog.db"

    @property
    def max_storage_bytes(self) -> int:
        return int(self.max_storage_gb * 1024 * 1024 * 1024)

    @field_validator("max_storage_gb")
    @classmethod
    def validate_storage_size(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("Maximum storage size must be positive")
        return v

    @field_validator("max_files", "eviction_batch_size", "db_pool_size")
    @classmethod
    def validate_positive_int(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Value must be at least 1")
        return v

    @field_validator("capacity_threshold")
    @classmethod
    def validate_threshold(cls, v: float) -> float:
        """
        Validate the eviction trigger ratio.

        Intent:
        The threshold is a fraction of the configured limits. Zero would evict
        on every commit and anything above one would let storage overflow
        before eviction starts.
        """
        if v <= 0 or v > 1:
            raise ValueError("Capacity threshold must be in (0, 1]")
        return v

    @field_validator("lock_timeout", "lock_poll_interval", "download_timeout", "cleanup_interval_hours", "temp_max_age")
    @classmethod
    def validate_positive_duration(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("Durations must be positive")
        return v

    @field_validator("fetcher")
    @classmethod
    def validate_fetcher(cls, v: str) -> str:
        if v not in ("yt-dlp", "http"):
            raise ValueError("Fetcher must be 'yt-dlp' or 'http'")
        return v

    @model_validator(mode="after")
    def validate_timeouts(self) -> "CacheConfig":
        """
        Keep lock waits shorter than downloads.

        Intent:
        A waiting caller should give up while the downloader still has time
        left; otherwise a slow-but-alive download and a hung one look the
        same to everyone queued behind it.
        """
        if self.lock_timeout >= self.download_timeout:
            raise ValueError("Lock timeout must be shorter than the download timeout")
        return self
