"""
Data models for the trailer cache
"""
import re
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

BYTES_PER_MB = 1024 * 1024
BYTES_PER_GB = 1024 * 1024 * 1024

CONTENT_ID_PATTERN = re.compile(r"^[a-z]+_[A-Za-z0-9-]+$")


class MediaKind(str, Enum):
    """
    Kind of media a content id refers to.

    Intent:
    The content id is ``{media_kind}_{external_id}``, so the kind is part of
    the cache key: ``movie_550`` and ``tv_550`` are different assets.
    """

    MOVIE = "movie"
    TV = "tv"


class IntegrityStatus(str, Enum):
    """
    Result of checking a stored or copied file.

    Intent:
    A type-safe outcome for the copy verification done at commit time and
    for reconciling catalog rows against the filesystem.
    """

    VALID = "valid"
    FILE_MISSING = "file_missing"
    SIZE_MISMATCH = "size_mismatch"
    CONTENT_CHANGED = "content_changed"


def make_content_id(media_kind: MediaKind, external_id: Any) -> str:
    """Build the stable cache key for a media kind and external catalog id."""
    return f"{MediaKind(media_kind).value}_{external_id}"


def is_valid_content_id(content_id: str) -> bool:
    return bool(CONTENT_ID_PATTERN.match(content_id))


class CatalogEntry(BaseModel):
    """
    One catalog row per distinct content id.

    Intent:
    Tracks everything needed to serve, audit and evict a cached video. Rows
    are soft-deleted (``is_active=False``, ``local_path=None``) and never
    removed, so access history survives eviction and can inform priority
    decisions on re-acquisition.

    Key design decisions:
    - ``file_size_mb`` is measured from the stored file, never caller-supplied
    - ``priority`` is the primary eviction key (lower is evicted first)
    - ``access_count``/``last_accessed`` break ties within a priority tier
    """

    model_config = ConfigDict(validate_assignment=True)

    content_id: str = Field(description="Unique cache key, e.g. movie_550")
    external_id: str = Field(description="Identifier in the external metadata catalog")
    media_kind: MediaKind = Field(description="movie or tv")
    title: str = Field(default="", description="Descriptive title")
    local_path: Optional[Path] = Field(default=None, description="Stored file; None when inactive")
    file_size_mb: float = Field(default=0.0, ge=0, description="Size of the stored file in MB")
    quality: str = Field(default="1080p")
    format: str = Field(default="mp4")
    access_count: int = Field(default=0, ge=0)
    last_accessed: datetime = Field(default_factory=datetime.now)
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)
    priority: int = Field(default=1, description="Eviction tier, lower is evicted first")
    is_active: bool = Field(default=True)

    @field_validator("local_path", mode="before")
    @classmethod
    def validate_local_path(cls, v: Any) -> Optional[Path]:
        """
        Accept string or Path input, normalize to Path.

        Intent:
        Rows come back from SQLite as strings while the store hands out Path
        objects; downstream code can always assume a Path (or None).
        """
        if v is None or v == "":
            return None
        if isinstance(v, str):
            return Path(v)
        if isinstance(v, Path):
            return v
        raise ValueError("local_path must be a Path object or string")

    @field_validator("external_id", mode="before")
    @classmethod
    def coerce_external_id(cls, v: Any) -> str:
        return str(v)

    @field_serializer("local_path")
    def serialize_path(self, path: Optional[Path]) -> Optional[str]:
        return str(path) if path is not None else None

    @property
    def file_size_bytes(self) -> int:
        return int(self.file_size_mb * BYTES_PER_MB)


class AcquisitionMetadata(BaseModel):
    """
    Descriptive fields supplied with an acquisition.

    These end up on the catalog row. Size is deliberately absent: it is
    measured by the store at commit time.
    """

    external_id: str
    media_kind: MediaKind
    title: str = ""
    priority: int = 1
    quality: str = "1080p"

    @field_validator("external_id", mode="before")
    @classmethod
    def coerce_external_id(cls, v: Any) -> str:
        return str(v)


class ResolvedSource(BaseModel):
    """Remote locator plus metadata returned by a source resolver."""

    remote_locator: str = Field(description="Fetchable URL of the remote asset")
    metadata: AcquisitionMetadata


class CommitResult(BaseModel):
    """Outcome of moving a download into the content store."""

    final_path: Path
    size_mb: float = Field(ge=0)

    @field_serializer("final_path")
    def serialize_path(self, path: Path) -> str:
        return str(path)


class StoreStats(BaseModel):
    """
    Filesystem usage of the content store.

    Intent:
    Computed by scanning the store directory rather than trusting the
    catalog, so foreign or orphaned files still count against capacity.
    """

    file_count: int
    used_bytes: int
    limit_bytes: int
    max_files: int

    @property
    def used_gb(self) -> float:
        return self.used_bytes / BYTES_PER_GB

    @property
    def limit_gb(self) -> float:
        return self.limit_bytes / BYTES_PER_GB

    @property
    def free_gb(self) -> float:
        return max(self.limit_bytes - self.used_bytes, 0) / BYTES_PER_GB

    def over_threshold(self, ratio: float) -> bool:
        """True when size or file count has crossed ``ratio`` of its limit."""
        return self.used_bytes > self.limit_bytes * ratio or self.file_count > self.max_files * ratio

    def to_dict(self) -> dict:
        return {
            "file_count": self.file_count,
            "used_bytes": self.used_bytes,
            "used_gb": round(self.used_gb, 4),
            "limit_gb": round(self.limit_gb, 4),
            "free_gb": round(self.free_gb, 4),
            "max_files": self.max_files,
        }


class CatalogStats(BaseModel):
    """Aggregates over active catalog rows."""

    count: int = 0
    total_size_mb: float = 0.0
    avg_access_count: float = 0.0


class CacheResult(BaseModel):
    """
    Response model for a cache request.

    Intent:
    Public-facing result of the request handler: where the playable file is
    and whether it was already cached, which feeds hit-rate monitoring.
    """

    content_id: str
    path: Path
    from_cache: bool
