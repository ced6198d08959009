"""
Tests for data models
"""
from datetime import datetime
from pathlib import Path

import pytest
from pydantic import ValidationError

from trailer_cache.models import (
    BYTES_PER_GB,
    BYTES_PER_MB,
    AcquisitionMetadata,
    CatalogEntry,
    IntegrityStatus,
    MediaKind,
    StoreStats,
    is_valid_content_id,
    make_content_id,
)


class TestContentIds:
    def test_make_content_id(self):
        assert make_content_id(MediaKind.MOVIE, 550) == "movie_550"
        assert make_content_id("tv", "1399") == "tv_1399"

    def test_make_content_id_rejects_unknown_kind(self):
        with pytest.raises(ValueError):
            make_content_id("podcast", 1)

    @pytest.mark.parametrize("content_id,valid", [
        ("movie_550", True),
        ("tv_1399", True),
        ("movie_tt0137523", True),
        ("movie_a-b", True),
        ("movie/550", False),
        ("movie_../x", False),
        ("Movie_550", False),
        ("movie550", False),
    ])
    def test_is_valid_content_id(self, content_id, valid):
        assert is_valid_content_id(content_id) is valid


class TestCatalogEntry:
    """
    Test catalog row model
    """

    def test_creation_defaults(self):
        entry = CatalogEntry(content_id="movie_550", external_id=550, media_kind="movie")

        assert entry.external_id == "550"
        assert entry.media_kind == MediaKind.MOVIE
        assert entry.quality == "1080p"
        assert entry.format == "mp4"
        assert entry.priority == 1
        assert entry.is_active is True
        assert entry.local_path is None
        assert isinstance(entry.last_accessed, datetime)

    def test_path_normalization(self):
        entry = CatalogEntry(content_id="movie_550", external_id="550", media_kind="movie",
                             local_path="/store/movie_550.mp4")

        assert entry.local_path == Path("/store/movie_550.mp4")
        assert CatalogEntry(content_id="movie_550", external_id="550", media_kind="movie",
                            local_path="").local_path is None

    def test_validation(self):
        """
        Test rejection of negative sizes and unknown kinds
        """
        with pytest.raises(ValidationError):
            CatalogEntry(content_id="movie_550", external_id="550", media_kind="movie", file_size_mb=-1)

        with pytest.raises(ValidationError):
            CatalogEntry(content_id="movie_550", external_id="550", media_kind="book")

        with pytest.raises(ValidationError):
            CatalogEntry(content_id="movie_550", external_id="550", media_kind="movie", local_path=42)

    def test_serialization(self):
        entry = CatalogEntry(content_id="movie_550", external_id="550", media_kind="movie",
                             local_path=Path("/store/movie_550.mp4"), file_size_mb=2.5)

        data = entry.model_dump(mode="json")

        assert data["local_path"] == "/store/movie_550.mp4"
        assert data["media_kind"] == "movie"
        assert entry.file_size_bytes == int(2.5 * BYTES_PER_MB)

        restored = CatalogEntry.model_validate(data)
        assert restored.local_path == entry.local_path

    def test_metadata_coerces_external_id(self):
        metadata = AcquisitionMetadata(external_id=550, media_kind=MediaKind.MOVIE)

        assert metadata.external_id == "550"
        assert metadata.priority == 1


class TestStoreStats:
    def test_threshold_by_size(self):
        stats = StoreStats(file_count=1, used_bytes=95, limit_bytes=100, max_files=500)

        assert stats.over_threshold(0.9)
        assert not stats.over_threshold(0.96)

    def test_threshold_by_count(self):
        stats = StoreStats(file_count=451, used_bytes=0, limit_bytes=BYTES_PER_GB, max_files=500)

        assert stats.over_threshold(0.9)

    def test_to_dict(self):
        stats = StoreStats(file_count=2, used_bytes=BYTES_PER_GB, limit_bytes=4 * BYTES_PER_GB, max_files=500)

        data = stats.to_dict()

        assert data["used_gb"] == 1.0
        assert data["limit_gb"] == 4.0
        assert data["free_gb"] == 3.0
        assert data["file_count"] == 2


class TestIntegrityStatus:
    def test_integrity_status_values(self):
        assert IntegrityStatus.VALID.value == "valid"
        assert IntegrityStatus.FILE_MISSING.value == "file_missing"
        assert IntegrityStatus.SIZE_MISMATCH.value == "size_mismatch"
        assert IntegrityStatus.CONTENT_CHANGED.value == "content_changed"
