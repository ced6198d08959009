"""
Source resolvers: map content ids to fetchable remote locators
"""
import json
import logging
from pathlib import Path
from typing import Any, Mapping, Optional

from pydantic import BaseModel, Field, ValidationError

from .exceptions import CacheConfigurationError
from .models import AcquisitionMetadata, ResolvedSource

logger = logging.getLogger(__name__)


class ManifestItem(BaseModel):
    """One entry of a source manifest file."""

    url: str
    title: str = ""
    priority: int = Field(default=1)
    quality: str = "1080p"


class MappingResolver:
    """
    Resolves content ids from a fixed mapping.

    Implements: ISourceResolver interface

    Intent:
    Trailer discovery (choosing which remote video represents a title) is
    owned by another service. This resolver covers deployments that already
    know their sources, and tests. The mapping can be loaded from a JSON
    manifest of the form::

        {"movie_550": {"url": "https://www.youtube.com/watch?v=...",
                       "title": "Fight Club", "priority": 2}}
    """

    def __init__(self, sources: Optional[Mapping[str, ResolvedSource]] = None):
        self.sources: dict[str, ResolvedSource] = dict(sources or {})

    def add(
        self,
        content_id: str,
        remote_locator: str,
        title: str = "",
        priority: int = 1,
        quality: str = "1080p",
    ) -> None:
        kind, _, external_id = content_id.partition("_")
        self.sources[content_id] = ResolvedSource(
            remote_locator=remote_locator,
            metadata=AcquisitionMetadata(
                external_id=external_id,
                media_kind=kind,
                title=title,
                priority=priority,
                quality=quality,
            ),
        )

    async def resolve(self, content_id: str) -> Optional[ResolvedSource]:
        return self.sources.get(content_id)

    @classmethod
    def from_manifest(cls, path: Path) -> "MappingResolver":
        """
        Load a resolver from a JSON manifest.

        Raises:
            CacheConfigurationError: If the file is unreadable or malformed
        """
        try:
            raw: dict[str, Any] = json.loads(path.read_text(encoding="utf-8"))
            items = {content_id: ManifestItem.model_validate(item) for content_id, item in raw.items()}
        except (OSError, json.JSONDecodeError, ValidationError, AttributeError) as e:
            raise CacheConfigurationError(f"Invalid source manifest {path}: {e}") from e

        resolver = cls()
        for content_id, item in items.items():
            try:
                resolver.add(
                    content_id, item.url, title=item.title, priority=item.priority, quality=item.quality
                )
            except ValidationError as e:
                raise CacheConfigurationError(f"Invalid content id in manifest: {content_id}") from e

        logger.info("Loaded %d sources from %s", len(items), path)
        return resolver
