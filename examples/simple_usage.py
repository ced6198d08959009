#!/usr/bin/env python3
"""
Simple Trailer Cache Usage Example

Acquires a few trailers through the request handler, then asks for them
again to show cache hits and concurrent request deduplication. Uses the
HTTP fetcher with publicly hosted sample videos, so no yt-dlp is needed.
"""

import asyncio
import time
from pathlib import Path

from trailer_cache import CacheConfig, CacheRequestError, HttpFetcher, MappingResolver
from trailer_cache.api import build_services

SAMPLES = {
    "movie_10378": ("Big Buck Bunny", "https://download.blender.org/peach/bigbuckbunny_movies/BigBuckBunny_320x180.mp4"),
    "movie_45745": ("Sintel", "https://download.blender.org/durian/trailer/sintel_trailer-480p.mp4"),
}


async def main():
    """Demonstrate misses, hits and deduplicated acquisition."""

    config = CacheConfig(
        storage_dir=Path("./example_storage"),
        temp_dir=Path("./example_temp"),
        max_storage_gb=1,
        max_files=10,
    )

    resolver = MappingResolver()
    for content_id, (title, url) in SAMPLES.items():
        resolver.add(content_id, url, title=title)

    services = await build_services(
        config,
        resolver=resolver,
        fetcher=HttpFetcher(config.temp_dir, timeout=config.download_timeout),
    )

    print("Trailer Cache Simple Example")
    print("=" * 40)

    print("\n📝 First pass - acquiring trailers:")
    for content_id in SAMPLES:
        start = time.time()
        try:
            result = await services.handler.handle(content_id, resolver)
        except CacheRequestError as e:
            print(f"\n❌ {content_id}: {e} (fallback: {e.fallback})")
            continue
        print(f"\n✅ {content_id}:")
        print(f"   From cache: {result.from_cache}")
        print(f"   Path: {result.path}")
        print(f"   Time: {time.time() - start:.3f}s")

    print("\n📝 Second pass - same ids (should be cached):")
    for content_id in SAMPLES:
        start = time.time()
        try:
            result = await services.handler.handle(content_id, resolver)
        except CacheRequestError:
            continue
        print(f"   {content_id}: from cache={result.from_cache} ({time.time() - start:.3f}s)")

    print("\n📝 Ten concurrent requests for one id:")
    results = await asyncio.gather(
        *(services.handler.handle("movie_10378", resolver) for _ in range(10)),
        return_exceptions=True,
    )
    paths = {r.path for r in results if not isinstance(r, Exception)}
    print(f"   Distinct files: {len(paths)}")

    stats = await services.store.stats()
    metrics = services.metrics
    print("\n📊 Cache Statistics:")
    print(f"   Files: {stats.file_count} ({stats.used_gb:.3f}GB of {stats.limit_gb:.0f}GB)")
    print(f"   Hit rate: {metrics.hit_rate:.1%}")
    print(f"   Downloads: {metrics.downloads_completed} completed, {metrics.downloads_failed} failed")

    await services.close()

    print("\n✅ Example completed!")


if __name__ == "__main__":
    asyncio.run(main())
