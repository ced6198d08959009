"""
Tests for the HTTP surface
"""
from datetime import datetime

import pytest
from fastapi.testclient import TestClient

from conftest import FailingFetcher, FakeFetcher, MockRedis
from trailer_cache.api import create_app
from trailer_cache.config import CacheConfig
from trailer_cache.redis_locks import RedisLockTable
from trailer_cache.resolvers import MappingResolver

PAYLOAD = bytes(i % 256 for i in range(2048))


@pytest.fixture
def config(tmp_path):
    return CacheConfig(
        storage_dir=tmp_path / "storage",
        temp_dir=tmp_path / "temp",
        lock_timeout=1.0,
        lock_poll_interval=0.05,
        redis_url=None,
        source_manifest=None,
    )


@pytest.fixture
def resolver():
    resolver = MappingResolver()
    resolver.add("movie_550", "https://www.youtube.com/watch?v=SUXWAEX2jlg", title="Fight Club")
    resolver.add("tv_1399", "https://www.youtube.com/watch?v=KPLWWIOCOOQ", title="Game of Thrones")
    return resolver


@pytest.fixture
def fetcher(tmp_path):
    return FakeFetcher(tmp_path / "temp", payload=PAYLOAD)


@pytest.fixture
def client(config, resolver, fetcher):
    app = create_app(config, resolver=resolver, fetcher=fetcher, run_maintenance=False)
    with TestClient(app) as client:
        yield client


class TestContentRoute:
    """
    Test streaming and error mapping for GET /cache/{content_id}
    """

    def test_miss_then_hit(self, client, fetcher):
        first = client.get("/cache/movie_550")
        second = client.get("/cache/movie_550")

        assert first.status_code == 200
        assert first.content == PAYLOAD
        assert first.headers["content-type"] == "video/mp4"
        assert first.headers["cache-control"] == "public, max-age=604800, immutable"
        assert second.content == PAYLOAD
        assert len(fetcher.calls) == 1

    def test_range_request(self, client):
        response = client.get("/cache/movie_550", headers={"Range": "bytes=100-199"})

        assert response.status_code == 206
        assert response.headers["content-range"] == "bytes 100-199/2048"
        assert response.headers["content-length"] == "100"
        assert response.content == PAYLOAD[100:200]

    def test_unsatisfiable_range(self, client):
        response = client.get("/cache/movie_550", headers={"Range": "bytes=5000-"})

        assert response.status_code == 416
        assert response.headers["content-range"] == "bytes */2048"
        assert response.json()["success"] is False

    def test_not_available(self, client, fetcher):
        response = client.get("/cache/movie_1")

        assert response.status_code == 404
        assert response.json() == {
            "success": False,
            "error": "No source available for movie_1",
            "fallback": "backdrop",
            "retryable": False,
        }
        assert fetcher.calls == []

    def test_invalid_content_id(self, client):
        response = client.get("/cache/movie_5.5")

        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_lock_timeout(self, client):
        """
        Test that a request waiting on someone else's download gets 503
        """
        lock_table = client.app.state.services.lock_table
        client.portal.call(lock_table.try_acquire, "movie_550")

        response = client.get("/cache/movie_550")

        assert response.status_code == 503
        assert response.json()["retryable"] is True
        assert response.json()["fallback"] == "youtube"
        assert "retry-after" in response.headers

    def test_fetch_failure(self, config, resolver, tmp_path):
        app = create_app(config, resolver=resolver, fetcher=FailingFetcher(tmp_path / "temp"), run_maintenance=False)

        with TestClient(app) as client:
            response = client.get("/cache/movie_550")

        assert response.status_code == 502
        body = response.json()
        assert body["fallback"] == "youtube"
        assert body["retryable"] is False

    def test_unexpected_fetcher_error(self, config, resolver, tmp_path):
        """
        Test that a fetcher raising something unexpected still gets a JSON fallback
        """
        fetcher = FakeFetcher(tmp_path / "temp", error=RuntimeError("unexpected"))
        app = create_app(config, resolver=resolver, fetcher=fetcher, run_maintenance=False)

        with TestClient(app) as client:
            response = client.get("/cache/movie_550")

        assert response.status_code == 502
        assert response.headers["content-type"] == "application/json"
        assert response.json()["success"] is False
        assert response.json()["fallback"] == "youtube"


class TestCacheRoutes:
    """
    Test the status, list, cleanup and metrics routes
    """

    def test_status(self, client):
        client.get("/cache/movie_550")

        response = client.get("/cache/status")

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["file_count"] == 1
        assert body["used_bytes"] == len(PAYLOAD)
        assert body["max_files"] == 500
        assert body["catalog"]["count"] == 1
        assert body["in_flight"] == []

    def test_health(self, client):
        client.get("/cache/movie_550")

        response = client.get("/cache/health")

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["status"] == "OK"
        assert body["file_count"] == 1
        assert datetime.fromisoformat(body["timestamp"]).tzinfo is not None

    def test_list(self, client):
        client.get("/cache/movie_550")
        client.get("/cache/tv_1399")

        response = client.get("/cache/list", params={"limit": 1})

        body = response.json()
        assert body["total"] == 2
        assert body["count"] == 1
        assert body["videos"][0]["content_id"] == "tv_1399"
        assert body["videos"][0]["title"] == "Game of Thrones"

    def test_list_rejects_bad_limit(self, client):
        assert client.get("/cache/list", params={"limit": 0}).status_code == 422

    def test_cleanup(self, client):
        client.get("/cache/movie_550")

        response = client.post("/cache/cleanup")

        assert response.json() == {"success": True, "deleted_count": 1}
        assert client.get("/cache/status").json()["file_count"] == 0

    def test_metrics(self, client):
        client.get("/cache/movie_550")
        client.get("/cache/movie_550")

        response = client.get("/cache/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert 'trailer_cache_requests_total{outcome="miss"} 1' in response.text
        assert 'trailer_cache_requests_total{outcome="hit"} 1' in response.text


class TestRedisLocking:
    def test_shared_lock_table(self, config, resolver, fetcher):
        """
        Test that an injected Redis client switches to lease locks
        """
        redis_client = MockRedis()
        app = create_app(config, resolver=resolver, fetcher=fetcher, redis_client=redis_client, run_maintenance=False)

        with TestClient(app) as client:
            assert isinstance(client.app.state.services.lock_table, RedisLockTable)
            assert client.get("/cache/movie_550").status_code == 200

        assert redis_client.data == {}
        assert redis_client.closed is False
