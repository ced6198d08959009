"""
Tests for the in-process and Redis lock tables
"""
import asyncio

import pytest

from conftest import MockRedis
from trailer_cache.interfaces import ILockTable
from trailer_cache.locks import LockTable, try_hold, wait_until_free
from trailer_cache.redis_locks import RedisLockTable


class TestLockTable:
    """
    Test the in-process lock table
    """

    @pytest.mark.asyncio
    async def test_acquire_release(self):
        locks = LockTable()

        assert await locks.try_acquire("movie_550") is True
        assert await locks.try_acquire("movie_550") is False
        assert await locks.is_locked("movie_550")
        assert await locks.held() == {"movie_550"}

        await locks.release("movie_550")

        assert not await locks.is_locked("movie_550")
        assert await locks.try_acquire("movie_550") is True

    @pytest.mark.asyncio
    async def test_release_unheld_is_noop(self):
        locks = LockTable()

        await locks.release("movie_550")

        assert await locks.held() == set()

    @pytest.mark.asyncio
    async def test_refresh(self):
        locks = LockTable()

        assert await locks.refresh("movie_550") is False
        await locks.try_acquire("movie_550")
        assert await locks.refresh("movie_550") is True

    @pytest.mark.asyncio
    async def test_concurrent_acquire_single_winner(self):
        """
        Test that exactly one of many concurrent callers wins
        """
        locks = LockTable()

        results = await asyncio.gather(*(locks.try_acquire("movie_550") for _ in range(20)))

        assert results.count(True) == 1

    @pytest.mark.asyncio
    async def test_implements_protocol(self):
        assert isinstance(LockTable(), ILockTable)

    @pytest.mark.asyncio
    async def test_try_hold(self):
        locks = LockTable()

        async with try_hold(locks, "movie_550") as acquired:
            assert acquired
            async with try_hold(locks, "movie_550") as nested:
                assert not nested
            assert await locks.is_locked("movie_550")

        assert not await locks.is_locked("movie_550")

    @pytest.mark.asyncio
    async def test_try_hold_releases_on_error(self):
        locks = LockTable()

        with pytest.raises(RuntimeError):
            async with try_hold(locks, "movie_550"):
                raise RuntimeError("boom")

        assert not await locks.is_locked("movie_550")

    @pytest.mark.asyncio
    async def test_wait_until_free(self):
        locks = LockTable()
        await locks.try_acquire("movie_550")

        async def release_later():
            await asyncio.sleep(0.1)
            await locks.release("movie_550")

        freed, _ = await asyncio.gather(
            wait_until_free(locks, "movie_550", timeout=2.0, poll_interval=0.02),
            release_later(),
        )

        assert freed is True

    @pytest.mark.asyncio
    async def test_wait_until_free_times_out(self):
        locks = LockTable()
        await locks.try_acquire("movie_550")

        freed = await wait_until_free(locks, "movie_550", timeout=0.1, poll_interval=0.02)

        assert freed is False


class TestRedisLockTable:
    """
    Test Redis lease locks
    """

    @pytest.fixture
    def redis_client(self):
        return MockRedis()

    @pytest.mark.asyncio
    async def test_acquire_release(self, redis_client):
        locks = RedisLockTable(redis_client)

        assert await locks.try_acquire("movie_550") is True
        assert await locks.try_acquire("movie_550") is False
        assert await locks.is_locked("movie_550")
        assert "trailer_cache:lock:movie_550" in redis_client.data

        await locks.release("movie_550")

        assert not await locks.is_locked("movie_550")

    @pytest.mark.asyncio
    async def test_shared_across_instances(self, redis_client):
        """
        Test that two service instances see each other's locks
        """
        first = RedisLockTable(redis_client)
        second = RedisLockTable(redis_client)

        assert await first.try_acquire("movie_550")
        assert not await second.try_acquire("movie_550")
        assert await second.is_locked("movie_550")
        assert await second.held() == set()

        await second.release("movie_550")
        assert await first.is_locked("movie_550")

        await first.release("movie_550")
        assert await second.try_acquire("movie_550")

    @pytest.mark.asyncio
    async def test_lease_expires(self, redis_client):
        locks = RedisLockTable(redis_client, lease_seconds=0.05)

        await locks.try_acquire("movie_550")
        await asyncio.sleep(0.1)

        assert not await locks.is_locked("movie_550")

    @pytest.mark.asyncio
    async def test_expired_lease_not_released_by_old_holder(self, redis_client):
        """
        Test that a stale holder cannot delete a lease re-taken by someone else
        """
        stale = RedisLockTable(redis_client, lease_seconds=0.05)
        fresh = RedisLockTable(redis_client)

        await stale.try_acquire("movie_550")
        await asyncio.sleep(0.1)
        assert await fresh.try_acquire("movie_550")

        await stale.release("movie_550")

        assert await fresh.is_locked("movie_550")

    @pytest.mark.asyncio
    async def test_refresh_extends_lease(self, redis_client):
        """
        Test that a refreshed lease outlives its original expiry
        """
        locks = RedisLockTable(redis_client, lease_seconds=0.2)
        await locks.try_acquire("movie_550")

        await asyncio.sleep(0.12)
        assert await locks.refresh("movie_550") is True
        await asyncio.sleep(0.12)

        assert await locks.is_locked("movie_550")

    @pytest.mark.asyncio
    async def test_refresh_after_expiry_fails(self, redis_client):
        stale = RedisLockTable(redis_client, lease_seconds=0.05)
        fresh = RedisLockTable(redis_client)

        await stale.try_acquire("movie_550")
        await asyncio.sleep(0.1)
        assert await fresh.try_acquire("movie_550")

        assert await stale.refresh("movie_550") is False
        assert await stale.held() == set()
        assert await fresh.is_locked("movie_550")

    @pytest.mark.asyncio
    async def test_refresh_unheld(self, redis_client):
        assert await RedisLockTable(redis_client).refresh("movie_550") is False

    @pytest.mark.asyncio
    async def test_close_releases_held(self, redis_client):
        locks = RedisLockTable(redis_client)
        await locks.try_acquire("movie_1")
        await locks.try_acquire("movie_2")

        await locks.close()

        assert redis_client.data == {}
        assert await locks.held() == set()

    @pytest.mark.asyncio
    async def test_key_prefix(self, redis_client):
        locks = RedisLockTable(redis_client, key_prefix="app1")

        await locks.try_acquire("movie_550")

        assert "app1:movie_550" in redis_client.data

    @pytest.mark.asyncio
    async def test_implements_protocol(self, redis_client):
        assert isinstance(RedisLockTable(redis_client), ILockTable)
