"""
Redis-backed lock table for multi-instance deployments.
"""
import logging
import uuid
from typing import Optional

logger = logging.getLogger(__name__)

# Delete the key only if it still carries our token
RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""

# Reset the expiry only if the key still carries our token
REFRESH_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("pexpire", KEYS[1], ARGV[2])
else
    return 0
end
"""


class RedisLockTable:
    """
    Acquisition locks shared across processes through Redis leases.

    Implements: ILockTable interface

    Intent:
    The in-process LockTable only deduplicates downloads inside one server
    process. When several instances share a storage directory and catalog,
    locks have to live in a shared store. Each lock is a Redis key written
    with ``SET NX PX``, which is an atomic test-and-set across every
    instance, and it expires on its own so a crashed holder cannot wedge a
    content id forever.

    Key design decisions:
    - The lease must outlive the download timeout, otherwise a slow but
      healthy download could lose its lock mid-flight
    - Each acquisition writes a random token; release deletes the key only
      if the token still matches, so an instance never frees a lease that
      expired and was re-taken by someone else
    - Key prefixing for namespace isolation
    """

    def __init__(self, redis_client, lease_seconds: float = 330.0, key_prefix: str = "trailer_cache:lock"):
        """
        Args:
            redis_client: Async Redis client (redis.asyncio.Redis)
            lease_seconds: Lock expiry; keep it above the download timeout
            key_prefix: Prefix for all lock keys
        """
        self.redis = redis_client
        self.lease_ms = int(lease_seconds * 1000)
        self.key_prefix = key_prefix
        self._tokens: dict[str, str] = {}

    def _key(self, content_id: str) -> str:
        return f"{self.key_prefix}:{content_id}"

    async def try_acquire(self, content_id: str) -> bool:
        token = uuid.uuid4().hex
        acquired = await self.redis.set(self._key(content_id), token, nx=True, px=self.lease_ms)
        if acquired:
            self._tokens[content_id] = token
            logger.debug("Lease acquired for: %s", content_id)
            return True
        return False

    async def release(self, content_id: str) -> None:
        token: Optional[str] = self._tokens.pop(content_id, None)
        if token is None:
            return
        released = await self.redis.eval(RELEASE_SCRIPT, 1, self._key(content_id), token)
        if not released:
            logger.warning("Lease for %s expired before release", content_id)

    async def refresh(self, content_id: str) -> bool:
        """
        Restart the lease clock for a lock this instance holds.

        Called between download and commit, so hashing and registering a
        large file never runs on the tail end of a lease.
        """
        token = self._tokens.get(content_id)
        if token is None:
            return False
        refreshed = await self.redis.eval(REFRESH_SCRIPT, 1, self._key(content_id), token, self.lease_ms)
        if not refreshed:
            self._tokens.pop(content_id, None)
            logger.warning("Lease for %s expired before refresh", content_id)
            return False
        return True

    async def is_locked(self, content_id: str) -> bool:
        return bool(await self.redis.exists(self._key(content_id)))

    async def held(self) -> set[str]:
        return set(self._tokens)

    async def close(self) -> None:
        """Release every lease this instance still holds."""
        for content_id in list(self._tokens):
            await self.release(content_id)
