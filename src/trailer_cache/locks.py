"""
In-process lock table for acquisitions
"""
import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)


class LockTable:
    """
    Per-content-id exclusive locks for a single process.

    Implements: ILockTable interface

    Intent:
    Replaces a global "downloads in progress" map with an explicit object the
    coordinator owns and injects into the content store (eviction consults
    it). Locks are plain set membership: there is no owner beyond this
    process and nothing survives a restart.

    ``try_acquire`` performs its membership test and insert with no ``await``
    in between, so on a single event loop it is an atomic test-and-set. Two
    tasks can never both observe the id as free and both take it.
    """

    def __init__(self):
        self._held: set[str] = set()

    async def try_acquire(self, content_id: str) -> bool:
        if content_id in self._held:
            return False
        self._held.add(content_id)
        logger.debug("Lock acquired for: %s", content_id)
        return True

    async def release(self, content_id: str) -> None:
        if content_id in self._held:
            self._held.discard(content_id)
            logger.debug("Lock released for: %s", content_id)

    async def refresh(self, content_id: str) -> bool:
        # Local locks never expire
        return content_id in self._held

    async def is_locked(self, content_id: str) -> bool:
        return content_id in self._held

    async def held(self) -> set[str]:
        return set(self._held)


@asynccontextmanager
async def try_hold(lock_table, content_id: str) -> AsyncIterator[bool]:
    """
    Try to take a lock for the duration of a block.

    Yields whether the lock was taken; it is released on exit only if it was.
    Works with any ILockTable implementation.
    """
    acquired = await lock_table.try_acquire(content_id)
    try:
        yield acquired
    finally:
        if acquired:
            await lock_table.release(content_id)


async def wait_until_free(lock_table, content_id: str, timeout: float, poll_interval: float = 1.0) -> bool:
    """
    Poll ``lock_table`` until ``content_id`` is free or ``timeout`` elapses.

    Returns:
        True if the lock was observed free, False on timeout
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while await lock_table.is_locked(content_id):
        remaining = deadline - loop.time()
        if remaining <= 0:
            return False
        await asyncio.sleep(min(poll_interval, remaining))
    return True
