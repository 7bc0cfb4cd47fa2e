"""Per-listing serialization for reduction attempts.

Two attempts on the same listing must never overlap. Single-process
deployments use in-memory asyncio locks; multi-worker deployments use a
Redis lock with token-verified release.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional
from uuid import uuid4

import redis.asyncio as redis

from src.config import settings
from src.errors import ListingBusyError

logger = logging.getLogger(__name__)

LOCK_KEY_TEMPLATE = "reduction:listing:{listing_id}:lock"

# Delete the key only if it still holds our token
RELEASE_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if not value then
    return 0
end
if value == ARGV[1] then
    redis.call('DEL', KEYS[1])
    return 1
end
return 2
"""


class LocalListingLocks:
    """asyncio.Lock per listing id, dropped once no task holds or waits on it."""

    def __init__(self):
        self.locks: dict[int, asyncio.Lock] = {}
        self._users: dict[int, int] = {}

    @asynccontextmanager
    async def hold(self, listing_id: int) -> AsyncIterator[None]:
        lock = self.locks.setdefault(listing_id, asyncio.Lock())
        self._users[listing_id] = self._users.get(listing_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._users.pop(listing_id, 1) - 1
            if remaining:
                self._users[listing_id] = remaining
            else:
                self.locks.pop(listing_id, None)

    async def close(self):
        self.locks.clear()
        self._users.clear()


class RedisListingLocks:
    """
    Distributed per-listing lock using Redis.

    Features:
    - TTL-based expiration so a crashed worker cannot hold a listing forever
    - Token-based ownership verification on release
    - Bounded wait; raises ListingBusyError when the wait runs out
    """

    def __init__(
        self,
        redis_url: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
        wait_seconds: Optional[float] = None,
        poll_interval: float = 0.1,
    ):
        self.redis_url = redis_url or settings.redis_url
        self.ttl_seconds = ttl_seconds or settings.listing_lock_ttl_seconds
        self.wait_seconds = (
            wait_seconds if wait_seconds is not None else settings.listing_lock_wait_seconds
        )
        self.poll_interval = poll_interval
        self._redis: Optional[redis.Redis] = None

    async def _get_redis(self) -> redis.Redis:
        """Get or create Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._redis

    async def close(self):
        """Close Redis connection."""
        if self._redis:
            await self._redis.close()
            self._redis = None

    async def acquire(self, listing_id: int) -> str:
        """
        Acquire the lock for a listing, waiting up to ``wait_seconds``.

        Returns:
            Ownership token

        Raises:
            ListingBusyError: If another worker still holds the lock
        """
        redis_client = await self._get_redis()
        key = LOCK_KEY_TEMPLATE.format(listing_id=listing_id)
        token = uuid4().hex
        deadline = time.monotonic() + self.wait_seconds

        while True:
            acquired = await redis_client.set(key, token, nx=True, ex=self.ttl_seconds)
            if acquired:
                return token
            if time.monotonic() >= deadline:
                raise ListingBusyError(f"listing {listing_id} is locked by another worker")
            await asyncio.sleep(self.poll_interval)

    async def release(self, listing_id: int, token: str) -> bool:
        """Release the lock if we still own it."""
        redis_client = await self._get_redis()
        key = LOCK_KEY_TEMPLATE.format(listing_id=listing_id)
        result = await redis_client.eval(RELEASE_SCRIPT, 1, key, token)
        if result == 2:
            logger.warning(f"Lock for listing {listing_id} expired and was taken over before release")
            return False
        return True

    @asynccontextmanager
    async def hold(self, listing_id: int) -> AsyncIterator[None]:
        token = await self.acquire(listing_id)
        try:
            yield
        finally:
            try:
                await self.release(listing_id, token)
            except redis.RedisError as e:
                logger.error(f"Failed to release lock for listing {listing_id}: {e}")


def build_listing_locks():
    """Pick the lock backend from settings."""
    if settings.listing_lock_backend.lower() == "redis":
        return RedisListingLocks()
    return LocalListingLocks()
