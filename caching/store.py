"""
Cache-aside store over Redis.
Every backend failure is logged and reported as a miss or a no-op so callers
always fall back to the source of truth.
"""

import json
import logging
from typing import Any, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from caching.keys import prefix_pattern


logger = logging.getLogger(__name__)

# Failures that mean "cache unavailable" rather than a programming error
BACKEND_ERRORS = (RedisError, OSError)

SCAN_BATCH_SIZE = 500


def create_redis_client(redis_url: str) -> redis.Redis:
    """Create an asyncio Redis client that returns str values."""
    return redis.Redis.from_url(redis_url, decode_responses=True)


class CacheStore:
    """
    JSON cache on an injected asyncio Redis client.

    No single-flight protection: concurrent misses on one key each recompute
    and the last write wins.
    """

    def __init__(self, client: redis.Redis):
        self.client = client

    async def get(self, key: str) -> Optional[Any]:
        """
        Read and decode a value.

        Returns:
            Decoded value, or None on miss, backend failure or undecodable data
        """
        try:
            raw = await self.client.get(key)
        except BACKEND_ERRORS as e:
            logger.warning(f"Cache get failed for {key}: {e}")
            return None

        if raw is None:
            logger.debug(f"Cache miss: {key}")
            return None

        try:
            value = json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.warning(f"Discarding undecodable cache entry {key}: {e}")
            return None

        logger.debug(f"Cache hit: {key}")
        return value

    async def set(self, key: str, value: Any, ttl: int) -> bool:
        """
        Encode and write a value with a TTL in seconds.

        Returns:
            True when written, False on backend or encoding failure
        """
        try:
            payload = json.dumps(value)
        except (TypeError, ValueError) as e:
            logger.error(f"Cannot encode cache value for {key}: {e}")
            return False

        try:
            await self.client.set(key, payload, ex=ttl)
        except BACKEND_ERRORS as e:
            logger.warning(f"Cache set failed for {key}: {e}")
            return False
        return True

    async def delete(self, key: str) -> bool:
        """Delete one key; True when a key was removed."""
        try:
            removed = await self.client.delete(key)
        except BACKEND_ERRORS as e:
            logger.warning(f"Cache delete failed for {key}: {e}")
            return False
        return bool(removed)

    async def delete_by_prefix(self, prefix: str) -> int:
        """
        Delete every key starting with prefix using incremental SCAN.

        Returns:
            Number of keys deleted (possibly partial on backend failure)
        """
        deleted = 0
        try:
            async for key in self.client.scan_iter(match=prefix_pattern(prefix), count=SCAN_BATCH_SIZE):
                deleted += await self.client.delete(key)
        except BACKEND_ERRORS as e:
            logger.warning(f"Cache prefix delete failed for {prefix} after {deleted} keys: {e}")
            return deleted

        logger.info(f"Invalidated {deleted} cache entries with prefix {prefix}")
        return deleted

    async def ttl_remaining(self, key: str) -> Optional[int]:
        """
        Seconds until key expires.

        Returns:
            Remaining seconds, or None when the key is missing, has no expiry
            or the backend is unavailable
        """
        try:
            ttl = await self.client.ttl(key)
        except BACKEND_ERRORS as e:
            logger.warning(f"Cache ttl failed for {key}: {e}")
            return None

        # Redis reports -2 for a missing key and -1 for no expiry
        if ttl is None or ttl < 0:
            return None
        return int(ttl)

    async def increment(self, key: str, ttl: int) -> Optional[int]:
        """
        Atomically increment a counter, setting its TTL only when it has none.

        INCR and EXPIRE NX run in one MULTI transaction, so a counter never
        exists without an expiry; a counter left without one is given a TTL
        on its next increment. Later increments leave the expiry untouched,
        giving a fixed window. EXPIRE NX needs Redis 7.0 or newer.

        Returns:
            Counter value after increment, or None when the backend is unavailable
        """
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.incr(key)
                pipe.expire(key, ttl, nx=True)
                count, _ = await pipe.execute()
        except BACKEND_ERRORS as e:
            logger.warning(f"Cache increment failed for {key}: {e}")
            return None
        return int(count)

    async def read_counter(self, key: str) -> Optional[int]:
        """
        Current counter value without incrementing.

        Returns:
            Counter value (0 when absent), or None when the backend is unavailable
        """
        try:
            raw = await self.client.get(key)
        except BACKEND_ERRORS as e:
            logger.warning(f"Cache counter read failed for {key}: {e}")
            return None
        return int(raw) if raw is not None else 0

    async def ping(self) -> bool:
        """True when the backend answers."""
        try:
            return bool(await self.client.ping())
        except BACKEND_ERRORS as e:
            logger.warning(f"Cache ping failed: {e}")
            return False

    async def close(self) -> None:
        await self.client.aclose()
