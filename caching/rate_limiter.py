"""
Fixed-window rate limiter on the cache store.
Fails open: an unreachable cache never blocks traffic.
"""

import logging

from caching.store import CacheStore


logger = logging.getLogger(__name__)

DEFAULT_MAX_REQUESTS = 100
DEFAULT_WINDOW_SECONDS = 60

SCOPE_IP = 'ip'
SCOPE_APIKEY = 'apikey'
SCOPE_USER = 'user'


class RateLimiter:
    """
    Counter per (scope, identity) under 'ratelimit:{scope}:{identity}'.

    The first request in a window creates the counter with TTL = window;
    later requests only increment, so the window resets all at once when the
    key expires (fixed window, not sliding).
    """

    def __init__(
        self,
        store: CacheStore,
        max_requests: int = DEFAULT_MAX_REQUESTS,
        window_seconds: int = DEFAULT_WINDOW_SECONDS
    ):
        if max_requests <= 0:
            raise ValueError("max_requests must be positive")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")

        self.store = store
        self.max_requests = max_requests
        self.window_seconds = window_seconds

    @staticmethod
    def counter_key(identity: str, scope: str) -> str:
        return f"ratelimit:{scope}:{identity}"

    async def allow(self, identity: str, scope: str = SCOPE_IP) -> bool:
        """
        Count one request and decide whether it may proceed.

        Returns:
            False once the window's count exceeds max_requests; True otherwise,
            including when the cache is unreachable
        """
        key = self.counter_key(identity, scope)
        count = await self.store.increment(key, self.window_seconds)

        if count is None:
            logger.warning(f"Rate limiter failing open for {key}")
            return True

        if count > self.max_requests:
            logger.info(f"Rate limit exceeded for {key}: {count}/{self.max_requests}")
            return False
        return True

    async def remaining_quota(self, identity: str, scope: str = SCOPE_IP) -> int:
        """Requests left in the current window (0 when the cache is unreachable)."""
        count = await self.store.read_counter(self.counter_key(identity, scope))
        if count is None:
            return 0
        return max(self.max_requests - count, 0)

    async def check_ip(self, ip_address: str) -> bool:
        return await self.allow(ip_address, SCOPE_IP)

    async def check_apikey(self, api_key: str) -> bool:
        return await self.allow(api_key, SCOPE_APIKEY)

    async def check_user(self, user_id: str) -> bool:
        return await self.allow(user_id, SCOPE_USER)
