"""Redis-backed sliding window rate limiter shared across service processes."""

from __future__ import annotations

import math
import time
import uuid
from typing import Final

from redis import Redis

from .rate_limiter import RateLimitDecision


class RedisSlidingWindowRateLimiter:
    """Distributed limiter keeping each caller's request times in a sorted set.

    Pruning, counting and recording run in one Lua script, so concurrent
    processes never admit more than ``max_requests`` per window.
    """

    _HIT_SCRIPT: Final[str] = """
    local window_ms = tonumber(ARGV[1])
    local limit = tonumber(ARGV[2])
    local now_ms = tonumber(ARGV[3])

    redis.call('ZREMRANGEBYSCORE', KEYS[1], '-inf', now_ms - window_ms)
    local count = redis.call('ZCARD', KEYS[1])
    if count >= limit then
        local oldest = redis.call('ZRANGE', KEYS[1], 0, 0)
        return {0, count, oldest[1] or ARGV[4]}
    end
    redis.call('ZADD', KEYS[1], now_ms, ARGV[4])
    redis.call('PEXPIRE', KEYS[1], window_ms)
    return {1, count + 1, ARGV[4]}
    """

    def __init__(
        self,
        client: Redis,
        *,
        max_requests: int,
        window_seconds: int,
        key_prefix: str = "hierarchy-rate",
    ) -> None:
        self._max_requests = max_requests
        self._window_ms = window_seconds * 1000
        self._key_prefix = key_prefix
        self._script = client.register_script(self._HIT_SCRIPT)

    def hit(self, key: str) -> RateLimitDecision:
        """Count a request for ``key`` unless its window is already full.

        Redis errors propagate; callers decide whether to fail open.
        """
        now_ms = int(time.time() * 1000)
        allowed, count, oldest = self._script(
            keys=[f"{self._key_prefix}:{key}"],
            args=[self._window_ms, self._max_requests, now_ms, f"{now_ms}:{uuid.uuid4().hex}"],
        )
        if int(allowed) == 1:
            return RateLimitDecision(allowed=True, remaining=max(0, self._max_requests - int(count)))
        # members are "<ms>:<nonce>"; the prefix is the request time
        if isinstance(oldest, bytes):
            oldest = oldest.decode()
        oldest_ms = int(oldest.split(":", 1)[0])
        wait_ms = oldest_ms + self._window_ms - now_ms
        return RateLimitDecision(allowed=False, remaining=0, retry_after=max(1, math.ceil(wait_ms / 1000)))
