"""In-memory sliding window rate limiter."""

from __future__ import annotations

import math
import time
from collections import deque
from dataclasses import dataclass
from threading import Lock
from typing import Callable, DefaultDict, Deque


@dataclass(slots=True, frozen=True)
class RateLimitDecision:
    """Outcome of counting one request against a caller's window.

    ``retry_after`` is the whole number of seconds until the oldest counted
    request leaves the window; it is ``0`` for allowed requests.
    """

    allowed: bool
    remaining: int
    retry_after: int = 0


class SlidingWindowRateLimiter:
    """Thread-safe per-process limiter keyed by operation and caller."""

    def __init__(
        self,
        max_requests: int,
        window_seconds: int,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_requests = max_requests
        self._window = float(window_seconds)
        self._clock = clock
        self._hits: DefaultDict[str, Deque[float]] = DefaultDict(deque)
        self._lock = Lock()

    def hit(self, key: str) -> RateLimitDecision:
        """Count a request for ``key`` unless its window is already full."""
        now = self._clock()
        with self._lock:
            hits = self._hits[key]
            while hits and hits[0] <= now - self._window:
                hits.popleft()
            if len(hits) >= self._max_requests:
                wait = hits[0] + self._window - now if hits else self._window
                return RateLimitDecision(allowed=False, remaining=0, retry_after=max(1, math.ceil(wait)))
            hits.append(now)
            return RateLimitDecision(allowed=True, remaining=self._max_requests - len(hits))
