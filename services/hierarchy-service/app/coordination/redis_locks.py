"""Redis-backed per-parent lock shared by every service process."""

from __future__ import annotations

import secrets
import time
from contextlib import contextmanager
from typing import Iterator

from redis import Redis
from redis.exceptions import RedisError, WatchError

from ..domain.errors import Conflict, UpstreamUnavailable


class RedisParentLockRegistry:
    """Distributed lease lock implemented with ``SET NX PX``.

    The lease TTL bounds how long a crashed holder can block a parent. The
    store's optimistic version check still rejects a commit made after a
    lease expired underneath its holder.
    """

    def __init__(
        self,
        client: Redis,
        *,
        ttl_seconds: float,
        default_timeout: float = 5.0,
        poll_interval: float = 0.02,
        key_prefix: str = "hierarchy-lock"
    ) -> None:
        """Initialise the Redis client and lease configuration."""
        self._client = client
        self._ttl_ms = int(ttl_seconds * 1000)
        self._default_timeout = default_timeout
        self._poll_interval = poll_interval
        self._key_prefix = key_prefix

    @contextmanager
    def hold(self, key: str, timeout: float | None = None) -> Iterator[None]:
        """Hold the lease for ``key`` or raise :class:`Conflict` once ``timeout`` elapses."""
        redis_key = f"{self._key_prefix}:{key}"
        token = secrets.token_hex(16)
        wait = self._default_timeout if timeout is None else timeout
        deadline = time.monotonic() + wait
        try:
            while not self._client.set(redis_key, token, nx=True, px=self._ttl_ms):
                if time.monotonic() >= deadline:
                    raise Conflict(f"timed out waiting for structural lock on {key}")
                time.sleep(self._poll_interval)
        except RedisError as exc:
            raise UpstreamUnavailable(f"lock backend unavailable: {exc}") from exc
        try:
            yield
        finally:
            self._release(redis_key, token)

    def _release(self, redis_key: str, token: str) -> None:
        """Delete the lease only while it still carries our token."""
        with self._client.pipeline() as pipe:
            try:
                pipe.watch(redis_key)
                current = pipe.get(redis_key)
                if current is None or current.decode("utf-8") != token:
                    pipe.unwatch()
                    return
                pipe.multi()
                pipe.delete(redis_key)
                pipe.execute()
            except WatchError:
                # Lease expired and was re-taken while we were releasing it.
                return
