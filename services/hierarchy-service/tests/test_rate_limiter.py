"""Tests for the in-memory and Redis-backed sliding window rate limiters."""

from __future__ import annotations

import time

import fakeredis
import pytest

from app.security.rate_limiter import SlidingWindowRateLimiter
from app.security.redis_rate_limiter import RedisSlidingWindowRateLimiter


@pytest.fixture()
def redis_client() -> fakeredis.FakeStrictRedis:
    client = fakeredis.FakeStrictRedis()
    client.flushall()
    return client


def test_memory_rate_limiter_is_keyed_per_caller():
    limiter = SlidingWindowRateLimiter(max_requests=2, window_seconds=60)

    first = limiter.hit("create-child:alice")
    second = limiter.hit("create-child:alice")
    third = limiter.hit("create-child:alice")

    assert (first.allowed, first.remaining) == (True, 1)
    assert (second.allowed, second.remaining) == (True, 0)
    assert not third.allowed
    assert limiter.hit("create-child:bob").allowed
    assert limiter.hit("switch:alice").remaining == 1


def test_memory_rate_limiter_reports_wait_until_slot_frees():
    now = [100.0]
    limiter = SlidingWindowRateLimiter(max_requests=1, window_seconds=60, clock=lambda: now[0])

    assert limiter.hit("switch:alice").allowed
    now[0] = 130.5
    denied = limiter.hit("switch:alice")

    assert not denied.allowed
    assert denied.retry_after == 30

    now[0] = 160.0
    assert limiter.hit("switch:alice").allowed


def test_redis_rate_limiter_blocks_excess(redis_client):
    limiter = RedisSlidingWindowRateLimiter(
        redis_client, max_requests=2, window_seconds=60, key_prefix="test"
    )
    key = "switch:alice"

    assert limiter.hit(key).remaining == 1
    assert limiter.hit(key).remaining == 0
    denied = limiter.hit(key)

    assert not denied.allowed
    assert 1 <= denied.retry_after <= 60
    assert redis_client.zcard("test:switch:alice") == 2


def test_redis_rate_limiter_expires_entries(redis_client):
    limiter = RedisSlidingWindowRateLimiter(
        redis_client, max_requests=1, window_seconds=1, key_prefix="test"
    )
    key = "create-child:alice"
    assert limiter.hit(key).allowed
    assert not limiter.hit(key).allowed
    time.sleep(1.1)
    assert limiter.hit(key).allowed
