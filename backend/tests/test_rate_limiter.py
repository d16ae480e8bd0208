"""
Tests for the fixed-window rate limiter and its counter stores.
"""
from unittest.mock import MagicMock

import redis

from coursepay.utils.rate_limiter import (
    LimitPolicy,
    MemoryCounterStore,
    RateLimiter,
    RedisCounterStore,
)

POLICIES = {"payment-initiate": LimitPolicy(60, 5, "slow down")}


class FakeClock:
    def __init__(self, now: float = 1_000_020.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def make_limiter(store=None, clock=None):
    clock = clock or FakeClock()
    store = store or MemoryCounterStore(clock)
    return RateLimiter(store, fallback=MemoryCounterStore(clock), clock=clock, policies=POLICIES), clock


def test_allows_exactly_quota_then_rejects():
    limiter, _ = make_limiter()

    decisions = [limiter.allow("payment-initiate", "user:1") for _ in range(6)]

    assert [d.allowed for d in decisions] == [True] * 5 + [False]
    assert decisions[4].remaining == 0
    # 1_000_020 sits exactly on a window boundary
    assert decisions[5].retry_after_seconds == 60


def test_rejected_calls_do_not_consume_quota():
    store = MemoryCounterStore(FakeClock())
    for _ in range(5):
        store.hit("k", 5, 60)

    allowed, count = store.hit("k", 5, 60)

    assert allowed is False
    assert count == 5


def test_keys_are_independent():
    limiter, _ = make_limiter()
    for _ in range(5):
        limiter.allow("payment-initiate", "user:1")

    assert limiter.allow("payment-initiate", "user:1").allowed is False
    assert limiter.allow("payment-initiate", "user:2").allowed is True


def test_quota_resets_after_window():
    limiter, clock = make_limiter()
    for _ in range(5):
        limiter.allow("payment-initiate", "user:1")
    assert limiter.allow("payment-initiate", "user:1").allowed is False

    clock.now += 60

    assert limiter.allow("payment-initiate", "user:1").allowed is True


def test_retry_after_counts_down_to_window_end():
    limiter, clock = make_limiter(clock=FakeClock(1_000_040.0))
    for _ in range(5):
        limiter.allow("payment-initiate", "user:1")

    decision = limiter.allow("payment-initiate", "user:1")

    assert decision.retry_after_seconds == 40


def test_redis_outage_degrades_to_fallback_store():
    broken = MagicMock()
    broken.name = "redis"
    broken.hit.side_effect = redis.ConnectionError("connection refused")
    limiter, _ = make_limiter(store=broken)

    decisions = [limiter.allow("payment-initiate", "user:1") for _ in range(6)]

    assert limiter.degraded is True
    assert [d.allowed for d in decisions] == [True] * 5 + [False]


def test_limiter_recovers_when_store_comes_back():
    flaky = MagicMock()
    flaky.name = "redis"
    flaky.hit.side_effect = [redis.ConnectionError("down"), (True, 1)]
    limiter, _ = make_limiter(store=flaky)

    limiter.allow("payment-initiate", "user:1")
    assert limiter.degraded is True
    limiter.allow("payment-initiate", "user:1")
    assert limiter.degraded is False


def test_redis_store_rolls_back_over_quota_increment():
    client = MagicMock()
    pipe = client.pipeline.return_value
    pipe.execute.return_value = [6, True]
    store = RedisCounterStore(client)

    allowed, count = store.hit("payment-initiate:user:1:0", 5, 60)

    assert (allowed, count) == (False, 5)
    pipe.incr.assert_called_once_with("rl:payment:payment-initiate:user:1:0")
    pipe.expire.assert_called_once_with("rl:payment:payment-initiate:user:1:0", 60)
    client.decr.assert_called_once_with("rl:payment:payment-initiate:user:1:0")


def test_redis_store_allows_under_quota_without_rollback():
    client = MagicMock()
    client.pipeline.return_value.execute.return_value = [3, True]
    store = RedisCounterStore(client)

    assert store.hit("k", 5, 60) == (True, 3)
    client.decr.assert_not_called()
