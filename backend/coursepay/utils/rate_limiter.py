"""
Fixed-window Rate Limiter with pluggable counter stores.

Counters live in Redis when REDIS_URL is configured and in process memory
otherwise. If Redis becomes unreachable the limiter keeps working on the
in-process store and logs the degradation.

Usage as a FastAPI dependency:
    Depends(rate_limit("payment-initiate", key_by_user))
"""
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from functools import lru_cache
from typing import Callable, Dict, Optional, Tuple

import redis
from fastapi import Request

from coursepay.config import get_settings
from coursepay.utils.errors import RateLimitExceeded
from coursepay.utils.logger import get_security_logger

logger = logging.getLogger(__name__)
security_log = get_security_logger()

# Organization-wide singleton key: the daily reconciliation quota is shared by all admins
RECONCILIATION_GLOBAL_KEY = "reconciliation:global"


@dataclass(frozen=True)
class LimitPolicy:
    window_seconds: int
    quota: int
    message: str


POLICIES: Dict[str, LimitPolicy] = {
    "payment-initiate": LimitPolicy(60, 5, "Too many payment attempts. Please try again in a minute."),
    "payment-retry": LimitPolicy(3600, 3, "Retry limit exceeded. Please create a new payment or contact support."),
    "refund": LimitPolicy(3600, 10, "Refund rate limit exceeded. Please try again later."),
    "reconciliation-run": LimitPolicy(86400, 10, "Daily reconciliation limit reached. Please try again tomorrow."),
    "status-check": LimitPolicy(60, 10, "Too many status check requests. Please try again in a minute."),
    "history": LimitPolicy(60, 10, "Too many history requests. Please try again in a minute."),
    "config": LimitPolicy(60, 20, "Too many configuration requests. Please try again in a minute."),
    "monitoring": LimitPolicy(60, 20, "Too many monitoring requests. Please try again in a minute."),
}


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after_seconds: int
    remaining: int


class CounterStore(ABC):
    """Atomic compare-and-increment of a fixed-window counter."""

    name = "abstract"

    @abstractmethod
    def hit(self, key: str, quota: int, ttl_seconds: int) -> Tuple[bool, int]:
        """Increment key unless it already reached quota.

        Returns (allowed, count_after). A rejected hit leaves the count unchanged.
        """

    def ping(self) -> None:
        """Raise if the store is unreachable."""

    def reset(self) -> None:
        """Drop all counters (tests and admin tooling)."""


class MemoryCounterStore(CounterStore):
    name = "memory"

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = threading.Lock()
        # {key: (expires_at, count)}
        self._counters: Dict[str, Tuple[float, int]] = {}

    def hit(self, key: str, quota: int, ttl_seconds: int) -> Tuple[bool, int]:
        now = self._clock()
        with self._lock:
            expires_at, count = self._counters.get(key, (0.0, 0))
            if expires_at <= now:
                expires_at, count = now + ttl_seconds, 0
                self._evict(now)
            if count >= quota:
                return False, count
            self._counters[key] = (expires_at, count + 1)
            return True, count + 1

    def _evict(self, now: float) -> None:
        stale = [k for k, (exp, _) in self._counters.items() if exp <= now]
        for k in stale:
            del self._counters[k]

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()


class RedisCounterStore(CounterStore):
    name = "redis"

    def __init__(self, client: "redis.Redis", prefix: str = "rl:payment:"):
        self._client = client
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str) -> "RedisCounterStore":
        client = redis.Redis.from_url(
            url,
            socket_timeout=0.5,
            socket_connect_timeout=0.5,
            decode_responses=True,
        )
        return cls(client)

    def hit(self, key: str, quota: int, ttl_seconds: int) -> Tuple[bool, int]:
        full_key = f"{self._prefix}{key}"
        pipe = self._client.pipeline(transaction=True)
        pipe.incr(full_key)
        pipe.expire(full_key, ttl_seconds)
        count, _ = pipe.execute()
        if count > quota:
            # Roll back so a rejected call does not consume quota
            self._client.decr(full_key)
            return False, count - 1
        return True, count

    def ping(self) -> None:
        self._client.ping()

    def reset(self) -> None:
        for key in self._client.scan_iter(f"{self._prefix}*"):
            self._client.delete(key)


class RateLimiter:
    """Keyed fixed-window limiter. Window boundaries are aligned to epoch multiples."""

    def __init__(
        self,
        store: CounterStore,
        fallback: Optional[CounterStore] = None,
        clock: Callable[[], float] = time.time,
        policies: Optional[Dict[str, LimitPolicy]] = None,
    ):
        self.store = store
        self.fallback = fallback or MemoryCounterStore(clock)
        self.clock = clock
        self.policies = policies or POLICIES
        self.degraded = False

    def allow(self, category: str, key: str) -> RateLimitDecision:
        policy = self.policies[category]
        now = self.clock()
        window_start = int(now // policy.window_seconds) * policy.window_seconds
        retry_after = max(1, int(window_start + policy.window_seconds - now))
        counter_key = f"{category}:{key}:{window_start}"

        try:
            allowed, count = self.store.hit(counter_key, policy.quota, retry_after)
            if self.degraded:
                logger.info("Rate limiter store '%s' recovered", self.store.name)
                self.degraded = False
        except (redis.RedisError, OSError) as e:
            if not self.degraded:
                logger.warning(
                    "Rate limiter store '%s' unavailable (%s); degrading to in-process counters",
                    self.store.name, e,
                )
            self.degraded = True
            allowed, count = self.fallback.hit(counter_key, policy.quota, retry_after)

        return RateLimitDecision(
            allowed=allowed,
            retry_after_seconds=0 if allowed else retry_after,
            remaining=max(0, policy.quota - count),
        )

    def reset(self) -> None:
        self.fallback.reset()
        try:
            self.store.reset()
        except (redis.RedisError, OSError) as e:
            logger.warning("Could not reset rate limiter store: %s", e)


@lru_cache()
def get_rate_limiter() -> RateLimiter:
    """Process-wide limiter, store chosen once at startup from REDIS_URL."""
    settings = get_settings()
    if settings.REDIS_URL:
        logger.info("Rate limiter using Redis counters")
        return RateLimiter(RedisCounterStore.from_url(settings.REDIS_URL))
    logger.info("Rate limiter using in-process counters")
    return RateLimiter(MemoryCounterStore())


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def enforce(category: str, key: str, request: Optional[Request] = None) -> None:
    """Count one call against (category, key); raise RateLimitExceeded when over quota."""
    decision = get_rate_limiter().allow(category, key)
    if not decision.allowed:
        security_log.warning(
            "RATE_LIMITED category=%s key=%s ip=%s path=%s",
            category, key,
            client_ip(request) if request else "-",
            request.url.path if request else "-",
        )
        raise RateLimitExceeded(decision.retry_after_seconds, POLICIES[category].message)
