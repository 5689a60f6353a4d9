"""
Outbound rate limiting for LeetCode calls.

- InMemoryRateLimiter: token bucket per key, single process (tests, inline runs).
- RedisRateLimiter: fixed 1-second window shared by every worker process.
- Both honor cool_down(seconds): after an upstream 429 nobody calls out until
  the cool-down expires.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol

from codeduel.core.config import settings

logger = logging.getLogger("codeduel")

DEFAULT_KEY = "leetcode"


@dataclass
class RateLimitConfig:
    per_second: int = 20
    burst: int = 20
    cooldown_seconds: int = 60
    max_wait_seconds: float = 30.0


def build_rate_limit_config() -> RateLimitConfig:
    per_second = max(1, int(settings.LEETCODE_RATE_LIMIT_PER_SECOND))
    return RateLimitConfig(
        per_second=per_second,
        burst=per_second,
        cooldown_seconds=max(1, int(settings.LEETCODE_RATE_LIMIT_COOLDOWN_SECONDS)),
    )


class RateLimiter(Protocol):
    def acquire(self, key: str = DEFAULT_KEY) -> bool: ...

    def cool_down(self, seconds: Optional[float] = None, key: str = DEFAULT_KEY) -> None: ...


class TokenBucket:
    def __init__(self, capacity: int, refill_rate_per_sec: float, time_fn: Callable[[], float] = time.monotonic):
        self.capacity = max(1, capacity)
        self.tokens = float(self.capacity)
        self.refill_rate = max(0.0, refill_rate_per_sec)
        self.time_fn = time_fn
        self.last_refill = self.time_fn()

    def _refill(self) -> None:
        now = self.time_fn()
        elapsed = now - self.last_refill
        if elapsed <= 0:
            return
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    def allow(self, cost: float = 1.0) -> bool:
        self._refill()
        if self.tokens >= cost:
            self.tokens -= cost
            return True
        return False

    def seconds_until_available(self, cost: float = 1.0) -> float:
        self._refill()
        if self.tokens >= cost or self.refill_rate <= 0:
            return 0.0
        return (cost - self.tokens) / self.refill_rate


class InMemoryRateLimiter:
    def __init__(
        self,
        config: Optional[RateLimitConfig] = None,
        time_fn: Callable[[], float] = time.monotonic,
        sleep_fn: Callable[[float], None] = time.sleep,
    ):
        self.config = config or build_rate_limit_config()
        self.time_fn = time_fn
        self.sleep_fn = sleep_fn
        self.buckets: Dict[str, TokenBucket] = {}
        self._cooldown_until: Dict[str, float] = {}
        self._lock = threading.Lock()

    def _bucket_for(self, key: str) -> TokenBucket:
        if key not in self.buckets:
            self.buckets[key] = TokenBucket(
                capacity=self.config.burst,
                refill_rate_per_sec=float(self.config.per_second),
                time_fn=self.time_fn,
            )
        return self.buckets[key]

    def allow(self, key: str = DEFAULT_KEY) -> bool:
        with self._lock:
            if self.time_fn() < self._cooldown_until.get(key, 0.0):
                return False
            return self._bucket_for(key).allow()

    def acquire(self, key: str = DEFAULT_KEY) -> bool:
        """Block until a token is available. Returns False if max_wait_seconds is exceeded."""
        deadline = self.time_fn() + self.config.max_wait_seconds
        while True:
            with self._lock:
                now = self.time_fn()
                blocked_until = self._cooldown_until.get(key, 0.0)
                if now >= blocked_until:
                    bucket = self._bucket_for(key)
                    if bucket.allow():
                        return True
                    wait = bucket.seconds_until_available()
                else:
                    wait = blocked_until - now
            if self.time_fn() + wait > deadline:
                return False
            self.sleep_fn(max(wait, 0.001))

    def cool_down(self, seconds: Optional[float] = None, key: str = DEFAULT_KEY) -> None:
        duration = float(seconds if seconds is not None else self.config.cooldown_seconds)
        with self._lock:
            until = self.time_fn() + duration
            self._cooldown_until[key] = max(self._cooldown_until.get(key, 0.0), until)
        logger.warning("ratelimit.cool_down", extra={"event_type": "ratelimit.cool_down", "outcome": f"{duration}s"})

    def is_cooling_down(self, key: str = DEFAULT_KEY) -> bool:
        with self._lock:
            return self.time_fn() < self._cooldown_until.get(key, 0.0)


class RedisRateLimiter:
    """Fixed-window counter in Redis; one window per wall-clock second."""

    def __init__(
        self,
        redis_conn,
        config: Optional[RateLimitConfig] = None,
        prefix: str = "codeduel:ratelimit",
        time_fn: Callable[[], float] = time.time,
        sleep_fn: Callable[[float], None] = time.sleep,
    ):
        self.redis = redis_conn
        self.config = config or build_rate_limit_config()
        self.prefix = prefix
        self.time_fn = time_fn
        self.sleep_fn = sleep_fn

    def _cooldown_key(self, key: str) -> str:
        return f"{self.prefix}:{key}:cooldown"

    def _window_key(self, key: str, window: int) -> str:
        return f"{self.prefix}:{key}:{window}"

    def allow(self, key: str = DEFAULT_KEY) -> bool:
        if self.redis.exists(self._cooldown_key(key)):
            return False
        window = int(self.time_fn())
        window_key = self._window_key(key, window)
        pipe = self.redis.pipeline()
        pipe.incr(window_key)
        pipe.expire(window_key, 2)
        count, _ = pipe.execute()
        return int(count) <= self.config.per_second

    def acquire(self, key: str = DEFAULT_KEY) -> bool:
        deadline = self.time_fn() + self.config.max_wait_seconds
        while True:
            if self.allow(key):
                return True
            now = self.time_fn()
            ttl = self.redis.ttl(self._cooldown_key(key))
            if ttl is not None and ttl > 0:
                wait = float(ttl)
            else:
                wait = (int(now) + 1) - now
            if now + wait > deadline:
                return False
            self.sleep_fn(max(wait, 0.001))

    def cool_down(self, seconds: Optional[float] = None, key: str = DEFAULT_KEY) -> None:
        duration = int(seconds if seconds is not None else self.config.cooldown_seconds)
        self.redis.set(self._cooldown_key(key), "1", ex=max(1, duration))
        logger.warning("ratelimit.cool_down", extra={"event_type": "ratelimit.cool_down", "outcome": f"{duration}s"})

    def is_cooling_down(self, key: str = DEFAULT_KEY) -> bool:
        return bool(self.redis.exists(self._cooldown_key(key)))


_limiter: Optional[RateLimiter] = None


def get_rate_limiter() -> RateLimiter:
    """Process-wide limiter: Redis-backed when REDIS_URL is reachable, else in-memory."""
    global _limiter
    if _limiter is None:
        try:
            import redis

            conn = redis.from_url(settings.REDIS_URL)
            conn.ping()
            _limiter = RedisRateLimiter(conn)
        except Exception as exc:
            logger.warning("ratelimit.redis_unavailable: %s; using in-memory limiter", exc)
            _limiter = InMemoryRateLimiter()
    return _limiter


def set_rate_limiter(limiter: Optional[RateLimiter]) -> None:
    global _limiter
    _limiter = limiter
