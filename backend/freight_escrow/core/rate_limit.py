"""Sliding-window rate limiting keyed by caller identity.

With ``RATE_LIMIT_REDIS_URL`` set, windows live in Redis sorted sets so every
instance shares them. Without it an in-process window is used, which is only
correct for a single instance (and for tests).
"""

from __future__ import annotations

import logging
import time
import uuid
from collections import deque
from threading import Lock
from typing import Callable, Deque, Optional

import redis

from freight_escrow.config import settings

logger = logging.getLogger("freight_escrow.rate_limit")

WINDOW_SECONDS = 60


class InMemoryRateLimiter:
    def __init__(
        self, window_seconds: int = WINDOW_SECONDS, clock: Callable[[], float] = time.monotonic
    ):
        self.window_seconds = window_seconds
        self._clock = clock
        self._lock = Lock()
        self._hits: dict[str, Deque[float]] = {}
        self._last_sweep = clock()

    def hit(self, key: str, limit: int) -> bool:
        """Record one request; returns False when ``key`` is over ``limit``."""

        now = self._clock()
        cutoff = now - self.window_seconds
        with self._lock:
            if now - self._last_sweep >= self.window_seconds:
                self._evict_idle(cutoff)
                self._last_sweep = now
            bucket = self._hits.get(key) or deque()
            while bucket and bucket[0] <= cutoff:
                bucket.popleft()
            if len(bucket) >= limit:
                if bucket:
                    self._hits[key] = bucket
                else:
                    self._hits.pop(key, None)
                return False
            bucket.append(now)
            self._hits[key] = bucket
            return True

    def _evict_idle(self, cutoff: float) -> None:
        # A bucket whose newest hit is outside the window is empty once pruned.
        idle = [key for key, bucket in self._hits.items() if not bucket or bucket[-1] <= cutoff]
        for key in idle:
            del self._hits[key]

    @property
    def tracked_keys(self) -> int:
        return len(self._hits)

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()
            self._last_sweep = self._clock()


class RedisRateLimiter:
    def __init__(self, client: redis.Redis, window_seconds: int = WINDOW_SECONDS):
        self.redis = client
        self.window_seconds = window_seconds

    def hit(self, key: str, limit: int) -> bool:
        now = time.time()
        redis_key = f"ratelimit:{key}"
        member = f"{now}:{uuid.uuid4().hex}"

        try:
            pipe = self.redis.pipeline()
            pipe.zremrangebyscore(redis_key, 0, now - self.window_seconds)
            pipe.zcard(redis_key)
            pipe.zadd(redis_key, {member: now})
            pipe.expire(redis_key, self.window_seconds)
            _, count, _, _ = pipe.execute()
        except redis.RedisError as e:
            # Fail open when Redis is unreachable.
            logger.warning("rate_limit_backend_unavailable", extra={"error": str(e)})
            return True

        if int(count) >= limit:
            # Over the limit: the rejected request does not count against the window.
            self.redis.zrem(redis_key, member)
            return False
        return True

    def reset(self) -> None:
        for key in self.redis.scan_iter(match="ratelimit:*"):
            self.redis.delete(key)


_limiter: Optional[InMemoryRateLimiter | RedisRateLimiter] = None
_limiter_lock = Lock()


def get_rate_limiter() -> InMemoryRateLimiter | RedisRateLimiter:
    global _limiter
    with _limiter_lock:
        if _limiter is None:
            url = (settings.rate_limit_redis_url or "").strip()
            if url:
                _limiter = RedisRateLimiter(redis.Redis.from_url(url, socket_timeout=2))
                logger.info("rate_limiter_backend", extra={"backend": "redis"})
            else:
                _limiter = InMemoryRateLimiter()
                logger.info("rate_limiter_backend", extra={"backend": "memory"})
        return _limiter
