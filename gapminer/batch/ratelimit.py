from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, Protocol, Tuple

from redis import Redis

from .errors import RateLimitedError

logger = logging.getLogger(__name__)


class RateLimitStore(Protocol):
    def hit(self, key: str, window_seconds: float, now: float) -> Tuple[int, float]:
        """Count one request for ``key``; return (requests in window, window reset time)."""
        ...

    def reset(self, key: str) -> None:
        ...


class InMemoryRateLimitStore:
    """Fixed windows held in a dict. One instance per limiter keeps tests isolated."""

    def __init__(self):
        self._windows: Dict[str, Tuple[int, float]] = {}
        self._lock = threading.Lock()

    def hit(self, key: str, window_seconds: float, now: float) -> Tuple[int, float]:
        with self._lock:
            count, reset_at = self._windows.get(key, (0, 0.0))
            if now >= reset_at:
                count, reset_at = 0, now + window_seconds
            count += 1
            self._windows[key] = (count, reset_at)
            return count, reset_at

    def reset(self, key: str) -> None:
        with self._lock:
            self._windows.pop(key, None)


class RedisRateLimitStore:
    """
    Redis-backed fixed windows shared between API processes. The key expiry
    is the window, so Redis drops idle counters by itself.
    """

    def __init__(self, redis: Redis, prefix: str = "gapminer:ratelimit"):
        self.redis = redis
        self.prefix = prefix

    def _name(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    def hit(self, key: str, window_seconds: float, now: float) -> Tuple[int, float]:
        name = self._name(key)
        window_ms = int(window_seconds * 1000)
        pipe = self.redis.pipeline()
        pipe.incr(name)
        pipe.pttl(name)
        count, ttl_ms = pipe.execute()
        if ttl_ms is None or ttl_ms < 0:
            self.redis.pexpire(name, window_ms)
            ttl_ms = window_ms
        return int(count), now + ttl_ms / 1000.0

    def reset(self, key: str) -> None:
        self.redis.delete(self._name(key))


class RateLimiter:
    """Per (owner, action) request limiter over fixed time windows."""

    def __init__(
        self,
        store: RateLimitStore,
        max_requests: int = 10,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.clock = clock

    @staticmethod
    def key(owner_id: str, action: str) -> str:
        return f"{owner_id}:{action}"

    def check(self, owner_id: str, action: str) -> None:
        """Count a request; raise RateLimitedError once the window is exhausted."""
        key = self.key(owner_id, action)
        now = self.clock()
        count, reset_at = self.store.hit(key, self.window_seconds, now)
        if count > self.max_requests:
            logger.warning("Rate limit hit for %s (%s requests in window)", key, count)
            raise RateLimitedError(key, retry_after=max(0.0, reset_at - now))

    def is_limited(self, owner_id: str, action: str) -> bool:
        try:
            self.check(owner_id, action)
        except RateLimitedError:
            return True
        return False

    def reset(self, owner_id: str, action: str) -> None:
        self.store.reset(self.key(owner_id, action))
