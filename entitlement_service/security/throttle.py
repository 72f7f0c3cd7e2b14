"""Request throttles guarding credential and recovery endpoints."""

from __future__ import annotations

import logging
import time
from collections import deque
from threading import Lock
from typing import Callable, Deque, DefaultDict, Protocol

import redis

from ..config import Settings

logger = logging.getLogger(__name__)


class Throttle(Protocol):
    def allow(self, key: str) -> bool: ...


class MemoryThrottle:
    """Thread-safe sliding window throttle for a single process."""

    def __init__(
        self,
        max_requests: int,
        window_seconds: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_requests = max_requests
        self._window = window_seconds
        self._clock = clock
        self._hits: DefaultDict[str, Deque[float]] = DefaultDict(deque)
        self._lock = Lock()
        self._last_sweep = clock()

    def __len__(self) -> int:
        return len(self._hits)

    def allow(self, key: str) -> bool:
        """Return ``True`` when ``key`` has budget left in the current window."""
        now = self._clock()
        with self._lock:
            if now - self._last_sweep >= self._window:
                self._sweep(now)
            hits = self._hits[key]
            while hits and now - hits[0] >= self._window:
                hits.popleft()
            if len(hits) >= self._max_requests:
                return False
            hits.append(now)
            return True

    def _sweep(self, now: float) -> None:
        # a key whose newest hit left the window has nothing left to count
        stale = [key for key, hits in self._hits.items() if not hits or now - hits[-1] >= self._window]
        for key in stale:
            del self._hits[key]
        self._last_sweep = now


class RedisThrottle:
    """Fixed window throttle shared between processes through Redis counters."""

    def __init__(
        self,
        client: redis.Redis,
        *,
        max_requests: int,
        window_seconds: int,
        key_prefix: str = "throttle",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._client = client
        self._clock = clock
        self._max_requests = max_requests
        self._window = window_seconds
        self._key_prefix = key_prefix

    def allow(self, key: str) -> bool:
        bucket = int(self._clock()) // self._window
        redis_key = f"{self._key_prefix}:{key}:{bucket}"
        pipe = self._client.pipeline()
        pipe.incr(redis_key)
        pipe.expire(redis_key, self._window)
        count, _ = pipe.execute()
        return int(count) <= self._max_requests


def build_throttle(settings: Settings) -> MemoryThrottle | RedisThrottle:
    """Instantiate the configured throttle backend, preferring Redis when reachable."""
    if settings.rate_limit_backend == "redis" and settings.redis_url:
        try:
            client = redis.from_url(settings.redis_url)
            client.ping()
            logger.info("throttle configured for redis backend at %s", settings.redis_url)
            return RedisThrottle(
                client,
                max_requests=settings.rate_limit_requests,
                window_seconds=settings.rate_limit_window_seconds,
            )
        except redis.RedisError as exc:
            logger.warning("redis throttle unavailable, falling back to in-memory: %s", exc)

    logger.info("throttle using in-memory backend")
    return MemoryThrottle(
        max_requests=settings.rate_limit_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )
