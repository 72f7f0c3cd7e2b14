"""Revocation lists for session tokens ended by logout."""

from __future__ import annotations

import logging
import time
from threading import Lock
from typing import Callable, Protocol

import redis

from ..config import Settings

logger = logging.getLogger(__name__)


class Denylist(Protocol):
    def revoke(self, token_id: str, ttl_seconds: int) -> None: ...

    def is_revoked(self, token_id: str) -> bool: ...


class MemoryDenylist:
    """Process-local set of revoked token ids, each forgotten once its token expires."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._revoked: dict[str, float] = {}
        self._lock = Lock()

    def revoke(self, token_id: str, ttl_seconds: int) -> None:
        with self._lock:
            self._revoked[token_id] = self._clock() + max(ttl_seconds, 0)

    def is_revoked(self, token_id: str) -> bool:
        now = self._clock()
        with self._lock:
            expired = [key for key, until in self._revoked.items() if until <= now]
            for key in expired:
                del self._revoked[key]
            return token_id in self._revoked


class RedisDenylist:
    """Shared revocation list stored as expiring Redis keys."""

    def __init__(self, client: redis.Redis, *, key_prefix: str = "revoked") -> None:
        self._client = client
        self._key_prefix = key_prefix

    def revoke(self, token_id: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        self._client.set(f"{self._key_prefix}:{token_id}", 1, ex=ttl_seconds)

    def is_revoked(self, token_id: str) -> bool:
        return bool(self._client.exists(f"{self._key_prefix}:{token_id}"))


def build_denylist(settings: Settings) -> MemoryDenylist | RedisDenylist:
    """Share revocations through Redis when it is configured, else keep them local."""
    if settings.redis_url:
        try:
            client = redis.from_url(settings.redis_url)
            client.ping()
            logger.info("session denylist configured for redis backend")
            return RedisDenylist(client)
        except redis.RedisError as exc:
            logger.warning("redis denylist unavailable, falling back to in-memory: %s", exc)
    return MemoryDenylist()
