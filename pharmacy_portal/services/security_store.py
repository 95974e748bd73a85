"""Shared expiring counters keyed by caller identity.

Redis is the store of record so that limits hold across processes and
restarts. The in-memory store is used only when Redis cannot be reached and
``REDIS_REQUIRED`` is off, which makes limits per-process.
"""

from __future__ import annotations

import logging
import threading
import time

import redis

from ..config import get_settings

logger = logging.getLogger(__name__)


class InMemoryStore:
    def __init__(self):
        self._lock = threading.Lock()
        self._data: dict[str, tuple[float, int]] = {}

    def incr(self, key: str, ttl_seconds: int) -> int:
        now = time.time()
        with self._lock:
            self._cleanup(now)
            expires_at, count = self._data.get(key, (now + ttl_seconds, 0))
            count += 1
            self._data[key] = (expires_at, count)
            return count

    def ttl(self, key: str) -> int:
        now = time.time()
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return 0
            return max(int(entry[0] - now), 0)

    def _cleanup(self, now: float) -> None:
        expired = [k for k, (exp, _) in self._data.items() if exp <= now]
        for k in expired:
            self._data.pop(k, None)


class RedisStore:
    def __init__(self, client: redis.Redis):
        self._client = client

    def incr(self, key: str, ttl_seconds: int) -> int:
        pipe = self._client.pipeline()
        pipe.incr(key, 1)
        # Only the first hit in a window sets the expiry (fixed window)
        pipe.expire(key, ttl_seconds, nx=True)
        value, _ = pipe.execute()
        return int(value)

    def ttl(self, key: str) -> int:
        return max(int(self._client.ttl(key)), 0)


class SecurityStore:
    def __init__(self, backend: InMemoryStore | RedisStore | None = None):
        self.settings = get_settings()
        if backend is not None:
            self._backend = backend
            return
        self._backend = InMemoryStore()
        self._init_redis()

    def _init_redis(self) -> None:
        try:
            client = redis.Redis.from_url(self.settings.REDIS_URL)
            client.ping()
        except redis.RedisError as exc:
            if self.settings.REDIS_REQUIRED:
                raise RuntimeError("Redis required but unavailable") from exc
            logger.warning("Redis unavailable, rate limits are per-process: %s", exc)
            return
        self._backend = RedisStore(client)

    @property
    def is_shared(self) -> bool:
        return isinstance(self._backend, RedisStore)

    def incr(self, key: str, ttl_seconds: int) -> int:
        return self._backend.incr(key, ttl_seconds)

    def ttl(self, key: str) -> int:
        return self._backend.ttl(key)


_store: SecurityStore | None = None


def get_security_store() -> SecurityStore:
    global _store
    if _store is None:
        _store = SecurityStore()
    return _store


def reset_security_store(store: SecurityStore | None = None) -> None:
    global _store
    _store = store
