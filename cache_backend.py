"""Unified caching interface with Redis / in-memory swap.

Provides a simple get/set/delete/incr/clear API. When REDIS_URL is
configured and reachable, uses Redis; otherwise the in-process TTLCache.

Usage:
    from cache_backend import init_cache, get_cache
    init_cache(app)              # called once in create_app()
    cache = get_cache(app)       # the app's backend
    cache.set("key", value, ttl=300)
    value = cache.get("key")
"""

from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any, Protocol

import redis

logger = logging.getLogger(__name__)

EXTENSION_KEY = "gamification_cache"
COUNTER_TTL = 30 * 24 * 3600


# ── Protocol ───────────────────────────────────────────────

class CacheBackend(Protocol):
    def get(self, key: str) -> Any | None: ...
    def set(self, key: str, value: Any, ttl: int = 300) -> None: ...
    def delete(self, key: str) -> None: ...
    def incr(self, key: str) -> int: ...
    def clear(self) -> None: ...
    def cleanup(self) -> int: ...


# ── In-Memory Implementation ──────────────────────────────

class TTLCache:
    """In-memory dict with expiry timestamps and earliest-expiry eviction at 1000 entries."""

    MAX_ENTRIES = 1000

    def __init__(self) -> None:
        self._store: dict[str, tuple[str, float]] = {}  # key -> (value, expires_at)
        self._lock = threading.Lock()

    def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if time.time() > expires_at:
                del self._store[key]
                return None
            return value

    def set(self, key: str, value: str, ttl_seconds: int = 300) -> None:
        with self._lock:
            if key not in self._store and len(self._store) >= self.MAX_ENTRIES:
                self._evict_oldest()
            self._store[key] = (value, time.time() + ttl_seconds)

    def pop(self, key: str) -> None:
        with self._lock:
            self._store.pop(key, None)

    def _evict_oldest(self) -> None:
        """Remove the entry with the earliest expiry."""
        if not self._store:
            return
        oldest_key = min(self._store, key=lambda k: self._store[k][1])
        del self._store[oldest_key]

    def cleanup(self) -> int:
        """Remove all expired entries. Returns count removed."""
        now = time.time()
        with self._lock:
            expired = [k for k, (_, exp) in self._store.items() if now > exp]
            for k in expired:
                del self._store[k]
            return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def __len__(self) -> int:
        return len(self._store)


class InMemoryCache:
    """JSON-encoding facade over TTLCache."""

    def __init__(self) -> None:
        self._store = TTLCache()
        self._counter_lock = threading.Lock()

    def get(self, key: str) -> Any | None:
        raw = self._store.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            return raw

    def set(self, key: str, value: Any, ttl: int = 300) -> None:
        raw = json.dumps(value) if not isinstance(value, str) else value
        self._store.set(key, raw, ttl)

    def delete(self, key: str) -> None:
        self._store.pop(key)

    def incr(self, key: str) -> int:
        with self._counter_lock:
            value = int(self.get(key) or 0) + 1
            self._store.set(key, str(value), COUNTER_TTL)
            return value

    def clear(self) -> None:
        self._store.clear()

    def cleanup(self) -> int:
        return self._store.cleanup()


# ── Redis Implementation ──────────────────────────────────

class RedisCache:
    """Wraps redis.Redis; errors are logged and treated as misses."""

    def __init__(self, redis_client) -> None:
        self._redis = redis_client

    def get(self, key: str) -> Any | None:
        try:
            raw = self._redis.get(key)
            if raw is None:
                return None
            try:
                return json.loads(raw)
            except (json.JSONDecodeError, TypeError):
                return raw.decode() if isinstance(raw, bytes) else raw
        except redis.RedisError as e:
            logger.warning("Redis GET error (key=%s): %s", key, e)
            return None

    def set(self, key: str, value: Any, ttl: int = 300) -> None:
        try:
            raw = json.dumps(value) if not isinstance(value, str) else value
            self._redis.setex(key, ttl, raw)
        except redis.RedisError as e:
            logger.warning("Redis SET error (key=%s): %s", key, e)

    def delete(self, key: str) -> None:
        try:
            self._redis.delete(key)
        except redis.RedisError as e:
            logger.warning("Redis DELETE error (key=%s): %s", key, e)

    def incr(self, key: str) -> int:
        try:
            return int(self._redis.incr(key))
        except redis.RedisError as e:
            logger.warning("Redis INCR error (key=%s): %s", key, e)
            return 0

    def clear(self) -> None:
        try:
            self._redis.flushdb()
        except redis.RedisError as e:
            logger.warning("Redis CLEAR error: %s", e)

    def cleanup(self) -> int:
        # Redis handles expiry natively
        return 0


# ── App wiring ─────────────────────────────────────────────

def init_cache(app) -> CacheBackend:
    """Pick the cache backend for ``app`` and store it on app.extensions."""
    cache: CacheBackend
    redis_url = app.config.get("REDIS_URL", "")
    if redis_url:
        try:
            client = redis.Redis.from_url(redis_url, decode_responses=False)
            client.ping()
            cache = RedisCache(client)
            app.logger.info("Cache backend: Redis (%s)", redis_url)
        except redis.RedisError as e:
            app.logger.warning("Redis connection failed (%s), using in-memory cache.", e)
            cache = InMemoryCache()
    else:
        cache = InMemoryCache()
        app.logger.info("Cache backend: in-memory (TTLCache)")

    app.extensions[EXTENSION_KEY] = cache
    return cache


def get_cache(app) -> CacheBackend:
    """Return the app's cache backend, creating an in-memory one if none was set up."""
    cache = app.extensions.get(EXTENSION_KEY)
    if cache is None:
        cache = app.extensions[EXTENSION_KEY] = InMemoryCache()
    return cache
