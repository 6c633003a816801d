"""
Short-lived cache for read-heavy views (availability calendars).

Uses Redis when REDIS_URL is configured and an in-process TTL map otherwise.
Cache failures are logged and treated as misses; they never fail a request.
"""
from __future__ import annotations

import fnmatch
import json
import logging
import os
import time
from typing import Any, Optional

import redis

REDIS_URL = os.getenv("REDIS_URL", "").strip()
CALENDAR_CACHE_TTL = int(os.getenv("CALENDAR_CACHE_TTL", "60"))

logger = logging.getLogger(__name__)


class MemoryCache:
    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._store: dict[str, tuple[str, float]] = {}

    def get(self, key: str) -> Optional[str]:
        record = self._store.get(key)
        if record is None:
            return None
        value, expires_at = record
        if self._clock() > expires_at:
            self._store.pop(key, None)
            return None
        return value

    def _prune(self, now: float) -> None:
        for k in [k for k, (_, expires_at) in self._store.items() if now > expires_at]:
            del self._store[k]

    def setex(self, key: str, ttl: int, value: str) -> None:
        now = self._clock()
        self._prune(now)
        self._store[key] = (value, now + ttl)

    def delete(self, *keys: str) -> int:
        return sum(1 for k in keys if self._store.pop(k, None) is not None)

    def keys(self, pattern: str) -> list[str]:
        self._prune(self._clock())
        return [k for k in list(self._store) if fnmatch.fnmatchcase(k, pattern)]


class Cache:
    """JSON-serializing wrapper over a Redis-like client."""

    def __init__(self, client=None):
        self._client = client

    def _get_client(self):
        if self._client is None:
            if REDIS_URL:
                try:
                    self._client = redis.from_url(REDIS_URL, decode_responses=True, socket_timeout=1.0)
                except redis.RedisError as e:
                    logger.warning("Redis unavailable, using in-memory cache: %s", e)
                    self._client = MemoryCache()
            else:
                self._client = MemoryCache()
        return self._client

    def get(self, key: str) -> Optional[Any]:
        try:
            raw = self._get_client().get(key)
        except redis.RedisError as e:
            logger.warning("Cache get failed for %s: %s", key, e)
            return None
        if raw is None:
            logger.debug("Cache MISS: %s", key)
            return None
        logger.debug("Cache HIT: %s", key)
        return json.loads(raw)

    def set(self, key: str, value: Any, ttl: int = CALENDAR_CACHE_TTL) -> bool:
        try:
            self._get_client().setex(key, ttl, json.dumps(value, default=str))
            return True
        except redis.RedisError as e:
            logger.warning("Cache set failed for %s: %s", key, e)
            return False

    def delete_pattern(self, pattern: str) -> int:
        client = self._get_client()
        try:
            keys = client.keys(pattern)
            return client.delete(*keys) if keys else 0
        except redis.RedisError as e:
            logger.warning("Cache delete failed for %s: %s", pattern, e)
            return 0


cache = Cache()


def calendar_key(company_id: str, warehouse_id: str, start: str = "*", end: str = "*") -> str:
    return f"availability_calendar:{company_id}:{warehouse_id}:{start}:{end}"
