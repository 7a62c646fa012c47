"""
Query Result Cache for QueryGate

KEY DESIGN PRINCIPLES:
----------------------
1. Cache is an OPTIMIZATION, not a source of truth
2. Graceful degradation: every backend failure is a miss, never an error
3. Entries are validated on read; corrupt or expired entries are dropped
4. Keys are scoped per data source, so sources never share results

CACHE KEY STRUCTURE:
--------------------
Key: querygate:query:{config_id}:{sha256(query text)}

The text is hashed exactly as submitted; two spellings of the same query
are two entries.

BACKENDS:
---------
- RedisCacheBackend:    shared across workers (redis-py)
- InMemoryCacheBackend: single process, for development and tests
"""

import fnmatch
import hashlib
import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

import redis
from pydantic import ValidationError

from querygate.core.config import Settings, get_settings
from querygate.errors import CacheError
from querygate.models import CacheEntry, QueryResult

logger = logging.getLogger(__name__)

KEY_PREFIX = "querygate:query"


def build_query_cache_key(config_id: str, text: str) -> str:
    """Cache key for one query against one data source."""
    digest = hashlib.sha256(text.encode("utf-8")).hexdigest()
    return f"{KEY_PREFIX}:{config_id}:{digest}"


# =============================================================================
# BACKENDS
# =============================================================================

class CacheBackend(Protocol):
    """Minimal key/value store the query cache needs."""

    name: str

    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        ...

    def delete(self, *keys: str) -> int:
        ...

    def keys(self, pattern: str) -> List[str]:
        ...


class RedisCacheBackend:
    """
    Redis-backed store.

    The client is created lazily. After a connection failure the backend
    stays quiet for `retry_after` seconds instead of paying a socket timeout
    on every request. All redis errors are raised as CacheError.
    """

    name = "redis"

    def __init__(self, url: str, retry_after: float = 30.0, client: Optional["redis.Redis"] = None):
        self.url = url
        self.retry_after = retry_after
        self._client = client
        self._failed_at: Optional[float] = None
        self._lock = threading.Lock()

    def _get_client(self) -> "redis.Redis":
        if self._failed_at is not None and time.monotonic() - self._failed_at < self.retry_after:
            raise CacheError("Redis marked unavailable")
        with self._lock:
            if self._client is None:
                self._client = redis.from_url(
                    self.url,
                    socket_connect_timeout=2,  # Fast fail
                    socket_timeout=5,
                    decode_responses=True,
                )
        return self._client

    def _call(self, fn):
        client = self._get_client()
        try:
            result = fn(client)
        except (redis.ConnectionError, redis.TimeoutError) as e:
            if self._failed_at is None:
                logger.warning(f"Redis unavailable: {e}. Caching paused for {self.retry_after:.0f}s.")
            self._failed_at = time.monotonic()
            raise CacheError(str(e)) from e
        except redis.RedisError as e:
            raise CacheError(str(e)) from e
        if self._failed_at is not None:
            logger.info("Redis reachable again, caching resumed")
            self._failed_at = None
        return result

    def get(self, key: str) -> Optional[str]:
        return self._call(lambda c: c.get(key))

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._call(lambda c: c.setex(key, ttl_seconds, value))

    def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(self._call(lambda c: c.delete(*keys)))

    def keys(self, pattern: str) -> List[str]:
        return self._call(lambda c: list(c.scan_iter(match=pattern, count=500)))

    def ping(self) -> bool:
        try:
            return bool(self._call(lambda c: c.ping()))
        except CacheError:
            return False


class InMemoryCacheBackend:
    """Process-local store with per-key expiry."""

    name = "memory"

    def __init__(self):
        self._data: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            item = self._data.get(key)
            if item is None:
                return None
            value, expires_at = item
            if time.monotonic() >= expires_at:
                del self._data[key]
                return None
            return value

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._data[key] = (value, time.monotonic() + ttl_seconds)

    def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._data.pop(key, None) is not None:
                    removed += 1
        return removed

    def keys(self, pattern: str) -> List[str]:
        with self._lock:
            return [key for key in self._data if fnmatch.fnmatchcase(key, pattern)]

    def ping(self) -> bool:
        return True


# =============================================================================
# QUERY CACHE
# =============================================================================

class QueryCache:
    """
    Read-through result cache used by the query gateway.

    Never raises: a missing, failing, corrupt or stale cache behaves like an
    empty one.
    """

    def __init__(self, backend: Optional[CacheBackend], ttl_seconds: int = 300, max_rows: int = 10000):
        self.backend = backend
        self.ttl_seconds = ttl_seconds
        self.max_rows = max_rows
        self._stats = {"hits": 0, "misses": 0, "writes": 0, "errors": 0, "discarded": 0}
        self._stats_lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self.backend is not None

    def _count(self, name: str) -> None:
        with self._stats_lock:
            self._stats[name] += 1

    def get(self, config_id: str, text: str) -> Optional[QueryResult]:
        """Cached result for the query, or None."""
        if self.backend is None:
            return None
        key = build_query_cache_key(config_id, text)
        try:
            raw = self.backend.get(key)
        except CacheError as e:
            self._count("errors")
            logger.warning(f"Cache read failed for source '{config_id}': {e}")
            return None

        if raw is None:
            self._count("misses")
            return None

        try:
            entry = CacheEntry.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(f"Discarding corrupt cache entry {key}: {e.error_count()} validation error(s)")
            self._discard(key)
            return None

        if entry.is_expired():
            self._discard(key)
            return None

        self._count("hits")
        logger.debug(f"Cache HIT: {key}")
        return entry.result

    def set(self, config_id: str, text: str, result: QueryResult) -> bool:
        """Store a result; empty or oversized results are skipped."""
        if self.backend is None:
            return False
        if result.rowCount == 0:
            return False
        if result.rowCount > self.max_rows:
            logger.debug(f"Skipping cache for {result.rowCount} rows (max: {self.max_rows})")
            return False

        key = build_query_cache_key(config_id, text)
        entry = CacheEntry(
            result=result.model_copy(update={"cached": False}),
            cachedAt=datetime.now(timezone.utc),
            ttlSeconds=self.ttl_seconds,
        )
        try:
            self.backend.set(key, entry.model_dump_json(), self.ttl_seconds)
        except CacheError as e:
            self._count("errors")
            logger.warning(f"Cache write failed for source '{config_id}': {e}")
            return False
        self._count("writes")
        logger.debug(f"Cache SET: {key} (TTL: {self.ttl_seconds}s, rows: {result.rowCount})")
        return True

    def invalidate(self, config_id: Optional[str] = None) -> int:
        """Drop cached results for one source, or all of them."""
        if self.backend is None:
            return 0
        pattern = f"{KEY_PREFIX}:{config_id}:*" if config_id else f"{KEY_PREFIX}:*"
        try:
            keys = self.backend.keys(pattern)
            removed = self.backend.delete(*keys) if keys else 0
        except CacheError as e:
            self._count("errors")
            logger.warning(f"Cache invalidation failed: {e}")
            return 0
        logger.info(f"Cleared {removed} cache entries" + (f" for source '{config_id}'" if config_id else ""))
        return removed

    def _discard(self, key: str) -> None:
        self._count("discarded")
        self._count("misses")
        try:
            self.backend.delete(key)
        except CacheError as e:
            logger.debug(f"Could not delete cache entry {key}: {e}")

    def get_cache_stats(self) -> Dict[str, Any]:
        """Get cache statistics for monitoring."""
        with self._stats_lock:
            stats = dict(self._stats)
        stats.update({
            "enabled": self.enabled,
            "backend": self.backend.name if self.backend is not None else None,
            "ttl_seconds": self.ttl_seconds,
            "max_rows": self.max_rows,
        })
        if self.backend is not None and hasattr(self.backend, "ping"):
            stats["connected"] = self.backend.ping()
        return stats


def create_query_cache(settings: Optional[Settings] = None) -> QueryCache:
    """Build the query cache described by settings."""
    settings = settings or get_settings()
    backend: Optional[CacheBackend] = None
    if settings.cache_enabled and settings.cache_backend == "redis" and settings.redis_url:
        backend = RedisCacheBackend(settings.redis_url)
    elif settings.cache_enabled and settings.cache_backend == "memory":
        backend = InMemoryCacheBackend()
    logger.info(f"Query cache backend: {backend.name if backend else 'disabled'}")
    return QueryCache(backend, ttl_seconds=settings.cache_ttl_seconds, max_rows=settings.cache_max_rows)
