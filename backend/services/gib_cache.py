"""
GIB Cache - Point-lookup cache shared by the read API and the sync

Providers:
    memory: in-process TTL cache (single API instance, tests)
    redis:  shared cache via REDIS_URL (multiple API instances + sync worker)

Every key is stored under GIB_CACHE_KEY_PREFIX ('gibuserlist:' by default).
Redis errors are logged and treated as a miss / no-op so a cache outage only
costs latency.

Usage:
    cache = build_cache_service()
    cache.set("einvoice:id:1234567890", {"identifier": "1234567890"}, ttl_seconds=3600)
    cache.remove_by_prefix("einvoice:id:")
"""

import json
import logging
import threading
import time
from typing import Any, Dict, Optional, Tuple

import redis

from services.gib_sync_config import (
    get_cache_key_prefix,
    get_cache_provider,
    get_cache_ttl_minutes,
    get_redis_url,
)

logger = logging.getLogger(__name__)


class CacheService:
    """Cache interface."""

    def get(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        raise NotImplementedError

    def remove(self, key: str) -> None:
        raise NotImplementedError

    def remove_by_prefix(self, prefix: str) -> int:
        raise NotImplementedError


# =============================================================================
# In-process provider
# =============================================================================

class MemoryCacheService(CacheService):
    """TTL cache with max size limit; keys are kept for prefix removal."""

    def __init__(self, default_ttl_seconds: int = 3600, maxsize: int = 100_000, key_prefix: str = ''):
        self._cache: Dict[str, Tuple[Any, float]] = {}
        self._default_ttl = default_ttl_seconds
        self._maxsize = maxsize
        self._key_prefix = key_prefix
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        full_key = self._key_prefix + key
        with self._lock:
            entry = self._cache.get(full_key)
            if entry is None:
                return None
            value, expires_at = entry
            if time.time() < expires_at:
                return value
            del self._cache[full_key]
            return None

    def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        ttl = ttl_seconds or self._default_ttl
        with self._lock:
            # Evict the entry closest to expiry if at capacity
            if len(self._cache) >= self._maxsize and (self._key_prefix + key) not in self._cache:
                oldest_key = min(self._cache.keys(), key=lambda k: self._cache[k][1])
                del self._cache[oldest_key]
            self._cache[self._key_prefix + key] = (value, time.time() + ttl)

    def remove(self, key: str) -> None:
        with self._lock:
            self._cache.pop(self._key_prefix + key, None)

    def remove_by_prefix(self, prefix: str) -> int:
        full_prefix = self._key_prefix + prefix
        with self._lock:
            doomed = [k for k in self._cache if k.startswith(full_prefix)]
            for k in doomed:
                del self._cache[k]
        logger.info(f"Removed {len(doomed)} cache entries with prefix '{prefix}'")
        return len(doomed)

    def stats(self) -> Dict[str, Any]:
        return {
            'size': len(self._cache),
            'maxsize': self._maxsize,
            'ttl': self._default_ttl,
        }


# =============================================================================
# Redis provider
# =============================================================================

class RedisCacheService(CacheService):
    """JSON values in Redis. Connection is opened lazily on first use."""

    SCAN_BATCH = 1000

    def __init__(
        self,
        redis_url: Optional[str] = None,
        default_ttl_seconds: int = 3600,
        key_prefix: str = 'gibuserlist:',
        client=None,
    ):
        self._redis_url = redis_url
        self._default_ttl = default_ttl_seconds
        self._key_prefix = key_prefix
        self._redis = client

    @property
    def redis(self):
        """Lazy Redis client."""
        if self._redis is None:
            self._redis = redis.from_url(self._redis_url)
        return self._redis

    def get(self, key: str) -> Optional[Any]:
        try:
            raw = self.redis.get(self._key_prefix + key)
        except redis.RedisError as e:
            logger.warning(f"Redis GET failed for {key}: {e}")
            return None
        if raw is None:
            return None
        return json.loads(raw)

    def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        try:
            self.redis.set(
                self._key_prefix + key,
                json.dumps(value, ensure_ascii=False, default=str),
                ex=ttl_seconds or self._default_ttl,
            )
        except redis.RedisError as e:
            logger.warning(f"Redis SET failed for {key}: {e}")

    def remove(self, key: str) -> None:
        try:
            self.redis.delete(self._key_prefix + key)
        except redis.RedisError as e:
            logger.warning(f"Redis DELETE failed for {key}: {e}")

    def remove_by_prefix(self, prefix: str) -> int:
        """SCAN MATCH prefix* and delete in batches."""
        pattern = f"{self._key_prefix}{prefix}*"
        removed = 0
        try:
            batch = []
            for key in self.redis.scan_iter(match=pattern, count=self.SCAN_BATCH):
                batch.append(key)
                if len(batch) >= self.SCAN_BATCH:
                    removed += self.redis.delete(*batch)
                    batch = []
            if batch:
                removed += self.redis.delete(*batch)
        except redis.RedisError as e:
            logger.warning(f"Redis prefix removal failed for '{prefix}': {e}")
        logger.info(f"Removed {removed} cache entries with prefix '{prefix}'")
        return removed


def build_cache_service() -> CacheService:
    """Cache provider from GIB_CACHE_PROVIDER."""
    ttl_seconds = get_cache_ttl_minutes() * 60
    key_prefix = get_cache_key_prefix()

    if get_cache_provider() == 'redis':
        logger.info("Using Redis cache provider")
        return RedisCacheService(
            redis_url=get_redis_url(),
            default_ttl_seconds=ttl_seconds,
            key_prefix=key_prefix,
        )

    logger.info("Using in-memory cache provider")
    return MemoryCacheService(default_ttl_seconds=ttl_seconds, key_prefix=key_prefix)
