"""
Multi-Tenant Cache Service for zone and rate card lookups.

Tenant-scoped keys MUST include tenant_id to prevent cross-tenant leakage.
Zone classifications depend only on the pincode pair and carrier, so they
live under global keys.

Supports:
1. Redis (preferred for production)
2. In-memory fallback (for development/testing)

Usage:
    cache = get_cache()

    await cache.set_zone("110001", "400001", None, resolution.to_dict())
    cached = await cache.get_zone("110001", "400001", None)

    await cache.invalidate_rate_card_selections(tenant_id)
"""
import json
from typing import Any, Optional, Dict
from datetime import datetime, timedelta, timezone
from abc import ABC, abstractmethod
import asyncio
import logging

from shipquote.config import settings

logger = logging.getLogger(__name__)


class CacheBackend(ABC):
    """Abstract cache backend interface."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Get value from cache."""
        pass

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: int = 3600) -> bool:
        """Set value in cache with TTL (seconds)."""
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete key from cache."""
        pass

    @abstractmethod
    async def clear_pattern(self, pattern: str) -> int:
        """Clear all keys matching pattern."""
        pass


class InMemoryCache(CacheBackend):
    """
    In-memory cache for development/fallback.

    Not shared across processes; prefer Redis when running several workers.
    """

    # Writes between sweeps of expired entries
    CLEANUP_EVERY = 500

    def __init__(self):
        self._cache: Dict[str, tuple[Any, datetime]] = {}
        self._lock = asyncio.Lock()
        self._writes = 0

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            if key in self._cache:
                value, expires_at = self._cache[key]
                if expires_at > datetime.now(timezone.utc):
                    return value
                del self._cache[key]
            return None

    async def set(self, key: str, value: Any, ttl: int = 3600) -> bool:
        async with self._lock:
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=ttl)
            self._cache[key] = (value, expires_at)
            self._writes += 1
            if self._writes % self.CLEANUP_EVERY == 0:
                self._evict_expired()
            return True

    async def delete(self, key: str) -> bool:
        async with self._lock:
            if key in self._cache:
                del self._cache[key]
                return True
            return False

    async def clear_pattern(self, pattern: str) -> int:
        """Clear keys matching pattern (simple prefix match)."""
        async with self._lock:
            prefix = pattern.rstrip('*')
            keys_to_delete = [k for k in self._cache.keys() if k.startswith(prefix)]
            for key in keys_to_delete:
                del self._cache[key]
            return len(keys_to_delete)

    async def cleanup_expired(self) -> int:
        """Remove expired entries. Call periodically to prevent memory bloat."""
        async with self._lock:
            return self._evict_expired()

    def _evict_expired(self) -> int:
        now = datetime.now(timezone.utc)
        expired_keys = [
            k for k, (_, expires_at) in self._cache.items()
            if expires_at <= now
        ]
        for key in expired_keys:
            del self._cache[key]
        return len(expired_keys)


class RedisCache(CacheBackend):
    """
    Redis cache backend for production.

    Cache failures are logged and treated as misses; pricing must not fail
    because Redis is unreachable.
    """

    def __init__(self, redis_url: str):
        self._redis_url = redis_url
        self._client = None

    async def _get_client(self):
        if self._client is None:
            import redis.asyncio as redis
            self._client = redis.from_url(self._redis_url, decode_responses=True)
        return self._client

    async def get(self, key: str) -> Optional[Any]:
        try:
            client = await self._get_client()
            value = await client.get(key)
            if value:
                return json.loads(value)
            return None
        except Exception as e:
            logger.warning(f"Redis get failed for {key}: {e}")
            return None

    async def set(self, key: str, value: Any, ttl: int = 3600) -> bool:
        try:
            client = await self._get_client()
            await client.set(key, json.dumps(value, default=str), ex=ttl)
            return True
        except Exception as e:
            logger.warning(f"Redis set failed for {key}: {e}")
            return False

    async def delete(self, key: str) -> bool:
        try:
            client = await self._get_client()
            await client.delete(key)
            return True
        except Exception as e:
            logger.warning(f"Redis delete failed for {key}: {e}")
            return False

    async def clear_pattern(self, pattern: str) -> int:
        try:
            client = await self._get_client()
            cursor = 0
            deleted = 0
            while True:
                cursor, keys = await client.scan(cursor, match=pattern, count=100)
                if keys:
                    await client.delete(*keys)
                    deleted += len(keys)
                if cursor == 0:
                    break
            return deleted
        except Exception as e:
            logger.warning(f"Redis clear_pattern failed for {pattern}: {e}")
            return 0


class CacheService:
    """
    Multi-Tenant Cache Service.

    Cache keys follow the format:

        {namespace}:{tenant_id}:{resource_type}:{identifier}
        {namespace}:global:{resource_type}:{identifier}

    Examples:
        shipquote:tenant123:rate_card_selection:cust9:-:2025-01-15
        shipquote:global:zone:110001:400001:*
    """

    def __init__(self, backend: CacheBackend, namespace: str = "shipquote"):
        self._backend = backend
        self._namespace = namespace

    def _make_key(self, tenant_id: str, key: str) -> str:
        if not tenant_id:
            logger.warning(f"Cache key created without tenant_id: {key}")
        return f"{self._namespace}:{tenant_id}:{key}"

    def _make_global_key(self, key: str) -> str:
        return f"{self._namespace}:global:{key}"

    async def get(self, tenant_id: str, key: str) -> Optional[Any]:
        """Get value from tenant-specific cache."""
        return await self._backend.get(self._make_key(tenant_id, key))

    async def set(self, tenant_id: str, key: str, value: Any, ttl: int = 3600) -> bool:
        """Set value in tenant-specific cache."""
        return await self._backend.set(self._make_key(tenant_id, key), value, ttl)

    async def delete(self, tenant_id: str, key: str) -> bool:
        return await self._backend.delete(self._make_key(tenant_id, key))

    async def clear_pattern(self, tenant_id: str, pattern: str) -> int:
        return await self._backend.clear_pattern(self._make_key(tenant_id, pattern))

    async def clear_tenant_cache(self, tenant_id: str) -> int:
        """Clear ALL cached data for a tenant."""
        return await self._backend.clear_pattern(f"{self._namespace}:{tenant_id}:*")

    # ==================== Global Cache (Platform-wide) ====================

    async def get_global(self, key: str) -> Optional[Any]:
        return await self._backend.get(self._make_global_key(key))

    async def set_global(self, key: str, value: Any, ttl: int = 3600) -> bool:
        return await self._backend.set(self._make_global_key(key), value, ttl)

    # ==================== Zone Cache ====================

    @staticmethod
    def _zone_key(origin: str, destination: str, carrier: Optional[str]) -> str:
        return f"zone:{origin}:{destination}:{carrier or '*'}"

    async def get_zone(
        self,
        origin: str,
        destination: str,
        carrier: Optional[str] = None,
    ) -> Optional[dict]:
        """Get a cached zone resolution for a pincode pair."""
        return await self.get_global(self._zone_key(origin, destination, carrier))

    async def set_zone(
        self,
        origin: str,
        destination: str,
        carrier: Optional[str],
        data: dict,
        ttl: Optional[int] = None,
    ) -> bool:
        ttl = ttl or settings.ZONE_CACHE_TTL
        return await self.set_global(self._zone_key(origin, destination, carrier), data, ttl)

    async def invalidate_zones(self) -> int:
        return await self._backend.clear_pattern(self._make_global_key("zone:*"))

    # ==================== Rate Card Selection Cache ====================

    @staticmethod
    def _selection_key(
        customer_id: Optional[str],
        customer_group_id: Optional[str],
        as_of: str,
    ) -> str:
        return f"rate_card_selection:{customer_id or '-'}:{customer_group_id or '-'}:{as_of}"

    async def get_rate_card_selection(
        self,
        tenant_id: str,
        customer_id: Optional[str],
        customer_group_id: Optional[str],
        as_of: str,
    ) -> Optional[dict]:
        key = self._selection_key(customer_id, customer_group_id, as_of)
        return await self.get(tenant_id, key)

    async def set_rate_card_selection(
        self,
        tenant_id: str,
        customer_id: Optional[str],
        customer_group_id: Optional[str],
        as_of: str,
        data: dict,
        ttl: int,
    ) -> bool:
        key = self._selection_key(customer_id, customer_group_id, as_of)
        return await self.set(tenant_id, key, data, ttl)

    async def invalidate_rate_card_selections(self, tenant_id: str) -> int:
        """Drop memoised selections after any rate card or default change."""
        return await self.clear_pattern(tenant_id, "rate_card_selection:*")


# Singleton cache instance
_cache_instance: Optional[CacheService] = None


def get_cache() -> CacheService:
    """Get the cache service singleton."""
    global _cache_instance
    if _cache_instance is None:
        if settings.REDIS_URL and settings.CACHE_ENABLED:
            backend = RedisCache(settings.REDIS_URL)
            logger.info("Cache initialized with Redis backend")
        else:
            backend = InMemoryCache()
            logger.info("Cache initialized with in-memory backend")
        _cache_instance = CacheService(backend, namespace=settings.METRICS_NAMESPACE)
    return _cache_instance
