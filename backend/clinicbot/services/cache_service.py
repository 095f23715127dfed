# /clinicbot/services/cache_service.py

import json
import logging
from typing import Optional
import redis.asyncio as redis

from clinicbot.utils.circuit_breaker import CircuitBreaker
from clinicbot.utils.metrics import cache_operations

# This service manages interactions with the Redis cache (clinic lookups),
# and exposes the raw client to the rate limiter and duplicate guard that
# share the same connection pool. Cache errors never fail a turn.

logger = logging.getLogger(__name__)


class CacheService:
    def __init__(self, redis_url: Optional[str] = None, client=None):
        self.redis = client
        self.redis_pool = None
        self.circuit_breaker = CircuitBreaker(name="redis")
        if self.redis is None and redis_url:
            try:
                self.redis_pool = redis.ConnectionPool.from_url(redis_url, max_connections=20)
                self.redis = redis.Redis(connection_pool=self.redis_pool)
            except Exception as e:
                logger.critical(f"Failed to connect to Redis at {redis_url}: {e}")
                self.redis = None

    async def get(self, key: str) -> Optional[str]:
        if not self.redis: return None
        try:
            result = await self.circuit_breaker.call(self.redis.get, key)
            cache_operations.labels(operation="get", status="hit" if result else "miss").inc()
            if isinstance(result, bytes):
                return result.decode("utf-8")
            return result
        except Exception as e:
            cache_operations.labels(operation="get", status="error").inc()
            logger.warning(f"Cache get failed for key {key}: {e}")
            return None

    async def set(self, key: str, value: str, ttl: int = 300):
        if not self.redis: return
        try:
            await self.circuit_breaker.call(self.redis.setex, key, ttl, value)
            cache_operations.labels(operation="set", status="success").inc()
        except Exception as e:
            cache_operations.labels(operation="set", status="error").inc()
            logger.warning(f"Cache set failed for key {key}: {e}")

    async def get_or_set(self, key: str, fetch_func, ttl: int = 300):
        """Returns the cached JSON value for `key`, fetching and caching it on a miss."""
        cached_value = await self.get(key)
        if cached_value is not None:
            try: return json.loads(cached_value)
            except json.JSONDecodeError: return cached_value

        fetched_value = await fetch_func()
        if fetched_value is not None:
            await self.set(key, json.dumps(fetched_value, default=str), ttl)
        return fetched_value

    async def health_check(self) -> bool:
        if not self.redis: return False
        try:
            return bool(await self.redis.ping())
        except Exception as e:
            logger.warning(f"Redis health check failed: {e}")
            return False

    async def close(self):
        if self.redis is not None:
            await self.redis.aclose()
