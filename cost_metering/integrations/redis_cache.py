"""
Redis cost cache

Low-latency key-value storage for realtime spend aggregates and alert
deduplication markers. Every mutation is a single atomic Redis command or a
MULTI/EXEC transaction so concurrent meters never lose increments.
"""

import logging
from typing import Dict, Optional

import redis.asyncio as redis
from redis.asyncio import Redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


class CostCacheError(Exception):
    """Base exception for cost cache errors"""
    pass


class CacheUnavailableError(CostCacheError):
    """Exception raised when the cache cannot be reached"""
    pass


REALTIME_PREFIX = "cost:realtime:"
ALERT_PREFIX = "cost:alert:"


def realtime_key(tenant_id: str, day: str) -> str:
    return f"{REALTIME_PREFIX}{tenant_id}:{day}"


def alert_key(tenant_id: str, threshold_type: str, day: str) -> str:
    return f"{ALERT_PREFIX}{tenant_id}:{threshold_type}:{day}"


class RedisCostCache:
    """
    Redis-backed cache for realtime cost aggregates and alert marks

    A pre-built client can be injected (tests pass a fakeredis client);
    otherwise one is created from `redis_url` on initialize().
    """

    def __init__(self, redis_url: Optional[str] = None, client: Optional[Redis] = None):
        self.redis_url = redis_url
        self._redis: Optional[Redis] = client

        self.stats = {
            "increments": 0,
            "reads": 0,
            "marks_claimed": 0,
            "marks_rejected": 0,
            "errors": 0,
        }

    async def initialize(self) -> None:
        """Create the Redis client (if none was injected) and verify the connection"""
        try:
            if self._redis is None:
                if not self.redis_url:
                    raise CostCacheError("No Redis URL configured")
                self._redis = redis.from_url(
                    self.redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                    health_check_interval=30
                )

            await self._redis.ping()
            logger.info("Redis cost cache initialized successfully")

        except RedisError as e:
            logger.error(f"Failed to initialize Redis cost cache: {e}")
            raise CacheUnavailableError(f"Redis initialization failed: {e}") from e

    async def cleanup(self) -> None:
        """Close the Redis connection"""
        if self._redis:
            await self._redis.aclose()
            self._redis = None
        logger.info("Redis cost cache cleaned up")

    @property
    def is_connected(self) -> bool:
        return self._redis is not None

    def _client(self) -> Redis:
        if self._redis is None:
            raise CacheUnavailableError("Redis cost cache not initialized")
        return self._redis

    async def increment_hash(self, key: str, increments: Dict[str, int], ttl: int) -> None:
        """Atomically add integer deltas to hash fields and refresh the key TTL"""
        client = self._client()
        try:
            async with client.pipeline(transaction=True) as pipe:
                for field_name, delta in increments.items():
                    pipe.hincrby(key, field_name, delta)
                pipe.expire(key, ttl)
                await pipe.execute()
            self.stats["increments"] += 1

        except RedisError as e:
            self.stats["errors"] += 1
            raise CacheUnavailableError(f"Increment failed for {key}: {e}") from e

    async def get_hash(self, key: str) -> Dict[str, str]:
        """Read all fields of a hash; empty dict when the key is absent"""
        client = self._client()
        try:
            data = await client.hgetall(key)
            self.stats["reads"] += 1
            return {
                (k.decode() if isinstance(k, bytes) else k): (v.decode() if isinstance(v, bytes) else v)
                for k, v in data.items()
            }

        except RedisError as e:
            self.stats["errors"] += 1
            raise CacheUnavailableError(f"Read failed for {key}: {e}") from e

    async def replace_hash(self, key: str, values: Dict[str, int], ttl: int) -> None:
        """Atomically overwrite a hash with new values"""
        client = self._client()
        try:
            async with client.pipeline(transaction=True) as pipe:
                pipe.delete(key)
                if values:
                    pipe.hset(key, mapping=values)
                    pipe.expire(key, ttl)
                await pipe.execute()

        except RedisError as e:
            self.stats["errors"] += 1
            raise CacheUnavailableError(f"Replace failed for {key}: {e}") from e

    async def claim_marker(self, key: str, ttl: int) -> bool:
        """
        Set a presence marker only if absent (SET NX EX)

        Returns:
            True if this caller created the marker, False if it already existed
        """
        client = self._client()
        try:
            created = await client.set(key, "1", nx=True, ex=ttl)
            if created:
                self.stats["marks_claimed"] += 1
                return True
            self.stats["marks_rejected"] += 1
            return False

        except RedisError as e:
            self.stats["errors"] += 1
            raise CacheUnavailableError(f"Marker claim failed for {key}: {e}") from e

    async def health_check(self) -> Dict[str, object]:
        """Check cache health"""
        try:
            await self._client().ping()
            return {"status": "healthy", "stats": dict(self.stats)}
        except (CostCacheError, RedisError) as e:
            return {"status": "unhealthy", "error": str(e), "stats": dict(self.stats)}
