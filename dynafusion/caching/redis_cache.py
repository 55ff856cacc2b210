"""
Redis (L2) cache tier.

Every Redis call is bounded by a timeout and retried with exponential
backoff. When retries run out the call reads as a miss (or a no-op for
writes); Redis problems never reach the caller.
"""

import time
from typing import Any, Awaitable, Callable, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from ..shared.config import L2Settings
from ..shared.errors import CacheError
from ..shared.logging import get_logger
from ..shared.retry import RetryConfig, RetryError, retry_async
from .base import CacheStatistics, CacheTier, build_cache_key
from .compression import ValueCompressor

SCAN_BATCH_SIZE = 500


class RedisCache(CacheTier):
    """Distributed cache tier backed by Redis."""

    name = "L2"

    def __init__(self,
                 settings: Optional[L2Settings] = None,
                 key_prefix: str = "dynamodb-fusion",
                 max_key_length: int = 250,
                 client: Optional[redis.Redis] = None,
                 compressor: Optional[ValueCompressor] = None):
        self.settings = settings or L2Settings()
        self.key_prefix = key_prefix
        self.max_key_length = max_key_length
        self.compressor = compressor or ValueCompressor(self.settings.compression)
        self.logger = get_logger("dynafusion.cache.l2")

        self._redis: Optional[redis.Redis] = client
        self._owns_client = client is None
        self._retry_config = RetryConfig(
            max_attempts=self.settings.max_retries,
            base_delay=self.settings.retry_base_delay_seconds,
            max_delay=self.settings.retry_base_delay_seconds * 2 ** self.settings.max_retries,
            exponential_base=2.0,
            jitter=False,
            attempt_timeout=self.settings.operation_timeout_seconds
        )
        self._hits = 0
        self._misses = 0
        self._start_time = time.time()

    @property
    def max_ttl(self) -> float:
        return self.settings.max_expiration_seconds

    async def _get_redis(self) -> redis.Redis:
        """Get Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(self.settings.redis_url)
        return self._redis

    def _storage_key(self, key: str) -> str:
        return build_cache_key(self.key_prefix, "l2", key, self.max_key_length)

    async def _run(self, operation: str, func: Callable[[redis.Redis], Awaitable[Any]], default: Any) -> Any:
        """Run one Redis call with timeout and retry; ``default`` on exhaustion."""
        client = await self._get_redis()
        try:
            return await retry_async(
                lambda: func(client),
                config=self._retry_config,
                exceptions=(RedisError, OSError),
                operation=f"redis_{operation}"
            )
        except RetryError as e:
            self.logger.error(
                "Redis operation failed",
                operation=operation,
                attempts=e.attempts,
                error=str(e.last_exception) or type(e.last_exception).__name__
            )
            return default

    @staticmethod
    def _decode(raw: Any) -> Optional[str]:
        if raw is None:
            return None
        return raw.decode("utf-8") if isinstance(raw, bytes) else str(raw)

    async def get(self, key: str) -> Optional[str]:
        storage_key = self._storage_key(key)
        raw = self._decode(await self._run("get", lambda r: r.get(storage_key), None))
        if raw is None:
            self._misses += 1
            return None

        try:
            value = self.compressor.decode(raw)
        except CacheError as e:
            self.logger.warning("Discarding undecodable cache value", key=key, error=e.message)
            self._misses += 1
            await self.remove(key)
            return None

        self._hits += 1
        return value

    async def set(self, key: str, value: str, ttl: float) -> bool:
        storage_key = self._storage_key(key)
        expiry = max(1, int(min(ttl, self.max_ttl)))
        payload = self.compressor.encode(value)
        result = await self._run("set", lambda r: r.set(storage_key, payload, ex=expiry), None)
        if result is None:
            return False
        self.logger.debug("Cached value", key=storage_key, ttl=expiry, compressed=payload is not value)
        return True

    async def remove(self, key: str) -> bool:
        storage_key = self._storage_key(key)
        removed = await self._run("delete", lambda r: r.delete(storage_key), 0)
        return bool(removed)

    async def remove_by_pattern(self, pattern: str) -> int:
        """Delete keys whose unprefixed name matches a Redis glob.

        Keys that were hashed for length never match a pattern.
        """
        return await self._delete_matching(f"{self.key_prefix}:l2:{pattern}")

    async def _delete_matching(self, match: str) -> int:
        async def _delete(client: redis.Redis) -> int:
            deleted = 0
            batch = []
            async for storage_key in client.scan_iter(match=match, count=SCAN_BATCH_SIZE):
                batch.append(storage_key)
                if len(batch) >= SCAN_BATCH_SIZE:
                    deleted += await client.delete(*batch)
                    batch = []
            if batch:
                deleted += await client.delete(*batch)
            return deleted

        deleted = await self._run("delete_pattern", _delete, 0)
        self.logger.info("Removed cache keys by pattern", pattern=match, deleted=deleted)
        return deleted

    async def exists(self, key: str) -> bool:
        storage_key = self._storage_key(key)
        return bool(await self._run("exists", lambda r: r.exists(storage_key), 0))

    async def remaining_ttl(self, key: str) -> Optional[float]:
        """Remaining lifetime from PTTL.

        A missing key or a failed call reads as 0; a key without expiry as None.
        """
        storage_key = self._storage_key(key)
        pttl = await self._run("pttl", lambda r: r.pttl(storage_key), -2)
        if pttl is None or pttl == -1:
            return None
        return max(0.0, int(pttl) / 1000)

    async def clear(self) -> None:
        """Delete every key under this tier's namespace."""
        await self._delete_matching(f"{self.key_prefix}:l2:*")
        self._hits = 0
        self._misses = 0
        self._start_time = time.time()

    async def _count_keys(self, client: redis.Redis) -> int:
        count = 0
        async for _ in client.scan_iter(match=f"{self.key_prefix}:l2:*", count=SCAN_BATCH_SIZE):
            count += 1
        return count

    async def statistics(self) -> CacheStatistics:
        memory = await self._run("info", lambda r: r.info("memory"), {}) or {}
        entry_count = await self._run("count", self._count_keys, 0) or 0
        return CacheStatistics(
            hits=self._hits,
            misses=self._misses,
            entry_count=int(entry_count),
            memory_usage=int(memory.get("used_memory", 0)),
            start_time=self._start_time
        )

    async def close(self) -> None:
        """Close Redis connection."""
        if self._redis is not None and self._owns_client:
            await self._redis.aclose()
            self._redis = None
