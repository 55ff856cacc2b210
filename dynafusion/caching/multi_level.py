"""
Two-tier cache coordinator.

Reads probe L1 then L2 and promote L2 hits into L1. Writes go to both
tiers concurrently, each capped to its own maximum TTL. A failing tier is
logged and skipped; cache problems never fail the caller.
"""

import asyncio
import time
from typing import Any, List, Optional, Tuple, Type

from ..adapters.serialization import JsonSerializer, Serializer
from ..shared.config import CacheSettings
from ..shared.logging import get_logger
from ..shared.metrics import MetricsCollector
from .base import (
    CacheLevel,
    CacheResult,
    CacheStatistics,
    CacheTier,
    MultiLevelCacheStatistics,
    moving_average,
)


class MultiLevelCache:
    """Composes an optional local tier and an optional remote tier."""

    def __init__(self,
                 l1: Optional[CacheTier] = None,
                 l2: Optional[CacheTier] = None,
                 settings: Optional[CacheSettings] = None,
                 serializer: Optional[Serializer] = None,
                 metrics: Optional[MetricsCollector] = None):
        self.l1 = l1
        self.l2 = l2
        self.settings = settings or CacheSettings()
        self.serializer = serializer or JsonSerializer()
        self.metrics = metrics
        self.logger = get_logger("dynafusion.cache")

        self._promotion_count = 0
        self._l1_average_ms = 0.0
        self._l2_average_ms = 0.0

    @property
    def enabled(self) -> bool:
        return self.settings.enabled and (self.l1 is not None or self.l2 is not None)

    def _tiers(self) -> List[CacheTier]:
        return [tier for tier in (self.l1, self.l2) if tier is not None]

    def _record(self, operation: str, level: str, result: str, started: float) -> float:
        elapsed_ms = (time.perf_counter() - started) * 1000
        if self.metrics:
            self.metrics.record_cache_operation(operation, level, result, elapsed_ms / 1000)
        return elapsed_ms

    async def get(self, key: str, value_type: Optional[Type[Any]] = None) -> CacheResult:
        """Look a key up in L1, then L2."""
        if not self.enabled:
            return CacheResult.miss()

        if self.l1 is not None:
            raw, elapsed_ms = await self._probe(self.l1, key)
            self._l1_average_ms = moving_average(self._l1_average_ms, elapsed_ms)
            if raw is not None:
                value = self._decode(key, raw, value_type)
                if value is not None:
                    return CacheResult(value=value, level=CacheLevel.L1, found=True)

        if self.l2 is not None:
            raw, elapsed_ms = await self._probe(self.l2, key)
            self._l2_average_ms = moving_average(self._l2_average_ms, elapsed_ms)
            if raw is not None:
                value = self._decode(key, raw, value_type)
                if value is not None:
                    ttl = await self._promotion_ttl(key)
                    if ttl > 0:
                        await self._promote_raw(key, raw, ttl)
                    return CacheResult(value=value, level=CacheLevel.L2, found=True)

        return CacheResult.miss()

    async def _probe(self, tier: CacheTier, key: str) -> Tuple[Optional[str], float]:
        """Read one tier; a failing tier reads as a miss."""
        started = time.perf_counter()
        try:
            raw = await tier.get(key)
        except Exception as e:
            self.logger.warning("Cache get failed, treating as miss", tier=tier.name, key=key, error=str(e))
            if self.metrics:
                self.metrics.record_error("CacheError", "cache_get")
            return None, self._record("get", tier.name, "error", started)
        return raw, self._record("get", tier.name, "hit" if raw is not None else "miss", started)

    async def _promotion_ttl(self, key: str) -> float:
        """L1 lifetime for an L2 hit: never longer than what L2 has left."""
        try:
            remaining = await self.l2.remaining_ttl(key)
        except Exception as e:
            self.logger.warning("Cache TTL lookup failed, skipping promotion", key=key, error=str(e))
            return 0.0
        if remaining is None:
            return self.settings.default_expiration_seconds
        return remaining

    def _decode(self, key: str, raw: str, value_type: Optional[Type[Any]]) -> Any:
        try:
            return self.serializer.deserialize(raw, value_type)
        except Exception as e:
            self.logger.warning("Cached value could not be deserialized", key=key, error=str(e))
            return None

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        """Write to every configured tier; True when at least one accepted it."""
        if not self.enabled:
            return False

        ttl = ttl if ttl is not None else self.settings.default_expiration_seconds
        try:
            raw = self.serializer.serialize(value)
        except Exception as e:
            self.logger.warning("Value could not be serialized for caching", key=key, error=str(e))
            return False

        tiers = self._tiers()
        outcomes = await asyncio.gather(
            *(tier.set(key, raw, min(ttl, tier.max_ttl)) for tier in tiers),
            return_exceptions=True
        )

        stored = False
        for tier, outcome in zip(tiers, outcomes):
            if isinstance(outcome, BaseException):
                self.logger.warning("Cache tier write failed", tier=tier.name, key=key, error=str(outcome))
                if self.metrics:
                    self.metrics.record_cache_operation("set", tier.name, "error")
            else:
                stored = stored or bool(outcome)
                if self.metrics:
                    self.metrics.record_cache_operation("set", tier.name, "ok" if outcome else "skipped")
        return stored

    async def promote(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        """Copy a value into L1."""
        if self.l1 is None:
            return False
        try:
            raw = self.serializer.serialize(value)
        except Exception as e:
            self.logger.warning("Value could not be serialized for promotion", key=key, error=str(e))
            return False
        return await self._promote_raw(key, raw, ttl if ttl is not None else self.settings.default_expiration_seconds)

    async def _promote_raw(self, key: str, raw: str, ttl: float) -> bool:
        if self.l1 is None:
            return False
        try:
            promoted = await self.l1.set(key, raw, min(ttl, self.l1.max_ttl))
        except Exception as e:
            self.logger.warning("Cache promotion failed", key=key, error=str(e))
            return False
        if promoted:
            self._promotion_count += 1
            self.logger.debug("Promoted cache entry to L1", key=key)
        return promoted

    async def remove(self, key: str) -> bool:
        results = await self._on_all_tiers("remove", lambda tier: tier.remove(key))
        return any(bool(result) for _, result in results)

    async def remove_by_pattern(self, pattern: str) -> int:
        results = await self._on_all_tiers("remove_by_pattern", lambda tier: tier.remove_by_pattern(pattern))
        return sum(int(result or 0) for _, result in results)

    async def exists(self, key: str) -> bool:
        if not self.enabled:
            return False
        for tier in self._tiers():
            try:
                if await tier.exists(key):
                    return True
            except Exception as e:
                self.logger.warning("Cache exists check failed", tier=tier.name, key=key, error=str(e))
        return False

    async def clear(self) -> None:
        await self._on_all_tiers("clear", lambda tier: tier.clear())
        self._promotion_count = 0
        self._l1_average_ms = 0.0
        self._l2_average_ms = 0.0
        self.logger.info("Cache cleared")

    async def statistics(self) -> MultiLevelCacheStatistics:
        empty = CacheStatistics()
        l1_stats = await self._tier_statistics(self.l1) if self.l1 is not None else empty
        l2_stats = await self._tier_statistics(self.l2) if self.l2 is not None else CacheStatistics()
        return MultiLevelCacheStatistics(
            l1=l1_stats,
            l2=l2_stats,
            overall=CacheStatistics.merge(l1_stats, l2_stats),
            promotion_count=self._promotion_count,
            l1_average_response_ms=self._l1_average_ms,
            l2_average_response_ms=self._l2_average_ms
        )

    async def _tier_statistics(self, tier: CacheTier) -> CacheStatistics:
        try:
            return await tier.statistics()
        except Exception as e:
            self.logger.warning("Cache statistics unavailable", tier=tier.name, error=str(e))
            return CacheStatistics()

    async def _on_all_tiers(self, operation: str, call) -> List[Tuple[CacheTier, Any]]:
        tiers = self._tiers()
        outcomes = await asyncio.gather(*(call(tier) for tier in tiers), return_exceptions=True)
        results = []
        for tier, outcome in zip(tiers, outcomes):
            if isinstance(outcome, BaseException):
                self.logger.warning("Cache tier operation failed", tier=tier.name, operation=operation, error=str(outcome))
                continue
            results.append((tier, outcome))
        return results

    async def close(self) -> None:
        for tier in self._tiers():
            await tier.close()
