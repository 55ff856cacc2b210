"""
Cache tier contract, lookup results and statistics.
"""

import time
import hashlib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, Optional


class CacheLevel(str, Enum):
    L1 = "L1"
    L2 = "L2"
    MISS = "Miss"


@dataclass(frozen=True)
class CacheResult:
    value: Any = None
    level: CacheLevel = CacheLevel.MISS
    found: bool = False

    @classmethod
    def miss(cls) -> "CacheResult":
        return cls()


@dataclass
class CacheStatistics:
    hits: int = 0
    misses: int = 0
    entry_count: int = 0
    memory_usage: int = 0
    start_time: float = field(default_factory=time.time)

    @property
    def hit_ratio(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    @property
    def uptime_seconds(self) -> float:
        return max(0.0, time.time() - self.start_time)

    @classmethod
    def merge(cls, *stats: "CacheStatistics") -> "CacheStatistics":
        """Overall view across tiers."""
        if not stats:
            return cls()
        return cls(
            hits=sum(s.hits for s in stats),
            misses=sum(s.misses for s in stats),
            entry_count=sum(s.entry_count for s in stats),
            memory_usage=sum(s.memory_usage for s in stats),
            start_time=min(s.start_time for s in stats)
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["hit_ratio"] = self.hit_ratio
        data["uptime_seconds"] = self.uptime_seconds
        return data


@dataclass
class MultiLevelCacheStatistics:
    l1: CacheStatistics
    l2: CacheStatistics
    overall: CacheStatistics
    promotion_count: int = 0
    l1_average_response_ms: float = 0.0
    l2_average_response_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "l1": self.l1.to_dict(),
            "l2": self.l2.to_dict(),
            "overall": self.overall.to_dict(),
            "promotion_count": self.promotion_count,
            "l1_average_response_ms": self.l1_average_response_ms,
            "l2_average_response_ms": self.l2_average_response_ms,
        }


def moving_average(current: float, sample: float) -> float:
    """Exponentially decayed average; the first sample seeds it."""
    if current == 0:
        return sample
    return current * 0.9 + sample * 0.1


def build_cache_key(prefix: str, tier: str, key: str, max_length: int) -> str:
    """Namespace ``key`` for a tier, hashing it when the result is too long."""
    namespaced = f"{prefix}:{tier}:{key}"
    if len(namespaced) <= max_length:
        return namespaced
    digest = hashlib.sha256(namespaced.encode("utf-8")).hexdigest()
    return f"{prefix}:{tier}:hash:{digest}"


class CacheTier(ABC):
    """A single cache tier storing serialized strings."""

    name: str = "tier"

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def set(self, key: str, value: str, ttl: float) -> bool:
        ...

    @abstractmethod
    async def remove(self, key: str) -> bool:
        ...

    @abstractmethod
    async def remove_by_pattern(self, pattern: str) -> int:
        ...

    @abstractmethod
    async def exists(self, key: str) -> bool:
        ...

    @abstractmethod
    async def clear(self) -> None:
        ...

    @abstractmethod
    async def statistics(self) -> CacheStatistics:
        ...

    @property
    @abstractmethod
    def max_ttl(self) -> float:
        """Upper bound applied to every TTL written to this tier."""

    async def remaining_ttl(self, key: str) -> Optional[float]:
        """Seconds ``key`` has left; 0 when absent, None when the tier cannot tell."""
        return None

    async def close(self) -> None:
        """Release tier resources."""
