"""
Two-tier caching.

L1 is an in-process LRU map; L2 is Redis. The ``MultiLevelCache``
coordinator composes whichever tiers are configured and absorbs their
failures: the cache is an optimization, never a correctness dependency.
"""

from .base import CacheLevel, CacheResult, CacheStatistics, CacheTier, MultiLevelCacheStatistics
from .memory_cache import MemoryCache
from .multi_level import MultiLevelCache
from .redis_cache import RedisCache

__all__ = [
    "CacheLevel",
    "CacheResult",
    "CacheStatistics",
    "CacheTier",
    "MemoryCache",
    "MultiLevelCache",
    "MultiLevelCacheStatistics",
    "RedisCache",
]
