"""
In-process (L1) cache tier.

Entries live in an insertion-ordered map kept in access order, so the
front of the map is always the least recently used entry.
"""

import time
import asyncio
import fnmatch
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, List, Optional

from ..shared.config import L1Settings
from ..shared.logging import get_logger
from .base import CacheStatistics, CacheTier, build_cache_key

ENTRY_OVERHEAD_BYTES = 64


@dataclass
class CacheEntry:
    key: str
    value: str
    created_at: float
    expires_at: float
    size_bytes: int
    last_accessed: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class MemoryCache(CacheTier):
    """Bounded LRU cache held in process memory."""

    name = "L1"

    def __init__(self,
                 settings: Optional[L1Settings] = None,
                 key_prefix: str = "dynamodb-fusion",
                 max_key_length: int = 250,
                 clock: Callable[[], float] = time.time):
        self.settings = settings or L1Settings()
        self.key_prefix = key_prefix
        self.max_key_length = max_key_length
        self.clock = clock
        self.logger = get_logger("dynafusion.cache.l1")

        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.RLock()
        self._memory_usage = 0
        self._hits = 0
        self._misses = 0
        self._start_time = clock()
        self._cleanup_task: Optional[asyncio.Task] = None

    @property
    def max_ttl(self) -> float:
        return self.settings.max_expiration_seconds

    @property
    def max_memory_bytes(self) -> int:
        return int(self.settings.max_memory_mb * 1024 * 1024)

    def _storage_key(self, key: str) -> str:
        return build_cache_key(self.key_prefix, "l1", key, self.max_key_length)

    async def get(self, key: str) -> Optional[str]:
        storage_key = self._storage_key(key)
        now = self.clock()
        with self._lock:
            entry = self._entries.get(storage_key)
            if entry is None:
                self._misses += 1
                return None
            if entry.is_expired(now):
                self._drop(storage_key)
                self._misses += 1
                return None
            entry.last_accessed = now
            self._entries.move_to_end(storage_key)
            self._hits += 1
            return entry.value

    async def set(self, key: str, value: str, ttl: float) -> bool:
        storage_key = self._storage_key(key)
        now = self.clock()
        ttl = min(ttl, self.max_ttl)
        entry = CacheEntry(
            key=key,
            value=value,
            created_at=now,
            expires_at=now + ttl,
            size_bytes=len(storage_key) + len(value.encode("utf-8")) + ENTRY_OVERHEAD_BYTES,
            last_accessed=now
        )

        with self._lock:
            if storage_key in self._entries:
                self._drop(storage_key)
            if (len(self._entries) >= self.settings.max_entries
                    or self._memory_usage + entry.size_bytes > self.max_memory_bytes):
                self._evict()
            self._entries[storage_key] = entry
            self._memory_usage += entry.size_bytes
        return True

    def _evict(self):
        """Drop the least recently accessed tenth of the entries (at least one)."""
        count = max(1, len(self._entries) // 10)
        victims: List[str] = []
        for storage_key in self._entries:
            if len(victims) >= count:
                break
            victims.append(storage_key)
        for storage_key in victims:
            self._drop(storage_key)
        self.logger.debug("Evicted cache entries", evicted=len(victims), remaining=len(self._entries))

    def _drop(self, storage_key: str):
        entry = self._entries.pop(storage_key, None)
        if entry is not None:
            self._memory_usage -= entry.size_bytes

    async def remove(self, key: str) -> bool:
        storage_key = self._storage_key(key)
        with self._lock:
            existed = storage_key in self._entries
            self._drop(storage_key)
        return existed

    async def remove_by_pattern(self, pattern: str) -> int:
        with self._lock:
            matches = [
                storage_key for storage_key, entry in self._entries.items()
                if fnmatch.fnmatchcase(entry.key, pattern)
            ]
            for storage_key in matches:
                self._drop(storage_key)
        return len(matches)

    async def exists(self, key: str) -> bool:
        storage_key = self._storage_key(key)
        with self._lock:
            entry = self._entries.get(storage_key)
            return entry is not None and not entry.is_expired(self.clock())

    async def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._memory_usage = 0
            self._hits = 0
            self._misses = 0
            self._start_time = self.clock()

    async def statistics(self) -> CacheStatistics:
        with self._lock:
            return CacheStatistics(
                hits=self._hits,
                misses=self._misses,
                entry_count=len(self._entries),
                memory_usage=self._memory_usage,
                start_time=self._start_time
            )

    def purge_expired(self) -> int:
        """Remove every expired entry; returns how many were dropped."""
        now = self.clock()
        with self._lock:
            expired = [k for k, entry in self._entries.items() if entry.is_expired(now)]
            for storage_key in expired:
                self._drop(storage_key)
        if expired:
            self.logger.debug("Purged expired cache entries", purged=len(expired))
        return len(expired)

    def start_cleanup(self):
        """Start periodic expiry purging on the running loop."""
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())

    async def _cleanup_loop(self):
        while True:
            await asyncio.sleep(self.settings.cleanup_interval_seconds)
            self.purge_expired()

    async def close(self) -> None:
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
