"""
Shared fixtures and in-memory fakes for the engine tests.
"""

import asyncio
import fnmatch
from typing import Any, Dict, List, Optional, Tuple

import pytest

from dynafusion.adapters.backing_store import BackingStoreClient, StorePage, decode_cursor
from dynafusion.caching.memory_cache import MemoryCache
from dynafusion.caching.multi_level import MultiLevelCache
from dynafusion.caching.redis_cache import RedisCache
from dynafusion.models.request import AccessRequest
from dynafusion.optimizer.optimizer import QueryOptimizer
from dynafusion.query_service import QueryService
from dynafusion.shared.circuit_breaker import CircuitBreakerConfig, CircuitBreakerManager
from dynafusion.shared.config import CacheSettings, FusionSettings, L1Settings, L2Settings


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class DummyMetrics:
    """Minimal metrics collector stub."""

    def __init__(self):
        self.calls: List[Tuple[str, tuple]] = []

    def __getattr__(self, name: str):
        if not name.startswith("record_"):
            raise AttributeError(name)

        def _record(*args, **kwargs):
            self.calls.append((name, args))

        return _record

    def names(self) -> List[str]:
        return [name for name, _ in self.calls]


class FakeRedis:
    """Dict-backed stand-in for ``redis.asyncio.Redis``.

    With a clock, keys written with ``ex`` expire against it.
    """

    def __init__(self, clock: Optional[FakeClock] = None):
        self.clock = clock
        self.data: Dict[str, str] = {}
        self.expiry: Dict[str, int] = {}
        self.expires_at: Dict[str, float] = {}
        self.closed = False

    def _purge(self, key: str):
        deadline = self.expires_at.get(key)
        if deadline is not None and self.clock is not None and self.clock() >= deadline:
            self.data.pop(key, None)
            self.expiry.pop(key, None)
            self.expires_at.pop(key, None)

    async def get(self, key: str) -> Optional[str]:
        self._purge(key)
        return self.data.get(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        self.data[key] = value
        self.expires_at.pop(key, None)
        if ex is not None:
            self.expiry[key] = ex
            if self.clock is not None:
                self.expires_at[key] = self.clock() + ex
        return True

    async def pttl(self, key: str) -> int:
        self._purge(key)
        if key not in self.data:
            return -2
        if key in self.expires_at:
            return int((self.expires_at[key] - self.clock()) * 1000)
        if key in self.expiry:
            return self.expiry[key] * 1000
        return -1

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
            self.expiry.pop(key, None)
            self.expires_at.pop(key, None)
        return removed

    async def exists(self, key: str) -> int:
        self._purge(key)
        return int(key in self.data)

    async def scan_iter(self, match: str = "*", count: int = 10):
        for key in list(self.data):
            self._purge(key)
            if key in self.data and fnmatch.fnmatchcase(key, match):
                yield key

    async def info(self, section: str = "default") -> Dict[str, Any]:
        return {"used_memory": sum(len(value) for value in self.data.values())}

    async def aclose(self):
        self.closed = True


class FakeStore(BackingStoreClient):
    """In-memory backing store.

    Items are plain dicts per table; cursors are offsets into the matching
    rows. ``errors`` maps a table to an exception raised on every call.
    """

    def __init__(self, tables: Optional[Dict[str, List[Dict[str, Any]]]] = None):
        self.tables = tables or {}
        self.errors: Dict[str, BaseException] = {}
        self.calls: List[Tuple[str, AccessRequest]] = []
        self.delay = 0.0
        self.consumed_capacity: Optional[float] = None
        self.closed = False
        self.in_flight = 0
        self.max_in_flight = 0

    async def query(self, request: AccessRequest) -> StorePage:
        return await self._serve("query", request)

    async def scan(self, request: AccessRequest) -> StorePage:
        return await self._serve("scan", request)

    async def _serve(self, operation: str, request: AccessRequest) -> StorePage:
        self.calls.append((operation, request))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        finally:
            self.in_flight -= 1
        error = self.errors.get(request.table_name)
        if error is not None:
            raise error

        rows = self.tables.get(request.table_name, [])
        if request.partition_key and request.has_partition_key_value:
            rows = [row for row in rows if row.get(request.partition_key) == request.partition_key_value]
        for name, predicate in request.filters.items():
            rows = [row for row in rows if row.get(name) == predicate.value]

        start = int((decode_cursor(request.pagination.next_token) or {}).get("offset", 0))
        end = start + request.pagination.page_size
        page = rows[start:end]
        examined = len(self.tables.get(request.table_name, [])) if operation == "scan" else len(page)
        return StorePage(
            items=page,
            last_evaluated_key={"offset": end} if end < len(rows) else None,
            scanned_count=examined,
            count=len(page),
            consumed_capacity=self.consumed_capacity
        )

    async def close(self):
        self.closed = True

    def calls_for(self, table_name: str) -> int:
        return sum(1 for _, request in self.calls if request.table_name == table_name)


def make_rows(table_key: str, count: int, **extra) -> List[Dict[str, Any]]:
    return [{table_key: f"k{i}", "seq": i, **extra} for i in range(count)]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def metrics():
    return DummyMetrics()


@pytest.fixture
def fake_redis(clock):
    return FakeRedis(clock)


@pytest.fixture
def settings():
    return FusionSettings(
        _env_file=None,
        environment="test",
        cache=CacheSettings(
            l1=L1Settings(max_entries=100),
            l2=L2Settings(max_retries=1, retry_base_delay_seconds=0.0, operation_timeout_seconds=0.5)
        )
    )


@pytest.fixture
def store():
    return FakeStore({
        "Users": [
            {"UserId": "u1", "name": "Ada", "status": "active"},
            {"UserId": "u2", "name": "Grace", "status": "inactive"},
            {"UserId": "u3", "name": "Linus", "status": "active"},
        ],
        "Orders": make_rows("OrderId", 5, status="open"),
    })


@pytest.fixture
def cache(settings, fake_redis, clock):
    l1 = MemoryCache(settings.cache.l1, key_prefix=settings.cache.key_prefix, clock=clock)
    l2 = RedisCache(settings.cache.l2, key_prefix=settings.cache.key_prefix, client=fake_redis)
    return MultiLevelCache(l1=l1, l2=l2, settings=settings.cache)


@pytest.fixture
def breakers(clock):
    return CircuitBreakerManager(CircuitBreakerConfig(failure_threshold=3, open_timeout_seconds=60), clock=clock)


@pytest.fixture
def query_service(store, cache, breakers, settings, metrics):
    return QueryService(
        store, cache, QueryOptimizer(settings.optimizer), breakers,
        settings=settings,
        metrics=metrics
    )
