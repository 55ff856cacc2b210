"""
End-to-end tests for the engine facade over in-memory fakes.
"""

import asyncio

import pytest
from prometheus_client import CollectorRegistry

from dynafusion import FusionEngine, create_engine
from dynafusion.caching.redis_cache import RedisCache
from dynafusion.models.request import AccessRequest, Predicate
from dynafusion.models.results import CacheStatus
from dynafusion.optimizer import GlobalSecondaryIndex, TableSchema
from dynafusion.shared.circuit_breaker import CircuitBreakerState
from dynafusion.shared.config import CacheSettings, CircuitBreakerSettings, FusionSettings, L1Settings, L2Settings
from dynafusion.shared.errors import ThrottlingError
from dynafusion.shared.metrics import MetricsCollector


def _user(user_id: str) -> AccessRequest:
    return AccessRequest(table_name="Users", partition_key="UserId", partition_key_value=user_id)


class TestFusionEngine:
    """Test cases for FusionEngine."""

    @pytest.fixture
    def registry(self):
        return CollectorRegistry()

    @pytest.fixture
    def engine_settings(self):
        return FusionSettings(
            _env_file=None,
            environment="test",
            circuit_breaker=CircuitBreakerSettings(failure_threshold=2, open_timeout_seconds=60),
            cache=CacheSettings(
                l2=L2Settings(max_retries=1, retry_base_delay_seconds=0.0)
            )
        )

    @pytest.fixture
    def engine(self, engine_settings, store, fake_redis, registry):
        return create_engine(engine_settings, store=store, redis_client=fake_redis, registry=registry)

    def test_factory_wires_components(self, engine):
        assert isinstance(engine, FusionEngine)
        assert isinstance(engine.cache.l2, RedisCache)
        assert isinstance(engine.metrics, MetricsCollector)
        assert engine.orchestrator.query_service is engine.query_service

    def test_factory_respects_disabled_tiers(self, store, registry):
        settings = FusionSettings(
            _env_file=None,
            enable_metrics=False,
            cache=CacheSettings(l1=L1Settings(enabled=False), l2=L2Settings(enabled=False))
        )

        engine = create_engine(settings, store=store, registry=registry)

        assert engine.cache.l1 is None
        assert engine.cache.l2 is None
        assert engine.cache.enabled is False
        assert engine.metrics is None

    @pytest.mark.asyncio
    async def test_query_then_cache_hit(self, engine, store, fake_redis, registry):
        first = await engine.query(_user("u1"))
        second = await engine.query(_user("u1"))

        assert first.success and second.success
        assert first.data.metadata.cache_status == CacheStatus.MISS
        assert second.data.metadata.cache_status == CacheStatus.HIT
        assert len(store.calls) == 1
        assert any(key.startswith("dynamodb-fusion:l2:query:Users:") for key in fake_redis.data)
        assert registry.get_sample_value(
            "fusion_requests_total", {"operation": "query", "table": "Users", "status": "success"}
        ) == 2

    @pytest.mark.asyncio
    async def test_batch_parallel_and_stream(self, engine):
        requests = [_user("u1"), _user("u2"), AccessRequest(table_name="Orders")]

        grouped = await engine.batch_query(requests)
        parallel = await engine.parallel_query(requests)
        chunks = [chunk async for chunk in engine.stream_batch(requests)]
        responses = await engine.query_many(requests)

        assert grouped.successful_requests == 3
        assert grouped.total_items == 2 + 5
        assert parallel.successful_requests == 3
        assert sum(len(chunk.items) for chunk in chunks) == 2 + 5
        assert responses.successful_queries == 3

    @pytest.mark.asyncio
    async def test_stream_items(self, engine):
        items = [item async for item in engine.stream_items(AccessRequest(table_name="Orders"))]
        assert len(items) == 5

    @pytest.mark.asyncio
    async def test_circuit_administration(self, engine, store):
        store.errors["Users"] = ThrottlingError()
        await engine.query(_user("a"))
        await engine.query(_user("b"))

        assert engine.circuit_state("store:Users").state == CircuitBreakerState.OPEN
        assert "store:Users" in engine.all_circuit_states()

        rejected = await engine.query(_user("c"))
        assert rejected.retryable is True
        assert rejected.retry_after == pytest.approx(60, abs=1)

        assert engine.reset_circuit("store:Users") is True
        assert engine.reset_circuit("store:Nothing") is False
        assert engine.circuit_state("store:Users").state == CircuitBreakerState.CLOSED

    @pytest.mark.asyncio
    async def test_optimizer_administration(self, engine, store):
        engine.register_schema(TableSchema(
            table_name="Users",
            partition_key="UserId",
            global_secondary_indexes=[GlobalSecondaryIndex(index_name="StatusIndex", partition_key="status")]
        ))
        request = AccessRequest(table_name="Users", filters={"status": Predicate.equal("active")})

        plan = engine.optimize(request)
        response = await engine.query(request)

        assert plan.optimized_request.index_name == "StatusIndex"
        assert response.data.metadata.index_used == "StatusIndex"
        assert store.calls[-1][0] == "query"
        assert engine.analyze_patterns("Users").attribute_usage == {"status": 2}

    @pytest.mark.asyncio
    async def test_invalidate_and_stats(self, engine, store):
        await engine.query(_user("u1"))
        await engine.query(_user("u1"))

        stats = await engine.cache_stats()
        assert stats.l1.hits == 1
        assert stats.l1.entry_count == 1

        assert await engine.invalidate_table("Users") == 2
        await engine.query(_user("u1"))
        assert len(store.calls) == 2

        await engine.clear_cache()
        assert (await engine.cache_stats()).l1.entry_count == 0

    @pytest.mark.asyncio
    async def test_lifecycle(self, engine, store, fake_redis):
        async with engine:
            assert engine.cache.l1._cleanup_task is not None
            await engine.query(_user("u1"))

        assert store.closed is True
        assert engine.cache.l1._cleanup_task is None
        # Injected clients belong to the caller
        assert fake_redis.closed is False

    @pytest.mark.asyncio
    async def test_concurrent_queries_share_one_engine(self, engine):
        responses = await asyncio.gather(*(engine.query(_user(f"u{i}")) for i in (1, 2, 3)))

        assert all(response.success for response in responses)
