"""
Engine facade.

Wires the cache tiers, circuit breakers, optimizer, query service and batch
orchestrator together and exposes them as one object with a start/stop
lifecycle.
"""

import asyncio
from typing import Any, AsyncIterator, Dict, Optional, Sequence, Type

import redis.asyncio as redis
from prometheus_client import CollectorRegistry
from pydantic import BaseModel

from .adapters.backing_store import BackingStoreClient
from .adapters.dynamodb import DynamoDBStoreClient
from .batch.models import BatchChunk, BatchExecutionOptions, BatchExecutionResult, ParallelExecutionResult
from .batch.orchestrator import BatchOrchestrator
from .caching.base import MultiLevelCacheStatistics
from .caching.compression import ValueCompressor
from .caching.memory_cache import MemoryCache
from .caching.multi_level import MultiLevelCache
from .caching.redis_cache import RedisCache
from .models.request import AccessRequest
from .models.results import ApiResponse, BatchQueryResult
from .optimizer.models import OptimizationResult, QueryPatternAnalysis
from .optimizer.optimizer import QueryOptimizer
from .optimizer.schema import TableSchema
from .query_service import QueryService
from .shared.circuit_breaker import CircuitBreakerConfig, CircuitBreakerManager, CircuitBreakerSnapshot
from .shared.config import FusionSettings
from .shared.logging import configure_logging, get_logger
from .shared.metrics import MetricsCollector


class FusionEngine:
    """Resilient cached execution over a partition/sort-key store."""

    def __init__(self,
                 settings: FusionSettings,
                 store: BackingStoreClient,
                 cache: MultiLevelCache,
                 optimizer: QueryOptimizer,
                 breakers: CircuitBreakerManager,
                 metrics: Optional[MetricsCollector] = None,
                 orchestrator: Optional[BatchOrchestrator] = None):
        self.settings = settings
        self.store = store
        self.cache = cache
        self.optimizer = optimizer
        self.breakers = breakers
        self.metrics = metrics
        self.logger = get_logger("dynafusion.engine")

        self.query_service = QueryService(
            store, cache, optimizer, breakers,
            settings=settings,
            metrics=metrics
        )
        self.orchestrator = orchestrator or BatchOrchestrator(
            self.query_service,
            breakers,
            options=BatchExecutionOptions.from_settings(settings.batch),
            global_concurrency=settings.batch.global_concurrency,
            parallel_concurrency=settings.batch.parallel_concurrency,
            breaker_config=breakers.default_config,
            metrics=metrics
        )
        self._started = False

    async def start(self):
        """Start background maintenance."""
        if self._started:
            return
        if isinstance(self.cache.l1, MemoryCache):
            self.cache.l1.start_cleanup()
        self._started = True
        self.logger.info(
            "Fusion engine started",
            l1_enabled=self.cache.l1 is not None,
            l2_enabled=self.cache.l2 is not None
        )

    async def stop(self):
        """Close cache tiers and the store client."""
        await self.cache.close()
        await self.store.close()
        self._started = False
        self.logger.info("Fusion engine stopped")

    async def __aenter__(self) -> "FusionEngine":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    # Execution

    async def query(self,
                    request: AccessRequest,
                    result_type: Optional[Type[BaseModel]] = None,
                    use_cache: bool = True) -> ApiResponse:
        return await self.query_service.query(request, result_type=result_type, use_cache=use_cache)

    async def batch_query(self,
                          requests: Sequence[AccessRequest],
                          options: Optional[BatchExecutionOptions] = None,
                          cancel_event: Optional[asyncio.Event] = None) -> BatchExecutionResult:
        """Grouped execution: per-table sub-batches in priority order."""
        return await self.orchestrator.execute_batch(requests, options=options, cancel_event=cancel_event)

    async def parallel_query(self,
                             requests: Sequence[AccessRequest],
                             max_concurrency: Optional[int] = None,
                             cancel_event: Optional[asyncio.Event] = None) -> ParallelExecutionResult:
        return await self.orchestrator.execute_parallel(
            requests, max_concurrency=max_concurrency, cancel_event=cancel_event
        )

    async def query_many(self,
                         requests: Sequence[AccessRequest],
                         result_type: Optional[Type[BaseModel]] = None,
                         max_concurrency: Optional[int] = None) -> BatchQueryResult:
        """One ``ApiResponse`` per request, run side by side."""
        return await self.query_service.batch_query(
            requests, result_type=result_type, max_concurrency=max_concurrency
        )

    def stream_batch(self,
                     requests: Sequence[AccessRequest],
                     options: Optional[BatchExecutionOptions] = None,
                     cancel_event: Optional[asyncio.Event] = None) -> AsyncIterator[BatchChunk]:
        return self.orchestrator.stream_batch(requests, options=options, cancel_event=cancel_event)

    def stream_items(self,
                     request: AccessRequest,
                     cancel_event: Optional[asyncio.Event] = None) -> AsyncIterator[Any]:
        return self.query_service.stream_items(request, cancel_event=cancel_event)

    # Introspection and administration

    async def cache_stats(self) -> MultiLevelCacheStatistics:
        return await self.cache.statistics()

    def circuit_state(self, operation_key: str) -> CircuitBreakerSnapshot:
        return self.breakers.get_state(operation_key)

    def all_circuit_states(self) -> Dict[str, CircuitBreakerSnapshot]:
        return self.breakers.get_all_states()

    def reset_circuit(self, operation_key: str) -> bool:
        reset = self.breakers.reset(operation_key)
        if not reset:
            self.logger.warning("No circuit breaker to reset", operation_key=operation_key)
        return reset

    def optimize(self, request: AccessRequest) -> OptimizationResult:
        return self.optimizer.optimize(request)

    def register_schema(self, schema: TableSchema):
        self.optimizer.register_schema(schema)

    def analyze_patterns(self, table_name: str) -> QueryPatternAnalysis:
        return self.optimizer.analyze_patterns(table_name)

    async def invalidate_table(self, table_name: str) -> int:
        return await self.query_service.invalidate_table(table_name)

    async def clear_cache(self):
        await self.cache.clear()


def create_engine(settings: Optional[FusionSettings] = None,
                  store: Optional[BackingStoreClient] = None,
                  redis_client: Optional[redis.Redis] = None,
                  registry: Optional[CollectorRegistry] = None) -> FusionEngine:
    """Build an engine from settings, defaulting to DynamoDB and Redis."""
    settings = settings or FusionSettings()
    configure_logging(settings.service_name, settings.log_level)

    metrics = MetricsCollector(settings.service_name, registry=registry) if settings.enable_metrics else None
    cache_settings = settings.cache

    l1 = None
    if cache_settings.l1.enabled:
        l1 = MemoryCache(
            cache_settings.l1,
            key_prefix=cache_settings.key_prefix,
            max_key_length=cache_settings.max_key_length
        )

    l2 = None
    if cache_settings.l2.enabled:
        l2 = RedisCache(
            cache_settings.l2,
            key_prefix=cache_settings.key_prefix,
            max_key_length=cache_settings.max_key_length,
            client=redis_client,
            compressor=ValueCompressor(cache_settings.l2.compression)
        )

    cache = MultiLevelCache(l1=l1, l2=l2, settings=cache_settings, metrics=metrics)
    breakers = CircuitBreakerManager(
        CircuitBreakerConfig(
            failure_threshold=settings.circuit_breaker.failure_threshold,
            open_timeout_seconds=settings.circuit_breaker.open_timeout_seconds
        ),
        metrics=metrics
    )
    optimizer = QueryOptimizer(settings.optimizer, metrics=metrics)

    return FusionEngine(
        settings=settings,
        store=store or DynamoDBStoreClient(settings.store),
        cache=cache,
        optimizer=optimizer,
        breakers=breakers,
        metrics=metrics
    )
