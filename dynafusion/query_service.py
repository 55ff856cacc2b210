"""
Single-request execution pipeline.

cache lookup -> optimize -> circuit breaker(store call) -> cache write
"""

import asyncio
import time
from typing import Any, AsyncIterator, List, Optional, Sequence, Type

from pydantic import BaseModel

from .adapters.backing_store import BackingStoreClient, StorePage, encode_cursor
from .caching.multi_level import MultiLevelCache
from .models.request import AccessRequest, QueryStrategy
from .models.results import (
    ApiResponse,
    BatchQueryResult,
    CacheStatus,
    OperationType,
    PagedResult,
    PaginationMetadata,
    QueryMetadata,
)
from .optimizer.optimizer import QueryOptimizer
from .shared.circuit_breaker import CircuitBreakerConfig, CircuitBreakerManager
from .shared.config import FusionSettings
from .shared.errors import (
    CLIENT_ERRORS,
    FieldError,
    FusionError,
    OperationTimeoutError,
    QueryOptimizationError,
    ResourceNotFoundError,
    ValidationError,
)
from .shared.logging import get_logger, set_request_id
from .shared.metrics import MetricsCollector

STREAM_PAGE_SIZE = 100


class QueryService:
    """Runs one access request against the cache and the backing store."""

    def __init__(self,
                 store: BackingStoreClient,
                 cache: Optional[MultiLevelCache],
                 optimizer: QueryOptimizer,
                 breakers: CircuitBreakerManager,
                 settings: Optional[FusionSettings] = None,
                 metrics: Optional[MetricsCollector] = None):
        self.store = store
        self.cache = cache
        self.optimizer = optimizer
        self.breakers = breakers
        self.settings = settings or FusionSettings()
        self.metrics = metrics
        self.logger = get_logger("dynafusion.query_service")
        self._breaker_config = CircuitBreakerConfig(
            failure_threshold=self.settings.circuit_breaker.failure_threshold,
            open_timeout_seconds=self.settings.circuit_breaker.open_timeout_seconds,
            # Caller mistakes say nothing about the store's health
            ignored_exceptions=CLIENT_ERRORS
        )

    def validate(self, request: AccessRequest):
        """Raise ``ValidationError`` listing every problem with ``request``."""
        errors: List[FieldError] = []

        if not request.table_name or not request.table_name.strip():
            errors.append(FieldError(field="table_name", message="Table name is required", code="REQUIRED"))

        page_size = request.pagination.page_size
        max_page_size = self.settings.store.max_page_size
        if page_size <= 0:
            errors.append(FieldError(
                field="pagination.page_size",
                message="Page size must be greater than 0",
                code="OUT_OF_RANGE"
            ))
        elif page_size > max_page_size:
            errors.append(FieldError(
                field="pagination.page_size",
                message=f"Page size cannot exceed {max_page_size}",
                code="OUT_OF_RANGE"
            ))

        if request.has_partition_key_value and not request.partition_key:
            errors.append(FieldError(
                field="partition_key",
                message="Partition key name is required when a partition key value is given",
                code="REQUIRED"
            ))
        if request.strategy == QueryStrategy.FORCE_QUERY and not request.has_partition_key_value:
            errors.append(FieldError(
                field="partition_key_value",
                message="Partition key value is required for a query",
                code="REQUIRED"
            ))

        if errors:
            raise ValidationError("Request validation failed", field_errors=errors)

    @staticmethod
    def select_operation(request: AccessRequest) -> OperationType:
        if request.strategy == QueryStrategy.FORCE_QUERY:
            return OperationType.QUERY
        if request.strategy == QueryStrategy.FORCE_SCAN:
            return OperationType.SCAN
        return OperationType.QUERY if request.has_partition_key_value else OperationType.SCAN

    async def execute(self, request: AccessRequest, use_cache: bool = True) -> PagedResult:
        """Produce one page for ``request``; store errors propagate typed."""
        self.validate(request)
        started = time.perf_counter()

        cache_enabled = self.cache is not None and self.cache.enabled
        cache_key = request.cache_key()
        if cache_enabled and use_cache:
            cached = await self.cache.get(cache_key, PagedResult)
            if cached.found:
                metadata = cached.value.metadata.model_copy(update={
                    "cache_status": CacheStatus.HIT,
                    "execution_time_ms": (time.perf_counter() - started) * 1000,
                })
                self.logger.debug("Served from cache", table_name=request.table_name, level=cached.level.value)
                return cached.value.model_copy(update={"metadata": metadata})

        warnings: List[str] = []
        planned = request
        try:
            planned = self.optimizer.optimize(request).optimized_request
        except QueryOptimizationError as e:
            self.logger.warning("Running unoptimized request", table_name=request.table_name, error=e.message)
            warnings.append("Query optimization skipped")

        operation = self.select_operation(planned)
        store_started = time.perf_counter()
        page = await self.breakers.execute(
            f"store:{planned.table_name}",
            lambda: self._call_store(operation, planned),
            config=self._breaker_config
        )
        store_elapsed = time.perf_counter() - store_started

        if operation == OperationType.SCAN and page.scanned_count > self.settings.store.scan_warning_threshold:
            warnings.append(
                f"Large scan operation detected ({page.scanned_count} items examined); consider an index"
            )

        if cache_enabled:
            cache_status = CacheStatus.MISS if use_cache else CacheStatus.REFRESH
        else:
            cache_status = CacheStatus.DISABLED

        next_token = encode_cursor(page.last_evaluated_key)
        result = PagedResult(
            items=page.items,
            pagination=PaginationMetadata(
                page_size=planned.pagination.page_size,
                next_token=next_token,
                has_next_page=next_token is not None,
                item_count=len(page.items)
            ),
            metadata=QueryMetadata(
                operation_type=operation,
                strategy=planned.strategy,
                index_used=planned.index_name,
                estimated_cost=self._estimate_cost(page, planned),
                execution_time_ms=(time.perf_counter() - started) * 1000,
                items_examined=page.scanned_count,
                items_returned=page.count,
                consumed_capacity=page.consumed_capacity,
                cache_status=cache_status,
                warnings=warnings
            )
        )

        if cache_enabled:
            await self.cache.set(cache_key, result)

        if self.metrics:
            self.metrics.record_query_execution(operation.value, planned.table_name, store_elapsed, len(page.items))
        return result

    async def _call_store(self, operation: OperationType, request: AccessRequest) -> StorePage:
        timeout = self.settings.store.operation_timeout_seconds
        call = self.store.query if operation == OperationType.QUERY else self.store.scan
        try:
            return await asyncio.wait_for(call(request), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise OperationTimeoutError(f"{operation.value}:{request.table_name}", timeout) from e

    @staticmethod
    def _estimate_cost(page: StorePage, request: AccessRequest) -> float:
        """Reported capacity, else half a read unit per examined item."""
        if page.consumed_capacity is not None:
            return float(page.consumed_capacity)
        per_item = 1.0 if request.consistent_read else 0.5
        return page.scanned_count * per_item

    async def query(self,
                    request: AccessRequest,
                    result_type: Optional[Type[BaseModel]] = None,
                    use_cache: bool = True) -> ApiResponse:
        """Execute ``request`` and wrap the outcome in an ``ApiResponse``."""
        set_request_id()
        started = time.perf_counter()
        table_name = request.table_name or "unknown"
        error: Optional[BaseException] = None

        try:
            result = await self.execute(request, use_cache=use_cache)
            if result_type is not None:
                result = result.model_copy(update={
                    "items": [result_type.model_validate(item) for item in result.items]
                })
            response = ApiResponse.ok(
                result,
                execution_time_ms=result.metadata.execution_time_ms,
                cache_status=result.metadata.cache_status.value,
                operation_type=result.metadata.operation_type.value
            )
        except ValidationError as e:
            error = e
            response = ApiResponse.fail(e.message, errors=e.field_errors, error_code=e.code)
        except ResourceNotFoundError as e:
            error = e
            response = ApiResponse.fail(
                e.message,
                errors=[FieldError(field="table_name", message=e.message, code="NOT_FOUND")],
                error_code=e.code
            )
        except FusionError as e:
            error = e
            self.logger.warning("Query failed", table_name=table_name, code=e.code, error=e.message)
            response = ApiResponse.fail(
                e.message,
                retryable=e.retryable,
                retry_after=e.retry_after,
                error_code=e.code
            )
        except Exception as e:
            error = e
            self.logger.error("Unexpected query failure", table_name=table_name, error=str(e), exc_info=True)
            message = "An unexpected error occurred while executing the query"
            if self.settings.is_development:
                message = f"{message}: {e}"
            response = ApiResponse.fail(message, error_code="INTERNAL_ERROR")

        duration = time.perf_counter() - started
        if self.metrics:
            self.metrics.record_request("query", table_name, "success" if error is None else "failure", duration)
            if error is not None:
                self.metrics.record_error(type(error).__name__, "query")
        return response

    async def batch_query(self,
                          requests: Sequence[AccessRequest],
                          result_type: Optional[Type[BaseModel]] = None,
                          max_concurrency: Optional[int] = None) -> BatchQueryResult:
        """Run requests side by side; one failure never affects the others."""
        started = time.perf_counter()
        semaphore = asyncio.Semaphore(max_concurrency or self.settings.batch.parallel_concurrency)

        async def _run(request: AccessRequest) -> ApiResponse:
            async with semaphore:
                return await self.query(request, result_type=result_type)

        responses = list(await asyncio.gather(*(_run(request) for request in requests)))
        successful = [response for response in responses if response.success]
        return BatchQueryResult(
            responses=responses,
            total_items=sum(len(response.data.items) for response in successful),
            successful_queries=len(successful),
            failed_queries=len(responses) - len(successful),
            total_estimated_cost=sum(response.data.metadata.estimated_cost for response in successful),
            total_execution_time_ms=(time.perf_counter() - started) * 1000
        )

    async def stream_items(self,
                           request: AccessRequest,
                           cancel_event: Optional[asyncio.Event] = None) -> AsyncIterator[Any]:
        """Yield items across pages until the result set or the caller ends."""
        current = request.with_pagination(
            page_size=min(request.pagination.page_size, STREAM_PAGE_SIZE),
            next_token=request.pagination.next_token
        )
        while True:
            if cancel_event is not None and cancel_event.is_set():
                return
            result = await self.execute(current)
            for item in result.items:
                yield item
            if not result.pagination.has_next_page:
                return
            current = current.with_pagination(next_token=result.pagination.next_token)

    async def invalidate_table(self, table_name: str) -> int:
        """Drop every cached page for a table."""
        if self.cache is None:
            return 0
        removed = await self.cache.remove_by_pattern(f"query:{table_name}:*")
        self.logger.info("Invalidated cached pages", table_name=table_name, removed=removed)
        return removed
