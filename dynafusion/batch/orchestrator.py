"""
Batch and parallel orchestration.

Grouped mode validates a request set, splits it into per-table
sub-batches, orders them by priority and runs each through the circuit
breaker for its table. Flat mode runs every request independently under a
bounded gate. Streaming mode yields grouped sub-batch results one at a
time. In every mode a failing unit is recorded next to its siblings and
never aborts them.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from ..models.request import AccessRequest
from ..models.results import PagedResult
from ..query_service import QueryService
from ..shared.circuit_breaker import CircuitBreakerConfig, CircuitBreakerManager
from ..shared.errors import (
    CLIENT_ERRORS,
    BatchExecutionError,
    FieldError,
    FusionError,
    ValidationError,
)
from ..shared.logging import clear_context, get_logger, set_batch_context
from ..shared.metrics import MetricsCollector
from ..shared.retry import BackoffStrategy, RetryConfig, is_retryable, retry_async
from .models import (
    BatchChunk,
    BatchExecutionOptions,
    BatchExecutionResult,
    BatchExecutionSummary,
    BatchUnit,
    ParallelExecutionResult,
    UnitOutcome,
)

COMPLEX_FILTER_THRESHOLD = 3


def describe_error(error: BaseException) -> str:
    message = getattr(error, "message", None) or str(error)
    return message or type(error).__name__


def _cancelled(cancel_event: Optional[asyncio.Event]) -> bool:
    return cancel_event is not None and cancel_event.is_set()


@dataclass
class _RequestOutcome:
    success: bool
    page: Optional[PagedResult] = None
    error: Optional[str] = None
    skipped: bool = False


class BatchOrchestrator:
    """Groups, prioritizes and throttles many access requests."""

    def __init__(self,
                 query_service: QueryService,
                 breakers: CircuitBreakerManager,
                 options: Optional[BatchExecutionOptions] = None,
                 global_gate: Optional[asyncio.Semaphore] = None,
                 global_concurrency: int = 10,
                 parallel_concurrency: int = 5,
                 breaker_config: Optional[CircuitBreakerConfig] = None,
                 metrics: Optional[MetricsCollector] = None):
        self.query_service = query_service
        self.breakers = breakers
        self.options = options or BatchExecutionOptions()
        self.parallel_concurrency = parallel_concurrency
        self.metrics = metrics
        self.logger = get_logger("dynafusion.batch")
        # Shared by every grouped run on this orchestrator
        self._global_gate = global_gate or asyncio.Semaphore(global_concurrency)

        base = breaker_config or CircuitBreakerConfig()
        self._breaker_config = CircuitBreakerConfig(
            failure_threshold=base.failure_threshold,
            open_timeout_seconds=base.open_timeout_seconds,
            ignored_exceptions=CLIENT_ERRORS
        )

    # Planning

    def validate(self, requests: Sequence[AccessRequest], options: Optional[BatchExecutionOptions] = None):
        """Raise ``ValidationError`` listing every problem with the batch."""
        options = options or self.options
        errors: List[FieldError] = []

        if not requests:
            errors.append(FieldError(field="requests", message="Batch cannot be empty", code="REQUIRED"))
            raise ValidationError("Batch validation failed", field_errors=errors)

        if len(requests) > options.max_batch_size:
            errors.append(FieldError(
                field="requests",
                message=f"Batch size {len(requests)} exceeds maximum {options.max_batch_size}",
                code="OUT_OF_RANGE"
            ))

        for index, request in enumerate(requests):
            if not request.table_name or not request.table_name.strip():
                errors.append(FieldError(
                    field=f"requests[{index}].table_name",
                    message="Table name is required",
                    code="REQUIRED"
                ))

        if errors:
            raise ValidationError("Batch validation failed", field_errors=errors)

    def partition(self,
                  requests: Sequence[AccessRequest],
                  options: Optional[BatchExecutionOptions] = None) -> List[BatchUnit]:
        """Group by table, split into sub-batches and sort by priority."""
        options = options or self.options
        by_table: Dict[str, List[AccessRequest]] = {}
        for request in requests:
            by_table.setdefault(request.table_name, []).append(request)

        units: List[BatchUnit] = []
        size = options.optimal_batch_size
        for table_name, table_requests in by_table.items():
            for start in range(0, len(table_requests), size):
                chunk = table_requests[start:start + size]
                units.append(BatchUnit(
                    table_name=table_name,
                    requests=chunk,
                    priority=self.priority(chunk),
                    estimated_execution_ms=self.estimate_execution_ms(chunk, options)
                ))

        units.sort(key=lambda unit: unit.priority, reverse=True)
        return units

    @staticmethod
    def priority(requests: Sequence[AccessRequest]) -> int:
        """Favor sub-batches that can use indexed lookups, then smaller ones."""
        with_partition_key = sum(1 for request in requests if request.has_partition_key_value)
        return with_partition_key * 10 + (100 - len(requests))

    @staticmethod
    def estimate_execution_ms(requests: Sequence[AccessRequest], options: BatchExecutionOptions) -> float:
        multiplier = 1.0
        for request in requests:
            if not request.has_partition_key_value:
                multiplier += 0.5
            if len(request.filters) > COMPLEX_FILTER_THRESHOLD:
                multiplier += 0.2
        return options.estimated_ms_per_request * len(requests) * multiplier

    # Grouped mode

    async def execute_batch(self,
                            requests: Sequence[AccessRequest],
                            options: Optional[BatchExecutionOptions] = None,
                            cancel_event: Optional[asyncio.Event] = None) -> BatchExecutionResult:
        """Run a request set as prioritized per-table sub-batches."""
        options = options or self.options
        started = time.perf_counter()
        requests = list(requests)

        self.validate(requests, options)
        units = self.partition(requests, options)
        self.logger.info(
            "Starting batch execution",
            request_count=len(requests),
            batch_count=len(units),
            max_concurrent_batches=options.max_concurrent_batches
        )

        local_gate = asyncio.Semaphore(options.max_concurrent_batches)

        async def _run(unit: BatchUnit) -> Optional[UnitOutcome]:
            async with local_gate:
                if _cancelled(cancel_event):
                    return None
                async with self._global_gate:
                    return await self._run_unit(unit, options)

        outcomes = await asyncio.gather(*(_run(unit) for unit in units))

        result = BatchExecutionResult(total_batches=len(units), total_requests=len(requests))
        for unit, outcome in zip(units, outcomes):
            if outcome is None:
                result.cancelled = True
                result.failed_batches += 1
                result.failed_requests += len(unit.requests)
                result.errors.append(f"Batch {unit.batch_id} skipped: execution cancelled")
                continue

            if outcome.succeeded:
                result.successful_batches += 1
            else:
                result.failed_batches += 1
            result.successful_requests += outcome.successful_requests
            result.failed_requests += outcome.failed_requests
            result.items.extend(outcome.items)
            result.total_estimated_cost += outcome.estimated_cost
            result.errors.extend(outcome.errors)
            result.batch_summaries.append(self._summarize(outcome))

        result.total_items = len(result.items)
        result.total_execution_time_ms = (time.perf_counter() - started) * 1000

        self.logger.info(
            "Batch execution completed",
            duration_ms=round(result.total_execution_time_ms, 2),
            successful_batches=result.successful_batches,
            total_batches=result.total_batches,
            successful_requests=result.successful_requests,
            failed_requests=result.failed_requests,
            cancelled=result.cancelled
        )
        if self.metrics:
            self.metrics.record_request(
                "batch", "*", "success" if result.failed_batches == 0 else "partial",
                result.total_execution_time_ms / 1000
            )
        return result

    async def _run_unit(self, unit: BatchUnit, options: BatchExecutionOptions) -> UnitOutcome:
        """Execute one sub-batch; failures become a failed outcome."""
        set_batch_context(unit.batch_id, unit.table_name)
        started = time.perf_counter()

        async def primary() -> UnitOutcome:
            return await self._execute_unit(unit, options)

        async def fallback() -> UnitOutcome:
            return self._failed_outcome(
                unit,
                [f"Circuit open for table {unit.table_name}; batch {unit.batch_id} not executed"],
                fallback_used=True
            )

        try:
            if options.enable_circuit_breaker:
                outcome = await self.breakers.execute(
                    f"batch:{unit.table_name}", primary, fallback, config=self._breaker_config
                )
            else:
                outcome = await primary()
        except BatchExecutionError as e:
            outcome = self._failed_outcome(unit, list(e.details.get("errors") or [e.message]))
        except Exception as e:
            self.logger.error("Batch execution failed", batch_id=unit.batch_id, error=describe_error(e))
            outcome = self._failed_outcome(unit, [f"Batch {unit.batch_id} failed: {describe_error(e)}"])

        outcome.execution_time_ms = (time.perf_counter() - started) * 1000
        if self.metrics:
            status = "fallback" if outcome.fallback_used else ("success" if outcome.succeeded else "failed")
            self.metrics.record_batch_unit("grouped", status)
        return outcome

    async def _execute_unit(self, unit: BatchUnit, options: BatchExecutionOptions) -> UnitOutcome:
        retry_config = RetryConfig(
            max_attempts=options.max_retry_attempts,
            base_delay=options.retry_delay_seconds,
            max_delay=max(options.retry_delay_seconds, 30.0),
            jitter=False,
            backoff_strategy=BackoffStrategy.EXPONENTIAL
        )

        async def _one(request: AccessRequest) -> PagedResult:
            return await retry_async(
                lambda: self.query_service.execute(request),
                config=retry_config,
                exceptions=(FusionError,),
                should_retry=is_retryable,
                operation="batch_request",
                reraise=True
            )

        results = await asyncio.gather(*(_one(request) for request in unit.requests), return_exceptions=True)

        outcome = UnitOutcome(unit=unit)
        dependency_failed = False
        for result in results:
            if isinstance(result, BaseException):
                outcome.failed_requests += 1
                outcome.errors.append(f"{unit.table_name}: {describe_error(result)}")
                dependency_failed = dependency_failed or not isinstance(result, CLIENT_ERRORS)
            else:
                outcome.successful_requests += 1
                outcome.items.extend(result.items)
                outcome.estimated_cost += result.metadata.estimated_cost

        if not outcome.succeeded and dependency_failed:
            raise BatchExecutionError(
                f"All {len(unit.requests)} requests in batch {unit.batch_id} failed",
                details={"batch_id": unit.batch_id, "errors": outcome.errors}
            )
        return outcome

    @staticmethod
    def _failed_outcome(unit: BatchUnit, errors: List[str], fallback_used: bool = False) -> UnitOutcome:
        return UnitOutcome(
            unit=unit,
            failed_requests=len(unit.requests),
            errors=errors,
            fallback_used=fallback_used
        )

    @staticmethod
    def _summarize(outcome: UnitOutcome) -> BatchExecutionSummary:
        unit = outcome.unit
        return BatchExecutionSummary(
            batch_id=unit.batch_id,
            table_name=unit.table_name,
            request_count=len(unit.requests),
            successful_requests=outcome.successful_requests,
            failed_requests=outcome.failed_requests,
            item_count=len(outcome.items),
            priority=unit.priority,
            estimated_execution_ms=unit.estimated_execution_ms,
            execution_time_ms=outcome.execution_time_ms,
            estimated_cost=outcome.estimated_cost,
            fallback_used=outcome.fallback_used
        )

    # Flat mode

    async def execute_parallel(self,
                               requests: Sequence[AccessRequest],
                               max_concurrency: Optional[int] = None,
                               cancel_event: Optional[asyncio.Event] = None) -> ParallelExecutionResult:
        """Run every request independently under a bounded gate."""
        started = time.perf_counter()
        requests = list(requests)
        width = max_concurrency or self.parallel_concurrency
        semaphore = asyncio.Semaphore(width)
        self.logger.info("Starting parallel execution", request_count=len(requests), max_concurrency=width)

        async def _run(request: AccessRequest) -> _RequestOutcome:
            async with semaphore:
                if _cancelled(cancel_event):
                    return _RequestOutcome(success=False, error="Request skipped: execution cancelled", skipped=True)
                table_name = request.table_name or "unknown"

                async def primary() -> _RequestOutcome:
                    return _RequestOutcome(success=True, page=await self.query_service.execute(request))

                async def fallback() -> _RequestOutcome:
                    return _RequestOutcome(success=False, error=f"Fallback triggered for table {table_name}")

                try:
                    return await self.breakers.execute(
                        f"query:{table_name}", primary, fallback, config=self._breaker_config
                    )
                except Exception as e:
                    return _RequestOutcome(success=False, error=f"{table_name}: {describe_error(e)}")

        outcomes = await asyncio.gather(*(_run(request) for request in requests))

        successes = [outcome for outcome in outcomes if outcome.success]
        failures = [outcome for outcome in outcomes if not outcome.success]
        items: List[Any] = []
        for outcome in successes:
            items.extend(outcome.page.items)
        average = (
            sum(outcome.page.metadata.execution_time_ms for outcome in successes) / len(successes)
            if successes else 0.0
        )

        result = ParallelExecutionResult(
            total_requests=len(requests),
            successful_requests=len(successes),
            failed_requests=len(failures),
            items=items,
            errors=[outcome.error or "Unknown error" for outcome in failures],
            average_execution_time_ms=average,
            total_execution_time_ms=(time.perf_counter() - started) * 1000,
            cancelled=any(outcome.skipped for outcome in failures)
        )
        self.logger.info(
            "Parallel execution completed",
            successful=result.successful_requests,
            total=result.total_requests,
            duration_ms=round(result.total_execution_time_ms, 2)
        )
        return result

    # Streaming mode

    async def stream_batch(self,
                           requests: Sequence[AccessRequest],
                           options: Optional[BatchExecutionOptions] = None,
                           cancel_event: Optional[asyncio.Event] = None) -> AsyncIterator[BatchChunk]:
        """Yield one chunk per sub-batch, in priority order."""
        options = options or self.options
        requests = list(requests)
        self.validate(requests, options)

        for unit in self.partition(requests, options):
            if _cancelled(cancel_event):
                self.logger.info("Batch stream cancelled", remaining_batch=unit.batch_id)
                return
            async with self._global_gate:
                outcome = await self._run_unit(unit, options)
            clear_context()
            yield BatchChunk(
                chunk_id=unit.batch_id,
                table_name=unit.table_name,
                items=outcome.items,
                request_count=len(unit.requests),
                successful_requests=outcome.successful_requests,
                failed_requests=outcome.failed_requests,
                execution_time_ms=outcome.execution_time_ms,
                errors=outcome.errors
            )
