"""
Batch execution options, units and aggregate results.
"""

import uuid
from dataclasses import dataclass, field
from typing import Any, List

from pydantic import BaseModel, Field

from ..models.request import AccessRequest
from ..shared.config import BatchSettings


class BatchExecutionOptions(BaseModel):
    max_batch_size: int = Field(default=1000, gt=0)
    optimal_batch_size: int = Field(default=25, gt=0)
    max_concurrent_batches: int = Field(default=5, gt=0)
    max_retry_attempts: int = Field(default=3, ge=1)
    retry_delay_seconds: float = Field(default=1.0, ge=0)
    enable_circuit_breaker: bool = True
    estimated_ms_per_request: float = 50.0

    @classmethod
    def default(cls) -> "BatchExecutionOptions":
        return cls()

    @classmethod
    def conservative(cls) -> "BatchExecutionOptions":
        return cls(
            max_batch_size=500,
            optimal_batch_size=10,
            max_concurrent_batches=2,
            max_retry_attempts=5,
            retry_delay_seconds=2.0
        )

    @classmethod
    def aggressive(cls) -> "BatchExecutionOptions":
        return cls(
            max_batch_size=2000,
            optimal_batch_size=50,
            max_concurrent_batches=10,
            max_retry_attempts=2,
            retry_delay_seconds=0.5
        )

    @classmethod
    def from_settings(cls, settings: BatchSettings) -> "BatchExecutionOptions":
        return cls(
            max_batch_size=settings.max_batch_size,
            optimal_batch_size=settings.optimal_batch_size,
            max_concurrent_batches=settings.max_concurrent_batches,
            max_retry_attempts=settings.max_retry_attempts,
            retry_delay_seconds=settings.retry_delay_seconds,
            estimated_ms_per_request=settings.estimated_ms_per_request
        )


@dataclass
class BatchUnit:
    """A sub-batch of requests against one table."""

    table_name: str
    requests: List[AccessRequest]
    priority: int
    estimated_execution_ms: float
    batch_id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass
class UnitOutcome:
    """What happened to one sub-batch."""

    unit: BatchUnit
    items: List[Any] = field(default_factory=list)
    successful_requests: int = 0
    failed_requests: int = 0
    estimated_cost: float = 0.0
    execution_time_ms: float = 0.0
    errors: List[str] = field(default_factory=list)
    fallback_used: bool = False

    @property
    def succeeded(self) -> bool:
        return self.successful_requests > 0


class BatchExecutionSummary(BaseModel):
    batch_id: str
    table_name: str
    request_count: int
    successful_requests: int
    failed_requests: int
    item_count: int
    priority: int
    estimated_execution_ms: float
    execution_time_ms: float
    estimated_cost: float
    fallback_used: bool = False


class BatchExecutionResult(BaseModel):
    """Aggregate of a grouped batch run."""

    total_batches: int = 0
    successful_batches: int = 0
    failed_batches: int = 0
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    total_items: int = 0
    items: List[Any] = Field(default_factory=list)
    total_estimated_cost: float = 0.0
    batch_summaries: List[BatchExecutionSummary] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    total_execution_time_ms: float = 0.0
    cancelled: bool = False


class ParallelExecutionResult(BaseModel):
    """Aggregate of a flat parallel run."""

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    items: List[Any] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    average_execution_time_ms: float = 0.0
    total_execution_time_ms: float = 0.0
    cancelled: bool = False


class BatchChunk(BaseModel):
    """One streamed sub-batch result."""

    chunk_id: str
    table_name: str
    items: List[Any] = Field(default_factory=list)
    request_count: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    execution_time_ms: float = 0.0
    errors: List[str] = Field(default_factory=list)
