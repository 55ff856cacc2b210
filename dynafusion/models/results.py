"""
Result envelopes returned by the engine.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..shared.errors import FieldError
from .request import QueryStrategy


class OperationType(str, Enum):
    QUERY = "Query"
    SCAN = "Scan"


class CacheStatus(str, Enum):
    MISS = "Miss"
    HIT = "Hit"
    REFRESH = "Refresh"
    DISABLED = "Disabled"


class PaginationMetadata(BaseModel):
    page_size: int
    next_token: Optional[str] = None
    has_next_page: bool = False
    item_count: int = 0


class QueryMetadata(BaseModel):
    """How a page was produced."""

    operation_type: OperationType
    strategy: QueryStrategy = QueryStrategy.AUTO
    index_used: Optional[str] = None
    estimated_cost: float = 0.0
    execution_time_ms: float = 0.0
    items_examined: int = 0
    items_returned: int = 0
    consumed_capacity: Optional[float] = None
    cache_status: CacheStatus = CacheStatus.MISS
    warnings: List[str] = Field(default_factory=list)


class PagedResult(BaseModel):
    items: List[Any] = Field(default_factory=list)
    pagination: PaginationMetadata
    metadata: QueryMetadata


class ApiResponse(BaseModel):
    """Uniform success/failure envelope for external collaborators."""

    success: bool
    message: Optional[str] = None
    data: Optional[Any] = None
    errors: List[FieldError] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    retryable: bool = False
    retry_after: Optional[float] = None

    @classmethod
    def ok(cls, data: Any, message: Optional[str] = None, **metadata) -> "ApiResponse":
        return cls(success=True, message=message, data=data, metadata=metadata)

    @classmethod
    def fail(cls,
             message: str,
             errors: Optional[List[FieldError]] = None,
             retryable: bool = False,
             retry_after: Optional[float] = None,
             **metadata) -> "ApiResponse":
        return cls(
            success=False,
            message=message,
            errors=list(errors or []),
            retryable=retryable,
            retry_after=retry_after,
            metadata=metadata
        )


class BatchQueryResult(BaseModel):
    """Outcome of running a list of requests side by side."""

    responses: List[ApiResponse] = Field(default_factory=list)
    total_items: int = 0
    successful_queries: int = 0
    failed_queries: int = 0
    total_estimated_cost: float = 0.0
    total_execution_time_ms: float = 0.0

    @property
    def items(self) -> List[Any]:
        collected: List[Any] = []
        for response in self.responses:
            if response.success and response.data is not None:
                collected.extend(response.data.items)
        return collected
