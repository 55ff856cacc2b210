"""
Request and result types shared by every engine component.
"""

from .request import (
    AccessRequest,
    FilterOperator,
    Pagination,
    Predicate,
    QueryStrategy,
    SortDirection,
)
from .results import (
    ApiResponse,
    BatchQueryResult,
    CacheStatus,
    OperationType,
    PagedResult,
    PaginationMetadata,
    QueryMetadata,
)

__all__ = [
    "AccessRequest",
    "ApiResponse",
    "BatchQueryResult",
    "CacheStatus",
    "FilterOperator",
    "OperationType",
    "PagedResult",
    "Pagination",
    "PaginationMetadata",
    "Predicate",
    "QueryMetadata",
    "QueryStrategy",
    "SortDirection",
]
