"""
Normalized access request handed to the engine.
"""

import json
import hashlib
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


class FilterOperator(str, Enum):
    """Predicate operators understood by the backing store."""
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    LESS_THAN = "less_than"
    LESS_THAN_OR_EQUAL = "less_than_or_equal"
    GREATER_THAN = "greater_than"
    GREATER_THAN_OR_EQUAL = "greater_than_or_equal"
    BETWEEN = "between"
    IN = "in"
    NOT_IN = "not_in"
    CONTAINS = "contains"
    BEGINS_WITH = "begins_with"
    EXISTS = "exists"
    NOT_EXISTS = "not_exists"


class QueryStrategy(str, Enum):
    """Caller hint for choosing between an indexed query and a scan."""
    AUTO = "auto"
    FORCE_QUERY = "force_query"
    FORCE_SCAN = "force_scan"
    COST_OPTIMIZED = "cost_optimized"


class SortDirection(str, Enum):
    ASC = "asc"
    DESC = "desc"


class Predicate(BaseModel):
    """A single named filter condition."""

    model_config = ConfigDict(frozen=True)

    value: Any = None
    operator: FilterOperator = FilterOperator.EQUALS
    additional_values: Tuple[Any, ...] = ()

    @property
    def values(self) -> Tuple[Any, ...]:
        """Primary value followed by any additional values."""
        if self.value is None:
            return self.additional_values
        return (self.value,) + self.additional_values

    @classmethod
    def equal(cls, value: Any) -> "Predicate":
        return cls(value=value, operator=FilterOperator.EQUALS)

    @classmethod
    def not_equal(cls, value: Any) -> "Predicate":
        return cls(value=value, operator=FilterOperator.NOT_EQUALS)

    @classmethod
    def contains(cls, value: Any) -> "Predicate":
        return cls(value=value, operator=FilterOperator.CONTAINS)

    @classmethod
    def begins_with(cls, value: Any) -> "Predicate":
        return cls(value=value, operator=FilterOperator.BEGINS_WITH)

    @classmethod
    def between(cls, low: Any, high: Any) -> "Predicate":
        return cls(value=low, operator=FilterOperator.BETWEEN, additional_values=(high,))

    @classmethod
    def in_(cls, *values: Any) -> "Predicate":
        if not values:
            return cls(operator=FilterOperator.IN)
        return cls(value=values[0], operator=FilterOperator.IN, additional_values=tuple(values[1:]))

    @classmethod
    def gt(cls, value: Any) -> "Predicate":
        return cls(value=value, operator=FilterOperator.GREATER_THAN)

    @classmethod
    def gte(cls, value: Any) -> "Predicate":
        return cls(value=value, operator=FilterOperator.GREATER_THAN_OR_EQUAL)

    @classmethod
    def lt(cls, value: Any) -> "Predicate":
        return cls(value=value, operator=FilterOperator.LESS_THAN)

    @classmethod
    def lte(cls, value: Any) -> "Predicate":
        return cls(value=value, operator=FilterOperator.LESS_THAN_OR_EQUAL)

    @classmethod
    def exists(cls) -> "Predicate":
        return cls(operator=FilterOperator.EXISTS)

    @classmethod
    def not_exists(cls) -> "Predicate":
        return cls(operator=FilterOperator.NOT_EXISTS)


class Pagination(BaseModel):
    model_config = ConfigDict(frozen=True)

    page_size: int = 20
    next_token: Optional[str] = None


class AccessRequest(BaseModel):
    """Immutable description of a single lookup.

    Rewrites (optimizer, pagination) produce new instances through
    ``model_copy(update=...)``; the caller's instance is never changed.
    """

    model_config = ConfigDict(frozen=True)

    table_name: str = ""
    partition_key: Optional[str] = None
    partition_key_value: Optional[Any] = None
    sort_key: Optional[str] = None
    sort_key_value: Optional[Any] = None
    filters: Dict[str, Predicate] = Field(default_factory=dict)
    index_name: Optional[str] = None
    projection_attributes: Tuple[str, ...] = ()
    order_by: Dict[str, SortDirection] = Field(default_factory=dict)
    pagination: Pagination = Field(default_factory=Pagination)
    strategy: QueryStrategy = QueryStrategy.AUTO
    consistent_read: bool = False

    @property
    def has_partition_key_value(self) -> bool:
        return self.partition_key_value is not None and self.partition_key_value != ""

    @property
    def has_sort_key_value(self) -> bool:
        return bool(self.sort_key) and self.sort_key_value is not None and self.sort_key_value != ""

    def with_pagination(self, page_size: Optional[int] = None, next_token: Optional[str] = None) -> "AccessRequest":
        """Copy of this request pointing at another page."""
        pagination = Pagination(
            page_size=page_size if page_size is not None else self.pagination.page_size,
            next_token=next_token
        )
        return self.model_copy(update={"pagination": pagination})

    def fingerprint(self) -> str:
        """Stable digest of every field that influences the result."""
        canonical = json.dumps(self.model_dump(mode="json"), sort_keys=True, default=str)
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def cache_key(self) -> str:
        return f"query:{self.table_name}:{self.fingerprint()}"
