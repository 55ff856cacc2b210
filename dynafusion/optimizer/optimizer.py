"""
Query strategy optimizer.

Rewrites an access request into a cheaper plan and scores the changes.
Rules run in a fixed order on a working copy; the caller's request is never
modified. Every call also feeds a per-table usage record from which index
recommendations are derived.
"""

import time
import threading
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from ..models.request import AccessRequest, FilterOperator, Pagination, Predicate, QueryStrategy
from ..shared.config import OptimizerSettings
from ..shared.errors import QueryOptimizationError
from ..shared.logging import get_logger
from ..shared.metrics import MetricsCollector
from .models import (
    ImpactLevel,
    IndexRecommendation,
    OptimizationResult,
    QueryPatternAnalysis,
    Recommendation,
    RecommendationType,
)
from .schema import SchemaCatalog, TableSchema

# Lower rank = more selective
SELECTIVITY_RANKS = {
    FilterOperator.EQUALS: 1,
    FilterOperator.BEGINS_WITH: 2,
    FilterOperator.BETWEEN: 3,
    FilterOperator.LESS_THAN: 4,
    FilterOperator.LESS_THAN_OR_EQUAL: 4,
    FilterOperator.GREATER_THAN: 4,
    FilterOperator.GREATER_THAN_OR_EQUAL: 4,
    FilterOperator.CONTAINS: 5,
    FilterOperator.NOT_EQUALS: 6,
}
DEFAULT_MEMBERSHIP_RANK = 3
DEFAULT_RANK = 7


def selectivity_rank(predicate: Predicate) -> int:
    """Rank a predicate by how much it narrows the result."""
    if predicate.operator in (FilterOperator.IN, FilterOperator.NOT_IN):
        return len(predicate.values) or DEFAULT_MEMBERSHIP_RANK
    return SELECTIVITY_RANKS.get(predicate.operator, DEFAULT_RANK)


@dataclass
class _Plan:
    request: AccessRequest
    recommendations: List[Recommendation] = field(default_factory=list)
    cost_reduction: float = 0.0
    performance_gain: float = 0.0

    def recommend(self, recommendation: Recommendation, performance_gain: float = 0.0):
        self.recommendations.append(recommendation)
        self.cost_reduction += recommendation.estimated_cost_reduction
        self.performance_gain += performance_gain

    def rewrite(self, **changes):
        self.request = self.request.model_copy(update=changes)


@dataclass
class _PatternRecord:
    table_name: str
    total_queries: int = 0
    attribute_usage: Counter = field(default_factory=Counter)
    recommendations: List[IndexRecommendation] = field(default_factory=list)
    last_updated: Optional[datetime] = None


class QueryOptimizer:
    """Plans and scores access requests."""

    def __init__(self,
                 settings: Optional[OptimizerSettings] = None,
                 catalog: Optional[SchemaCatalog] = None,
                 metrics: Optional[MetricsCollector] = None):
        self.settings = settings or OptimizerSettings()
        self.catalog = catalog or SchemaCatalog()
        self.metrics = metrics
        self.logger = get_logger("dynafusion.optimizer")

        self._patterns: Dict[str, _PatternRecord] = {}
        self._patterns_lock = threading.Lock()

    def register_schema(self, schema: TableSchema):
        self.catalog.register(schema)
        self.logger.info(
            "Registered table schema",
            table_name=schema.table_name,
            global_indexes=len(schema.global_secondary_indexes)
        )

    def optimize(self, request: AccessRequest) -> OptimizationResult:
        """Produce a rewritten request plus scored recommendations."""
        started = time.perf_counter()
        try:
            self._track_pattern(request)

            plan = _Plan(request=request)
            self._select_strategy(plan)
            self._reorder_filters(plan)
            self._suggest_prefix_match(plan)
            self._suggest_projection(plan)
            self._clamp_pagination(plan)
            self._substitute_index(plan)

            result = OptimizationResult(
                original_request=request,
                optimized_request=plan.request,
                strategy=self.strategy_name(plan.request),
                recommendations=plan.recommendations,
                estimated_cost_reduction=min(100.0, plan.cost_reduction),
                estimated_performance_gain=plan.performance_gain,
                optimization_time_ms=(time.perf_counter() - started) * 1000
            )
        except QueryOptimizationError:
            raise
        except Exception as e:
            self.logger.error("Query optimization failed", table_name=request.table_name, error=str(e))
            raise QueryOptimizationError(
                f"Failed to optimize query for table '{request.table_name}'",
                details={"error": str(e)}
            ) from e

        if self.metrics:
            for recommendation in result.recommendations:
                self.metrics.record_recommendation(recommendation.type.value, recommendation.impact.value)

        self.logger.debug(
            "Query optimized",
            table_name=request.table_name,
            strategy=result.strategy,
            recommendations=len(result.recommendations),
            cost_reduction=result.estimated_cost_reduction
        )
        return result

    @staticmethod
    def strategy_name(request: AccessRequest) -> str:
        if request.has_partition_key_value and request.strategy != QueryStrategy.FORCE_SCAN:
            return "Query"
        return "Scan"

    def _select_strategy(self, plan: _Plan):
        request = plan.request
        if request.has_partition_key_value and request.strategy != QueryStrategy.FORCE_SCAN:
            if request.strategy in (QueryStrategy.AUTO, QueryStrategy.COST_OPTIMIZED):
                plan.rewrite(strategy=QueryStrategy.FORCE_QUERY)
            plan.recommend(
                Recommendation(
                    type=RecommendationType.QUERY_STRATEGY,
                    message="Using Query operation instead of Scan for better performance",
                    impact=ImpactLevel.HIGH,
                    estimated_cost_reduction=self.settings.query_strategy_cost_reduction
                ),
                performance_gain=self.settings.query_strategy_performance_gain
            )
        elif not request.has_partition_key_value and request.filters:
            plan.recommend(Recommendation(
                type=RecommendationType.INDEX_CREATION,
                message="Consider using a Global Secondary Index (GSI) to avoid full table scan",
                impact=ImpactLevel.HIGH,
                estimated_cost_reduction=0.0,
                suggested_attributes=list(request.filters)
            ))

    def _reorder_filters(self, plan: _Plan):
        filters = plan.request.filters
        if len(filters) < 2:
            return
        ordered = sorted(filters.items(), key=lambda item: selectivity_rank(item[1]))
        if [name for name, _ in ordered] == list(filters):
            return
        plan.rewrite(filters=dict(ordered))
        plan.recommend(
            Recommendation(
                type=RecommendationType.FILTER_OPTIMIZATION,
                message="Reordered filters by selectivity for better performance",
                impact=ImpactLevel.MEDIUM,
                estimated_cost_reduction=self.settings.filter_reorder_cost_reduction
            ),
            performance_gain=self.settings.filter_reorder_performance_gain
        )

    def _suggest_prefix_match(self, plan: _Plan):
        for name, predicate in plan.request.filters.items():
            if (predicate.operator == FilterOperator.CONTAINS
                    and isinstance(predicate.value, str)
                    and predicate.value.endswith("%")):
                plan.recommend(Recommendation(
                    type=RecommendationType.FILTER_OPTIMIZATION,
                    message=f"Consider using 'begins_with' instead of 'contains' for filter on '{name}' for better performance",
                    impact=ImpactLevel.MEDIUM,
                    estimated_cost_reduction=self.settings.prefix_match_cost_reduction,
                    suggested_attributes=[name]
                ))

    def _suggest_projection(self, plan: _Plan):
        request = plan.request
        if request.projection_attributes or not request.filters:
            return
        suggested: List[str] = []
        for name in [request.partition_key, request.sort_key, *request.filters]:
            if name and name not in suggested:
                suggested.append(name)
        if len(suggested) < self.settings.max_projection_attributes:
            plan.recommend(Recommendation(
                type=RecommendationType.PROJECTION_OPTIMIZATION,
                message=f"Consider projecting only needed attributes: {', '.join(suggested)}",
                impact=ImpactLevel.MEDIUM,
                estimated_cost_reduction=self.settings.projection_cost_reduction,
                suggested_attributes=suggested
            ))

    def _clamp_pagination(self, plan: _Plan):
        pagination = plan.request.pagination
        if pagination.page_size > self.settings.max_page_size:
            plan.rewrite(pagination=Pagination(
                page_size=self.settings.max_page_size,
                next_token=pagination.next_token
            ))
            plan.recommend(Recommendation(
                type=RecommendationType.PAGINATION_OPTIMIZATION,
                message=f"Reduced page size to {self.settings.max_page_size} (store maximum) for better performance",
                impact=ImpactLevel.LOW
            ))
        elif pagination.page_size < self.settings.min_page_size:
            plan.recommend(Recommendation(
                type=RecommendationType.PAGINATION_OPTIMIZATION,
                message="Consider increasing page size to reduce round trips",
                impact=ImpactLevel.LOW
            ))

    def _substitute_index(self, plan: _Plan):
        request = plan.request
        if request.index_name or request.has_partition_key_value or not request.filters:
            return
        schema = self.catalog.get(request.table_name)
        if schema is None:
            return

        for name, predicate in request.filters.items():
            if predicate.operator != FilterOperator.EQUALS or predicate.value is None:
                continue
            index = schema.index_for_partition_key(name)
            if index is None:
                continue

            remaining = {k: v for k, v in request.filters.items() if k != name}
            changes = {
                "index_name": index.index_name,
                "partition_key": index.partition_key,
                "partition_key_value": predicate.value,
                "sort_key": None,
                "sort_key_value": None,
                "filters": remaining,
            }
            if request.strategy in (QueryStrategy.AUTO, QueryStrategy.COST_OPTIMIZED):
                changes["strategy"] = QueryStrategy.FORCE_QUERY
            plan.rewrite(**changes)
            plan.recommend(
                Recommendation(
                    type=RecommendationType.INDEX_USAGE,
                    message=f"Using GSI '{index.index_name}' for better query performance",
                    impact=ImpactLevel.HIGH,
                    estimated_cost_reduction=self.settings.index_usage_cost_reduction,
                    suggested_attributes=[name]
                ),
                performance_gain=self.settings.index_usage_performance_gain
            )
            break

    def _track_pattern(self, request: AccessRequest):
        with self._patterns_lock:
            record = self._patterns.get(request.table_name)
            if record is None:
                record = _PatternRecord(table_name=request.table_name)
                self._patterns[request.table_name] = record

            record.total_queries += 1
            record.attribute_usage.update(request.filters.keys())
            record.last_updated = datetime.now(timezone.utc)

            if record.total_queries > self.settings.pattern_analysis_threshold:
                self._refresh_index_recommendations(record)

    def _refresh_index_recommendations(self, record: _PatternRecord):
        existing = {rec.partition_key for rec in record.recommendations}
        for attribute, count in record.attribute_usage.most_common():
            if len(record.recommendations) >= self.settings.max_index_recommendations:
                break
            share = count / record.total_queries
            if share <= self.settings.pattern_usage_share:
                break
            if attribute in existing:
                continue
            record.recommendations.append(IndexRecommendation(
                index_name=f"GSI-{attribute}",
                partition_key=attribute,
                usage_count=count,
                estimated_cost_reduction=round(share * self.settings.max_index_cost_reduction, 2)
            ))
            existing.add(attribute)

    def analyze_patterns(self, table_name: str) -> QueryPatternAnalysis:
        """Snapshot of the usage record for a table."""
        schema = self.catalog.get(table_name)
        with self._patterns_lock:
            record = self._patterns.get(table_name)
            if record is None:
                return QueryPatternAnalysis(table_name=table_name)
            usage = dict(record.attribute_usage)
            total = record.total_queries
            recommendations = [rec.model_copy() for rec in record.recommendations]
            last_updated = record.last_updated

        issues = []
        for attribute, count in sorted(usage.items(), key=lambda item: -item[1]):
            indexed = schema is not None and (
                attribute == schema.partition_key or schema.index_for_partition_key(attribute) is not None
            )
            if not indexed and total and count / total > 0.5:
                issues.append(
                    f"Attribute '{attribute}' is filtered in {count / total:.0%} of queries without a supporting index"
                )

        return QueryPatternAnalysis(
            table_name=table_name,
            total_queries=total,
            attribute_usage=usage,
            recommended_indexes=recommendations,
            performance_issues=issues,
            last_analyzed=last_updated
        )

    def reset_patterns(self, table_name: Optional[str] = None):
        """Administrative reset of usage tracking."""
        with self._patterns_lock:
            if table_name is None:
                self._patterns.clear()
            else:
                self._patterns.pop(table_name, None)
        self.logger.info("Query patterns reset", table_name=table_name or "*")
