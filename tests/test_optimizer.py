"""
Unit tests for the query optimizer.
"""

import pytest

from dynafusion.models.request import AccessRequest, FilterOperator, Pagination, Predicate, QueryStrategy
from dynafusion.optimizer import (
    GlobalSecondaryIndex,
    ImpactLevel,
    QueryOptimizer,
    RecommendationType,
    TableSchema,
    selectivity_rank,
)
from dynafusion.shared.config import OptimizerSettings

from conftest import DummyMetrics


@pytest.fixture
def optimizer():
    return QueryOptimizer(OptimizerSettings(), metrics=DummyMetrics())


@pytest.fixture
def users_schema():
    return TableSchema(
        table_name="Users",
        partition_key="UserId",
        global_secondary_indexes=[
            GlobalSecondaryIndex(index_name="EmailIndex", partition_key="Email"),
        ]
    )


def _types(result):
    return [recommendation.type for recommendation in result.recommendations]


class TestStrategySelection:
    """Test cases for strategy selection."""

    def test_partition_value_selects_indexed_lookup(self, optimizer):
        request = AccessRequest(table_name="Users", partition_key="UserId", partition_key_value="u1")

        result = optimizer.optimize(request)

        assert result.strategy == "Query"
        assert result.optimized_request.strategy == QueryStrategy.FORCE_QUERY
        assert len(result.recommendations) == 1
        recommendation = result.recommendations[0]
        assert recommendation.type == RecommendationType.QUERY_STRATEGY
        assert recommendation.impact == ImpactLevel.HIGH
        assert result.estimated_cost_reduction >= 70

    def test_caller_request_is_not_modified(self, optimizer):
        request = AccessRequest(table_name="Users", partition_key="UserId", partition_key_value="u1")

        optimizer.optimize(request)

        assert request.strategy == QueryStrategy.AUTO

    def test_force_scan_is_respected(self, optimizer):
        request = AccessRequest(
            table_name="Users",
            partition_key="UserId",
            partition_key_value="u1",
            strategy=QueryStrategy.FORCE_SCAN
        )

        result = optimizer.optimize(request)

        assert result.strategy == "Scan"
        assert RecommendationType.QUERY_STRATEGY not in _types(result)

    def test_filtered_scan_suggests_index(self, optimizer):
        request = AccessRequest(table_name="Users", filters={"status": Predicate.equal("active")})

        result = optimizer.optimize(request)

        assert result.strategy == "Scan"
        creation = [r for r in result.recommendations if r.type == RecommendationType.INDEX_CREATION]
        assert creation and creation[0].suggested_attributes == ["status"]

    def test_idempotent(self, optimizer, users_schema):
        optimizer.register_schema(users_schema)
        request = AccessRequest(
            table_name="Users",
            filters={
                "name": Predicate.contains("Ad"),
                "Email": Predicate.equal("ada@example.com"),
            },
            pagination=Pagination(page_size=5000)
        )

        once = optimizer.optimize(request).optimized_request
        twice = optimizer.optimize(once).optimized_request

        assert twice == once


class TestRewrites:
    """Test cases for request rewrites."""

    def test_filters_reordered_by_selectivity(self, optimizer):
        request = AccessRequest(
            table_name="Users",
            partition_key="UserId",
            partition_key_value="u1",
            filters={
                "bio": Predicate.contains("engineer"),
                "age": Predicate.gt(30),
                "status": Predicate.equal("active"),
            }
        )

        result = optimizer.optimize(request)

        assert list(result.optimized_request.filters) == ["status", "age", "bio"]
        assert list(request.filters) == ["bio", "age", "status"]
        assert RecommendationType.FILTER_OPTIMIZATION in _types(result)

    def test_sorted_filters_are_left_alone(self, optimizer):
        request = AccessRequest(
            table_name="Users",
            partition_key="UserId",
            partition_key_value="u1",
            filters={"status": Predicate.equal("active"), "bio": Predicate.contains("x")}
        )

        result = optimizer.optimize(request)

        assert not any("Reordered" in r.message for r in result.recommendations)

    def test_membership_rank_is_value_count(self):
        assert selectivity_rank(Predicate.in_("a", "b")) == 2
        assert selectivity_rank(Predicate(operator=FilterOperator.IN)) == 3
        assert selectivity_rank(Predicate.exists()) == 7
        assert selectivity_rank(Predicate.equal(1)) == 1

    def test_trailing_wildcard_contains_suggests_prefix_match(self, optimizer):
        request = AccessRequest(
            table_name="Users",
            partition_key="UserId",
            partition_key_value="u1",
            filters={"name": Predicate.contains("Ad%")}
        )

        result = optimizer.optimize(request)

        assert any("begins_with" in r.message and "'name'" in r.message for r in result.recommendations)

    def test_projection_suggested_for_filtered_requests(self, optimizer):
        request = AccessRequest(
            table_name="Users",
            partition_key="UserId",
            partition_key_value="u1",
            sort_key="CreatedAt",
            filters={"status": Predicate.equal("active")}
        )

        result = optimizer.optimize(request)

        projection = [r for r in result.recommendations if r.type == RecommendationType.PROJECTION_OPTIMIZATION]
        assert projection[0].suggested_attributes == ["UserId", "CreatedAt", "status"]

    def test_projection_not_suggested_when_already_projected(self, optimizer):
        request = AccessRequest(
            table_name="Users",
            filters={"status": Predicate.equal("active")},
            projection_attributes=("UserId",)
        )

        assert RecommendationType.PROJECTION_OPTIMIZATION not in _types(optimizer.optimize(request))

    def test_oversized_page_is_clamped(self, optimizer):
        request = AccessRequest(
            table_name="Users",
            partition_key="UserId",
            partition_key_value="u1",
            pagination=Pagination(page_size=5000, next_token="abc")
        )

        result = optimizer.optimize(request)

        assert result.optimized_request.pagination.page_size == 1000
        assert result.optimized_request.pagination.next_token == "abc"
        assert any("Reduced page size to 1000" in r.message for r in result.recommendations)

    def test_tiny_page_gets_advice_only(self, optimizer):
        request = AccessRequest(
            table_name="Users",
            partition_key="UserId",
            partition_key_value="u1",
            pagination=Pagination(page_size=2)
        )

        result = optimizer.optimize(request)

        assert result.optimized_request.pagination.page_size == 2
        assert any("increasing page size" in r.message for r in result.recommendations)

    def test_equality_filter_on_indexed_attribute_uses_gsi(self, optimizer, users_schema):
        optimizer.register_schema(users_schema)
        request = AccessRequest(
            table_name="Users",
            filters={"Email": Predicate.equal("ada@example.com"), "status": Predicate.equal("active")}
        )

        result = optimizer.optimize(request)
        optimized = result.optimized_request

        assert optimized.index_name == "EmailIndex"
        assert optimized.partition_key == "Email"
        assert optimized.partition_key_value == "ada@example.com"
        assert list(optimized.filters) == ["status"]
        assert optimized.strategy == QueryStrategy.FORCE_QUERY
        assert result.strategy == "Query"
        assert any(r.message == "Using GSI 'EmailIndex' for better query performance" for r in result.recommendations)

    def test_non_equality_filter_does_not_use_gsi(self, optimizer, users_schema):
        optimizer.register_schema(users_schema)
        request = AccessRequest(table_name="Users", filters={"Email": Predicate.begins_with("ada")})

        result = optimizer.optimize(request)

        assert result.optimized_request.index_name is None
        assert result.strategy == "Scan"

    def test_cost_reduction_is_capped(self):
        optimizer = QueryOptimizer(OptimizerSettings(query_strategy_cost_reduction=95, projection_cost_reduction=50))
        request = AccessRequest(
            table_name="Users",
            partition_key="UserId",
            partition_key_value="u1",
            filters={"status": Predicate.equal("active")}
        )

        assert optimizer.optimize(request).estimated_cost_reduction == 100.0

    def test_recommendations_are_counted(self):
        metrics = DummyMetrics()
        optimizer = QueryOptimizer(metrics=metrics)

        optimizer.optimize(AccessRequest(table_name="Users", partition_key="UserId", partition_key_value="u1"))

        assert ("record_recommendation", ("query_strategy", "high")) in metrics.calls


class TestPatternTracking:
    """Test cases for query pattern analysis."""

    def test_unknown_table(self, optimizer):
        analysis = optimizer.analyze_patterns("Nothing")

        assert analysis.total_queries == 0
        assert analysis.recommended_indexes == []

    def test_frequent_attributes_become_index_recommendations(self, optimizer):
        for i in range(101):
            filters = {"status": Predicate.equal("active")}
            if i % 2 == 0:
                filters["region"] = Predicate.equal("eu")
            optimizer.optimize(AccessRequest(table_name="Orders", filters=filters))

        analysis = optimizer.analyze_patterns("Orders")

        assert analysis.total_queries == 101
        assert analysis.attribute_usage == {"status": 101, "region": 51}
        keys = [rec.partition_key for rec in analysis.recommended_indexes]
        assert keys == ["status", "region"]
        assert analysis.recommended_indexes[0].index_name == "GSI-status"
        assert analysis.recommended_indexes[0].estimated_cost_reduction == 80.0
        assert any("'status'" in issue for issue in analysis.performance_issues)

    def test_no_recommendations_below_threshold(self, optimizer):
        for _ in range(100):
            optimizer.optimize(AccessRequest(table_name="Orders", filters={"status": Predicate.equal("open")}))

        assert optimizer.analyze_patterns("Orders").recommended_indexes == []

    def test_indexed_attributes_are_not_reported_as_issues(self, optimizer, users_schema):
        optimizer.register_schema(users_schema)
        for _ in range(10):
            optimizer.optimize(AccessRequest(table_name="Users", filters={"Email": Predicate.equal("a@b.c")}))

        assert optimizer.analyze_patterns("Users").performance_issues == []

    def test_reset_patterns(self, optimizer):
        optimizer.optimize(AccessRequest(table_name="Orders", filters={"status": Predicate.equal("open")}))

        optimizer.reset_patterns("Orders")

        assert optimizer.analyze_patterns("Orders").total_queries == 0
