"""
Access-plan optimization: strategy selection, predicate ordering,
index substitution and query pattern tracking.
"""

from .models import (
    ImpactLevel,
    IndexRecommendation,
    OptimizationResult,
    QueryPatternAnalysis,
    Recommendation,
    RecommendationType,
)
from .optimizer import QueryOptimizer, selectivity_rank
from .schema import (
    AttributeDefinition,
    AttributeType,
    GlobalSecondaryIndex,
    LocalSecondaryIndex,
    SchemaCatalog,
    TableSchema,
)

__all__ = [
    "AttributeDefinition",
    "AttributeType",
    "GlobalSecondaryIndex",
    "ImpactLevel",
    "IndexRecommendation",
    "LocalSecondaryIndex",
    "OptimizationResult",
    "QueryOptimizer",
    "QueryPatternAnalysis",
    "Recommendation",
    "RecommendationType",
    "SchemaCatalog",
    "TableSchema",
    "selectivity_rank",
]
