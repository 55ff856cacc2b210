"""
Optimizer outputs.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from ..models.request import AccessRequest


class RecommendationType(str, Enum):
    QUERY_STRATEGY = "query_strategy"
    INDEX_USAGE = "index_usage"
    FILTER_OPTIMIZATION = "filter_optimization"
    PROJECTION_OPTIMIZATION = "projection_optimization"
    PAGINATION_OPTIMIZATION = "pagination_optimization"
    INDEX_CREATION = "index_creation"


class ImpactLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Recommendation(BaseModel):
    type: RecommendationType
    message: str
    impact: ImpactLevel
    estimated_cost_reduction: float = 0.0
    suggested_attributes: List[str] = Field(default_factory=list)


class OptimizationResult(BaseModel):
    original_request: AccessRequest
    optimized_request: AccessRequest
    strategy: str
    recommendations: List[Recommendation] = Field(default_factory=list)
    estimated_cost_reduction: float = 0.0
    estimated_performance_gain: float = 0.0
    optimization_time_ms: float = 0.0


class IndexRecommendation(BaseModel):
    index_name: str
    partition_key: str
    usage_count: int
    estimated_cost_reduction: float


class QueryPatternAnalysis(BaseModel):
    table_name: str
    total_queries: int = 0
    attribute_usage: Dict[str, int] = Field(default_factory=dict)
    recommended_indexes: List[IndexRecommendation] = Field(default_factory=list)
    performance_issues: List[str] = Field(default_factory=list)
    last_analyzed: Optional[datetime] = None
