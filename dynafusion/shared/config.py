"""
Configuration management for the fusion engine.

Settings load from the environment with the ``FUSION_`` prefix; nested
groups use a double underscore, e.g. ``FUSION_CACHE__L1__MAX_ENTRIES=500``.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class CompressionAlgorithm(str, Enum):
    """Codecs available for remote cache values."""
    GZIP = "gzip"
    DEFLATE = "deflate"


class CompressionSettings(BaseModel):
    enabled: bool = True
    min_size_bytes: int = Field(default=1024, ge=0)
    algorithm: CompressionAlgorithm = CompressionAlgorithm.GZIP
    level: int = Field(default=6, ge=0, le=9)


class L1Settings(BaseModel):
    """In-process cache tier."""

    enabled: bool = True
    max_entries: int = Field(default=1000, gt=0)
    max_memory_mb: float = Field(default=100.0, gt=0)
    max_expiration_seconds: float = Field(default=120.0, gt=0)
    cleanup_interval_seconds: float = Field(default=60.0, gt=0)


class L2Settings(BaseModel):
    """Redis cache tier."""

    enabled: bool = True
    redis_url: str = "redis://localhost:6379/0"
    max_expiration_seconds: float = Field(default=600.0, gt=0)
    operation_timeout_seconds: float = Field(default=3.0, gt=0)
    max_retries: int = Field(default=3, ge=1)
    retry_base_delay_seconds: float = Field(default=0.1, ge=0)
    compression: CompressionSettings = Field(default_factory=CompressionSettings)


class CacheSettings(BaseModel):
    enabled: bool = True
    key_prefix: str = "dynamodb-fusion"
    default_expiration_seconds: float = Field(default=300.0, gt=0)
    max_key_length: int = Field(default=250, gt=16)
    l1: L1Settings = Field(default_factory=L1Settings)
    l2: L2Settings = Field(default_factory=L2Settings)


class CircuitBreakerSettings(BaseModel):
    failure_threshold: int = Field(default=5, gt=0)
    open_timeout_seconds: float = Field(default=60.0, gt=0)


class OptimizerSettings(BaseModel):
    """Heuristic weights used when scoring access plans."""

    query_strategy_cost_reduction: float = 70.0
    query_strategy_performance_gain: float = 80.0
    filter_reorder_cost_reduction: float = 10.0
    filter_reorder_performance_gain: float = 15.0
    prefix_match_cost_reduction: float = 5.0
    projection_cost_reduction: float = 20.0
    max_projection_attributes: int = 10
    max_page_size: int = 1000
    min_page_size: int = 10
    index_usage_cost_reduction: float = 60.0
    index_usage_performance_gain: float = 70.0
    pattern_analysis_threshold: int = 100
    pattern_usage_share: float = 0.1
    max_index_recommendations: int = 5
    max_index_cost_reduction: float = 80.0


class BatchSettings(BaseModel):
    max_batch_size: int = Field(default=1000, gt=0)
    optimal_batch_size: int = Field(default=25, gt=0)
    max_concurrent_batches: int = Field(default=5, gt=0)
    max_retry_attempts: int = Field(default=3, ge=1)
    retry_delay_seconds: float = Field(default=1.0, ge=0)
    global_concurrency: int = Field(default=10, gt=0)
    parallel_concurrency: int = Field(default=5, gt=0)
    estimated_ms_per_request: float = 50.0


class StoreSettings(BaseModel):
    """Backing store connection."""

    region_name: str = "us-east-1"
    endpoint_url: Optional[str] = None
    operation_timeout_seconds: float = Field(default=10.0, gt=0)
    max_page_size: int = Field(default=1000, gt=0)
    scan_warning_threshold: int = 1000


class FusionSettings(BaseSettings):
    """Top-level engine settings."""

    model_config = SettingsConfigDict(
        env_prefix="FUSION_",
        env_nested_delimiter="__",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    service_name: str = "dynafusion"
    environment: str = "production"
    log_level: str = "info"
    enable_metrics: bool = True

    cache: CacheSettings = Field(default_factory=CacheSettings)
    circuit_breaker: CircuitBreakerSettings = Field(default_factory=CircuitBreakerSettings)
    optimizer: OptimizerSettings = Field(default_factory=OptimizerSettings)
    batch: BatchSettings = Field(default_factory=BatchSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)

    @property
    def is_development(self) -> bool:
        return self.environment.lower() in ("development", "dev", "local")


def get_settings(**overrides) -> FusionSettings:
    """Load settings from the environment, applying explicit overrides."""
    return FusionSettings(**overrides)
