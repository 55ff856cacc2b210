"""
Resilient cached execution engine for partition/sort-key NoSQL stores.

The engine decides how a lookup runs (indexed query or scan), where it is
served from (in-process cache, Redis, or the backing store), whether it is
let through (circuit breaker) and how many lookups are batched and
parallelized.

Structure:
- engine: FusionEngine facade and its factory.
- query_service: single-request pipeline (cache, optimize, breaker, store).
- caching: two-tier cache with promotion and eviction.
- optimizer: access-plan rewriting and pattern tracking.
- batch: grouped, parallel and streaming orchestration.
- adapters: backing store clients and value serialization.
- models: request and result types.
- shared: config, logging, errors, metrics, retry, circuit breaker.
"""

__version__ = "0.1.0"

from .engine import FusionEngine, create_engine

__all__ = ["FusionEngine", "create_engine", "__version__"]
