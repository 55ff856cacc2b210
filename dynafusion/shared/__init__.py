"""
Cross-cutting infrastructure for the fusion engine.

- config: pydantic-settings configuration tree.
- logging: structlog setup and correlation context.
- errors: typed, retryable-flagged failure taxonomy.
- metrics: Prometheus collectors (fire-and-forget).
- retry: bounded retry with backoff.
- circuit_breaker: per-operation breakers and their registry.
"""
