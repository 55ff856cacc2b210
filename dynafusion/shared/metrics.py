"""
Prometheus metrics for the fusion engine.

Recording is fire-and-forget: a failing collector is logged at debug level
and never surfaces to the caller.
"""

from typing import Dict, Any, Optional

from prometheus_client import Counter, Histogram, Gauge, Info, CollectorRegistry

from .logging import get_logger


CIRCUIT_STATE_VALUES = {"closed": 0, "half_open": 1, "open": 2}


class MetricsCollector:
    """Centralized metrics collector for the engine."""

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry if registry is not None else CollectorRegistry()
        self.logger = get_logger("dynafusion.metrics")
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up engine metrics."""

        self._metrics["service_info"] = Info(
            "fusion_service",
            "Fusion engine information",
            registry=self.registry
        )
        self._metrics["service_info"].info({
            "service": self.service_name,
            "version": "0.1.0"
        })

        self._metrics["requests_total"] = Counter(
            "fusion_requests_total",
            "Total engine requests",
            ["operation", "table", "status"],
            registry=self.registry
        )

        self._metrics["request_duration_seconds"] = Histogram(
            "fusion_request_duration_seconds",
            "Engine request duration in seconds",
            ["operation", "table"],
            registry=self.registry
        )

        self._metrics["errors_total"] = Counter(
            "fusion_errors_total",
            "Total errors",
            ["error_type", "operation"],
            registry=self.registry
        )

        self._metrics["query_execution_seconds"] = Histogram(
            "fusion_query_execution_seconds",
            "Backing store call duration in seconds",
            ["operation_type", "table"],
            registry=self.registry
        )

        self._metrics["items_returned_total"] = Counter(
            "fusion_items_returned_total",
            "Items returned by the backing store",
            ["operation_type", "table"],
            registry=self.registry
        )

        self._metrics["cache_operations_total"] = Counter(
            "fusion_cache_operations_total",
            "Cache operations by tier and outcome",
            ["operation", "level", "result"],
            registry=self.registry
        )

        self._metrics["cache_operation_seconds"] = Histogram(
            "fusion_cache_operation_seconds",
            "Cache operation duration in seconds",
            ["operation", "level"],
            registry=self.registry
        )

        self._metrics["circuit_breaker_state"] = Gauge(
            "fusion_circuit_breaker_state",
            "Circuit breaker state (0=closed, 1=half_open, 2=open)",
            ["operation_key"],
            registry=self.registry
        )

        self._metrics["circuit_breaker_rejections_total"] = Counter(
            "fusion_circuit_breaker_rejections_total",
            "Calls rejected by an open circuit",
            ["operation_key"],
            registry=self.registry
        )

        self._metrics["batch_units_total"] = Counter(
            "fusion_batch_units_total",
            "Executed sub-batches by outcome",
            ["mode", "status"],
            registry=self.registry
        )

        self._metrics["optimizer_recommendations_total"] = Counter(
            "fusion_optimizer_recommendations_total",
            "Optimizer recommendations issued",
            ["type", "impact"],
            registry=self.registry
        )

    def record_request(self, operation: str, table: str, status: str, duration: float):
        """Record an engine-level request."""
        self.increment_counter("requests_total", operation=operation, table=table, status=status)
        self.observe_histogram("request_duration_seconds", duration, operation=operation, table=table)

    def record_error(self, error_type: str, operation: str):
        """Record error metrics."""
        self.increment_counter("errors_total", error_type=error_type, operation=operation)

    def record_query_execution(self, operation_type: str, table: str, duration: float, item_count: int):
        """Record a backing store call."""
        self.observe_histogram("query_execution_seconds", duration, operation_type=operation_type, table=table)
        self.increment_counter("items_returned_total", amount=item_count, operation_type=operation_type, table=table)

    def record_cache_operation(self, operation: str, level: str, result: str, duration: Optional[float] = None):
        """Record a cache tier operation."""
        self.increment_counter("cache_operations_total", operation=operation, level=level, result=result)
        if duration is not None:
            self.observe_histogram("cache_operation_seconds", duration, operation=operation, level=level)

    def record_circuit_state(self, operation_key: str, state: str):
        """Publish the current state of a circuit breaker."""
        self.set_gauge("circuit_breaker_state", CIRCUIT_STATE_VALUES.get(state, 0), operation_key=operation_key)

    def record_circuit_rejection(self, operation_key: str):
        self.increment_counter("circuit_breaker_rejections_total", operation_key=operation_key)

    def record_batch_unit(self, mode: str, status: str):
        self.increment_counter("batch_units_total", mode=mode, status=status)

    def record_recommendation(self, recommendation_type: str, impact: str):
        self.increment_counter("optimizer_recommendations_total", type=recommendation_type, impact=impact)

    def increment_counter(self, metric_name: str, amount: float = 1, **labels):
        """Increment a counter metric."""
        try:
            if metric_name in self._metrics:
                self._metrics[metric_name].labels(**labels).inc(amount)
        except Exception as e:
            self.logger.debug("Metric update failed", metric=metric_name, error=str(e))

    def set_gauge(self, metric_name: str, value: float, **labels):
        """Set a gauge metric value."""
        try:
            if metric_name in self._metrics:
                self._metrics[metric_name].labels(**labels).set(value)
        except Exception as e:
            self.logger.debug("Metric update failed", metric=metric_name, error=str(e))

    def observe_histogram(self, metric_name: str, value: float, **labels):
        """Observe a histogram metric."""
        try:
            if metric_name in self._metrics:
                self._metrics[metric_name].labels(**labels).observe(value)
        except Exception as e:
            self.logger.debug("Metric update failed", metric=metric_name, error=str(e))
