"""
Error taxonomy for the fusion engine.

Every failure surfaced to a caller is a ``FusionError`` carrying a stable
code, an HTTP-equivalent status and a retryable flag. Cache errors are the
exception to the rule: they are logged and absorbed by the cache layer.
"""

from typing import Dict, Any, List, Optional

from opentelemetry import trace
from pydantic import BaseModel, Field


class FieldError(BaseModel):
    """A single field-level validation failure."""

    field: str
    message: str
    code: str = "INVALID"


class ErrorResponse(BaseModel):
    """Standard error response format."""

    trace_id: Optional[str] = None
    code: str
    message: str
    retryable: bool = False
    retry_after: Optional[float] = None
    details: Dict[str, Any] = Field(default_factory=dict)


def current_trace_id() -> Optional[str]:
    """Return the active OpenTelemetry trace id, if any."""
    current_span = trace.get_current_span()
    if current_span and current_span.is_recording():
        span_context = current_span.get_span_context()
        if span_context.trace_id != 0:
            return f"{span_context.trace_id:032x}"
    return None


class FusionError(Exception):
    """Base exception for the fusion engine."""

    retryable = False
    http_status = 500

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    @property
    def retry_after(self) -> Optional[float]:
        return None

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            trace_id=current_trace_id(),
            code=self.code,
            message=self.message,
            retryable=self.retryable,
            retry_after=self.retry_after,
            details=self.details
        )


class ValidationError(FusionError):
    """Malformed request or batch; lists every violation found."""

    http_status = 400

    def __init__(self,
                 message: str = "Validation failed",
                 field_errors: Optional[List[FieldError]] = None,
                 details: Optional[Dict[str, Any]] = None):
        self.field_errors = list(field_errors or [])
        details = dict(details or {})
        if self.field_errors:
            details["errors"] = [error.model_dump() for error in self.field_errors]
        super().__init__("VALIDATION_ERROR", message, details)


class ResourceNotFoundError(FusionError):
    """The requested table or index does not exist."""

    http_status = 404

    def __init__(self, resource: str, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.resource = resource
        super().__init__("RESOURCE_NOT_FOUND", message or f"Resource '{resource}' was not found", details)


class ThrottlingError(FusionError):
    """The backing store rejected the call for exceeding its throughput."""

    retryable = True
    http_status = 429

    def __init__(self,
                 message: str = "Request rate exceeded",
                 retry_after: float = 1.0,
                 details: Optional[Dict[str, Any]] = None):
        self._retry_after = retry_after
        super().__init__("THROTTLED", message, details)

    @property
    def retry_after(self) -> Optional[float]:
        return self._retry_after


class ServiceUnavailableError(FusionError):
    """Circuit open or transient backing store failure."""

    retryable = True
    http_status = 503

    def __init__(self,
                 message: str = "Service temporarily unavailable",
                 retry_after: Optional[float] = None,
                 operation_key: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        self._retry_after = retry_after
        self.operation_key = operation_key
        details = dict(details or {})
        if operation_key:
            details["operation_key"] = operation_key
        super().__init__("SERVICE_UNAVAILABLE", message, details)

    @property
    def retry_after(self) -> Optional[float]:
        return self._retry_after


class OperationTimeoutError(FusionError):
    """A backing store call exceeded its per-call timeout."""

    retryable = True
    http_status = 504

    def __init__(self, operation: str, timeout: float, details: Optional[Dict[str, Any]] = None):
        self.operation = operation
        self.timeout = timeout
        super().__init__(
            "OPERATION_TIMEOUT",
            f"Operation '{operation}' timed out after {timeout:g}s",
            details
        )


class CacheError(FusionError):
    """Cache tier failure. Never propagated past the cache layer."""

    retryable = True

    def __init__(self, message: str = "Cache operation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("CACHE_ERROR", message, details)


class QueryOptimizationError(FusionError):
    """The optimizer could not produce a plan."""

    def __init__(self, message: str = "Query optimization failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("QUERY_OPTIMIZATION_ERROR", message, details)


class ConfigurationError(FusionError):
    """Invalid engine configuration."""

    def __init__(self, message: str = "Invalid configuration", details: Optional[Dict[str, Any]] = None):
        super().__init__("CONFIGURATION_ERROR", message, details)


class BatchExecutionError(FusionError):
    """Every request in a sub-batch failed."""

    retryable = True
    http_status = 502

    def __init__(self, message: str = "Batch execution failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("BATCH_EXECUTION_ERROR", message, details)


# Failures caused by the caller rather than the dependency being called
CLIENT_ERRORS = (ValidationError, ResourceNotFoundError)
