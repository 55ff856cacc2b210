"""
Circuit breaker pattern implementation for resilient store calls.

One breaker exists per operation key. State transitions for a key are
serialized under that breaker's own lock; breakers for different keys never
contend with each other.
"""

import time
import asyncio
import threading
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Dict, Any, Optional, Callable, Awaitable, Tuple, Type

from .errors import ServiceUnavailableError
from .logging import get_logger
from .metrics import MetricsCollector


class CircuitBreakerState(str, Enum):
    """Circuit breaker states."""
    CLOSED = "closed"        # Normal operation
    OPEN = "open"            # Failing, requests blocked
    HALF_OPEN = "half_open"  # Single trial call in flight


@dataclass
class CircuitBreakerConfig:
    """Thresholds for a single breaker."""

    failure_threshold: int = 5
    open_timeout_seconds: float = 60.0
    # Errors that say nothing about the dependency's health
    ignored_exceptions: Tuple[Type[BaseException], ...] = field(default_factory=tuple)

    @classmethod
    def default(cls) -> "CircuitBreakerConfig":
        return cls()

    @classmethod
    def conservative(cls) -> "CircuitBreakerConfig":
        return cls(failure_threshold=3, open_timeout_seconds=300.0)

    @classmethod
    def aggressive(cls) -> "CircuitBreakerConfig":
        return cls(failure_threshold=10, open_timeout_seconds=30.0)


@dataclass(frozen=True)
class CircuitBreakerSnapshot:
    """Point-in-time view of a breaker."""

    operation_key: str
    state: CircuitBreakerState
    failure_count: int
    last_failure_time: Optional[float]
    next_attempt_time: Optional[float]
    failure_threshold: int
    open_timeout_seconds: float

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        return data


class CircuitBreaker:
    """Per-operation circuit breaker."""

    def __init__(self,
                 operation_key: str,
                 config: Optional[CircuitBreakerConfig] = None,
                 metrics: Optional[MetricsCollector] = None,
                 clock: Callable[[], float] = time.time):
        self.operation_key = operation_key
        self.config = config or CircuitBreakerConfig()
        self.metrics = metrics
        self.clock = clock
        self.logger = get_logger(f"dynafusion.circuit_breaker.{operation_key}")

        self._lock = threading.Lock()
        self._state = CircuitBreakerState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None
        self._next_attempt_time: Optional[float] = None
        self._trial_in_flight = False
        self._generation = 0

    @property
    def state(self) -> CircuitBreakerState:
        with self._lock:
            return self._state

    def _acquire_permission(self) -> Optional[int]:
        """Decide whether a call may run, moving Open to HalfOpen when due.

        Returns the generation the call was admitted under, or None when
        rejected. Every state change starts a new generation.
        """
        with self._lock:
            if self._state == CircuitBreakerState.CLOSED:
                return self._generation

            if self._state == CircuitBreakerState.OPEN:
                if self._next_attempt_time is not None and self.clock() < self._next_attempt_time:
                    return None
                self._state = CircuitBreakerState.HALF_OPEN
                self._generation += 1
                self._trial_in_flight = True
                transitioned = True
            elif self._trial_in_flight:
                return None
            else:
                self._trial_in_flight = True
                transitioned = False
            generation = self._generation

        if transitioned:
            self.logger.info("Circuit breaker transitioning to half-open")
            self._publish_state(CircuitBreakerState.HALF_OPEN)
        return generation

    def _record_success(self, generation: int):
        with self._lock:
            if generation != self._generation:
                return
            previous = self._state
            if previous == CircuitBreakerState.HALF_OPEN:
                self._state = CircuitBreakerState.CLOSED
                self._generation += 1
                self._failure_count = 0
                self._next_attempt_time = None
                self._trial_in_flight = False
            elif self._failure_count > 0:
                self._failure_count -= 1

        if previous == CircuitBreakerState.HALF_OPEN:
            self.logger.info("Circuit breaker reset to CLOSED after successful trial")
            self._publish_state(CircuitBreakerState.CLOSED)

    def _record_failure(self, generation: int) -> bool:
        """Count a failure; returns True when the breaker is now open."""
        with self._lock:
            if generation != self._generation:
                # Admitted before the last state change; the outcome is stale
                return self._state == CircuitBreakerState.OPEN

            now = self.clock()
            self._failure_count += 1
            self._last_failure_time = now
            opened = False

            if (self._state == CircuitBreakerState.HALF_OPEN
                    or self._failure_count >= self.config.failure_threshold):
                opened = True
                self._state = CircuitBreakerState.OPEN
                self._generation += 1
                self._next_attempt_time = now + self.config.open_timeout_seconds
                self._trial_in_flight = False

            failure_count = self._failure_count
            is_open = self._state == CircuitBreakerState.OPEN

        if opened:
            self.logger.warning(
                "Circuit breaker opened due to failures",
                failure_count=failure_count,
                threshold=self.config.failure_threshold,
                open_timeout=self.config.open_timeout_seconds
            )
            self._publish_state(CircuitBreakerState.OPEN)
        return is_open

    def _abandon_trial(self, generation: int):
        """Release a half-open trial slot whose call never completed."""
        with self._lock:
            if generation == self._generation and self._state == CircuitBreakerState.HALF_OPEN:
                self._trial_in_flight = False

    def retry_after(self) -> float:
        """Seconds until the breaker will admit a trial call."""
        with self._lock:
            if self._state == CircuitBreakerState.CLOSED or self._next_attempt_time is None:
                return 0.0
            return max(0.0, self._next_attempt_time - self.clock())

    async def execute(self,
                      primary: Callable[[], Awaitable[Any]],
                      fallback: Optional[Callable[[], Awaitable[Any]]] = None) -> Any:
        """Run ``primary`` under breaker protection.

        A rejected call is routed to ``fallback`` when given, otherwise it
        raises ``ServiceUnavailableError`` with the time left until retry.
        A failure that leaves the breaker open is also answered by the
        fallback; failures with the breaker still closed propagate.
        """
        generation = self._acquire_permission()
        if generation is None:
            retry_after = self.retry_after()
            if self.metrics:
                self.metrics.record_circuit_rejection(self.operation_key)
            self.logger.debug("Circuit breaker rejected call", retry_after=retry_after)
            if fallback is not None:
                return await fallback()
            raise ServiceUnavailableError(
                f"Circuit breaker '{self.operation_key}' is open",
                retry_after=retry_after,
                operation_key=self.operation_key
            )

        try:
            result = await primary()
        except asyncio.CancelledError:
            self._abandon_trial(generation)
            raise
        except self.config.ignored_exceptions:
            self._record_success(generation)
            raise
        except Exception as e:
            is_open = self._record_failure(generation)
            if is_open and fallback is not None:
                self.logger.warning(
                    "Primary operation failed, using fallback",
                    error=str(e) or type(e).__name__
                )
                try:
                    return await fallback()
                except Exception as fallback_error:
                    raise ServiceUnavailableError(
                        "Both primary operation and fallback failed",
                        retry_after=self.retry_after(),
                        operation_key=self.operation_key,
                        details={"primary_error": str(e), "fallback_error": str(fallback_error)}
                    ) from fallback_error
            raise

        self._record_success(generation)
        return result

    def snapshot(self) -> CircuitBreakerSnapshot:
        """Get current circuit breaker state."""
        with self._lock:
            return CircuitBreakerSnapshot(
                operation_key=self.operation_key,
                state=self._state,
                failure_count=self._failure_count,
                last_failure_time=self._last_failure_time,
                next_attempt_time=self._next_attempt_time,
                failure_threshold=self.config.failure_threshold,
                open_timeout_seconds=self.config.open_timeout_seconds
            )

    def reset(self):
        """Force the breaker back to CLOSED."""
        with self._lock:
            self._state = CircuitBreakerState.CLOSED
            self._failure_count = 0
            self._last_failure_time = None
            self._next_attempt_time = None
            self._trial_in_flight = False
            self._generation += 1
        self.logger.info("Circuit breaker manually reset")
        self._publish_state(CircuitBreakerState.CLOSED)

    def is_open(self) -> bool:
        """Check if circuit breaker is in OPEN state."""
        return self.state == CircuitBreakerState.OPEN

    def _publish_state(self, state: CircuitBreakerState):
        if self.metrics:
            self.metrics.record_circuit_state(self.operation_key, state.value)


class CircuitBreakerManager:
    """Registry of lazily created breakers keyed by operation."""

    def __init__(self,
                 default_config: Optional[CircuitBreakerConfig] = None,
                 metrics: Optional[MetricsCollector] = None,
                 clock: Callable[[], float] = time.time):
        self.default_config = default_config or CircuitBreakerConfig()
        self.metrics = metrics
        self.clock = clock
        self.circuit_breakers: Dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()
        self.logger = get_logger("dynafusion.circuit_breaker_manager")

    def get_circuit_breaker(self, operation_key: str,
                            config: Optional[CircuitBreakerConfig] = None) -> CircuitBreaker:
        """Get or create a circuit breaker.

        ``config`` only applies when the breaker is created.
        """
        breaker = self.circuit_breakers.get(operation_key)
        if breaker is not None:
            return breaker

        with self._lock:
            breaker = self.circuit_breakers.get(operation_key)
            if breaker is None:
                breaker = CircuitBreaker(
                    operation_key,
                    config=config or self.default_config,
                    metrics=self.metrics,
                    clock=self.clock
                )
                self.circuit_breakers[operation_key] = breaker
                self.logger.info("Created circuit breaker", operation_key=operation_key)
        return breaker

    async def execute(self,
                      operation_key: str,
                      primary: Callable[[], Awaitable[Any]],
                      fallback: Optional[Callable[[], Awaitable[Any]]] = None,
                      config: Optional[CircuitBreakerConfig] = None) -> Any:
        """Run ``primary`` through the breaker for ``operation_key``."""
        breaker = self.get_circuit_breaker(operation_key, config)
        return await breaker.execute(primary, fallback)

    def get_state(self, operation_key: str) -> CircuitBreakerSnapshot:
        """Snapshot for a key; unknown keys report a fresh CLOSED breaker."""
        breaker = self.circuit_breakers.get(operation_key)
        if breaker is not None:
            return breaker.snapshot()
        return CircuitBreakerSnapshot(
            operation_key=operation_key,
            state=CircuitBreakerState.CLOSED,
            failure_count=0,
            last_failure_time=None,
            next_attempt_time=None,
            failure_threshold=self.default_config.failure_threshold,
            open_timeout_seconds=self.default_config.open_timeout_seconds
        )

    def reset(self, operation_key: str) -> bool:
        """Reset one breaker; returns False when the key is unknown."""
        breaker = self.circuit_breakers.get(operation_key)
        if breaker is None:
            return False
        breaker.reset()
        return True

    def get_all_states(self) -> Dict[str, CircuitBreakerSnapshot]:
        """Get states of all circuit breakers."""
        with self._lock:
            breakers = list(self.circuit_breakers.items())
        return {key: breaker.snapshot() for key, breaker in breakers}
