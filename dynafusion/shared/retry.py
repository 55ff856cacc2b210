"""
Retry helpers for transient failures.
"""

import asyncio
import random
import functools
from enum import Enum
from typing import Any, Optional, Callable, Awaitable, Tuple, Type

from .logging import get_logger


class BackoffStrategy(str, Enum):
    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    FIXED = "fixed"


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(self,
                 max_attempts: int = 3,
                 base_delay: float = 1.0,
                 max_delay: float = 60.0,
                 exponential_base: float = 2.0,
                 jitter: bool = True,
                 backoff_strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL,
                 attempt_timeout: Optional[float] = None):
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.backoff_strategy = BackoffStrategy(backoff_strategy)
        self.attempt_timeout = attempt_timeout


class RetryError(Exception):
    """Exception raised when all retry attempts are exhausted."""
    def __init__(self, message: str, last_exception: BaseException, attempts: int):
        super().__init__(message)
        self.last_exception = last_exception
        self.attempts = attempts


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Delay before the attempt following ``attempt`` (1-based)."""
    if config.backoff_strategy == BackoffStrategy.EXPONENTIAL:
        delay = config.base_delay * (config.exponential_base ** (attempt - 1))
    elif config.backoff_strategy == BackoffStrategy.LINEAR:
        delay = config.base_delay * attempt
    else:
        delay = config.base_delay

    delay = min(delay, config.max_delay)

    if config.jitter:
        jitter_amount = delay * 0.1
        delay += random.uniform(-jitter_amount, jitter_amount)

    return max(0.0, delay)


async def retry_async(func: Callable[[], Awaitable[Any]],
                      config: Optional[RetryConfig] = None,
                      exceptions: Tuple[Type[BaseException], ...] = (Exception,),
                      should_retry: Optional[Callable[[BaseException], bool]] = None,
                      operation: Optional[str] = None,
                      reraise: bool = False) -> Any:
    """Await ``func`` until it succeeds or the attempts run out.

    Each attempt is bounded by ``config.attempt_timeout`` when set; a timed
    out attempt counts as a failure. Exceptions outside ``exceptions``, or
    rejected by ``should_retry``, propagate immediately without wrapping.
    Exhaustion raises ``RetryError``, or the last error itself with
    ``reraise=True``.
    """
    config = config or RetryConfig()
    name = operation or getattr(func, "__name__", "operation")
    logger = get_logger(f"dynafusion.retry.{name}")
    retryable = tuple(exceptions)
    if config.attempt_timeout is not None:
        retryable = retryable + (asyncio.TimeoutError,)

    last_exception: Optional[BaseException] = None
    for attempt in range(1, config.max_attempts + 1):
        try:
            if config.attempt_timeout is not None:
                result = await asyncio.wait_for(func(), timeout=config.attempt_timeout)
            else:
                result = await func()

            if attempt > 1:
                logger.info("Retry succeeded", attempt=attempt, operation=name)
            return result

        except retryable as e:
            if should_retry is not None and not should_retry(e):
                raise
            last_exception = e

            if attempt == config.max_attempts:
                logger.warning(
                    "All retry attempts exhausted",
                    attempts=config.max_attempts,
                    operation=name,
                    error=str(e) or type(e).__name__
                )
                if reraise:
                    raise
                raise RetryError(
                    f"Operation {name} failed after {config.max_attempts} attempts",
                    last_exception=e,
                    attempts=config.max_attempts
                ) from e

            delay = calculate_delay(attempt, config)
            logger.debug(
                "Retry attempt failed, waiting before next attempt",
                attempt=attempt,
                delay=delay,
                operation=name,
                error=str(e) or type(e).__name__
            )
            await asyncio.sleep(delay)

    # max_attempts is at least one, so the loop always returns or raises
    raise RetryError(f"Operation {name} did not run", last_exception=last_exception, attempts=0)


def retry_on_exception(exceptions: tuple = (Exception,),
                       config: Optional[RetryConfig] = None,
                       should_retry: Optional[Callable[[BaseException], bool]] = None,
                       reraise: bool = False) -> Callable:
    """Decorator for retrying async functions on exceptions."""

    def decorator(func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            return await retry_async(
                lambda: func(*args, **kwargs),
                config=config,
                exceptions=exceptions,
                should_retry=should_retry,
                operation=func.__name__,
                reraise=reraise
            )

        return wrapper

    return decorator


def is_retryable(error: BaseException) -> bool:
    """True for errors flagged retryable by the engine's taxonomy."""
    return bool(getattr(error, "retryable", False))
