"""
Retry backoff and circuit breaking for chain provider calls.
"""

import asyncio
import inspect
import logging
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Type

from pool_event_indexer.exceptions import IndexerError, ProviderError

logger = logging.getLogger(__name__)


class CircuitBreakerState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerOpenError(ProviderError):
    """The provider circuit is open; no request was sent."""

    def __init__(self, message: str, retry_after: float = 0.0):
        super().__init__(message)
        self.retry_after = retry_after


@dataclass
class RetryConfig:
    """Exponential backoff: ``base_delay * backoff_factor ** attempt``, capped at ``max_delay``."""
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    backoff_factor: float = 2.0
    jitter: bool = True

    @classmethod
    def from_error_config(cls, error_config) -> 'RetryConfig':
        return cls(
            max_retries=error_config.max_retries,
            base_delay=error_config.base_delay,
            max_delay=error_config.max_delay,
            backoff_factor=error_config.backoff_factor,
        )

    def get_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt + 1``."""
        delay = min(self.base_delay * (self.backoff_factor ** attempt), self.max_delay)
        if self.jitter:
            # Sibling workers failing together retry apart
            delay *= random.uniform(0.5, 1.0)
        return delay


class CircuitBreaker:
    """
    Stops calling a failing endpoint for ``recovery_timeout`` seconds.

    Opens after ``failure_threshold`` consecutive failures of
    ``expected_exception``. After the timeout one trial call is let through;
    success closes the circuit, failure reopens it.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 300.0,
        expected_exception: Type[BaseException] = Exception,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exception = expected_exception
        self._clock = clock

        self._state = CircuitBreakerState.CLOSED
        self._failure_count = 0
        self._opened_at: Optional[float] = None

    @property
    def state(self) -> CircuitBreakerState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def retry_after(self) -> float:
        """Seconds until an open circuit lets a trial call through."""
        if self._state != CircuitBreakerState.OPEN or self._opened_at is None:
            return 0.0
        return max(0.0, self._opened_at + self.recovery_timeout - self._clock())

    async def call(self, func: Callable[..., Any], *args, **kwargs) -> Any:
        """
        Call ``func`` (sync or async) through the breaker.

        Raises:
            CircuitBreakerOpenError: The circuit is open
        """
        if self._state == CircuitBreakerState.OPEN:
            wait = self.retry_after()
            if wait > 0:
                raise CircuitBreakerOpenError(
                    f"Circuit open after {self._failure_count} failures, retry in {wait:.0f}s",
                    retry_after=wait,
                )
            self._state = CircuitBreakerState.HALF_OPEN
            logger.info("Circuit half-open, sending trial request")

        try:
            result = func(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
        except self.expected_exception:
            self._on_failure()
            raise

        if self._state == CircuitBreakerState.HALF_OPEN:
            logger.info("Circuit closed after successful trial request")
        self._state = CircuitBreakerState.CLOSED
        self._failure_count = 0
        self._opened_at = None
        return result

    def _on_failure(self) -> None:
        self._failure_count += 1
        if self._state == CircuitBreakerState.HALF_OPEN or self._failure_count >= self.failure_threshold:
            self._state = CircuitBreakerState.OPEN
            self._opened_at = self._clock()
            logger.warning(
                f"Circuit opened after {self._failure_count} failures for {self.recovery_timeout}s"
            )

    def reset(self) -> None:
        self._state = CircuitBreakerState.CLOSED
        self._failure_count = 0
        self._opened_at = None


def is_transient(error: BaseException) -> bool:
    """True for indexer errors worth retrying on the same block range."""
    return isinstance(error, IndexerError) and error.transient


class ErrorHandler:
    """Retries transient indexer errors with backoff; everything else propagates."""

    def __init__(self, retry_config: Optional[RetryConfig] = None):
        self.retry_config = retry_config or RetryConfig()

    async def with_retry(self, func: Callable[..., Awaitable[Any]], context: str, *args, **kwargs) -> Any:
        """
        Await ``func(*args, **kwargs)``, retrying up to ``max_retries`` times.

        Raises:
            The last error once retries are exhausted, or the first
            non-transient one
        """
        config = self.retry_config
        attempt = 0
        while True:
            try:
                return await func(*args, **kwargs)
            except IndexerError as e:
                if not is_transient(e) or attempt >= config.max_retries:
                    if is_transient(e):
                        logger.error(f"Giving up on {context} after {attempt + 1} attempts: {e}")
                    raise
                delay = config.get_delay(attempt)
                logger.warning(f"{context} failed ({e}); retry {attempt + 1}/{config.max_retries} in {delay:.2f}s")
                await asyncio.sleep(delay)
                attempt += 1
