"""
Resilience patterns for the hosted source client.

Provides:
- Exponential backoff retry
- Circuit breaker
"""
import asyncio
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from finrollup.observability import get_logger

logger = get_logger(__name__)


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"        # Normal operation
    OPEN = "open"            # Source failing, reject calls
    HALF_OPEN = "half_open"  # Probing recovery


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_attempts: int = 3
    base_delay: float = 0.5  # seconds
    max_delay: float = 8.0   # seconds
    exponential_base: float = 2.0
    jitter: float = 0.1      # random jitter factor

    def delay_for(self, attempt: int) -> float:
        """Backoff delay after the given (1-based) failed attempt."""
        delay = min(self.base_delay * (self.exponential_base ** (attempt - 1)), self.max_delay)
        return delay + delay * self.jitter * random.random()


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker."""
    failure_threshold: int = 5      # consecutive failures before opening
    recovery_timeout: float = 30.0  # seconds before probing again
    half_open_requests: int = 1     # probes allowed while half-open


class CircuitOpenError(Exception):
    """Raised when circuit breaker is open."""
    pass


@dataclass
class CircuitBreaker:
    """
    Circuit breaker shared by all calls to one source.

    States:
    - CLOSED: calls pass through
    - OPEN: calls fail immediately with CircuitOpenError
    - HALF_OPEN: a limited number of probe calls test recovery
    """
    config: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    last_failure_time: float = 0
    half_open_attempts: int = 0

    def __post_init__(self):
        self._lock = asyncio.Lock()

    async def can_execute(self) -> bool:
        """Check if a call may proceed."""
        async with self._lock:
            if self.state == CircuitState.CLOSED:
                return True

            if self.state == CircuitState.OPEN:
                if time.monotonic() - self.last_failure_time >= self.config.recovery_timeout:
                    logger.info("Circuit breaker entering half-open state")
                    self.state = CircuitState.HALF_OPEN
                    self.half_open_attempts = 1
                    return True
                return False

            if self.half_open_attempts < self.config.half_open_requests:
                self.half_open_attempts += 1
                return True
            return False

    async def record_success(self) -> None:
        async with self._lock:
            if self.state == CircuitState.HALF_OPEN:
                logger.info("Circuit breaker closing after successful probe")
            self.state = CircuitState.CLOSED
            self.failure_count = 0

    async def record_failure(self) -> None:
        async with self._lock:
            self.failure_count += 1
            self.last_failure_time = time.monotonic()

            if self.state == CircuitState.HALF_OPEN:
                logger.warning("Circuit breaker re-opening after failed probe")
                self.state = CircuitState.OPEN

            elif self.state == CircuitState.CLOSED and self.failure_count >= self.config.failure_threshold:
                logger.warning(f"Circuit breaker opening after {self.failure_count} failures")
                self.state = CircuitState.OPEN

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN


async def retry_with_backoff(
    func: Callable[..., Any],
    *args,
    config: Optional[RetryConfig] = None,
    retryable_exceptions: tuple = (Exception,),
    **kwargs
) -> Any:
    """
    Execute an async function with exponential backoff retry.

    Args:
        func: Async function to execute
        *args: Positional arguments for func
        config: Retry configuration
        retryable_exceptions: Exceptions to retry on; anything else propagates at once
        **kwargs: Keyword arguments for func

    Returns:
        Result of func

    Raises:
        The last exception if all attempts fail
    """
    config = config or RetryConfig()

    for attempt in range(1, config.max_attempts + 1):
        try:
            return await func(*args, **kwargs)
        except retryable_exceptions as e:
            if attempt == config.max_attempts:
                logger.error(
                    f"All {config.max_attempts} attempts failed",
                    extra={"error": str(e)}
                )
                raise

            delay = config.delay_for(attempt)
            logger.warning(
                f"Attempt {attempt} failed, retrying in {delay:.2f}s",
                extra={"attempt": attempt, "error": str(e)}
            )
            await asyncio.sleep(delay)
