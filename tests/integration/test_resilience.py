"""
Integration tests for finrollup/resilience.py

Tests circuit breaker and retry with backoff.
"""
import asyncio
import pytest

from finrollup.resilience import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
    RetryConfig,
    retry_with_backoff,
)


class TestCircuitBreaker:
    """Tests for CircuitBreaker class."""

    @pytest.mark.asyncio
    async def test_initial_state_closed(self):
        """Circuit breaker starts in closed state."""
        cb = CircuitBreaker()
        assert cb.state == CircuitState.CLOSED
        assert cb.failure_count == 0
        assert await cb.can_execute()

    @pytest.mark.asyncio
    async def test_records_success(self):
        """Success resets failure count."""
        cb = CircuitBreaker()
        await cb.record_failure()
        await cb.record_failure()
        assert cb.failure_count == 2

        await cb.record_success()
        assert cb.failure_count == 0
        assert cb.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_opens_after_threshold_failures(self):
        """Circuit opens after reaching failure threshold."""
        cb = CircuitBreaker(config=CircuitBreakerConfig(failure_threshold=3, recovery_timeout=1.0))

        for _ in range(3):
            await cb.record_failure()

        assert cb.is_open
        assert not await cb.can_execute()

    @pytest.mark.asyncio
    async def test_half_open_after_recovery_timeout(self):
        """Circuit enters half-open state after recovery timeout."""
        cb = CircuitBreaker(config=CircuitBreakerConfig(failure_threshold=1, recovery_timeout=0.1))

        await cb.record_failure()
        assert cb.state == CircuitState.OPEN

        await asyncio.sleep(0.15)

        assert await cb.can_execute()
        assert cb.state == CircuitState.HALF_OPEN
        # Only one probe allowed
        assert not await cb.can_execute()

    @pytest.mark.asyncio
    async def test_closes_after_success_in_half_open(self):
        """Circuit closes after successful probe."""
        cb = CircuitBreaker(config=CircuitBreakerConfig(failure_threshold=1, recovery_timeout=0.1))

        await cb.record_failure()
        await asyncio.sleep(0.15)
        await cb.can_execute()
        await cb.record_success()

        assert cb.state == CircuitState.CLOSED
        assert cb.failure_count == 0

    @pytest.mark.asyncio
    async def test_reopens_after_failure_in_half_open(self):
        """Circuit reopens after a failed probe."""
        cb = CircuitBreaker(config=CircuitBreakerConfig(failure_threshold=1, recovery_timeout=0.1))

        await cb.record_failure()
        await asyncio.sleep(0.15)
        await cb.can_execute()
        await cb.record_failure()

        assert cb.state == CircuitState.OPEN


class TestRetryWithBackoff:
    """Tests for retry_with_backoff function."""

    @pytest.mark.asyncio
    async def test_succeeds_first_try(self):
        """Returns result if first attempt succeeds."""
        async def fetch():
            return [{"day": "2025-01-15"}]

        result = await retry_with_backoff(fetch, config=RetryConfig(max_attempts=3, base_delay=0.01))
        assert result == [{"day": "2025-01-15"}]

    @pytest.mark.asyncio
    async def test_retries_on_failure(self):
        """Retries on retryable exception up to max_attempts."""
        call_count = 0

        async def fetch():
            nonlocal call_count
            call_count += 1
            if call_count < 3:
                raise ConnectionError("Network error")
            return "success"

        result = await retry_with_backoff(
            fetch,
            config=RetryConfig(max_attempts=3, base_delay=0.01),
            retryable_exceptions=(ConnectionError,),
        )

        assert result == "success"
        assert call_count == 3

    @pytest.mark.asyncio
    async def test_raises_after_max_attempts(self):
        """Raises the last exception after exhausting attempts."""
        call_count = 0

        async def fetch():
            nonlocal call_count
            call_count += 1
            raise ConnectionError("still down")

        with pytest.raises(ConnectionError):
            await retry_with_backoff(
                fetch,
                config=RetryConfig(max_attempts=2, base_delay=0.01),
                retryable_exceptions=(ConnectionError,),
            )
        assert call_count == 2

    @pytest.mark.asyncio
    async def test_non_retryable_propagates_immediately(self):
        """Exceptions outside retryable_exceptions are not retried."""
        call_count = 0

        async def fetch():
            nonlocal call_count
            call_count += 1
            raise ValueError("bad input")

        with pytest.raises(ValueError):
            await retry_with_backoff(
                fetch,
                config=RetryConfig(max_attempts=3, base_delay=0.01),
                retryable_exceptions=(ConnectionError,),
            )
        assert call_count == 1

    @pytest.mark.asyncio
    async def test_passes_arguments(self):
        """Positional and keyword arguments reach the function."""
        async def fetch(org, start, tz=None):
            return (org, start, tz)

        result = await retry_with_backoff(fetch, "org-1", "2025-01-01", tz="UTC")
        assert result == ("org-1", "2025-01-01", "UTC")


class TestRetryConfig:
    """Tests for RetryConfig delays."""

    def test_delay_grows_and_caps(self):
        config = RetryConfig(base_delay=1.0, max_delay=4.0, jitter=0.0)

        assert config.delay_for(1) == 1.0
        assert config.delay_for(2) == 2.0
        assert config.delay_for(5) == 4.0
