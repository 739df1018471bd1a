"""
MealSnap Backend — Retry With Backoff Tests
=============================================

What we test:
    ✅ First success returns without sleeping
    ✅ Exponential schedule: base, base*2, base*4
    ✅ max_attempts retries means max_attempts + 1 calls
    ✅ CircuitBreakerOpenError is never retried
    ✅ Retries stop once the breaker opens
    ✅ Attempt count and circuit state land in the error context
"""

from unittest.mock import AsyncMock

import pytest

from mealsnap.exceptions import CircuitBreakerOpenError, MealDetectionError
from mealsnap.services.circuit_breaker import CircuitBreaker
from mealsnap.services.retry import retry_with_backoff


class TestRetryWithBackoff:
    """Tests for retry_with_backoff()."""

    @pytest.mark.asyncio
    async def test_first_success_does_not_sleep(self, fake_sleep):
        operation = AsyncMock(return_value="done")
        result = await retry_with_backoff(operation, sleep=fake_sleep)
        assert result == "done"
        assert operation.await_count == 1
        assert fake_sleep.delays == []

    @pytest.mark.asyncio
    async def test_success_after_failures(self, fake_sleep):
        """Two transient failures, then success on the third call."""
        operation = AsyncMock(
            side_effect=[MealDetectionError("down"), MealDetectionError("down"), "done"]
        )
        result = await retry_with_backoff(operation, base_delay_ms=1000, sleep=fake_sleep)
        assert result == "done"
        assert operation.await_count == 3
        assert fake_sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_exhausts_with_exponential_schedule(self, fake_sleep):
        """Three retries at base 2000ms: 4 calls, sleeps of 2s, 4s and 8s."""
        operation = AsyncMock(side_effect=MealDetectionError("down"))
        with pytest.raises(MealDetectionError) as exc_info:
            await retry_with_backoff(
                operation, max_attempts=3, base_delay_ms=2000, sleep=fake_sleep
            )
        assert operation.await_count == 4
        assert fake_sleep.delays == [2.0, 4.0, 8.0]
        assert exc_info.value.context["attempts"] == 4

    @pytest.mark.asyncio
    async def test_zero_retries_calls_once(self, fake_sleep):
        operation = AsyncMock(side_effect=MealDetectionError("down"))
        with pytest.raises(MealDetectionError):
            await retry_with_backoff(operation, max_attempts=0, sleep=fake_sleep)
        assert operation.await_count == 1

    @pytest.mark.asyncio
    async def test_negative_max_attempts_rejected(self, fake_sleep):
        with pytest.raises(ValueError):
            await retry_with_backoff(AsyncMock(), max_attempts=-1, sleep=fake_sleep)

    @pytest.mark.asyncio
    async def test_circuit_open_is_not_retried(self, fake_sleep):
        """An open circuit fails immediately, without sleeping."""
        operation = AsyncMock(side_effect=CircuitBreakerOpenError(recovery_time=42))
        with pytest.raises(CircuitBreakerOpenError):
            await retry_with_backoff(operation, sleep=fake_sleep)
        assert operation.await_count == 1
        assert fake_sleep.delays == []

    @pytest.mark.asyncio
    async def test_stops_when_breaker_opens(self, fake_sleep):
        """Failures that trip the breaker end the retry loop early."""
        breaker = CircuitBreaker(volume_threshold=2, reset_timeout=60)

        async def _failing_call():
            async def _request():
                raise MealDetectionError("down")

            return await breaker.call(_request)

        calls = []

        async def operation():
            calls.append(1)
            return await _failing_call()

        with pytest.raises(MealDetectionError) as exc_info:
            await retry_with_backoff(operation, max_attempts=5, breaker=breaker, sleep=fake_sleep)

        assert len(calls) == 2
        assert fake_sleep.delays == [1.0]
        assert exc_info.value.context["attempts"] == 2
        assert exc_info.value.context["circuit_state"] == "open"

    @pytest.mark.asyncio
    async def test_non_application_errors_are_reraised(self, fake_sleep):
        """Foreign exceptions are retried and re-raised unchanged."""
        operation = AsyncMock(side_effect=RuntimeError("bug"))
        with pytest.raises(RuntimeError, match="bug"):
            await retry_with_backoff(operation, max_attempts=1, sleep=fake_sleep)
        assert operation.await_count == 2
