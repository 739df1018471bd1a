"""
MealSnap Backend — Retry With Exponential Backoff
===================================================

What:  Generic async retry helper used around breaker-guarded remote calls.
How:   Tenacity AsyncRetrying with exponential wait; an OPEN circuit stops
       the retry loop immediately instead of sleeping through the schedule.
Who:   MealService wraps MealDetectionService.identify_meal() with it.

Schedule:
    attempt 0 fails → sleep base
    attempt 1 fails → sleep base * 2
    attempt 2 fails → sleep base * 4
    ...
    max_attempts retries → max_attempts + 1 calls in total

Composition:
    retry_with_backoff(lambda: breaker.call(request))
    Each retry attempt is a separate breaker-guarded call, so a circuit that
    opens mid-loop aborts the remaining attempts.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    before_sleep_log,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from mealsnap.exceptions import CircuitBreakerOpenError, MealSnapError
from mealsnap.services.circuit_breaker import CircuitBreaker

logger = logging.getLogger(__name__)

T = TypeVar("T")


class _StopWhenCircuitOpen:
    """Tenacity stop condition that fires once the breaker reports OPEN."""

    def __init__(self, breaker: CircuitBreaker):
        self.breaker = breaker

    def __call__(self, retry_state: RetryCallState) -> bool:
        if self.breaker.is_open:
            logger.warning(
                "Circuit '%s' is open; abandoning retries after attempt %d",
                self.breaker.name,
                retry_state.attempt_number,
            )
            return True
        return False


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    base_delay_ms: int = 1000,
    *,
    breaker: Optional[CircuitBreaker] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """
    Call `operation` until it succeeds, up to max_attempts + 1 times.

    Args:
        operation: Zero-argument coroutine factory; called once per attempt
        max_attempts: Number of retries after the first call
        base_delay_ms: Delay before the first retry; doubles on each retry
        breaker: Breaker fronting the operation; retries stop once it is OPEN
        sleep: Awaitable sleep, injectable for tests

    Returns:
        The first successful result.

    Raises:
        CircuitBreakerOpenError: Immediately, never retried
        Exception: The last error once attempts are exhausted. MealSnap errors
                   get `attempts` (and `circuit_state` when a breaker is given)
                   added to their context.
    """
    if max_attempts < 0:
        raise ValueError("max_attempts must be >= 0")

    stop = stop_after_attempt(max_attempts + 1)
    if breaker is not None:
        stop = stop | _StopWhenCircuitOpen(breaker)

    retrying = AsyncRetrying(
        stop=stop,
        wait=wait_exponential(multiplier=base_delay_ms / 1000.0, exp_base=2),
        retry=retry_if_not_exception_type(CircuitBreakerOpenError),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        sleep=sleep,
        reraise=True,
    )

    attempts = 0

    async def _attempt() -> T:
        nonlocal attempts
        attempts += 1
        return await operation()

    try:
        return await retrying(_attempt)
    except MealSnapError as exc:
        exc.context.setdefault("attempts", attempts)
        if breaker is not None:
            exc.context.setdefault("circuit_state", breaker.state.value)
        if attempts > 1:
            logger.error("Operation failed after %d attempts: %s", attempts, exc.message)
        raise
