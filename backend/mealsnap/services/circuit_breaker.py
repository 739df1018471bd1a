"""
MealSnap Backend — Circuit Breaker
====================================

What:  Guards a single outbound dependency with the circuit breaker pattern.
How:   Tracks call outcomes in a rolling time window, opens when the error
       rate crosses a threshold, and probes recovery with one trial call.
Who:   Owned by MealDetectionService (one instance per remote service),
       created by the service container and injected, never a module global.
When:  Around every call to the meal recognition service.

State Machine:
    CLOSED (normal operation)
        → Each outcome is recorded in the rolling window
        → When calls in window >= volume_threshold AND
          error percentage > error_threshold_percentage: transition to OPEN

    OPEN (rejecting all requests)
        → All calls raise CircuitBreakerOpenError without touching the network
        → After reset_timeout seconds: transition to HALF_OPEN

    HALF_OPEN (testing recovery)
        → Exactly ONE trial call is let through; concurrent calls fail fast
        → On success: transition to CLOSED (window cleared)
        → On failure: transition back to OPEN (cool-down restarts)

Every guarded call carries a hard timeout; a timeout is a failure.
Transitions are logged and pushed to registered listeners.

Thread Safety:
    State and counters are mutated only under a threading.RLock, and the lock
    is never held across an await, so one instance can be shared by every
    coroutine in the process (and by threads, if a sync caller appears).
"""

import asyncio
import logging
import threading
import time
from collections import deque
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, List, Optional, Tuple, TypeVar

from mealsnap.exceptions import CircuitBreakerOpenError, MealDetectionError

logger = logging.getLogger(__name__)

T = TypeVar("T")

StateListener = Callable[["CircuitState", "CircuitState"], None]


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Rolling-window, error-percentage circuit breaker for async calls.

    Args:
        name: Dependency name used in logs and errors
        error_threshold_percentage: Error rate (0-100) that must be exceeded to open
        reset_timeout: Seconds spent OPEN before the HALF_OPEN probe
        rolling_window: Seconds of call history considered for the error rate
        volume_threshold: Minimum calls in the window before the rate is evaluated
        call_timeout: Hard timeout in seconds for each guarded call (None disables)
        clock: Monotonic time source, injectable for tests
    """

    def __init__(
        self,
        name: str = "meal-detection",
        error_threshold_percentage: float = 50.0,
        reset_timeout: float = 60.0,
        rolling_window: float = 10.0,
        volume_threshold: int = 5,
        call_timeout: Optional[float] = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.error_threshold_percentage = error_threshold_percentage
        self.reset_timeout = reset_timeout
        self.rolling_window = rolling_window
        self.volume_threshold = volume_threshold
        self.call_timeout = call_timeout
        self._clock = clock

        self._lock = threading.RLock()
        self._state = CircuitState.CLOSED
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False
        # (timestamp, succeeded) per completed call inside the window
        self._outcomes: Deque[Tuple[float, bool]] = deque()
        self._listeners: List[StateListener] = []

    # ── Observability ─────────────────────────────────────────────────────

    def add_listener(self, listener: StateListener) -> None:
        """Register a callback invoked as listener(old_state, new_state) on transitions."""
        self._listeners.append(listener)

    @property
    def state(self) -> CircuitState:
        """Current state; an expired OPEN cool-down is reported as HALF_OPEN."""
        with self._lock:
            self._refresh_state()
            return self._state

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    def stats(self) -> dict:
        """Snapshot of the rolling window, for health checks and logs."""
        with self._lock:
            self._refresh_state()
            self._prune(self._clock())
            total = len(self._outcomes)
            failures = sum(1 for _, ok in self._outcomes if not ok)
            return {
                "state": self._state.value,
                "calls": total,
                "failures": failures,
                "error_percentage": self._error_percentage(total, failures),
                "retry_after": self._seconds_until_half_open(),
            }

    def retry_after(self) -> int:
        """Whole seconds until an OPEN circuit lets a trial call through (0 otherwise)."""
        with self._lock:
            self._refresh_state()
            return self._seconds_until_half_open()

    # ── Guarded Call ──────────────────────────────────────────────────────

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """
        Run one guarded call.

        Raises:
            CircuitBreakerOpenError: Circuit is OPEN or a trial call is in flight
            MealDetectionError: The call exceeded call_timeout
            Exception: Whatever func raised (recorded as a failure)
        """
        self._acquire_permission()
        try:
            if self.call_timeout is None:
                result = await func(*args, **kwargs)
            else:
                result = await asyncio.wait_for(func(*args, **kwargs), timeout=self.call_timeout)
        except asyncio.TimeoutError as exc:
            self.record_failure()
            raise MealDetectionError(
                message="Meal analysis service did not respond in time.",
                context={"service": self.name, "timeout_seconds": self.call_timeout},
            ) from exc
        except asyncio.CancelledError:
            self._release_trial()
            raise
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    def record_success(self) -> None:
        """Record a successful call; a HALF_OPEN trial success closes the circuit."""
        with self._lock:
            now = self._clock()
            self._trial_in_flight = False
            if self._state == CircuitState.HALF_OPEN:
                self._outcomes.clear()
                self._opened_at = None
                self._transition(CircuitState.CLOSED)
                return
            self._outcomes.append((now, True))
            self._prune(now)

    def record_failure(self) -> None:
        """Record a failed call; may trip CLOSED → OPEN or HALF_OPEN → OPEN."""
        with self._lock:
            now = self._clock()
            self._trial_in_flight = False
            if self._state == CircuitState.HALF_OPEN:
                self._opened_at = now
                self._transition(CircuitState.OPEN)
                return
            self._outcomes.append((now, False))
            self._prune(now)
            if self._state == CircuitState.CLOSED and self._should_trip():
                self._opened_at = now
                self._transition(CircuitState.OPEN)

    def reset(self) -> None:
        """Force the circuit CLOSED and forget the window (admin/test use)."""
        with self._lock:
            self._outcomes.clear()
            self._opened_at = None
            self._trial_in_flight = False
            if self._state != CircuitState.CLOSED:
                self._transition(CircuitState.CLOSED)

    # ── Internals (call with self._lock held) ─────────────────────────────

    def _acquire_permission(self) -> None:
        with self._lock:
            self._refresh_state()
            if self._state == CircuitState.OPEN:
                raise CircuitBreakerOpenError(
                    recovery_time=self._seconds_until_half_open(),
                    service=self.name,
                    context={"circuit_state": self._state.value},
                )
            if self._state == CircuitState.HALF_OPEN:
                if self._trial_in_flight:
                    raise CircuitBreakerOpenError(
                        recovery_time=1,
                        service=self.name,
                        context={"circuit_state": self._state.value},
                    )
                self._trial_in_flight = True

    def _release_trial(self) -> None:
        with self._lock:
            self._trial_in_flight = False

    def _refresh_state(self) -> None:
        if self._state == CircuitState.OPEN and self._opened_at is not None:
            if self._clock() - self._opened_at >= self.reset_timeout:
                self._transition(CircuitState.HALF_OPEN)

    def _prune(self, now: float) -> None:
        horizon = now - self.rolling_window
        while self._outcomes and self._outcomes[0][0] < horizon:
            self._outcomes.popleft()

    def _should_trip(self) -> bool:
        total = len(self._outcomes)
        if total < self.volume_threshold:
            return False
        failures = sum(1 for _, ok in self._outcomes if not ok)
        return self._error_percentage(total, failures) > self.error_threshold_percentage

    @staticmethod
    def _error_percentage(total: int, failures: int) -> float:
        if total == 0:
            return 0.0
        return failures * 100.0 / total

    def _seconds_until_half_open(self) -> int:
        if self._state != CircuitState.OPEN or self._opened_at is None:
            return 0
        remaining = self.reset_timeout - (self._clock() - self._opened_at)
        return max(1, int(remaining + 0.999))

    def _transition(self, new_state: CircuitState) -> None:
        old_state = self._state
        self._state = new_state
        if new_state == CircuitState.OPEN:
            logger.warning(
                "Circuit breaker '%s' OPEN (was %s); rejecting calls for %.0fs",
                self.name,
                old_state.value,
                self.reset_timeout,
            )
        elif new_state == CircuitState.HALF_OPEN:
            logger.info("Circuit breaker '%s' HALF_OPEN; allowing one trial call", self.name)
        else:
            logger.info("Circuit breaker '%s' CLOSED (was %s)", self.name, old_state.value)
        for listener in self._listeners:
            try:
                listener(old_state, new_state)
            except Exception:
                logger.exception("Circuit breaker listener failed on %s", new_state.value)
