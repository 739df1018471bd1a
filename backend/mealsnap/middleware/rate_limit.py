"""
MealSnap Backend — Rate Limiting Middleware
=============================================

What:  Per-caller sliding window rate limiter.
How:   Keeps the request timestamps of each caller in memory. The caller is
       the X-User-ID header when present, otherwise the client IP. Rejected
       requests get 429 with Retry-After.
Who:   Applied to every request except health checks and API docs.

Algorithm: Sliding Window Log
    1. Drop the caller's timestamps older than the window
    2. If the remaining count >= limit, reject
    3. Otherwise record now and let the request through

Scope:
    State is per process. Behind several workers each one enforces the limit
    on its own share of traffic.
"""

import logging
import time
from collections import defaultdict, deque
from typing import Callable, Deque, Dict, Optional

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from mealsnap.config import settings

logger = logging.getLogger(__name__)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    In-memory sliding window rate limiter.

    Args:
        max_requests: Requests allowed per window (default: settings.rate_limit_requests)
        window:       Window length in seconds (default: settings.rate_limit_window)
        clock:        Time source, injectable for tests
    """

    EXCLUDED_PATHS = {"/health", "/docs", "/openapi.json", "/redoc"}

    # Inactive callers are swept every this many recorded requests
    CLEANUP_INTERVAL = 1000

    def __init__(
        self,
        app,
        max_requests: Optional[int] = None,
        window: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(app)
        self.max_requests = max_requests or settings.rate_limit_requests
        self.window = window or settings.rate_limit_window
        self._clock = clock
        self._requests: Dict[str, Deque[float]] = defaultdict(deque)
        self._since_cleanup = 0

    @staticmethod
    def caller_key(request: Request) -> str:
        user_id = request.headers.get("X-User-ID")
        if user_id:
            return f"user:{user_id}"
        client_ip = request.client.host if request.client else "unknown"
        return f"ip:{client_ip}"

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if request.url.path in self.EXCLUDED_PATHS:
            return await call_next(request)

        key = self.caller_key(request)
        now = self._clock()
        window_start = now - self.window

        timestamps = self._requests[key]
        while timestamps and timestamps[0] <= window_start:
            timestamps.popleft()

        if len(timestamps) >= self.max_requests:
            retry_after = int(timestamps[0] + self.window - now) + 1
            logger.warning(
                "Rate limit exceeded for %s: %d requests in %ds window",
                key,
                len(timestamps),
                self.window,
            )
            return JSONResponse(
                status_code=429,
                content={
                    "error": "rate_limit_exceeded",
                    "message": f"Too many requests. Please wait {retry_after} seconds before retrying.",
                    "details": {"retry_after": retry_after},
                    "request_id": request.headers.get("X-Request-ID", ""),
                },
                headers={"Retry-After": str(retry_after)},
            )

        timestamps.append(now)

        self._since_cleanup += 1
        if self._since_cleanup >= self.CLEANUP_INTERVAL:
            self._since_cleanup = 0
            self._cleanup_inactive(window_start)

        return await call_next(request)

    def _cleanup_inactive(self, window_start: float) -> None:
        inactive = [
            key for key, timestamps in self._requests.items()
            if not timestamps or timestamps[-1] <= window_start
        ]
        for key in inactive:
            del self._requests[key]
        if inactive:
            logger.debug("Cleaned up %d inactive rate limit entries", len(inactive))
