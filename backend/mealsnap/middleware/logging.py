"""
MealSnap Backend — Request Logging Middleware
===============================================

What:  One access log line per HTTP request.
How:   Measures wall time around the handler and logs method, path, status,
       duration, request ID, user and client IP. The level follows the status
       class: 5xx ERROR, 4xx WARNING, otherwise INFO.
Who:   Applied to every request except /health.

Never logged: request bodies, uploaded image bytes, Authorization headers.
"""

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from mealsnap.middleware.request_id import request_id_var

logger = logging.getLogger("mealsnap.access")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs each request with its duration and status."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        path = request.url.path
        if path == "/health":
            return await call_next(request)

        start_time = time.perf_counter()
        client_ip = request.client.host if request.client else "unknown"
        user_id = request.headers.get("X-User-ID", "-")

        response = await call_next(request)

        duration_ms = (time.perf_counter() - start_time) * 1000
        status = response.status_code
        if status >= 500:
            log_level = logging.ERROR
        elif status >= 400:
            log_level = logging.WARNING
        else:
            log_level = logging.INFO

        logger.log(
            log_level,
            "%s %s %d %.1fms user=%s from %s",
            request.method,
            path,
            status,
            duration_ms,
            user_id,
            client_ip,
            extra={
                "request_id": request_id_var.get(""),
                "status": status,
                "duration_ms": round(duration_ms, 2),
            },
        )
        return response
