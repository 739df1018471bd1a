"""
MealSnap Backend — Health Check Route
=======================================

What:  Health check endpoint for monitoring and load balancer probes.
How:   Pings the database and Redis and reports the recognition breaker's state. The
       recognition service itself is never called from here, so probes do
       not count against its rate limits or the breaker's window.
Who:   Docker health checks, load balancers, monitoring.

Status levels:
    healthy:   database and cache reachable, breaker not open    (HTTP 200)
    degraded:  database reachable, cache down or breaker open    (HTTP 200)
    unhealthy: database unreachable                              (HTTP 503)
"""

import logging
import time

from fastapi import APIRouter, Depends, Response

from mealsnap import __version__, database
from mealsnap.container import ServiceContainer, get_container
from mealsnap.schemas.meal import HealthResponse
from mealsnap.services.circuit_breaker import CircuitState

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])

_start_time = time.time()


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Service health check",
    description="Database and cache connectivity and the recognition service's circuit state.",
)
async def health_check(
    response: Response,
    container: ServiceContainer = Depends(get_container),
) -> HealthResponse:
    overall = "healthy"

    db_ok = await database.ping()
    if not db_ok:
        overall = "unhealthy"
        response.status_code = 503

    # Meal reads fall back to the database without Redis
    cache_ok = await container.meal_cache.ping()
    if not cache_ok and overall == "healthy":
        overall = "degraded"
        logger.warning("Health check: meal cache is unreachable")

    breaker_state = container.breaker.state
    if breaker_state == CircuitState.OPEN and overall == "healthy":
        overall = "degraded"
        logger.warning("Health check: recognition circuit is open (%s)", container.breaker.stats())

    return HealthResponse(
        status=overall,
        version=__version__,
        database="connected" if db_ok else "disconnected",
        cache="connected" if cache_ok else "disconnected",
        meal_detection=breaker_state.value,
        uptime_seconds=round(time.time() - _start_time, 2),
    )
