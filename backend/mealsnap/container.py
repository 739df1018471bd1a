"""
MealSnap Backend — Service Container
======================================

What:  Builds every long-lived service once and wires them together.
How:   build_container() reads Settings and returns a ServiceContainer that
       create_app() stores on app.state. Route dependencies resolve services
       from there, and tests override those dependencies.
Who:   create_app() (build), lifespan (close), route dependencies (lookup).

Ownership:
    One CircuitBreaker per remote service. The breaker built here is handed to
    MealDetectionService (guards each call) and to MealService (stops retries
    once it is OPEN); nothing else creates one.
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from fastapi import Request

from mealsnap.config import Settings, settings as default_settings
from mealsnap.services.circuit_breaker import CircuitBreaker
from mealsnap.services.file_service import FileService
from mealsnap.services.image_service import ImageService
from mealsnap.services.meal_cache_service import MealCacheService
from mealsnap.services.meal_detection_service import MealDetectionService
from mealsnap.services.meal_service import MealService

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    """Holds application-wide services."""

    settings: Settings
    breaker: CircuitBreaker
    detection_service: MealDetectionService
    meal_cache: MealCacheService
    meal_service: MealService
    close_resources: Callable[[], Awaitable[None]]


def build_container(settings: Optional[Settings] = None) -> ServiceContainer:
    """Create the default service container."""
    resolved = settings or default_settings

    breaker = CircuitBreaker(
        name="meal-detection",
        error_threshold_percentage=resolved.cb_error_threshold_percentage,
        reset_timeout=resolved.cb_reset_timeout,
        rolling_window=resolved.cb_rolling_window,
        volume_threshold=resolved.cb_volume_threshold,
        call_timeout=resolved.meal_detection_timeout,
    )
    detection_service = MealDetectionService.from_settings(resolved, breaker)
    meal_cache = MealCacheService.from_url(
        resolved.redis_url,
        ttl=resolved.meal_cache_ttl,
        extended_ttl=resolved.meal_cache_extended_ttl,
    )
    meal_service = MealService(
        detector=detection_service,
        file_service=FileService(resolved.storage_root, resolved.max_file_size),
        image_service=ImageService(
            max_dimension=resolved.image_max_dimension,
            initial_quality=resolved.image_initial_quality,
            quality_step=resolved.image_quality_step,
            min_quality=resolved.image_min_quality,
        ),
        cache=meal_cache,
        breaker=breaker,
        retry_max_attempts=resolved.retry_max_attempts,
        retry_base_delay_ms=resolved.retry_base_delay_ms,
        max_image_size_kb=resolved.image_max_size_kb,
    )

    async def close_resources() -> None:
        await detection_service.aclose()
        await meal_cache.aclose()

    logger.info(
        "Service container built (breaker threshold=%.0f%%, reset=%.0fs, retries=%d)",
        resolved.cb_error_threshold_percentage,
        resolved.cb_reset_timeout,
        resolved.retry_max_attempts,
    )
    return ServiceContainer(
        settings=resolved,
        breaker=breaker,
        detection_service=detection_service,
        meal_cache=meal_cache,
        meal_service=meal_service,
        close_resources=close_resources,
    )


# ── FastAPI Dependencies ──────────────────────────────────────────────────
def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def get_meal_service(request: Request) -> MealService:
    return get_container(request).meal_service
