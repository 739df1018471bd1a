"""
MealSnap Backend — Meal Detection Service (HTTP client)
=========================================================

What:  Client for the external meal recognition service.
How:   One httpx.AsyncClient per process (base URL, bearer token, timeout),
       every request routed through the injected CircuitBreaker, every 2xx
       body checked by the response validator.
Who:   Built by the service container; called by MealService.
When:  Once per analysed photo (identify) and once per correction (edit).

Failure Accounting:
    network error / timeout / non-2xx  → MealDetectionError, breaker failure
    2xx with a body that fails schema  → ResponseValidationError, NOT a breaker
                                         failure (the service answered)
    breaker OPEN                       → CircuitBreakerOpenError, no network I/O

Retries are not done here; MealService wraps identify_meal() with
retry_with_backoff() so each attempt is its own breaker-guarded call.
"""

import logging
import mimetypes
import time
from typing import Any, Dict, Optional

import httpx

from mealsnap.exceptions import MealDetectionError, ResponseValidationError
from mealsnap.schemas.meal import DetectionResult
from mealsnap.services.circuit_breaker import CircuitBreaker
from mealsnap.services.detector_base import MealDetector
from mealsnap.services.response_validator import validate_detection_response

logger = logging.getLogger(__name__)

IDENTIFY_PROMPT = "identify"


class MealDetectionService(MealDetector):
    """
    Recognition service client.

    Args:
        client:        Configured httpx.AsyncClient (base_url and auth header set)
        breaker:       Breaker owned by this service; shared by all its calls
        identify_path: Path of the multipart identify endpoint
        correct_path:  Path of the JSON correction endpoint
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        breaker: CircuitBreaker,
        identify_path: str = "/identify/",
        correct_path: str = "/edit/",
    ):
        self.client = client
        self.breaker = breaker
        self.identify_path = identify_path
        self.correct_path = correct_path

    @classmethod
    def from_settings(cls, settings, breaker: CircuitBreaker) -> "MealDetectionService":
        client = httpx.AsyncClient(
            base_url=settings.meal_detection_base_url,
            headers=build_headers(settings.meal_detection_api_token),
            timeout=httpx.Timeout(settings.meal_detection_timeout, connect=10.0),
        )
        logger.info(
            "MealDetectionService initialized with base_url=%s, auth=%s",
            settings.meal_detection_base_url,
            "bearer" if settings.meal_detection_api_token else "none",
        )
        return cls(
            client=client,
            breaker=breaker,
            identify_path=settings.meal_detection_identify_path,
            correct_path=settings.meal_detection_correct_path,
        )

    # ── MealDetector ──────────────────────────────────────────────────────

    async def identify_meal(self, image_bytes: bytes, filename: str) -> DetectionResult:
        content_type = mimetypes.guess_type(filename)[0] or "image/jpeg"
        payload = await self.call(
            self.identify_path,
            files={"file": (filename, image_bytes, content_type)},
            data={"user_prompt": IDENTIFY_PROMPT},
        )
        result = validate_detection_response(payload)
        logger.info("Identified %d food(s) in %s", len(result.foods), filename)
        return result

    async def correct_meal(self, previous_breakdown: str, user_correction: str) -> DetectionResult:
        payload = await self.call(
            self.correct_path,
            json={
                "previous_breakdown": previous_breakdown,
                "user_correction": user_correction,
            },
        )
        result = validate_detection_response(payload)
        logger.info("Correction returned %d food(s)", len(result.foods))
        return result

    async def health_check(self) -> bool:
        return not self.breaker.is_open

    async def aclose(self) -> None:
        await self.client.aclose()

    # ── Transport ─────────────────────────────────────────────────────────

    async def call(self, path: str, **request_kwargs: Any) -> Any:
        """
        Make ONE breaker-guarded POST and return the decoded JSON body.

        Raises:
            CircuitBreakerOpenError: Breaker rejected the call
            MealDetectionError: Network error, timeout or non-2xx status
            ResponseValidationError: 2xx body is not JSON
        """
        response = await self.breaker.call(self._post, path, **request_kwargs)
        try:
            return response.json()
        except ValueError as exc:
            raise ResponseValidationError(
                "$", "is not valid JSON", context={"path": path, "status_code": response.status_code}
            ) from exc

    async def _post(self, path: str, **request_kwargs: Any) -> httpx.Response:
        start_time = time.monotonic()
        try:
            response = await self.client.post(path, **request_kwargs)
        except httpx.TimeoutException as exc:
            logger.warning("POST %s timed out after %.0fms", path, _elapsed_ms(start_time))
            raise MealDetectionError(
                message="Meal analysis service did not respond in time.",
                context={"path": path, "error_type": type(exc).__name__},
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning("POST %s failed after %.0fms: %s", path, _elapsed_ms(start_time), exc)
            raise MealDetectionError(
                message="Could not reach the meal analysis service.",
                context={"path": path, "error_type": type(exc).__name__},
            ) from exc

        duration_ms = _elapsed_ms(start_time)
        if not response.is_success:
            logger.warning("POST %s returned %d in %.0fms", path, response.status_code, duration_ms)
            raise MealDetectionError(
                message=f"Meal analysis service returned HTTP {response.status_code}.",
                status_code=response.status_code,
                retry_after=_parse_retry_after(response.headers),
                context={"path": path, "body": response.text[:200]},
            )

        logger.info("POST %s completed in %.0fms", path, duration_ms)
        return response


def _elapsed_ms(start_time: float) -> float:
    return (time.monotonic() - start_time) * 1000


def _parse_retry_after(headers: httpx.Headers) -> Optional[int]:
    value = headers.get("retry-after")
    if value is None:
        return None
    try:
        return max(0, int(value))
    except ValueError:
        return None


def build_headers(token: str) -> Dict[str, str]:
    headers = {"Accept": "application/json"}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers
