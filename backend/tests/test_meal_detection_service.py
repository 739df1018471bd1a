"""
MealSnap Backend — Meal Detection Service Tests
=================================================

What we test:
    ✅ identify sends a multipart upload with the bearer token
    ✅ correct sends previous_breakdown and user_correction as JSON
    ✅ Non-2xx responses raise MealDetectionError and count as breaker failures
    ✅ Retry-After from the remote service is carried on the error
    ✅ Network errors and timeouts raise MealDetectionError
    ✅ Malformed 2xx payloads raise ResponseValidationError without tripping the breaker
    ✅ An open breaker makes no request at all
"""

import json

import httpx
import pytest

from mealsnap.exceptions import CircuitBreakerOpenError, MealDetectionError, ResponseValidationError
from mealsnap.services.circuit_breaker import CircuitBreaker
from mealsnap.services.meal_detection_service import MealDetectionService, build_headers


class TestMealDetectionService:
    """Tests for MealDetectionService against an httpx.MockTransport."""

    def setup_method(self):
        self.requests = []
        self.handler = None
        self.breaker = CircuitBreaker(volume_threshold=1, reset_timeout=60)

        def _dispatch(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return self.handler(request)

        client = httpx.AsyncClient(
            base_url="https://meal-detection.test",
            headers=build_headers("secret-token"),
            transport=httpx.MockTransport(_dispatch),
        )
        self.service = MealDetectionService(client=client, breaker=self.breaker)

    @pytest.mark.asyncio
    async def test_identify_sends_multipart(self, detection_payload, sample_jpeg_bytes):
        """The photo is posted as 'file' with user_prompt=identify."""
        self.handler = lambda request: httpx.Response(200, json=detection_payload)

        result = await self.service.identify_meal(sample_jpeg_bytes, "lunch.jpg")

        assert [food.name for food in result.foods] == ["Rice", "Chicken breast"]
        request = self.requests[0]
        assert request.method == "POST"
        assert request.url.path == "/identify/"
        assert request.headers["authorization"] == "Bearer secret-token"
        assert request.headers["content-type"].startswith("multipart/form-data")
        body = request.read()
        assert b'name="user_prompt"' in body
        assert b"identify" in body
        assert b'filename="lunch.jpg"' in body
        assert b"image/jpeg" in body

    @pytest.mark.asyncio
    async def test_correct_sends_json(self, detection_payload):
        self.handler = lambda request: httpx.Response(200, json=detection_payload)

        await self.service.correct_meal("[Rice][100 g][steamed]", "it was brown rice")

        request = self.requests[0]
        assert request.url.path == "/edit/"
        assert json.loads(request.read()) == {
            "previous_breakdown": "[Rice][100 g][steamed]",
            "user_correction": "it was brown rice",
        }

    @pytest.mark.asyncio
    async def test_server_error_counts_as_failure(self, sample_jpeg_bytes):
        self.handler = lambda request: httpx.Response(500, text="upstream exploded")

        with pytest.raises(MealDetectionError) as exc_info:
            await self.service.identify_meal(sample_jpeg_bytes, "meal.jpg")

        assert exc_info.value.status_code == 500
        assert self.breaker.stats()["failures"] == 1
        assert self.breaker.is_open

    @pytest.mark.asyncio
    async def test_redirect_counts_as_failure(self, sample_jpeg_bytes):
        """A 302 to a login page is an unavailable service, not a malformed answer."""
        self.handler = lambda request: httpx.Response(302, headers={"Location": "/login"})

        with pytest.raises(MealDetectionError) as exc_info:
            await self.service.identify_meal(sample_jpeg_bytes, "meal.jpg")

        assert exc_info.value.status_code == 302
        assert self.breaker.stats()["failures"] == 1
        assert self.breaker.is_open
        assert len(self.requests) == 1

    @pytest.mark.asyncio
    async def test_retry_after_is_parsed(self, sample_jpeg_bytes):
        self.handler = lambda request: httpx.Response(503, headers={"Retry-After": "12"})

        with pytest.raises(MealDetectionError) as exc_info:
            await self.service.identify_meal(sample_jpeg_bytes, "meal.jpg")

        assert exc_info.value.retry_after == 12

    @pytest.mark.asyncio
    async def test_connection_error(self, sample_jpeg_bytes):
        def _refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        self.handler = _refuse
        with pytest.raises(MealDetectionError, match="Could not reach"):
            await self.service.identify_meal(sample_jpeg_bytes, "meal.jpg")
        assert self.breaker.stats()["failures"] == 1

    @pytest.mark.asyncio
    async def test_timeout(self, sample_jpeg_bytes):
        def _slow(request):
            raise httpx.ReadTimeout("read timed out", request=request)

        self.handler = _slow
        with pytest.raises(MealDetectionError, match="did not respond in time"):
            await self.service.identify_meal(sample_jpeg_bytes, "meal.jpg")

    @pytest.mark.asyncio
    async def test_malformed_payload_is_not_a_breaker_failure(self, food_payload, sample_jpeg_bytes):
        """The service answered; a schema problem must not open the circuit."""
        del food_payload["nutrition"]
        self.handler = lambda request: httpx.Response(200, json={"foods": [food_payload]})

        with pytest.raises(ResponseValidationError) as exc_info:
            await self.service.identify_meal(sample_jpeg_bytes, "meal.jpg")

        assert exc_info.value.field_path == "foods[0].nutrition"
        assert self.breaker.stats()["failures"] == 0
        assert not self.breaker.is_open

    @pytest.mark.asyncio
    async def test_non_json_body(self, sample_jpeg_bytes):
        self.handler = lambda request: httpx.Response(200, text="<html>oops</html>")

        with pytest.raises(ResponseValidationError) as exc_info:
            await self.service.identify_meal(sample_jpeg_bytes, "meal.jpg")
        assert exc_info.value.field_path == "$"

    @pytest.mark.asyncio
    async def test_open_breaker_makes_no_request(self, sample_jpeg_bytes):
        self.breaker.record_failure()
        self.handler = lambda request: httpx.Response(200, json={"foods": []})

        with pytest.raises(CircuitBreakerOpenError):
            await self.service.identify_meal(sample_jpeg_bytes, "meal.jpg")

        assert self.requests == []
        assert await self.service.health_check() is False

    @pytest.mark.asyncio
    async def test_health_check_closed(self):
        assert await self.service.health_check() is True


class TestBuildHeaders:
    def test_with_token(self):
        assert build_headers("abc") == {
            "Accept": "application/json",
            "Authorization": "Bearer abc",
        }

    def test_without_token(self):
        assert "Authorization" not in build_headers("")
