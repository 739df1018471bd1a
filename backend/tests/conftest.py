"""
MealSnap Backend — Test Configuration (conftest.py)
=====================================================

What:  Shared pytest fixtures for the entire test suite.
How:   pytest auto-discovers conftest.py and makes fixtures available to all tests.

Fixture Hierarchy (all function-scoped):
    ├── mock_db_session:     AsyncMock standing in for AsyncSession
    ├── temp_storage:        Temporary storage root
    ├── sample_jpeg_bytes /
    │   sample_png_bytes:    Real images generated with Pillow
    ├── food_payload /
    │   detection_payload:   Recognition service JSON
    ├── rice_result:         Validated DetectionResult for the rice payload
    ├── fake_clock:          Manually advanced monotonic clock
    ├── fake_sleep:          Records backoff delays instead of sleeping
    ├── make_meal:           Factory for Meal ORM rows
    ├── mock_meal_service /
    │   mock_meal_cache:     Service mocks wired into the app's container
    └── test_client:         HTTPX AsyncClient on an app with mocked services
"""

import io
import os
import tempfile
import uuid
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

# Override settings for testing BEFORE any mealsnap imports
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test.db"
os.environ["MEAL_DETECTION_API_TOKEN"] = "test-token-not-real"
os.environ["MEAL_DETECTION_BASE_URL"] = "https://meal-detection.test"
os.environ["STORAGE_ROOT"] = tempfile.mkdtemp(prefix="mealsnap_test_")
os.environ["REDIS_URL"] = "redis://localhost:6379/15"
os.environ["LOG_LEVEL"] = "WARNING"

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from PIL import Image

from mealsnap.config import settings
from mealsnap.container import ServiceContainer
from mealsnap.database import get_db_session
from mealsnap.models.meal import Meal
from mealsnap.schemas.meal import DetectionResult
from mealsnap.services.circuit_breaker import CircuitBreaker
from mealsnap.services.response_validator import validate_detection_response


# ══════════════════════════════════════════════════════════════════════════
# Helpers
# ══════════════════════════════════════════════════════════════════════════

def make_food(
    name="Rice",
    quantity="100",
    unit="g",
    description="steamed",
    calories=130,
    carbs=28,
    fat=0,
    protein=3,
    fiber=0.4,
):
    """One food entry as the recognition service returns it."""
    return {
        "name": name,
        "quantity": quantity,
        "unit": unit,
        "description": description,
        "caloriesPerQuantity": 1.3,
        "carbsPerQuantity": 0.28,
        "fatPerQuantity": 0,
        "proteinPerQuantity": 0.03,
        "fiberPerQuantity": 0.004,
        "nutrition": {
            "calories": calories,
            "carbs": carbs,
            "fat": fat,
            "protein": protein,
            "fiber": fiber,
        },
    }


def make_image(fmt="JPEG", size=(64, 48), mode="RGB", color=(200, 120, 40), noise=False) -> bytes:
    """Encode a generated image; noise=True makes it hard to compress."""
    if noise:
        img = Image.frombytes(mode, size, os.urandom(size[0] * size[1] * len(mode)))
    else:
        img = Image.new(mode, size, color if mode == "RGB" else color + (255,))
    buf = io.BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ══════════════════════════════════════════════════════════════════════════
# Function-Scoped Fixtures
# ══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def mock_db_session():
    """
    Provides a mock async database session.

    Usage:
        async def test_get_meal(mock_db_session):
            mock_db_session.execute.return_value.scalar_one_or_none.return_value = meal
    """
    session = AsyncMock()
    session.execute = AsyncMock()
    session.flush = AsyncMock()
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    session.close = AsyncMock()
    session.add = MagicMock()
    # execute() results are synchronous objects in SQLAlchemy
    session.execute.return_value = MagicMock()
    return session


@pytest.fixture
def temp_storage(tmp_path):
    storage_dir = tmp_path / "storage"
    storage_dir.mkdir()
    return str(storage_dir)


@pytest.fixture
def sample_jpeg_bytes():
    return make_image("JPEG")


@pytest.fixture
def sample_png_bytes():
    return make_image("PNG")


@pytest.fixture
def food_payload():
    return make_food()


@pytest.fixture
def detection_payload():
    return {
        "foods": [
            make_food(),
            make_food(
                name="Chicken breast",
                quantity="150",
                unit="g",
                description="grilled",
                calories=248,
                carbs=0,
                fat=5.4,
                protein=46.5,
                fiber=0,
            ),
        ]
    }


@pytest.fixture
def rice_result(food_payload) -> DetectionResult:
    return validate_detection_response({"foods": [food_payload]})


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def fake_sleep():
    """Async sleep replacement; awaited delays are collected in .delays."""
    delays = []

    async def _sleep(seconds: float) -> None:
        delays.append(seconds)

    _sleep.delays = delays
    return _sleep


@pytest.fixture
def make_meal(detection_payload):
    """Factory for persisted-looking Meal rows."""

    def _make(user_id="user-1", foods=None, version=1, correction_count=0, **overrides):
        now = datetime.now(timezone.utc)
        meal = Meal(
            id=overrides.pop("id", uuid.uuid4()),
            user_id=user_id,
            image_path=overrides.pop("image_path", f"meals/{user_id}/2024/01/15/{uuid.uuid4()}.jpg"),
            meal_type=overrides.pop("meal_type", "lunch"),
            notes=overrides.pop("notes", None),
            foods=foods if foods is not None else detection_payload["foods"],
            correction_count=correction_count,
            created_at=overrides.pop("created_at", now),
            updated_at=overrides.pop("updated_at", now),
        )
        meal.version = version
        return meal

    return _make


@pytest.fixture
def mock_meal_service():
    """MealService stand-in for route tests; every workflow method is an AsyncMock."""
    service = MagicMock()
    service.analyze_meal = AsyncMock()
    service.get_meal = AsyncMock()
    service.list_meals = AsyncMock()
    service.correct_meal = AsyncMock()
    service.list_corrections = AsyncMock()
    service.log_previous_meal = AsyncMock()
    return service


@pytest.fixture
def mock_meal_cache():
    cache = AsyncMock()
    cache.ping.return_value = True
    return cache


@pytest.fixture
def test_breaker(fake_clock):
    return CircuitBreaker(volume_threshold=2, reset_timeout=60, clock=fake_clock)


@pytest_asyncio.fixture
async def test_client(mock_meal_service, mock_meal_cache, mock_db_session, test_breaker):
    """
    HTTPX AsyncClient talking to an app whose services are mocks.

    Usage:
        async def test_health(test_client):
            response = await test_client.get("/health")
    """
    from mealsnap.main import create_app

    container = ServiceContainer(
        settings=settings,
        breaker=test_breaker,
        detection_service=MagicMock(),
        meal_cache=mock_meal_cache,
        meal_service=mock_meal_service,
        close_resources=AsyncMock(),
    )
    app = create_app(container=container)

    async def _override_session():
        yield mock_db_session

    app.dependency_overrides[get_db_session] = _override_session

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
