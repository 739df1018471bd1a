"""
MealSnap Backend — Pydantic Schemas
=====================================

What:  Value types for detection results and the API contract of the meal routes.
How:   Detection types are frozen pydantic models; FastAPI serializes them by
       alias, so per-quantity fields keep the recognition service's camelCase
       names on the wire.
Who:   Produced by the response validator, persisted as JSON by MealService,
       returned by route handlers.
"""

import uuid
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, computed_field, field_validator

MealType = Literal["breakfast", "lunch", "dinner", "snack"]

NUTRIENTS = ("calories", "carbs", "fat", "protein", "fiber")


# ══════════════════════════════════════════════════════════════════════════
# Detection Value Types
# ══════════════════════════════════════════════════════════════════════════


class NutritionVector(BaseModel):
    """Calories and macros for one food entry, a meal total, or a delta between totals."""

    calories: float = 0
    carbs: float = 0
    fat: float = 0
    protein: float = 0
    fiber: float = 0

    model_config = {"frozen": True}

    def __add__(self, other: "NutritionVector") -> "NutritionVector":
        return NutritionVector(**{n: getattr(self, n) + getattr(other, n) for n in NUTRIENTS})

    def __sub__(self, other: "NutritionVector") -> "NutritionVector":
        return NutritionVector(**{n: getattr(self, n) - getattr(other, n) for n in NUTRIENTS})


class DetectedFood(BaseModel):
    """
    One food item identified by the recognition service.

    `nutrition` holds the totals for this entry (quantity already applied);
    the *_per_quantity fields hold the per-unit breakdown. Downstream code
    reads `nutrition`.
    """

    name: str
    quantity: str
    unit: str
    description: str
    calories_per_quantity: float = Field(alias="caloriesPerQuantity")
    carbs_per_quantity: float = Field(alias="carbsPerQuantity")
    fat_per_quantity: float = Field(alias="fatPerQuantity")
    protein_per_quantity: float = Field(alias="proteinPerQuantity")
    fiber_per_quantity: float = Field(alias="fiberPerQuantity")
    nutrition: NutritionVector

    model_config = {"frozen": True, "populate_by_name": True}


class DetectionResult(BaseModel):
    """
    Ordered foods detected in one meal.

    The aggregate is always derived from `foods`; it is never stored on its own.
    """

    foods: List[DetectedFood]

    model_config = {"frozen": True}

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_nutrition(self) -> NutritionVector:
        total = NutritionVector()
        for food in self.foods:
            total = total + food.nutrition
        return total

    def food_names(self) -> str:
        return ", ".join(food.name for food in self.foods)

    def to_document(self) -> list:
        """JSON-ready list of foods in the recognition service's field naming."""
        return [food.model_dump(by_alias=True) for food in self.foods]

    @classmethod
    def from_document(cls, foods: list) -> "DetectionResult":
        """Rebuild a result from what to_document() stored."""
        return cls(foods=[DetectedFood.model_validate(food) for food in foods])


# ══════════════════════════════════════════════════════════════════════════
# Request Models
# ══════════════════════════════════════════════════════════════════════════


class CorrectionRequest(BaseModel):
    """Body of POST /api/meals/{id}/corrections."""

    correction: str = Field(
        min_length=10,
        max_length=1000,
        description="Natural-language amendment, e.g. 'the rice was brown rice, about 150 g'",
    )
    expected_version: Optional[int] = Field(
        default=None,
        ge=1,
        description="Meal version the correction was written against; 409 on mismatch",
    )

    @field_validator("correction")
    @classmethod
    def strip_correction(cls, v: str) -> str:
        stripped = v.strip()
        if len(stripped) < 10:
            raise ValueError("correction must contain at least 10 non-blank characters")
        return stripped


class LogMealRequest(BaseModel):
    """Body of POST /api/meals/{id}/log."""

    meal_type: Optional[MealType] = Field(
        default=None,
        description="Meal type of the new entry; defaults to the source meal's",
    )
    notes: Optional[str] = Field(default=None, max_length=500)


# ══════════════════════════════════════════════════════════════════════════
# Response Models
# ══════════════════════════════════════════════════════════════════════════


class MealResponse(BaseModel):
    """Full representation of an analysed meal."""

    id: uuid.UUID
    image_path: str = Field(description="Storage-relative path of the processed image")
    meal_type: Optional[str] = None
    notes: Optional[str] = None
    source_meal_id: Optional[uuid.UUID] = Field(
        default=None, description="Set when this meal was re-logged from history"
    )
    foods: List[DetectedFood]
    total_nutrition: NutritionVector
    correction_count: int = Field(description="Corrections applied so far (unbounded)")
    version: int = Field(description="Send back as expected_version when correcting")
    created_at: datetime
    updated_at: datetime


class MealListItem(BaseModel):
    """Compact meal representation for history lists."""

    id: uuid.UUID
    image_path: str = Field(description="Storage-relative path of the processed image")
    meal_type: Optional[str] = None
    meal_detected: str = Field(description="Comma-separated food names")
    total_nutrition: NutritionVector
    correction_count: int
    created_at: datetime


class MealListResponse(BaseModel):
    """Cursor-paginated meal history."""

    meals: List[MealListItem]
    next_cursor: Optional[str] = Field(
        default=None,
        description="Cursor for next page (ISO datetime). Null if no more pages.",
    )
    has_more: bool


class CorrectionRecordResponse(BaseModel):
    """One entry of a meal's correction history."""

    id: uuid.UUID
    correction: str
    previous_breakdown: str
    previous_nutrition: NutritionVector
    corrected_at: datetime

    model_config = {"from_attributes": True}


class CorrectionResponse(BaseModel):
    """Result of applying a correction."""

    message: str = "Meal corrected and re-analyzed successfully"
    meal: MealResponse
    correction: CorrectionRecordResponse
    changes: NutritionVector = Field(description="New totals minus previous totals")


class CorrectionHistoryResponse(BaseModel):
    meal_id: uuid.UUID
    corrections: List[CorrectionRecordResponse]


class HealthResponse(BaseModel):
    """Health check response for monitoring and load balancer probes."""

    status: str = Field(description="healthy, degraded, or unhealthy")
    version: str
    database: str = Field(description="connected or disconnected")
    cache: str = Field(description="connected or disconnected")
    meal_detection: str = Field(description="closed, half_open, or open")
    uptime_seconds: float


class ErrorResponse(BaseModel):
    """Error body produced by the global exception handlers."""

    error: str
    message: str
    details: Optional[dict] = None
    request_id: Optional[str] = None
