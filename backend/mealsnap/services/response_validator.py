"""
MealSnap Backend — Meal Detection Response Validator
======================================================

What:  Checks the recognition service's JSON payload against the food schema.
How:   Walks a static field table entry by entry and reports the first
       offending field by path (``foods[0].nutrition``,
       ``foods[2].nutrition.fiber``). A conformant payload becomes a typed
       DetectionResult.
Who:   MealDetectionService, after every 2xx response.

Rules:
    - `foods` is required and must be an array (it may be empty)
    - name, quantity, unit, description: non-empty strings
    - the five *PerQuantity fields and the five nutrition fields: numbers
    - booleans are not numbers; negative, NaN and infinite values are rejected
    - unknown keys are ignored
"""

import math
from typing import Any, Mapping

from mealsnap.exceptions import ResponseValidationError
from mealsnap.schemas.meal import NUTRIENTS, DetectedFood, DetectionResult, NutritionVector

TEXT_FIELDS = ("name", "quantity", "unit", "description")

PER_QUANTITY_FIELDS = (
    "caloriesPerQuantity",
    "carbsPerQuantity",
    "fatPerQuantity",
    "proteinPerQuantity",
    "fiberPerQuantity",
)


def validate_detection_response(raw: Any) -> DetectionResult:
    """
    Validate a decoded JSON payload and build a DetectionResult.

    Raises:
        ResponseValidationError: With the path of the first offending field
    """
    if not isinstance(raw, Mapping):
        raise ResponseValidationError("$", f"must be an object, got {_type_name(raw)}")
    if "foods" not in raw:
        raise ResponseValidationError("foods", "is required")

    foods = raw["foods"]
    if not isinstance(foods, list):
        raise ResponseValidationError("foods", f"must be an array, got {_type_name(foods)}")

    return DetectionResult(foods=[_validate_food(entry, f"foods[{i}]") for i, entry in enumerate(foods)])


def _validate_food(entry: Any, path: str) -> DetectedFood:
    if not isinstance(entry, Mapping):
        raise ResponseValidationError(path, f"must be an object, got {_type_name(entry)}")

    values = {}
    for field in TEXT_FIELDS:
        values[field] = _require_text(entry, field, path)
    for field in PER_QUANTITY_FIELDS:
        values[field] = _require_number(entry, field, path)

    nutrition_path = f"{path}.nutrition"
    if "nutrition" not in entry:
        raise ResponseValidationError(nutrition_path, "is required")
    nutrition = entry["nutrition"]
    if not isinstance(nutrition, Mapping):
        raise ResponseValidationError(
            nutrition_path, f"must be an object, got {_type_name(nutrition)}"
        )
    values["nutrition"] = NutritionVector(
        **{field: _require_number(nutrition, field, nutrition_path) for field in NUTRIENTS}
    )

    return DetectedFood.model_validate(values)


def _require_text(container: Mapping, field: str, parent: str) -> str:
    path = f"{parent}.{field}"
    if field not in container:
        raise ResponseValidationError(path, "is required")
    value = container[field]
    if not isinstance(value, str):
        raise ResponseValidationError(path, f"must be a string, got {_type_name(value)}")
    if not value.strip():
        raise ResponseValidationError(path, "must not be empty")
    return value


def _require_number(container: Mapping, field: str, parent: str) -> float:
    path = f"{parent}.{field}"
    if field not in container:
        raise ResponseValidationError(path, "is required")
    value = container[field]
    # bool is a subclass of int
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ResponseValidationError(path, f"must be a number, got {_type_name(value)}")
    if isinstance(value, float) and not math.isfinite(value):
        raise ResponseValidationError(path, "must be a finite number")
    if value < 0:
        raise ResponseValidationError(path, f"must not be negative, got {value}")
    return value


def _type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, Mapping):
        return "object"
    return type(value).__name__
