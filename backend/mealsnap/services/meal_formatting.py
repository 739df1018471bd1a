"""
MealSnap Backend — Meal Breakdown Formatting
==============================================

What:  Renders a DetectionResult as the plain-text breakdown the recognition
       service expects as `previous_breakdown` when correcting a meal.
How:   Pure functions, no I/O. The same text is stored on each correction
       record as the pre-correction snapshot.

Format:
    [Rice][100 g][steamed]
    [Chicken breast][150 g][grilled]
    Total Calories: 378
    Total Carbs: 28
    Total Fat: 5.4
    Total Protein: 49.5
    Total Fiber: 0.4
"""

from mealsnap.schemas.meal import DetectionResult

TOTAL_LABELS = (
    ("calories", "Calories"),
    ("carbs", "Carbs"),
    ("fat", "Fat"),
    ("protein", "Protein"),
    ("fiber", "Fiber"),
)


def format_number(value: float) -> str:
    """Integral values without a decimal point, others in shortest round-trip form."""
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


def format_meal_for_correction(result: DetectionResult) -> str:
    """
    One bracketed line per food followed by the five totals.

    Lines are joined with "\\n" and there is no trailing newline. Totals are
    summed from each food's `nutrition`, never taken from the per-unit fields.
    """
    lines = [f"[{food.name}][{food.quantity} {food.unit}][{food.description}]" for food in result.foods]

    totals = result.total_nutrition
    for field, label in TOTAL_LABELS:
        lines.append(f"Total {label}: {format_number(getattr(totals, field))}")

    return "\n".join(lines)
