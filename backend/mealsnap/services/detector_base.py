"""
MealSnap Backend — Abstract Meal Detector Interface
=====================================================

What:  Contract for services that turn a meal photo into a food breakdown.
How:   Concrete implementations inherit from MealDetector and implement
       identify_meal(), correct_meal() and health_check().
Who:   Called by MealService during the analyse and correct workflows.
When:  After image preprocessing, before database persistence.

Implementations:
    - MealDetectionService: the external HTTP recognition service
    - Tests substitute an AsyncMock
"""

from abc import ABC, abstractmethod

from mealsnap.schemas.meal import DetectionResult


class MealDetector(ABC):
    """
    Abstract interface for meal recognition.

    Contract:
        - Each method performs at most ONE remote call; retries belong to the caller
        - Returned results have already passed response validation
        - Transport failures surface as MealDetectionError, malformed payloads
          as ResponseValidationError, a tripped breaker as CircuitBreakerOpenError
    """

    @abstractmethod
    async def identify_meal(self, image_bytes: bytes, filename: str) -> DetectionResult:
        """
        Identify the foods in a meal photo.

        Args:
            image_bytes: Encoded image (normally the preprocessed JPEG)
            filename:    Name sent with the upload; its extension sets the content type

        Returns:
            DetectionResult: Foods in the order the recognition service listed them.
                             May be empty when nothing edible was recognised.

        Raises:
            MealDetectionError: Network error, timeout or non-2xx response
            ResponseValidationError: 2xx response that does not match the schema
            CircuitBreakerOpenError: The breaker rejected the call without sending it
        """
        ...

    @abstractmethod
    async def correct_meal(self, previous_breakdown: str, user_correction: str) -> DetectionResult:
        """
        Ask for a corrected breakdown.

        Args:
            previous_breakdown: Output of format_meal_for_correction() for the current result
            user_correction:    The user's natural-language amendment

        Returns:
            DetectionResult: A full replacement result, not a diff.
        """
        ...

    @abstractmethod
    async def health_check(self) -> bool:
        """Return False while the detector is known to be unavailable (no remote call)."""
        ...
