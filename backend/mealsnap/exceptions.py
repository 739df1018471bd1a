"""
MealSnap Backend — Custom Exception Hierarchy
===============================================

What:  Application-specific exceptions for each failure scenario.
How:   Each exception carries a user-facing message and a context dict.
       Global exception handlers (registered in main.py) map them to
       structured JSON error responses with the correct HTTP status code.
Who:   Raised by services; caught by global handlers.

Exception Hierarchy:
    MealSnapError (base)
    ├── ValidationError           → 400 Bad Request
    ├── NotFoundError             → 404 Not Found
    ├── CorrectionConflictError   → 409 Conflict
    ├── ImageProcessingError      → 422 Unprocessable Entity
    ├── FileStorageError          → 500 Internal Server Error
    ├── DatabaseError             → 500 Internal Server Error
    ├── MealDetectionError        → 503 Service Unavailable (transient remote failure)
    │   └── ResponseValidationError → 502 Bad Gateway (malformed payload)
    └── CircuitBreakerOpenError   → 503 Service Unavailable (fail fast)
"""

from typing import Any, Dict, Optional


class MealSnapError(Exception):
    """
    Base exception for all MealSnap application errors.

    Attributes:
        message:  User-facing error description (safe to return in API response)
        context:  Additional debug info (logged, and returned only where a
                  handler explicitly opts in)
    """

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.context = context or {}
        super().__init__(self.message)


class ValidationError(MealSnapError):
    """
    Raised when client input fails validation.

    When:  Unsupported image type, file too large, undecodable upload.
    HTTP:  400 Bad Request
    """

    def __init__(
        self,
        message: str = "Validation failed",
        field: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if field:
            ctx["field"] = field
        super().__init__(message=message, context=ctx)
        self.field = field


class NotFoundError(MealSnapError):
    """
    Raised when a requested resource does not exist.

    A meal owned by another user is reported as not found as well, so
    meal ids cannot be probed across accounts.
    HTTP:  404 Not Found
    """

    def __init__(
        self,
        resource: str = "resource",
        resource_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = f"The requested {resource} was not found"
        if resource_id:
            message = f"{resource} with ID '{resource_id}' was not found"
        ctx = context or {}
        ctx["resource"] = resource
        if resource_id:
            ctx["resource_id"] = resource_id
        super().__init__(message=message, context=ctx)


class CorrectionConflictError(MealSnapError):
    """
    Raised when a correction was computed against a stale meal version.

    When:  The client's expected_version differs from the stored one, or
           another worker committed a correction between our read and write.
    HTTP:  409 Conflict
    """

    def __init__(
        self,
        meal_id: str,
        expected_version: Optional[int] = None,
        current_version: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        ctx["meal_id"] = meal_id
        if expected_version is not None:
            ctx["expected_version"] = expected_version
        if current_version is not None:
            ctx["current_version"] = current_version
        super().__init__(
            message=(
                "This meal was changed by another correction. "
                "Reload it and apply your correction again."
            ),
            context=ctx,
        )
        self.expected_version = expected_version
        self.current_version = current_version


class ImageProcessingError(MealSnapError):
    """
    Raised when an image cannot be decoded or re-encoded.

    Local and recoverable: MealService falls back to the original bytes.
    HTTP:  422 Unprocessable Entity (only if it ever reaches a handler)
    """

    def __init__(
        self,
        message: str = "The image could not be processed",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class FileStorageError(MealSnapError):
    """
    Raised when file system operations fail (disk full, permissions, I/O).

    HTTP:  500 Internal Server Error
    """

    def __init__(
        self,
        message: str = "File storage operation failed",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class MealDetectionError(MealSnapError):
    """
    Raised when the meal recognition service call fails.

    Covers connection errors, timeouts and non-2xx responses. After the
    retry helper gives up, the context carries `attempts` and
    `circuit_state` for logging.
    HTTP:  503 Service Unavailable
    """

    def __init__(
        self,
        message: str = "Meal analysis service is temporarily unavailable",
        status_code: Optional[int] = None,
        retry_after: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if status_code is not None:
            ctx["status_code"] = status_code
        if retry_after:
            ctx["retry_after"] = retry_after
        super().__init__(message=message, context=ctx)
        self.status_code = status_code
        self.retry_after = retry_after


class ResponseValidationError(MealDetectionError):
    """
    Raised when the recognition service returns a payload that does not
    match the expected food schema.

    Attributes:
        field_path: Path of the first offending field, e.g. ``foods[0].nutrition``
    HTTP:  502 Bad Gateway
    """

    def __init__(
        self,
        field_path: str,
        reason: str,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        ctx["field_path"] = field_path
        ctx["reason"] = reason
        super().__init__(
            message=f"Invalid meal detection response: '{field_path}' {reason}",
            context=ctx,
        )
        self.field_path = field_path
        self.reason = reason


class CircuitBreakerOpenError(MealSnapError):
    """
    Raised when the circuit breaker rejects a call without attempting it.

    When:  The circuit is OPEN, or a HALF_OPEN trial call is already in flight.
    HTTP:  503 Service Unavailable, with Retry-After set to recovery_time.
    """

    def __init__(
        self,
        recovery_time: int = 60,
        service: str = "meal-detection",
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        ctx["recovery_time"] = recovery_time
        ctx["service"] = service
        super().__init__(
            message=(
                "Meal analysis is temporarily unavailable. "
                f"Please try again in {recovery_time} seconds."
            ),
            context=ctx,
        )
        self.recovery_time = recovery_time
        self.service = service


class DatabaseError(MealSnapError):
    """
    Raised when a database operation fails unexpectedly.

    HTTP:  500 Internal Server Error (details are logged, never returned)
    """

    def __init__(
        self,
        message: str = "A database error occurred",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)
