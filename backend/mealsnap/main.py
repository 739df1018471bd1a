"""
MealSnap Backend — FastAPI Application Factory
================================================

What:  Creates and configures the FastAPI application instance.
How:   create_app() builds (or receives) the service container, registers
       middleware, exception handlers and routers, and returns the app.
Who:   uvicorn (`uvicorn mealsnap.main:app`) and the test suite.

Application Architecture:
    ┌──────────────────────────────────────────────────────────────┐
    │                        FastAPI App                           │
    │                                                              │
    │  Middleware: Rate Limit → Request ID → Logging → GZip → CORS │
    │                                                              │
    │  Routes:  /api/meals (analyse, list, detail, image)          │
    │           /api/meals/{id}/corrections (apply, history)       │
    │           /health                                            │
    │                                                              │
    │  app.state.container: breaker, recognition client, cache,    │
    │                       MealService                            │
    │                                                              │
    │  Exception Handlers: MealSnapError subclasses → JSON errors  │
    └──────────────────────────────────────────────────────────────┘

Lifecycle:
    Startup:  logging, configuration check (logged, not fatal), storage directory
    Shutdown: recognition HTTP client, Redis connection pool, database engine
"""

import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from mealsnap import __version__
from mealsnap.config import settings
from mealsnap.container import ServiceContainer, build_container
from mealsnap.database import dispose_engine
from mealsnap.exceptions import (
    CircuitBreakerOpenError,
    CorrectionConflictError,
    DatabaseError,
    FileStorageError,
    ImageProcessingError,
    MealDetectionError,
    MealSnapError,
    NotFoundError,
    ResponseValidationError,
    ValidationError,
)
from mealsnap.middleware.logging import RequestLoggingMiddleware
from mealsnap.middleware.rate_limit import RateLimitMiddleware
from mealsnap.middleware.request_id import RequestIdFilter, RequestIDMiddleware, request_id_var
from mealsnap.routes import health, meals

logger = logging.getLogger(__name__)

# Retry-After sent with a 503 when neither the remote service nor the breaker gave one
DEFAULT_RETRY_AFTER = 30

# Context keys safe to return to clients for recognition failures
_DETECTION_DETAIL_KEYS = ("attempts", "circuit_state", "status_code", "field_path", "reason")


# ══════════════════════════════════════════════════════════════════════════
# Logging Configuration
# ══════════════════════════════════════════════════════════════════════════

def setup_logging() -> None:
    """
    Configure root logging once at startup.

    Format: %(asctime)s [%(levelname)s] %(name)s [%(request_id)s] %(message)s
    The request ID comes from RequestIdFilter on the handler, so records
    from every module carry it.
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(RequestIdFilter())

    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s [%(request_id)s] %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=[handler],
        force=True,
    )

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


# ══════════════════════════════════════════════════════════════════════════
# Application Lifespan (Startup & Shutdown)
# ══════════════════════════════════════════════════════════════════════════

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # ── Startup ───────────────────────────────────────────────────────────
    setup_logging()
    logger.info("=" * 60)
    logger.info("MealSnap Backend %s starting up...", __version__)

    try:
        settings.validate_required_for_production()
    except ValueError as e:
        # Not fatal: health checks keep answering and requests report the problem
        logger.error("Configuration error: %s", str(e))
        logger.error("Fix the configuration and restart the server.")

    storage = Path(settings.storage_root)
    storage.mkdir(parents=True, exist_ok=True)
    logger.info("Storage directory: %s", storage.resolve())
    logger.info("Recognition service: %s", settings.meal_detection_base_url)
    logger.info("Server ready at http://%s:%d", settings.backend_host, settings.backend_port)
    logger.info("=" * 60)

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────
    logger.info("MealSnap Backend shutting down...")
    container: ServiceContainer = app.state.container
    await container.close_resources()
    await dispose_engine()
    logger.info("Shutdown complete.")


# ══════════════════════════════════════════════════════════════════════════
# Exception Handlers
# ══════════════════════════════════════════════════════════════════════════

def _error_response(
    status_code: int,
    error: str,
    message: str,
    details: Optional[dict] = None,
    headers: Optional[dict] = None,
) -> JSONResponse:
    content = {"error": error, "message": message, "request_id": request_id_var.get("")}
    if details:
        content["details"] = details
    return JSONResponse(status_code=status_code, content=content, headers=headers)


def _detection_details(exc: MealSnapError) -> dict:
    return {k: exc.context[k] for k in _DETECTION_DETAIL_KEYS if k in exc.context}


def _retry_after(request: Request, exc: MealDetectionError) -> int:
    if exc.retry_after:
        return exc.retry_after
    container: Optional[ServiceContainer] = getattr(request.app.state, "container", None)
    if container is not None:
        breaker_wait = container.breaker.retry_after()
        if breaker_wait:
            return breaker_wait
    return DEFAULT_RETRY_AFTER


def register_exception_handlers(app: FastAPI) -> None:
    """
    Map MealSnap exceptions to HTTP responses.

    Handler lookup follows the exception's MRO, so ResponseValidationError
    gets its own 502 handler even though it subclasses MealDetectionError.

    Handler hierarchy:
        ValidationError           → 400
        NotFoundError             → 404
        CorrectionConflictError   → 409
        ImageProcessingError      → 422
        ResponseValidationError   → 502
        MealDetectionError        → 503 + Retry-After
        CircuitBreakerOpenError   → 503 + Retry-After
        FileStorageError          → 500
        DatabaseError             → 500 (details logged only)
        MealSnapError / Exception → 500
    """

    @app.exception_handler(ValidationError)
    async def handle_validation_error(request: Request, exc: ValidationError):
        logger.warning("Validation error: %s", exc.message)
        return _error_response(400, "validation_error", exc.message, exc.context)

    @app.exception_handler(NotFoundError)
    async def handle_not_found(request: Request, exc: NotFoundError):
        return _error_response(404, "not_found", exc.message)

    @app.exception_handler(CorrectionConflictError)
    async def handle_conflict(request: Request, exc: CorrectionConflictError):
        logger.warning("Correction conflict: %s", exc.context)
        details = {
            k: exc.context[k] for k in ("expected_version", "current_version") if k in exc.context
        }
        return _error_response(409, "correction_conflict", exc.message, details)

    @app.exception_handler(ImageProcessingError)
    async def handle_image_processing(request: Request, exc: ImageProcessingError):
        logger.warning("Image processing error: %s | Context: %s", exc.message, exc.context)
        return _error_response(422, "image_processing_error", exc.message)

    @app.exception_handler(ResponseValidationError)
    async def handle_response_validation(request: Request, exc: ResponseValidationError):
        logger.error("Malformed recognition response: %s | Context: %s", exc.message, exc.context)
        return _error_response(
            502,
            "invalid_detection_response",
            "The meal analysis service returned an unexpected response. Please try again.",
            _detection_details(exc),
        )

    @app.exception_handler(MealDetectionError)
    async def handle_detection_error(request: Request, exc: MealDetectionError):
        logger.error("Meal detection error: %s | Context: %s", exc.message, exc.context)
        retry_after = _retry_after(request, exc)
        return _error_response(
            503,
            "meal_detection_error",
            exc.message,
            _detection_details(exc),
            headers={"Retry-After": str(retry_after)},
        )

    @app.exception_handler(CircuitBreakerOpenError)
    async def handle_circuit_breaker(request: Request, exc: CircuitBreakerOpenError):
        logger.warning("Circuit breaker open: %s", exc.message)
        return _error_response(
            503,
            "service_unavailable",
            exc.message,
            {"recovery_time": exc.recovery_time, "service": exc.service},
            headers={"Retry-After": str(exc.recovery_time)},
        )

    @app.exception_handler(FileStorageError)
    async def handle_file_storage_error(request: Request, exc: FileStorageError):
        logger.error("File storage error: %s | Context: %s", exc.message, exc.context)
        return _error_response(500, "server_error", exc.message)

    @app.exception_handler(DatabaseError)
    async def handle_database_error(request: Request, exc: DatabaseError):
        logger.error("Database error: %s | Context: %s", exc.message, exc.context)
        return _error_response(
            500, "server_error", "An internal error occurred. Please try again later."
        )

    @app.exception_handler(MealSnapError)
    async def handle_mealsnap_error(request: Request, exc: MealSnapError):
        logger.error("Unhandled application error: %s | Context: %s", exc.message, exc.context)
        return _error_response(500, "server_error", exc.message)

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        logger.error("Unexpected error: %s", str(exc), exc_info=True)
        return _error_response(
            500,
            "internal_server_error",
            "An unexpected error occurred. Please try again or contact support.",
        )


# ══════════════════════════════════════════════════════════════════════════
# Application Factory
# ══════════════════════════════════════════════════════════════════════════

def create_app(container: Optional[ServiceContainer] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        container: Prebuilt services (tests); built from settings when omitted
    """
    app = FastAPI(
        title="MealSnap API",
        description=(
            "Meal photo analysis: upload a photo, get the detected foods with calories "
            "and macros, and correct the breakdown in plain language."
        ),
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.container = container or build_container(settings)

    # Middleware executes in REVERSE order of addition
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "Retry-After"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=500)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(RateLimitMiddleware)

    register_exception_handlers(app)

    app.include_router(meals.router)
    app.include_router(health.router)

    return app


app = create_app()
