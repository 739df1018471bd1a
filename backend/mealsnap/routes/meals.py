"""
MealSnap Backend — Meal Route Handlers
========================================

What:  HTTP surface for analysing, listing, reading and correcting meals.
How:   Extracts request data, resolves MealService from the container and
       delegates. Errors propagate to the global exception handlers.
Who:   Called by the mobile client through the auth gateway, which sets X-User-ID.

Routes:
    POST /api/meals                          analyse a photo (201)
    GET  /api/meals                          history, cursor-paginated
    GET  /api/meals/{meal_id}                detail (cache read-through)
    GET  /api/meals/{meal_id}/image          stored processed image
    POST /api/meals/{meal_id}/log            log an earlier meal again (201)
    POST /api/meals/{meal_id}/corrections    apply a correction
    GET  /api/meals/{meal_id}/corrections    correction history
"""

import logging
from pathlib import Path
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, File, Form, Header, Query, Response, UploadFile
from fastapi.responses import FileResponse
from sqlalchemy.ext.asyncio import AsyncSession

from mealsnap.container import get_meal_service
from mealsnap.database import get_db_session
from mealsnap.exceptions import NotFoundError, ValidationError
from mealsnap.schemas.meal import (
    CorrectionHistoryResponse,
    CorrectionRequest,
    CorrectionResponse,
    ErrorResponse,
    LogMealRequest,
    MealListResponse,
    MealResponse,
    MealType,
)
from mealsnap.services.file_service import SAFE_USER_ID
from mealsnap.services.meal_service import MealService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Meals"])


def get_current_user_id(x_user_id: Optional[str] = Header(default=None, alias="X-User-ID")) -> str:
    """User id forwarded by the auth gateway."""
    if not x_user_id:
        raise ValidationError(message="The X-User-ID header is required.", field="X-User-ID")
    if not SAFE_USER_ID.match(x_user_id):
        raise ValidationError(
            message="X-User-ID must be 1-64 letters, digits, '-' or '_'.",
            field="X-User-ID",
        )
    return x_user_id


@router.post(
    "/meals",
    status_code=201,
    response_model=MealResponse,
    responses={
        400: {"description": "Invalid file or header", "model": ErrorResponse},
        429: {"description": "Rate limit exceeded", "model": ErrorResponse},
        502: {"description": "Malformed recognition response", "model": ErrorResponse},
        503: {"description": "Recognition service unavailable", "model": ErrorResponse},
    },
    summary="Analyse a meal photo",
    description=(
        "Upload a meal photo (JPG, JPEG, PNG or WEBP, max 10MB). The image is downsized, "
        "sent to the recognition service, and the detected foods are stored as a new meal."
    ),
)
async def analyze_meal(
    file: UploadFile = File(..., description="Meal photo"),
    meal_type: Optional[MealType] = Form(default=None, description="breakfast, lunch, dinner or snack"),
    notes: Optional[str] = Form(default=None, max_length=500),
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db_session),
    meal_service: MealService = Depends(get_meal_service),
) -> MealResponse:
    content = await file.read()
    logger.info(
        "Received meal upload: user=%s filename=%s size=%d bytes",
        user_id,
        file.filename or "unknown",
        len(content),
    )
    try:
        return await meal_service.analyze_meal(
            db=db,
            user_id=user_id,
            filename=file.filename or "meal.jpg",
            content=content,
            content_length=file.size,
            meal_type=meal_type,
            notes=notes,
        )
    finally:
        await file.close()


@router.get(
    "/meals",
    response_model=MealListResponse,
    responses={400: {"description": "Invalid cursor", "model": ErrorResponse}},
    summary="List analysed meals, newest first",
)
async def list_meals(
    limit: int = Query(default=20, ge=1, le=100, description="Items per page (max 100)"),
    cursor: Optional[str] = Query(
        default=None,
        description="next_cursor from the previous page. Omit for the first page.",
    ),
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db_session),
    meal_service: MealService = Depends(get_meal_service),
) -> MealListResponse:
    return await meal_service.list_meals(db=db, user_id=user_id, limit=limit, cursor=cursor)


@router.get(
    "/meals/{meal_id}",
    response_model=MealResponse,
    responses={404: {"description": "Meal not found", "model": ErrorResponse}},
    summary="Get a single meal",
)
async def get_meal(
    meal_id: UUID,
    response: Response,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db_session),
    meal_service: MealService = Depends(get_meal_service),
) -> MealResponse:
    result = await meal_service.get_meal(db=db, user_id=user_id, meal_id=meal_id)
    # Meals change on correction, so clients revalidate
    response.headers["Cache-Control"] = "private, no-cache"
    return result


@router.get(
    "/meals/{meal_id}/image",
    response_class=FileResponse,
    responses={404: {"description": "Meal or image not found", "model": ErrorResponse}},
    summary="Download the stored meal image",
)
async def get_meal_image(
    meal_id: UUID,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db_session),
    meal_service: MealService = Depends(get_meal_service),
) -> FileResponse:
    meal = await meal_service.get_meal(db=db, user_id=user_id, meal_id=meal_id)
    storage_root = meal_service.file_service.storage_root
    full_path = (storage_root / meal.image_path).resolve()
    if storage_root not in full_path.parents or not full_path.is_file():
        raise NotFoundError(resource="image", resource_id=str(meal_id))
    return FileResponse(
        path=str(full_path),
        filename=Path(meal.image_path).name,
        headers={"Cache-Control": "private, max-age=3600"},
    )


@router.post(
    "/meals/{meal_id}/log",
    status_code=201,
    response_model=MealResponse,
    responses={404: {"description": "Meal not found", "model": ErrorResponse}},
    summary="Log an earlier meal again",
    description=(
        "Creates a new meal entry from one of the user's earlier meals, reusing its "
        "foods and image without calling the recognition service."
    ),
)
async def log_previous_meal(
    meal_id: UUID,
    body: Optional[LogMealRequest] = None,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db_session),
    meal_service: MealService = Depends(get_meal_service),
) -> MealResponse:
    body = body or LogMealRequest()
    return await meal_service.log_previous_meal(
        db=db,
        user_id=user_id,
        meal_id=meal_id,
        meal_type=body.meal_type,
        notes=body.notes,
    )


@router.post(
    "/meals/{meal_id}/corrections",
    response_model=CorrectionResponse,
    responses={
        404: {"description": "Meal not found", "model": ErrorResponse},
        409: {"description": "Meal changed since it was read", "model": ErrorResponse},
        502: {"description": "Malformed recognition response", "model": ErrorResponse},
        503: {"description": "Recognition service unavailable", "model": ErrorResponse},
    },
    summary="Correct a meal in natural language",
    description=(
        "Sends the current breakdown and the correction to the recognition service and "
        "replaces the meal's foods with the corrected result. Send expected_version to be "
        "told (409) when someone else corrected the meal first."
    ),
)
async def correct_meal(
    meal_id: UUID,
    body: CorrectionRequest,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db_session),
    meal_service: MealService = Depends(get_meal_service),
) -> CorrectionResponse:
    return await meal_service.correct_meal(
        db=db,
        user_id=user_id,
        meal_id=meal_id,
        correction=body.correction,
        expected_version=body.expected_version,
    )


@router.get(
    "/meals/{meal_id}/corrections",
    response_model=CorrectionHistoryResponse,
    responses={404: {"description": "Meal not found", "model": ErrorResponse}},
    summary="List the corrections applied to a meal",
)
async def list_corrections(
    meal_id: UUID,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db_session),
    meal_service: MealService = Depends(get_meal_service),
) -> CorrectionHistoryResponse:
    return await meal_service.list_corrections(db=db, user_id=user_id, meal_id=meal_id)
