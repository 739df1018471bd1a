"""
MealSnap Backend — Meal Service (Business Logic Orchestrator)
===============================================================

What:  Coordinates the analyse and correct workflows for meal photos.
How:   Composes FileService, ImageService, a MealDetector, the meal cache
       and database operations. Collaborators are injected by the service
       container; the only state held here is the per-meal lock registry.
Who:   Called by route handlers.

Analyse Flow (POST /api/meals):
    ┌──────────┐   ┌───────────┐   ┌────────────┐   ┌───────────────────┐   ┌─────────┐
    │ Validate │──▶│ Compress  │──▶│  Identify  │──▶│ Store image + row │──▶│  Cache  │
    │ (File)   │   │ (Image)   │   │ retry(brk) │   │ (File, DB)        │   │ (Redis) │
    └──────────┘   └───────────┘   └────────────┘   └───────────────────┘   └─────────┘

    Compression failure → original bytes are sent instead (logged)
    Identify failure    → nothing is stored; the error propagates
    DB failure          → stored image is removed; DatabaseError

Correct Flow (POST /api/meals/{id}/corrections):
    per-meal lock ─▶ load + version check ─▶ format breakdown ─▶ correct (breaker)
    ─▶ replace foods, append correction record, bump count ─▶ commit (version checked)
    ─▶ refresh cache

    The correction call is NOT retried: a user-triggered edit fails fast and
    the client decides whether to resend.

Log Flow (POST /api/meals/{id}/log):
    load owned meal ─▶ copy foods + image path into a new row ─▶ commit ─▶ cache
"""

import asyncio
import logging
import uuid
import weakref
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy import desc, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from mealsnap.exceptions import (
    CorrectionConflictError,
    DatabaseError,
    ImageProcessingError,
    NotFoundError,
    ValidationError,
)
from mealsnap.models.meal import Meal, MealCorrection
from mealsnap.schemas.meal import (
    CorrectionHistoryResponse,
    CorrectionRecordResponse,
    CorrectionResponse,
    DetectionResult,
    MealListItem,
    MealListResponse,
    MealResponse,
)
from mealsnap.services.circuit_breaker import CircuitBreaker
from mealsnap.services.detector_base import MealDetector
from mealsnap.services.file_service import FileService
from mealsnap.services.image_service import ImageService
from mealsnap.services.meal_cache_service import MealCacheService
from mealsnap.services.meal_formatting import format_meal_for_correction
from mealsnap.services.retry import retry_with_backoff

logger = logging.getLogger(__name__)


class MealService:
    """
    Business logic layer for meal operations.

    Args:
        detector:            Recognition client (one remote call per method)
        file_service:        Upload validation and image storage
        image_service:       JPEG re-encoder
        cache:               Meal detail cache
        breaker:             Breaker fronting the detector; stops retries once OPEN
        retry_max_attempts:  Retries after the first identify call
        retry_base_delay_ms: Delay before the first retry; doubles each time
        max_image_size_kb:   Byte budget handed to the image service
        sleep:               Backoff sleep, injectable for tests
    """

    def __init__(
        self,
        detector: MealDetector,
        file_service: FileService,
        image_service: ImageService,
        cache: MealCacheService,
        breaker: Optional[CircuitBreaker] = None,
        retry_max_attempts: int = 3,
        retry_base_delay_ms: int = 2000,
        max_image_size_kb: int = 1024,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.detector = detector
        self.file_service = file_service
        self.image_service = image_service
        self.cache = cache
        self.breaker = breaker
        self.retry_max_attempts = retry_max_attempts
        self.retry_base_delay_ms = retry_base_delay_ms
        self.max_image_size_kb = max_image_size_kb
        self._sleep = sleep
        # Entries disappear once no coroutine holds or awaits the lock
        self._correction_locks: "weakref.WeakValueDictionary[uuid.UUID, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    # ══════════════════════════════════════════════════════════════════════
    # Analyse
    # ══════════════════════════════════════════════════════════════════════

    async def analyze_meal(
        self,
        db: AsyncSession,
        user_id: str,
        filename: str,
        content: bytes,
        content_length: Optional[int] = None,
        meal_type: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> MealResponse:
        """
        Validate, compress, identify, persist and cache one meal photo.

        Raises:
            ValidationError: Invalid file type, size or content
            MealDetectionError: Recognition failed after all retries
            ResponseValidationError: Recognition payload failed the schema
            CircuitBreakerOpenError: Recognition service is failing; not attempted
            FileStorageError / DatabaseError: Persistence failed
        """
        extension = self.file_service.validate_upload(filename, content, content_length)

        image_bytes = await self._preprocess(content, filename)
        if image_bytes is content:
            upload_name, stored_extension = filename, extension
        else:
            upload_name, stored_extension = f"{Path(filename).stem or 'meal'}.jpg", ".jpg"

        result = await retry_with_backoff(
            lambda: self.detector.identify_meal(image_bytes, upload_name),
            max_attempts=self.retry_max_attempts,
            base_delay_ms=self.retry_base_delay_ms,
            breaker=self.breaker,
            sleep=self._sleep,
        )
        logger.info(
            "User %s: identified %d food(s) in %s", user_id, len(result.foods), filename
        )

        absolute_path, relative_path = await self.file_service.store_image(
            image_bytes, user_id, stored_extension
        )

        now = datetime.now(timezone.utc)
        meal = Meal(
            id=uuid.uuid4(),
            user_id=user_id,
            image_path=relative_path,
            meal_type=meal_type,
            notes=notes,
            foods=result.to_document(),
            correction_count=0,
            version=1,
            created_at=now,
            updated_at=now,
        )
        try:
            db.add(meal)
            await db.flush()
            await db.commit()
        except SQLAlchemyError as e:
            await self.file_service.cleanup_file(absolute_path)
            logger.error("Database error saving meal for user %s: %s", user_id, str(e), exc_info=True)
            raise DatabaseError(
                message="Could not save the analysed meal. Please try again.",
                context={"error_type": type(e).__name__},
            ) from e

        response = self._to_response(meal)
        await self.cache.set(response, user_id)
        logger.info("Meal %s created for user %s", meal.id, user_id)
        return response

    async def _preprocess(self, content: bytes, filename: str) -> bytes:
        try:
            return await self.image_service.compress(content, self.max_image_size_kb)
        except ImageProcessingError as e:
            logger.warning(
                "Image preprocessing failed for %s, sending original bytes: %s", filename, e.message
            )
            return content

    # ══════════════════════════════════════════════════════════════════════
    # Read
    # ══════════════════════════════════════════════════════════════════════

    async def get_meal(self, db: AsyncSession, user_id: str, meal_id: uuid.UUID) -> MealResponse:
        """
        Meal detail, served from the cache when possible.

        Raises:
            NotFoundError: No such meal, or it belongs to another user
        """
        cached = await self.cache.get(meal_id, user_id)
        if cached is not None:
            logger.debug("Cache hit for meal %s", meal_id)
            return cached

        meal = await self._load_meal(db, user_id, meal_id)
        response = self._to_response(meal)
        await self.cache.set(response, user_id)
        return response

    async def list_meals(
        self,
        db: AsyncSession,
        user_id: str,
        limit: int = 20,
        cursor: Optional[str] = None,
    ) -> MealListResponse:
        """
        Newest-first meal history with cursor pagination.

        The cursor is the ISO created_at of the last item on the previous
        page; fetching limit + 1 rows tells whether another page exists.
        """
        query = select(Meal).where(Meal.user_id == user_id)
        if cursor:
            try:
                cursor_dt = datetime.fromisoformat(cursor)
            except ValueError as e:
                raise ValidationError(
                    message="Invalid cursor. Use the next_cursor value from the previous page.",
                    field="cursor",
                ) from e
            query = query.where(Meal.created_at < cursor_dt)
        query = query.order_by(desc(Meal.created_at)).limit(limit + 1)

        try:
            result = await db.execute(query)
            meals = list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error("Database error listing meals: %s", str(e), exc_info=True)
            raise DatabaseError(
                message="Could not retrieve meals. Please try again.",
                context={"error_type": type(e).__name__},
            ) from e

        has_more = len(meals) > limit
        meals = meals[:limit]
        next_cursor = meals[-1].created_at.isoformat() if has_more and meals else None

        items = []
        for meal in meals:
            detection = DetectionResult.from_document(meal.foods)
            items.append(
                MealListItem(
                    id=meal.id,
                    image_path=meal.image_path,
                    meal_type=meal.meal_type,
                    meal_detected=detection.food_names(),
                    total_nutrition=detection.total_nutrition,
                    correction_count=meal.correction_count,
                    created_at=meal.created_at,
                )
            )
        return MealListResponse(meals=items, next_cursor=next_cursor, has_more=has_more)

    async def list_corrections(
        self, db: AsyncSession, user_id: str, meal_id: uuid.UUID
    ) -> CorrectionHistoryResponse:
        """Correction records for a meal, oldest first."""
        await self._load_meal(db, user_id, meal_id)
        try:
            result = await db.execute(
                select(MealCorrection)
                .where(MealCorrection.meal_id == meal_id)
                .order_by(MealCorrection.corrected_at)
            )
            records = list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error("Database error listing corrections for %s: %s", meal_id, str(e))
            raise DatabaseError(
                message="Could not retrieve the correction history. Please try again.",
                context={"meal_id": str(meal_id)},
            ) from e
        return CorrectionHistoryResponse(
            meal_id=meal_id,
            corrections=[CorrectionRecordResponse.model_validate(r) for r in records],
        )

    # ══════════════════════════════════════════════════════════════════════
    # Log from history
    # ══════════════════════════════════════════════════════════════════════

    async def log_previous_meal(
        self,
        db: AsyncSession,
        user_id: str,
        meal_id: uuid.UUID,
        meal_type: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> MealResponse:
        """
        Log one of the user's earlier meals again without re-analysing it.

        The new meal shares the source's stored image and copies its current
        foods; it starts uncorrected at version 1.

        Raises:
            NotFoundError: No such meal, or it belongs to another user
            DatabaseError: The new meal could not be saved
        """
        source = await self._load_meal(db, user_id, meal_id)
        foods = DetectionResult.from_document(source.foods).to_document()

        now = datetime.now(timezone.utc)
        meal = Meal(
            id=uuid.uuid4(),
            user_id=user_id,
            image_path=source.image_path,
            meal_type=meal_type or source.meal_type,
            notes=notes,
            source_meal_id=source.id,
            foods=foods,
            correction_count=0,
            version=1,
            created_at=now,
            updated_at=now,
        )
        try:
            db.add(meal)
            await db.flush()
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            logger.error("Database error re-logging meal %s: %s", meal_id, str(e), exc_info=True)
            raise DatabaseError(
                message="Could not log the meal. Please try again.",
                context={"meal_id": str(meal_id), "error_type": type(e).__name__},
            ) from e

        response = self._to_response(meal)
        await self.cache.set(response, user_id)
        logger.info("Meal %s logged from history as %s for user %s", meal_id, meal.id, user_id)
        return response

    # ══════════════════════════════════════════════════════════════════════
    # Correct
    # ══════════════════════════════════════════════════════════════════════

    async def correct_meal(
        self,
        db: AsyncSession,
        user_id: str,
        meal_id: uuid.UUID,
        correction: str,
        expected_version: Optional[int] = None,
    ) -> CorrectionResponse:
        """
        Apply a natural-language correction to a meal.

        Corrections to one meal run one at a time within this process; across
        processes the version column rejects a write based on a stale read.

        Raises:
            NotFoundError: No such meal, or it belongs to another user
            CorrectionConflictError: expected_version is stale, or another
                                     worker committed first
            MealDetectionError / ResponseValidationError / CircuitBreakerOpenError:
                                     The correction call failed; the meal is unchanged
        """
        async with self._lock_for(meal_id):
            meal = await self._load_meal(db, user_id, meal_id)
            if expected_version is not None and expected_version != meal.version:
                raise CorrectionConflictError(
                    meal_id=str(meal_id),
                    expected_version=expected_version,
                    current_version=meal.version,
                )

            previous = DetectionResult.from_document(meal.foods)
            previous_breakdown = format_meal_for_correction(previous)

            corrected = await self.detector.correct_meal(previous_breakdown, correction)

            now = datetime.now(timezone.utc)
            record = MealCorrection(
                id=uuid.uuid4(),
                meal_id=meal.id,
                correction=correction,
                previous_breakdown=previous_breakdown,
                previous_nutrition=previous.total_nutrition.model_dump(),
                corrected_at=now,
            )
            read_version = meal.version
            meal.foods = corrected.to_document()
            meal.correction_count += 1
            meal.updated_at = now

            try:
                db.add(record)
                await db.flush()
                await db.commit()
            except StaleDataError as e:
                await db.rollback()
                await self.cache.invalidate(meal_id)
                logger.warning("Meal %s changed concurrently; correction rejected", meal_id)
                raise CorrectionConflictError(
                    meal_id=str(meal_id), expected_version=read_version
                ) from e
            except SQLAlchemyError as e:
                await db.rollback()
                logger.error("Database error saving correction for %s: %s", meal_id, str(e), exc_info=True)
                raise DatabaseError(
                    message="Could not save the correction. Please try again.",
                    context={"meal_id": str(meal_id), "error_type": type(e).__name__},
                ) from e

            response = self._to_response(meal)
            await self.cache.set(response, user_id)

        changes = corrected.total_nutrition - previous.total_nutrition
        logger.info(
            "Meal %s corrected (count=%d, calories %+g)",
            meal_id,
            meal.correction_count,
            changes.calories,
        )
        return CorrectionResponse(
            meal=response,
            correction=CorrectionRecordResponse.model_validate(record),
            changes=changes,
        )

    # ── Helpers ───────────────────────────────────────────────────────────

    def _lock_for(self, meal_id: uuid.UUID) -> asyncio.Lock:
        lock = self._correction_locks.get(meal_id)
        if lock is None:
            lock = asyncio.Lock()
            self._correction_locks[meal_id] = lock
        return lock

    async def _load_meal(self, db: AsyncSession, user_id: str, meal_id: uuid.UUID) -> Meal:
        try:
            result = await db.execute(
                select(Meal).where(Meal.id == meal_id, Meal.user_id == user_id)
            )
            meal = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error("Database error fetching meal %s: %s", meal_id, str(e))
            raise DatabaseError(
                message="Could not retrieve the meal. Please try again.",
                context={"meal_id": str(meal_id)},
            ) from e

        if meal is None:
            raise NotFoundError(resource="meal", resource_id=str(meal_id))
        return meal

    @staticmethod
    def _to_response(meal: Meal) -> MealResponse:
        detection = DetectionResult.from_document(meal.foods)
        return MealResponse(
            id=meal.id,
            image_path=meal.image_path,
            meal_type=meal.meal_type,
            notes=meal.notes,
            source_meal_id=meal.source_meal_id,
            foods=detection.foods,
            total_nutrition=detection.total_nutrition,
            correction_count=meal.correction_count,
            version=meal.version,
            created_at=meal.created_at,
            updated_at=meal.updated_at,
        )
