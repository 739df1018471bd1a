"""
MealSnap Backend — Meal SQLAlchemy Models
===========================================

What:  ORM models for the `meals` and `meal_corrections` tables.
How:   SQLAlchemy 2.0 typed mappings on the shared DeclarativeBase; Alembic
       reads the same metadata for migrations.
Who:   MealService for reads and writes, Alembic for schema management.

Table Design:
    meals
        - foods:   JSONB list of detected foods in the recognition service's
                   field naming. Totals are NOT stored; they are summed from
                   each food's `nutrition` whenever they are needed.
        - version: optimistic-lock counter (mapper version_id_col). Every
                   UPDATE checks the version it read, so two workers cannot
                   both apply a correction on top of the same breakdown.
    meal_corrections
        - append-only history; one row per applied correction, never updated.
        - previous_breakdown / previous_nutrition snapshot the meal as it was
          right before the correction.

    Index on (user_id, created_at DESC):
        Serves the meal history list, which is always per user, newest first.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.orm import Mapped, mapped_column

from mealsnap.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Meal(Base):
    """
    One analysed meal photo.

    Lifecycle:
        1. Created after the identify call succeeds and its payload validates
        2. Updated by each correction (foods replaced, correction_count + 1,
           version + 1)
        3. Never partially written: a failed identify call creates no row
        4. May be re-logged from history: a new row copies the foods and
           image path, with its own timestamps and source_meal_id set
    """

    __tablename__ = "meals"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )

    user_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="Owner, as forwarded by the auth gateway in X-User-ID",
    )

    # Format: meals/<user_id>/YYYY/MM/DD/<uuid>.jpg
    image_path: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="Relative path from storage root to the processed image",
    )

    meal_type: Mapped[str | None] = mapped_column(
        String(20),
        nullable=True,
        comment="breakfast, lunch, dinner or snack",
    )

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    source_meal_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("meals.id", ondelete="SET NULL"),
        nullable=True,
        comment="Meal this entry was re-logged from; null for analysed photos",
    )

    foods: Mapped[list] = mapped_column(
        JSONB,
        nullable=False,
        default=list,
        comment="Detected foods; totals are derived, never stored",
    )

    correction_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default=text("0"),
    )

    version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        server_default=text("1"),
        comment="Optimistic lock counter",
    )

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return (
            f"<Meal(id={self.id}, user_id='{self.user_id}', "
            f"foods={len(self.foods or [])}, version={self.version})>"
        )


class MealCorrection(Base):
    """Immutable record of one applied correction."""

    __tablename__ = "meal_corrections"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )

    meal_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("meals.id", ondelete="CASCADE"),
        nullable=False,
    )

    correction: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="The user's natural-language correction",
    )

    previous_breakdown: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Breakdown text sent as previous_breakdown",
    )

    previous_nutrition: Mapped[dict] = mapped_column(
        JSONB,
        nullable=False,
        comment="Meal totals before this correction",
    )

    corrected_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    def __repr__(self) -> str:
        return f"<MealCorrection(id={self.id}, meal_id={self.meal_id}, corrected_at='{self.corrected_at}')>"


# ── Indexes ───────────────────────────────────────────────────────────────
Index("idx_meals_user_created_at", Meal.user_id, Meal.created_at.desc())
Index("idx_meal_corrections_meal_corrected_at", MealCorrection.meal_id, MealCorrection.corrected_at)
