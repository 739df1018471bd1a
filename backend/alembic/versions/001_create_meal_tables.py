"""Create meals and meal_corrections tables

Revision ID: 001
Revises: None
Create Date: 2026-10-18 00:00:00.000000+00:00

What:  Creates `meals` (one row per analysed photo) and `meal_corrections`
       (append-only correction history).
How:   PostgreSQL UUID keys, TIMESTAMP WITH TIME ZONE, JSONB for foods and
       nutrition snapshots. `meals.version` backs optimistic locking.

Rollback: downgrade() drops both tables (all meal data lost).
"""

from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "meals",
        sa.Column(
            "id",
            postgresql.UUID(as_uuid=True),
            server_default=sa.text("gen_random_uuid()"),
            nullable=False,
        ),
        sa.Column(
            "user_id",
            sa.String(64),
            nullable=False,
            comment="Owner, as forwarded by the auth gateway in X-User-ID",
        ),
        sa.Column(
            "image_path",
            sa.String(255),
            nullable=False,
            comment="Relative path from storage root to the processed image",
        ),
        sa.Column(
            "meal_type",
            sa.String(20),
            nullable=True,
            comment="breakfast, lunch, dinner or snack",
        ),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column(
            "foods",
            postgresql.JSONB(),
            nullable=False,
            comment="Detected foods; totals are derived, never stored",
        ),
        sa.Column(
            "correction_count",
            sa.Integer(),
            nullable=False,
            server_default=sa.text("0"),
        ),
        sa.Column(
            "version",
            sa.Integer(),
            nullable=False,
            server_default=sa.text("1"),
            comment="Optimistic lock counter",
        ),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
    )

    # Meal history is always per user, newest first
    op.create_index(
        "idx_meals_user_created_at",
        "meals",
        ["user_id", sa.text("created_at DESC")],
    )

    op.create_table(
        "meal_corrections",
        sa.Column(
            "id",
            postgresql.UUID(as_uuid=True),
            server_default=sa.text("gen_random_uuid()"),
            nullable=False,
        ),
        sa.Column("meal_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column(
            "correction",
            sa.Text(),
            nullable=False,
            comment="The user's natural-language correction",
        ),
        sa.Column(
            "previous_breakdown",
            sa.Text(),
            nullable=False,
            comment="Breakdown text sent as previous_breakdown",
        ),
        sa.Column(
            "previous_nutrition",
            postgresql.JSONB(),
            nullable=False,
            comment="Meal totals before this correction",
        ),
        sa.Column(
            "corrected_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["meal_id"], ["meals.id"], ondelete="CASCADE"),
    )

    op.create_index(
        "idx_meal_corrections_meal_corrected_at",
        "meal_corrections",
        ["meal_id", "corrected_at"],
    )


def downgrade() -> None:
    op.drop_index("idx_meal_corrections_meal_corrected_at", table_name="meal_corrections")
    op.drop_table("meal_corrections")
    op.drop_index("idx_meals_user_created_at", table_name="meals")
    op.drop_table("meals")
