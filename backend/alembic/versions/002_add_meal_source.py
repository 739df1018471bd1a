"""Add meals.source_meal_id for meals re-logged from history

Revision ID: 002
Revises: 001
Create Date: 2026-10-18 00:00:00.000000+00:00

What:  Links a re-logged meal to the meal it was copied from.
How:   Nullable self-referencing UUID column; deleting the source meal keeps
       the copy and clears the link.

Rollback: downgrade() drops the column (the link is lost, the meals stay).
"""

from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column(
        "meals",
        sa.Column(
            "source_meal_id",
            postgresql.UUID(as_uuid=True),
            nullable=True,
            comment="Meal this entry was re-logged from; null for analysed photos",
        ),
    )
    op.create_foreign_key(
        "fk_meals_source_meal_id",
        "meals",
        "meals",
        ["source_meal_id"],
        ["id"],
        ondelete="SET NULL",
    )


def downgrade() -> None:
    op.drop_constraint("fk_meals_source_meal_id", "meals", type_="foreignkey")
    op.drop_column("meals", "source_meal_id")
