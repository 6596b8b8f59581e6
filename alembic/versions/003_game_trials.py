"""Add game_trials with one row per (session_id, trial_index).

Revision ID: 003
Revises: 002
Create Date: 2025-07-01

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "003"
down_revision: Union[str, None] = "002"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "game_trials",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("session_id", sa.String(64), nullable=False),
        sa.Column("trial_index", sa.Integer(), nullable=False),
        sa.Column("trial_data", sa.JSON(), nullable=False),
        sa.Column("score", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("session_id", "trial_index", name="uq_game_trials_session_index"),
    )
    op.create_index(op.f("ix_game_trials_session_id"), "game_trials", ["session_id"], unique=False)


def downgrade() -> None:
    op.drop_index(op.f("ix_game_trials_session_id"), table_name="game_trials")
    op.drop_table("game_trials")
