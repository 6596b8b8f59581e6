"""Add game_sessions extension columns (end difficulty, duration, summary, versions, metadata).

Revision ID: 002
Revises: 001
Create Date: 2025-06-16

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

COLUMNS = (
    ("difficulty_end", sa.Float()),
    ("duration_ms", sa.Integer()),
    ("summary", sa.JSON()),
    ("app_version", sa.String(32)),
    ("game_version", sa.String(32)),
    ("metadata", sa.JSON()),
    ("created_at", sa.DateTime(timezone=True)),
)


def upgrade() -> None:
    with op.batch_alter_table("game_sessions") as batch:
        for name, type_ in COLUMNS:
            batch.add_column(sa.Column(name, type_, nullable=True))


def downgrade() -> None:
    with op.batch_alter_table("game_sessions") as batch:
        for name, _ in reversed(COLUMNS):
            batch.drop_column(name)
