"""GameSession model: one play-through of one game, created at start and finalized at the end."""
from sqlalchemy import JSON, Boolean, Column, DateTime, Float, Integer, String
from sqlalchemy.sql import func

from app.db.session import Base

# Columns every deployed schema has; anything else is an extension that an
# older database may lack (see alembic revisions 001 / 002).
BASELINE_COLUMNS = (
    "id",
    "user_id",
    "game_id",
    "difficulty_level",
    "variant",
    "started_at",
    "finished_at",
    "score",
    "accuracy",
    "completed",
    "extra",
)

EXTENSION_COLUMNS = (
    "difficulty_end",
    "duration_ms",
    "summary",
    "app_version",
    "game_version",
    "metadata",
    "created_at",
)


class GameSession(Base):
    __tablename__ = "game_sessions"

    id = Column(String(64), primary_key=True)  # client-generated, doubles as idempotency key
    user_id = Column(String(64), nullable=False, index=True)
    game_id = Column(String(64), nullable=False)
    difficulty_level = Column(Float, nullable=True)  # difficulty at start
    variant = Column(String(64), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=False)
    finished_at = Column(DateTime(timezone=True), nullable=True)
    score = Column(Float, nullable=True)
    accuracy = Column(Float, nullable=True)
    completed = Column(Boolean, nullable=False, default=False)
    extra = Column(JSON, nullable=True)

    difficulty_end = Column(Float, nullable=True)
    duration_ms = Column(Integer, nullable=True)
    summary = Column(JSON, nullable=True)
    app_version = Column(String(32), nullable=True)
    game_version = Column(String(32), nullable=True)
    # "metadata" is reserved on declarative classes
    metadata_ = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=True)

    def __repr__(self):
        return f"<GameSession(id='{self.id}', game_id='{self.game_id}', completed={self.completed})>"
