"""SQLAlchemy declarative base and model imports for Alembic."""
from app.db.session import Base

# Import all models so Alembic can see them
from app.models.game_event import GameEvent  # noqa: F401
from app.models.game_session import GameSession  # noqa: F401
from app.models.game_trial import GameTrial  # noqa: F401

__all__ = ["Base", "GameSession", "GameTrial", "GameEvent"]
