from app.models.game_event import GameEvent
from app.models.game_session import BASELINE_COLUMNS, EXTENSION_COLUMNS, GameSession
from app.models.game_trial import GameTrial

__all__ = ["GameSession", "GameTrial", "GameEvent", "BASELINE_COLUMNS", "EXTENSION_COLUMNS"]
