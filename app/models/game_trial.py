"""GameTrial model: one scored response; at most one row per (session_id, trial_index)."""
from sqlalchemy import JSON, Column, DateTime, Integer, String, UniqueConstraint

from app.db.session import Base


class GameTrial(Base):
    __tablename__ = "game_trials"
    __table_args__ = (
        UniqueConstraint("session_id", "trial_index", name="uq_game_trials_session_index"),
    )

    id = Column(String(64), primary_key=True)
    session_id = Column(String(64), nullable=False, index=True)
    trial_index = Column(Integer, nullable=False)  # 0-based, assigned by the game
    trial_data = Column(JSON, nullable=False)  # opaque game payload
    score = Column(JSON, nullable=False)  # StandardScore
    created_at = Column(DateTime(timezone=True), nullable=False)

    def __repr__(self):
        return f"<GameTrial(session_id='{self.session_id}', trial_index={self.trial_index})>"
