"""GameEvent model: generic per-session event log (trials are mirrored here as type 'trial')."""
from sqlalchemy import JSON, Column, DateTime, String

from app.db.session import Base


class GameEvent(Base):
    __tablename__ = "game_events"

    id = Column(String(64), primary_key=True)
    session_id = Column(String(64), nullable=False, index=True)
    event_type = Column(String(32), nullable=False)
    payload = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
