"""Pydantic schemas for scores, trials, summaries and the finalized result payload.

Wire / JSON form is camelCase (`timeMs`, `scoreTotal`, ...); snake_case is
accepted on input too.
"""
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, StrictInt, field_validator
from pydantic.alias_generators import to_camel


def ensure_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC; aware ones are converted."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StandardScore(CamelModel):
    accuracy: float = Field(ge=0, le=1)
    time_ms: float = Field(ge=0)
    errors: float = Field(ge=0)
    score_total: float
    extras: dict[str, Any] = Field(default_factory=dict)

    @field_validator("extras", mode="before")
    @classmethod
    def _extras_default(cls, v):
        return {} if v is None else v


class TrialResult(CamelModel):
    index: StrictInt = Field(ge=0)
    trial_data: dict[str, Any]
    score: StandardScore


class ResultSummary(CamelModel):
    accuracy_avg: float = Field(ge=0, le=1)
    time_avg_ms: float = Field(ge=0)
    errors_total: float = Field(ge=0)
    score_total: float


class ResultPayload(CamelModel):
    """Full finalized record: session metadata + summary + ordered trials."""

    session_id: UUID
    user_id: UUID
    game_id: str
    started_at: datetime
    ended_at: datetime
    duration_ms: int = Field(ge=0)
    difficulty_start: float | None = None
    difficulty_end: float | None = None
    summary: ResultSummary
    trials: list[TrialResult]
    app_version: str | None = None
    game_version: str | None = None

    @field_validator("started_at", "ended_at")
    @classmethod
    def _timestamps_utc(cls, v):
        return ensure_utc(v)


# ---------- requests / responses ----------


class CreateSessionRequest(CamelModel):
    game_id: str = Field(min_length=1)
    difficulty_start: float | None = None
    variant: str | None = None
    metadata: dict[str, Any] | None = None
    app_version: str | None = None
    game_version: str | None = None
    session_id: str | None = None
    started_at: datetime | None = None
    idempotency_key: str | None = None

    @field_validator("started_at")
    @classmethod
    def _started_utc(cls, v):
        return ensure_utc(v) if v is not None else v


class CreatedSession(CamelModel):
    id: str
    started_at: datetime
    user_id: str


class AppendTrialRequest(CamelModel):
    index: StrictInt
    trial_data: dict[str, Any]
    score: dict[str, Any]


class FinalizeSessionRequest(CamelModel):
    """Finalize body; the session id comes from the URL."""

    difficulty_end: float | None = None
    summary: dict[str, Any]
    ended_at: datetime | None = None
    duration_ms: int | None = None
    app_version: str | None = None
    game_version: str | None = None


class SessionRecord(CamelModel):
    id: str
    user_id: str
    game_id: str
    difficulty_start: float | None = None
    difficulty_end: float | None = None
    variant: str | None = None
    started_at: datetime
    finished_at: datetime | None = None
    duration_ms: int | None = None
    score: float | None = None
    accuracy: float | None = None
    completed: bool = False
    summary: dict[str, Any] | None = None
    extra: dict[str, Any] | None = None
    metadata: dict[str, Any] | None = None
    app_version: str | None = None
    game_version: str | None = None


class SessionWithTrials(CamelModel):
    session: SessionRecord
    trials: list[TrialResult]


class SelfTestResult(CamelModel):
    session_id: str
    trials: list[TrialResult]
    summary: ResultSummary


class SyncStatus(CamelModel):
    pending_actions: int
    next_flush_delay_s: float
    flushing: bool
    supports_session_extensions: bool
    supports_trial_table: bool | None
