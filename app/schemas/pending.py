"""Pending actions: typed, frozen parameters for replaying create / trial / finalize writes.

Disk format (version 1), one JSON document:

    {
      "version": 1,
      "actions": [
        {"type": "create",   "sessionId": ..., "userId": ..., "gameId": ..., "startedAt": ..., ...},
        {"type": "trial",    "sessionId": ..., "userId": ..., "trial": {...}, "createdAt": ...},
        {"type": "finalize", "sessionId": ..., "userId": ..., "summary": {...}, "endedAt": ..., ...}
      ]
    }

Actions are replayed in list order. Every timestamp an action needs is fixed
when it is first attempted, so a replay writes exactly what the original
call would have.
"""
from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import Field, TypeAdapter, field_validator

from app.schemas.results import CamelModel, ResultSummary, TrialResult, ensure_utc

QUEUE_FORMAT_VERSION = 1


class CreateAction(CamelModel):
    type: Literal["create"] = "create"
    session_id: str
    user_id: str
    game_id: str
    difficulty_start: float | None = None
    variant: str | None = None
    metadata: dict[str, Any] | None = None
    app_version: str | None = None
    game_version: str | None = None
    started_at: datetime
    idempotency_key: str

    @field_validator("started_at")
    @classmethod
    def _utc(cls, v):
        return ensure_utc(v)


class AppendTrialAction(CamelModel):
    type: Literal["trial"] = "trial"
    session_id: str
    user_id: str
    trial: TrialResult
    created_at: datetime

    @field_validator("created_at")
    @classmethod
    def _utc(cls, v):
        return ensure_utc(v)


class FinalizeAction(CamelModel):
    type: Literal["finalize"] = "finalize"
    session_id: str
    user_id: str
    difficulty_end: float | None = None
    summary: ResultSummary
    ended_at: datetime
    duration_ms: int | None = None
    app_version: str | None = None
    game_version: str | None = None

    @field_validator("ended_at")
    @classmethod
    def _utc(cls, v):
        return ensure_utc(v)


PendingAction = Annotated[
    Union[CreateAction, AppendTrialAction, FinalizeAction],
    Field(discriminator="type"),
]

pending_action_adapter: TypeAdapter = TypeAdapter(PendingAction)


def dump_actions(actions: list) -> dict[str, Any]:
    """Serialize actions into the versioned queue document."""
    return {
        "version": QUEUE_FORMAT_VERSION,
        "actions": [a.model_dump(mode="json", by_alias=True) for a in actions],
    }
