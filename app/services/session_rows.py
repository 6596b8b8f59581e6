"""Two-tier serialization of game_sessions rows.

FULL writes every column; MINIMAL sticks to the baseline columns every
deployed schema has and folds the rest into the `extra` JSON bag.
"""
from enum import Enum
from typing import Any

from app.models.game_session import BASELINE_COLUMNS, EXTENSION_COLUMNS
from app.schemas.pending import CreateAction, FinalizeAction
from app.schemas.results import ResultPayload, SessionRecord, ensure_utc


class SchemaTier(str, Enum):
    FULL = "full"
    MINIMAL = "minimal"


# Extension columns this layer reads back; created_at is server-managed
_READ_EXTENSIONS = tuple(c for c in EXTENSION_COLUMNS if c != "created_at")

# Columns a create may overwrite when it meets an existing row (replays, retries).
# Terminal columns and the owner are left alone: a late create never un-finalizes a session
# and never moves it to another player.
_CREATE_MUTABLE = ("game_id", "difficulty_level", "variant", "started_at")


def session_columns(tier: SchemaTier) -> tuple[str, ...]:
    if tier is SchemaTier.FULL:
        return BASELINE_COLUMNS + _READ_EXTENSIONS
    return BASELINE_COLUMNS


def create_row(action: CreateAction, tier: SchemaTier) -> dict[str, Any]:
    row: dict[str, Any] = {
        "id": action.session_id,
        "user_id": action.user_id,
        "game_id": action.game_id,
        "difficulty_level": action.difficulty_start,
        "variant": action.variant,
        "started_at": action.started_at,
        "completed": False,
    }
    if tier is SchemaTier.FULL:
        row.update(
            {
                "extra": action.metadata,
                "difficulty_end": None,
                "finished_at": None,
                "duration_ms": None,
                "score": None,
                "accuracy": None,
                "summary": None,
                "app_version": action.app_version,
                "game_version": action.game_version,
                "metadata": {**(action.metadata or {}), "idempotencyKey": action.idempotency_key},
            }
        )
    else:
        row["extra"] = {
            **(action.metadata or {}),
            "idempotencyKey": action.idempotency_key,
            "appVersion": action.app_version,
            "gameVersion": action.game_version,
        }
    return row


def create_update_columns(tier: SchemaTier) -> tuple[str, ...]:
    if tier is SchemaTier.FULL:
        return _CREATE_MUTABLE + ("app_version", "game_version", "metadata")
    return _CREATE_MUTABLE


def merge_extra(existing: SessionRecord | None, extras: dict[str, Any]) -> dict[str, Any]:
    """Non-destructive merge: new keys win, prior keys survive."""
    prior = (existing.extra if existing is not None else None) or {}
    return {**prior, **extras}


def finalize_update(
    payload: ResultPayload,
    action: FinalizeAction,
    existing: SessionRecord | None,
    tier: SchemaTier,
) -> dict[str, Any]:
    summary = payload.summary.model_dump(mode="json", by_alias=True)
    values: dict[str, Any] = {
        "finished_at": payload.ended_at,
        "score": payload.summary.score_total,
        "accuracy": payload.summary.accuracy_avg,
        "completed": True,
    }
    if tier is SchemaTier.FULL:
        values.update(
            {
                "difficulty_end": action.difficulty_end,
                "duration_ms": payload.duration_ms,
                "summary": summary,
                "app_version": payload.app_version,
                "game_version": payload.game_version,
                "extra": merge_extra(existing, {"resultPayload": payload.model_dump(mode="json", by_alias=True)}),
            }
        )
    else:
        values["extra"] = merge_extra(
            existing,
            {
                "summary": summary,
                "difficultyEnd": action.difficulty_end,
                "durationMs": payload.duration_ms,
                "appVersion": payload.app_version,
                "gameVersion": payload.game_version,
            },
        )
    return values


def read_session_row(row: dict[str, Any]) -> SessionRecord:
    """Canonical SessionRecord from a row of either tier."""
    extra = row.get("extra") or None
    folded = extra or {}
    finished_at = row.get("finished_at")
    return SessionRecord(
        id=row["id"],
        user_id=row["user_id"],
        game_id=row["game_id"],
        difficulty_start=row.get("difficulty_level"),
        difficulty_end=row.get("difficulty_end", folded.get("difficultyEnd")),
        variant=row.get("variant"),
        started_at=ensure_utc(row["started_at"]),
        finished_at=ensure_utc(finished_at) if finished_at is not None else None,
        duration_ms=row.get("duration_ms", folded.get("durationMs")),
        score=row.get("score"),
        accuracy=row.get("accuracy"),
        completed=bool(row.get("completed")),
        summary=row.get("summary", folded.get("summary")),
        extra=extra,
        metadata=row.get("metadata"),
        app_version=row.get("app_version", folded.get("appVersion")),
        game_version=row.get("game_version", folded.get("gameVersion")),
    )


def local_row(action: CreateAction) -> SessionRecord:
    """SessionRecord for a session whose create has not reached the store yet."""
    return SessionRecord(
        id=action.session_id,
        user_id=action.user_id,
        game_id=action.game_id,
        difficulty_start=action.difficulty_start,
        variant=action.variant,
        started_at=action.started_at,
        extra=action.metadata,
        metadata={**(action.metadata or {}), "idempotencyKey": action.idempotency_key},
        app_version=action.app_version,
        game_version=action.game_version,
    )
