"""Session Lifecycle Engine: create a game session, append trials, finalize with a summary.

Every write goes to the store directly first. Network-classified failures are
queued for retry and the caller gets an optimistic result; capability
failures (missing table / column) switch this process to a reduced storage
shape for good; anything else propagates.

Sessions belong to the player who created them: reads, trials and finalize
only ever see the caller's own rows, and a finalized session is never
rewritten.
"""
from __future__ import annotations

import logging
import uuid
from collections import OrderedDict
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from app.core.errors import FailureKind, IdentityError, NotFoundError, ValidationError
from app.db.store import EVENTS, SESSIONS, TRIALS, TableStore
from app.schemas.pending import AppendTrialAction, CreateAction, FinalizeAction, PendingAction
from app.schemas.results import (
    CreatedSession,
    CreateSessionRequest,
    ResultPayload,
    ResultSummary,
    SelfTestResult,
    SessionRecord,
    SessionWithTrials,
    StandardScore,
    SyncStatus,
    TrialResult,
    ensure_utc,
    utcnow,
)
from app.services.fallback import classify_failure
from app.services.identity import IdentityResolver
from app.services.pending_queue import MemoryQueueStorage, PendingActionQueue, QueueStorage
from app.services.session_rows import (
    SchemaTier,
    create_row,
    create_update_columns,
    finalize_update,
    local_row,
    read_session_row,
    session_columns,
)

logger = logging.getLogger(__name__)

SELF_TEST_GAME_ID = "self-test"
TRIAL_EVENT_TYPE = "trial"
TRIAL_EVENT_TYPES = ("trial", "TRIAL")
TRIAL_COLUMNS = ("trial_index", "trial_data", "score")


def _validated(model: type[BaseModel], data: Any, what: str):
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid {what}: {e}") from e


def _as_dict(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(by_alias=True)
    return value


def _ordered(trials: Mapping[int, TrialResult]) -> list[TrialResult]:
    return [trials[i] for i in sorted(trials)]


@dataclass
class _LocalSession:
    """Session created by this process; lets finalize work before the store has it."""

    create: CreateAction
    trials: dict[int, TrialResult] = field(default_factory=dict)
    synced: bool = False  # create committed to the store


class ResultsService:
    def __init__(
        self,
        store: TableStore,
        identity: IdentityResolver,
        queue_storage: QueueStorage | None = None,
        *,
        base_delay_s: float = 1.0,
        max_delay_s: float = 30.0,
        online_delay_s: float = 0.25,
        clock: Callable[[], datetime] = utcnow,
        local_session_limit: int = 1000,
    ):
        self.store = store
        self.identity = identity
        self.clock = clock
        self.queue = PendingActionQueue(
            queue_storage or MemoryQueueStorage(),
            self.replay,
            base_delay_s=base_delay_s,
            max_delay_s=max_delay_s,
            online_delay_s=online_delay_s,
        )
        # Process-wide capability flags; they only ever move towards "unsupported"
        self.supports_session_extensions = True
        self.supports_trial_table: bool | None = None  # None = not checked yet
        self.local_session_limit = local_session_limit
        self._local_sessions: OrderedDict[str, _LocalSession] = OrderedDict()

    @property
    def schema_tier(self) -> SchemaTier:
        return SchemaTier.FULL if self.supports_session_extensions else SchemaTier.MINIMAL

    def start(self) -> None:
        self.queue.start()

    async def aclose(self) -> None:
        await self.queue.aclose()

    def notify_online(self) -> None:
        self.queue.notify_online()

    async def flush_pending(self) -> bool:
        return await self.queue.run_once()

    async def sync_status(self) -> SyncStatus:
        return SyncStatus(
            pending_actions=await self.queue.pending_count(),
            next_flush_delay_s=self.queue.current_delay_s,
            flushing=self.queue.is_flushing,
            supports_session_extensions=self.supports_session_extensions,
            supports_trial_table=self.supports_trial_table,
        )

    # ---------- public operations ----------

    async def create_session(
        self,
        game_id: str,
        difficulty_start: float | None = None,
        *,
        variant: str | None = None,
        metadata: dict[str, Any] | None = None,
        app_version: str | None = None,
        game_version: str | None = None,
        session_id: str | None = None,
        started_at: datetime | None = None,
        idempotency_key: str | None = None,
    ) -> CreatedSession:
        user_id = await self._require_user_id()
        request = _validated(
            CreateSessionRequest,
            {
                "game_id": game_id,
                "difficulty_start": difficulty_start,
                "variant": variant,
                "metadata": metadata,
                "app_version": app_version,
                "game_version": game_version,
                "session_id": session_id,
                "started_at": started_at,
                "idempotency_key": idempotency_key,
            },
            "session parameters",
        )
        sid = request.session_id or str(uuid.uuid4())
        action = CreateAction(
            session_id=sid,
            user_id=user_id,
            game_id=request.game_id,
            difficulty_start=request.difficulty_start,
            variant=request.variant,
            metadata=request.metadata,
            app_version=request.app_version,
            game_version=request.game_version,
            started_at=request.started_at or self.clock(),
            idempotency_key=request.idempotency_key or sid,
        )
        local = self._local_sessions.get(sid)
        if local is not None and local.create.user_id != user_id:
            raise ValidationError(f"Session id {sid} is already in use")
        trials = local.trials if local else {}

        try:
            if request.session_id:
                owner = await self._owner_of(sid)
                if owner is not None and owner != user_id:
                    raise ValidationError(f"Session id {sid} is already in use")
            await self._commit_create(action)
        except Exception as e:
            if classify_failure(e) is not FailureKind.NETWORK:
                raise
            logger.warning(f"Store unreachable creating session {sid}, queued for retry: {e}")
            self._remember(sid, _LocalSession(action, trials))
            await self.queue.enqueue(action)
        else:
            self._remember(sid, _LocalSession(action, trials, synced=True))
        return CreatedSession(id=sid, started_at=action.started_at, user_id=user_id)

    async def append_trial(
        self,
        session_id: str,
        index: int,
        trial_data: dict[str, Any],
        score: StandardScore | Mapping[str, Any],
    ) -> None:
        user_id = await self._require_user_id()
        trial = _validated(
            TrialResult,
            {"index": index, "trialData": trial_data, "score": _as_dict(score)},
            "trial payload",
        )
        action = AppendTrialAction(
            session_id=session_id, user_id=user_id, trial=trial, created_at=self.clock()
        )
        try:
            await self._commit_trial(action)
        except Exception as e:
            if classify_failure(e) is not FailureKind.NETWORK:
                raise
            logger.warning(f"Store unreachable saving trial {index} of {session_id}, queued for retry: {e}")
            await self.queue.enqueue(action)

        local = self._local_sessions.get(session_id)
        if local is not None and local.create.user_id == user_id:
            local.trials[trial.index] = trial

    async def finalize_session(
        self,
        session_id: str,
        difficulty_end: float | None,
        summary: ResultSummary | Mapping[str, Any],
        *,
        ended_at: datetime | None = None,
        duration_ms: int | None = None,
        app_version: str | None = None,
        game_version: str | None = None,
    ) -> ResultPayload:
        user_id = await self._require_user_id()
        action = _validated(
            FinalizeAction,
            {
                "session_id": session_id,
                "user_id": user_id,
                "difficulty_end": difficulty_end,
                "summary": _as_dict(summary),
                "ended_at": ensure_utc(ended_at) if ended_at is not None else self.clock(),
                "duration_ms": duration_ms,
                "app_version": app_version,
                "game_version": game_version,
            },
            "finalize parameters",
        )
        session, trials = await self._load_for_finalize(session_id, user_id)
        if session.completed:
            logger.info(f"Session {session_id} already finalized, returning the stored result")
            self._local_sessions.pop(session_id, None)
            return self._stored_payload(session, trials)

        payload = self._build_payload(action, session, trials)
        action = action.model_copy(update={"duration_ms": payload.duration_ms})

        try:
            matched = await self._commit_finalize(action, payload, session)
        except Exception as e:
            if classify_failure(e) is not FailureKind.NETWORK:
                raise
            logger.warning(f"Store unreachable finalizing session {session_id}, queued for retry: {e}")
            await self.queue.enqueue(action)
        else:
            if not matched:
                logger.info(f"Session {session_id} not stored yet, finalize queued behind its create")
                await self.queue.enqueue(action)
        self._local_sessions.pop(session_id, None)
        return payload

    async def get_session_with_trials(self, session_id: str) -> SessionWithTrials:
        user_id = await self._require_user_id()
        session = await self._fetch_session(session_id, user_id)
        if session is None:
            raise NotFoundError(f"Session {session_id} not found")
        trials = await self._fetch_trials(session_id)
        return SessionWithTrials(session=session, trials=trials)

    async def run_self_test(self) -> SelfTestResult:
        """Create, append one trial, finalize and read back: checks storage + auth wiring end to end."""
        created = await self.create_session(
            SELF_TEST_GAME_ID, 1, metadata={"source": SELF_TEST_GAME_ID}
        )
        score = StandardScore(accuracy=1, time_ms=100, errors=0, score_total=1, extras={"selfTest": True})
        await self.append_trial(created.id, 0, {"kind": SELF_TEST_GAME_ID}, score)

        summary = ResultSummary(accuracy_avg=1, time_avg_ms=100, errors_total=0, score_total=1)
        await self.finalize_session(created.id, 2, summary)

        stored = await self.get_session_with_trials(created.id)
        return SelfTestResult(session_id=created.id, trials=stored.trials, summary=summary)

    # ---------- replay ----------

    async def replay(self, action: PendingAction) -> None:
        """Commit a queued action with its frozen parameters; failures propagate to the queue."""
        if isinstance(action, CreateAction):
            await self._commit_create(action)
            local = self._local_sessions.get(action.session_id)
            if local is not None and local.create.user_id == action.user_id:
                local.synced = True
        elif isinstance(action, AppendTrialAction):
            await self._commit_trial(action)
        elif isinstance(action, FinalizeAction):
            session = await self._fetch_session(action.session_id, action.user_id)
            if session is None:
                raise NotFoundError(f"Session {action.session_id} not found for queued finalize")
            if session.completed:
                logger.info(f"Session {action.session_id} already finalized, skipping queued finalize")
                return
            trials = await self._fetch_trials(action.session_id)
            payload = self._build_payload(action, session, trials)
            if not await self._commit_finalize(action, payload, session):
                raise NotFoundError(f"Session {action.session_id} vanished before finalize")
        else:
            raise TypeError(f"Unknown pending action {action!r}")

    # ---------- commits ----------

    async def _commit_create(self, action: CreateAction) -> None:
        if self.supports_session_extensions:
            try:
                await self.store.upsert(
                    SESSIONS,
                    create_row(action, SchemaTier.FULL),
                    conflict_keys=("id",),
                    update_columns=create_update_columns(SchemaTier.FULL),
                    update_where={"user_id": action.user_id},
                )
                return
            except Exception as e:
                if classify_failure(e) is not FailureKind.CAPABILITY:
                    raise
                self._downgrade_sessions(e)
        await self.store.upsert(
            SESSIONS,
            create_row(action, SchemaTier.MINIMAL),
            conflict_keys=("id",),
            update_columns=create_update_columns(SchemaTier.MINIMAL),
            update_where={"user_id": action.user_id},
        )

    async def _commit_trial(self, action: AppendTrialAction) -> None:
        owner = await self._owner_of(action.session_id)
        if owner is not None and owner != action.user_id:
            raise NotFoundError(f"Session {action.session_id} not found")

        if self.supports_trial_table is not False:
            row = {
                "id": str(uuid.uuid4()),
                "session_id": action.session_id,
                "trial_index": action.trial.index,
                "trial_data": action.trial.trial_data,
                "score": action.trial.score.model_dump(mode="json", by_alias=True),
                "created_at": action.created_at,
            }
            try:
                await self.store.upsert(
                    TRIALS,
                    row,
                    conflict_keys=("session_id", "trial_index"),
                    update_columns=("trial_data", "score", "created_at"),
                )
            except Exception as e:
                if classify_failure(e) is not FailureKind.CAPABILITY:
                    raise
                self._mark_trial_table_missing(e)
            else:
                self.supports_trial_table = True
                await self._log_trial_event(action, primary=False)
                return
        await self._log_trial_event(action, primary=True)

    async def _log_trial_event(self, action: AppendTrialAction, primary: bool) -> None:
        """Mirror the trial into game_events; when it is the only copy, network failures still propagate."""
        row = {
            "id": str(uuid.uuid4()),
            "session_id": action.session_id,
            "event_type": TRIAL_EVENT_TYPE,
            "payload": action.trial.model_dump(mode="json", by_alias=True),
            "created_at": action.created_at,
        }
        try:
            await self.store.insert(EVENTS, row)
        except Exception as e:
            kind = classify_failure(e)
            if primary and kind is FailureKind.NETWORK:
                raise
            if kind is FailureKind.CAPABILITY and not primary:
                logger.debug(f"Event log unavailable, trial {action.trial.index} not mirrored: {e}")
            else:
                logger.warning(f"Failed to log trial {action.trial.index} of {action.session_id} as event: {e}")

    async def _commit_finalize(self, action: FinalizeAction, payload: ResultPayload, session: SessionRecord) -> int:
        # only the owner's open row; a completed session keeps its first result
        match = {"id": action.session_id, "user_id": action.user_id, "completed": False}
        if self.supports_session_extensions:
            try:
                return await self.store.update(
                    SESSIONS,
                    finalize_update(payload, action, session, SchemaTier.FULL),
                    match,
                )
            except Exception as e:
                if classify_failure(e) is not FailureKind.CAPABILITY:
                    raise
                self._downgrade_sessions(e)
        return await self.store.update(
            SESSIONS,
            finalize_update(payload, action, session, SchemaTier.MINIMAL),
            match,
        )

    # ---------- reads ----------

    async def _owner_of(self, session_id: str) -> str | None:
        row = await self.store.select_one(SESSIONS, ("user_id",), {"id": session_id})
        return str(row["user_id"]) if row else None

    async def _fetch_session(self, session_id: str, user_id: str) -> SessionRecord | None:
        """The caller's session row; someone else's reads as missing."""
        match = {"id": session_id, "user_id": user_id}
        try:
            row = await self.store.select_one(SESSIONS, session_columns(self.schema_tier), match)
        except Exception as e:
            if not self.supports_session_extensions or classify_failure(e) is not FailureKind.CAPABILITY:
                raise
            self._downgrade_sessions(e)
            row = await self.store.select_one(SESSIONS, session_columns(SchemaTier.MINIMAL), match)
        return read_session_row(row) if row else None

    async def _fetch_trials(self, session_id: str) -> list[TrialResult]:
        if self.supports_trial_table is False:
            return await self._fetch_trials_from_events(session_id)
        try:
            rows = await self.store.select_many(
                TRIALS, TRIAL_COLUMNS, {"session_id": session_id}, order_by=("trial_index",)
            )
        except Exception as e:
            if classify_failure(e) is not FailureKind.CAPABILITY:
                raise
            self._mark_trial_table_missing(e)
            return await self._fetch_trials_from_events(session_id)
        return [
            _validated(
                TrialResult,
                {"index": r["trial_index"], "trialData": r["trial_data"], "score": r["score"]},
                "stored trial",
            )
            for r in rows
        ]

    async def _fetch_trials_from_events(self, session_id: str) -> list[TrialResult]:
        rows = await self.store.select_many(
            EVENTS,
            ("event_type", "payload", "created_at"),
            {"session_id": session_id, "event_type": TRIAL_EVENT_TYPES},
            order_by=("created_at",),
        )
        by_index: dict[int, TrialResult] = {}
        for row in rows:
            try:
                trial = TrialResult.model_validate(row.get("payload"))
            except PydanticValidationError:
                logger.debug(f"Skipping malformed trial event for session {session_id}")
                continue
            by_index[trial.index] = trial  # later events win
        return _ordered(by_index)

    async def _load_for_finalize(self, session_id: str, user_id: str) -> tuple[SessionRecord, list[TrialResult]]:
        local = self._local_sessions.get(session_id)
        if local is not None and local.create.user_id != user_id:
            local = None
        try:
            session = await self._fetch_session(session_id, user_id)
            trials = await self._fetch_trials(session_id) if session is not None else []
        except Exception as e:
            if local is None or classify_failure(e) is not FailureKind.NETWORK:
                raise
            logger.warning(f"Store unreachable, finalizing session {session_id} from local state: {e}")
            return local_row(local.create), _ordered(local.trials)

        if session is None:
            if local is None:
                raise NotFoundError(f"Session {session_id} not found for finalize")
            session = local_row(local.create)
        if local is not None and local.trials:
            merged = {t.index: t for t in trials}
            merged.update(local.trials)
            trials = _ordered(merged)
        return session, trials

    def _build_payload(self, action: FinalizeAction, session: SessionRecord, trials: list[TrialResult]) -> ResultPayload:
        duration_ms = action.duration_ms
        if duration_ms is None:
            duration_ms = max(0, (action.ended_at - session.started_at) // timedelta(milliseconds=1))
        return _validated(
            ResultPayload,
            {
                "session_id": action.session_id,
                "user_id": action.user_id,
                "game_id": session.game_id,
                "started_at": session.started_at,
                "ended_at": action.ended_at,
                "duration_ms": duration_ms,
                "difficulty_start": session.difficulty_start,
                "difficulty_end": action.difficulty_end,
                "summary": action.summary,
                "trials": trials,
                "app_version": action.app_version or session.app_version,
                "game_version": action.game_version or session.game_version,
            },
            "result payload",
        )

    def _stored_payload(self, session: SessionRecord, trials: list[TrialResult]) -> ResultPayload:
        """Result of a session that is already finalized, rebuilt from its row without writing."""
        stored = (session.extra or {}).get("resultPayload")
        if stored is not None:
            try:
                return ResultPayload.model_validate(stored)
            except PydanticValidationError:
                logger.debug(f"Stored result payload of session {session.id} unreadable, rebuilding from row")
        ended_at = session.finished_at or session.started_at
        duration_ms = session.duration_ms
        if duration_ms is None:
            duration_ms = max(0, (ended_at - session.started_at) // timedelta(milliseconds=1))
        return _validated(
            ResultPayload,
            {
                "session_id": session.id,
                "user_id": session.user_id,
                "game_id": session.game_id,
                "started_at": session.started_at,
                "ended_at": ended_at,
                "duration_ms": duration_ms,
                "difficulty_start": session.difficulty_start,
                "difficulty_end": session.difficulty_end,
                "summary": session.summary,
                "trials": trials,
                "app_version": session.app_version,
                "game_version": session.game_version,
            },
            "stored result",
        )

    # ---------- local ledger ----------

    def _remember(self, session_id: str, entry: _LocalSession) -> None:
        """Track a session for offline finalize; over the limit, synced sessions go first, then the oldest."""
        self._local_sessions[session_id] = entry
        self._local_sessions.move_to_end(session_id)
        while len(self._local_sessions) > self.local_session_limit:
            victim = next((sid for sid, s in self._local_sessions.items() if s.synced), None)
            if victim is None:
                victim = next(iter(self._local_sessions))
            del self._local_sessions[victim]

    # ---------- capability / identity ----------

    def _downgrade_sessions(self, error: BaseException) -> None:
        if self.supports_session_extensions:
            logger.warning(f"game_sessions lacks extension columns, switching to minimal schema: {error}")
        self.supports_session_extensions = False

    def _mark_trial_table_missing(self, error: BaseException) -> None:
        if self.supports_trial_table is not False:
            logger.warning(f"game_trials unavailable, storing trials as events: {error}")
        self.supports_trial_table = False

    async def _require_user_id(self) -> str:
        try:
            user_id = await self.identity.get_user_id()
        except IdentityError:
            raise
        except Exception as e:
            message = str(e).lower()
            if "token" in message or "auth" in message:
                raise IdentityError() from e
            raise
        if not user_id:
            raise IdentityError()
        return str(user_id)
