import uuid
from datetime import timedelta

import pytest

from app.core.errors import SIGN_IN_AGAIN_MESSAGE, FailureKind, IdentityError, NotFoundError, StoreError, ValidationError
from app.db.store import EVENTS, SESSIONS, TRIALS
from app.schemas.pending import AppendTrialAction, CreateAction, FinalizeAction
from app.schemas.results import ResultSummary, StandardScore
from app.services.identity import StaticIdentityResolver
from app.services.results import ResultsService
from conftest import make_service

SCORE = {"accuracy": 1, "timeMs": 450, "errors": 0, "scoreTotal": 1200, "extras": {}}
SUMMARY = {"accuracyAvg": 1, "timeAvgMs": 450, "errorsTotal": 0, "scoreTotal": 1200}


async def stored_sessions(store, session_id):
    return await store.inner.select_many(SESSIONS, ("id", "user_id", "completed"), {"id": session_id})


# ---------- create ----------


async def test_create_returns_ids_and_stores_row(service, store, user_id):
    created = await service.create_session("n-back", 2, variant="dual", metadata={"mode": "daily"})

    assert created.user_id == user_id
    uuid.UUID(created.id)
    record = (await service.get_session_with_trials(created.id)).session
    assert record.game_id == "n-back"
    assert record.difficulty_start == 2
    assert record.variant == "dual"
    assert record.completed is False
    assert record.metadata == {"mode": "daily", "idempotencyKey": created.id}
    assert record.started_at == created.started_at


async def test_create_is_idempotent(service, store):
    sid = str(uuid.uuid4())
    first = await service.create_session("n-back", 2, session_id=sid, idempotency_key="k1")
    second = await service.create_session("n-back", 2, session_id=sid, idempotency_key="k1")

    assert first.id == second.id == sid
    assert len(await stored_sessions(store, sid)) == 1


async def test_create_validates_parameters(service):
    with pytest.raises(ValidationError):
        await service.create_session("")


async def test_create_without_identity_fails_with_sign_in_message(store):
    service = ResultsService(store, StaticIdentityResolver(None))

    with pytest.raises(IdentityError) as info:
        await service.create_session("n-back", 2)

    assert str(info.value) == SIGN_IN_AGAIN_MESSAGE
    assert store.calls == []


async def test_resolver_auth_errors_become_identity_errors(store):
    class BrokenResolver:
        def __init__(self, error):
            self.error = error

        async def get_user_id(self):
            raise self.error

    with pytest.raises(IdentityError):
        await ResultsService(store, BrokenResolver(RuntimeError("refresh token revoked"))).create_session("n-back")
    with pytest.raises(RuntimeError, match="disk full"):
        await ResultsService(store, BrokenResolver(RuntimeError("disk full"))).create_session("n-back")


async def test_create_queues_on_network_failure(service, store, user_id):
    store.go_offline()

    created = await service.create_session("n-back", 2, app_version="1.4.0")

    assert created.user_id == user_id
    queued = await service.queue.load()
    assert len(queued) == 1
    action = queued[0]
    assert isinstance(action, CreateAction)
    assert action.session_id == created.id
    assert action.user_id == user_id
    assert action.game_id == "n-back"
    assert action.difficulty_start == 2
    assert action.app_version == "1.4.0"
    assert action.started_at == created.started_at
    assert action.idempotency_key == created.id


async def test_other_store_failures_propagate_without_queuing(service, store):
    store.error = StoreError("permission denied for table game_sessions")

    with pytest.raises(StoreError):
        await service.create_session("n-back", 2)

    assert await service.queue.pending_count() == 0


async def test_replay_writes_with_frozen_user(service, store, user_id):
    store.go_offline()
    created = await service.create_session("n-back", 2)
    store.go_online()
    service.identity = StaticIdentityResolver(str(uuid.uuid4()))

    assert await service.flush_pending() is True

    rows = await stored_sessions(store, created.id)
    assert rows[0]["user_id"] == user_id


# ---------- trials ----------


async def test_append_trial_last_write_wins(service, store):
    created = await service.create_session("n-back", 2)

    await service.append_trial(created.id, 3, {"stimulus": "A"}, SCORE)
    await service.append_trial(created.id, 3, {"stimulus": "B"}, {**SCORE, "accuracy": 0.5})

    trials = (await service.get_session_with_trials(created.id)).trials
    assert len(trials) == 1
    assert trials[0].index == 3
    assert trials[0].trial_data == {"stimulus": "B"}
    assert trials[0].score.accuracy == 0.5
    assert service.supports_trial_table is True
    # every trial is mirrored into the event log
    events = await store.inner.select_many(EVENTS, ("event_type",), {"session_id": created.id})
    assert [e["event_type"] for e in events] == ["trial", "trial"]


async def test_append_trial_defaults_missing_extras(service):
    created = await service.create_session("n-back", 2)
    score = {k: v for k, v in SCORE.items() if k != "extras"}

    await service.append_trial(created.id, 0, {}, score)

    trials = (await service.get_session_with_trials(created.id)).trials
    assert trials[0].score.extras == {}


@pytest.mark.parametrize(
    "index, score",
    [
        (-1, SCORE),
        (0, {**SCORE, "accuracy": 1.5}),
        (0, {**SCORE, "timeMs": -1}),
        (0, {**SCORE, "errors": -2}),
        ("3", SCORE),
        (True, SCORE),
        (3.0, SCORE),
    ],
)
async def test_append_trial_rejects_invalid_trials(service, store, index, score):
    with pytest.raises(ValidationError):
        await service.append_trial(str(uuid.uuid4()), index, {}, score)
    assert store.calls == []


async def test_append_trial_queues_on_network_failure(service, store):
    created = await service.create_session("n-back", 2)
    store.go_offline()

    await service.append_trial(created.id, 0, {"stimulus": "A"}, SCORE)

    queued = await service.queue.load()
    assert len(queued) == 1
    assert isinstance(queued[0], AppendTrialAction)
    assert queued[0].trial.index == 0


async def test_mirror_failure_is_not_raised(service, store):
    created = await service.create_session("n-back", 2)

    class EventLogDown(type(store)):
        async def insert(self, table, row):
            raise StoreError("permission denied for table game_events")

    service.store = EventLogDown(store.inner)
    await service.append_trial(created.id, 0, {}, SCORE)

    assert len((await service.get_session_with_trials(created.id)).trials) == 1


# ---------- finalize ----------


async def test_finalize_builds_payload_and_marks_row_completed(service, store, user_id):
    created = await service.create_session("n-back", 2, app_version="1.4.0")
    for i in (1, 0):
        await service.append_trial(created.id, i, {"n": i}, SCORE)
    ended_at = created.started_at + timedelta(seconds=90)

    payload = await service.finalize_session(created.id, 3, SUMMARY, ended_at=ended_at)

    assert str(payload.session_id) == created.id
    assert str(payload.user_id) == user_id
    assert payload.duration_ms == 90_000
    assert payload.difficulty_start == 2
    assert payload.difficulty_end == 3
    assert payload.app_version == "1.4.0"
    assert [t.index for t in payload.trials] == [0, 1]

    record = (await service.get_session_with_trials(created.id)).session
    assert record.completed is True
    assert record.finished_at == ended_at
    assert record.duration_ms == 90_000
    assert record.difficulty_end == 3
    assert record.score == 1200
    assert record.accuracy == 1
    assert record.summary == SUMMARY
    assert record.extra["resultPayload"]["sessionId"] == created.id


async def test_finalize_duration_defaults_to_now_minus_start(service, clock):
    created = await service.create_session("n-back", 2)

    payload = await service.finalize_session(created.id, 3, SUMMARY)

    assert payload.ended_at == clock.now
    assert payload.duration_ms == (clock.now - created.started_at) // timedelta(milliseconds=1)
    assert payload.duration_ms == 1000


async def test_finalize_duration_floors_at_zero(service, clock):
    created = await service.create_session("n-back", 2, started_at=clock.now + timedelta(hours=1))

    payload = await service.finalize_session(created.id, 3, SUMMARY)

    assert payload.duration_ms == 0


async def test_finalize_keeps_explicit_duration(service):
    created = await service.create_session("n-back", 2)

    payload = await service.finalize_session(created.id, 3, SUMMARY, duration_ms=1234)

    assert payload.duration_ms == 1234


async def test_finalize_unknown_session(service):
    with pytest.raises(NotFoundError):
        await service.finalize_session(str(uuid.uuid4()), 3, SUMMARY)


async def test_finalize_rejects_invalid_summary(service):
    created = await service.create_session("n-back", 2)

    with pytest.raises(ValidationError):
        await service.finalize_session(created.id, 3, {**SUMMARY, "accuracyAvg": -0.1})


async def test_finalize_rejects_non_uuid_session_ids(service):
    created = await service.create_session("n-back", 2, session_id="not-a-uuid")

    with pytest.raises(ValidationError):
        await service.finalize_session(created.id, 3, SUMMARY)


async def test_finalize_merges_prior_extras(service, store):
    created = await service.create_session("n-back", 2, metadata={"mode": "daily"})

    await service.finalize_session(created.id, 3, SUMMARY)

    record = (await service.get_session_with_trials(created.id)).session
    assert record.extra["mode"] == "daily"
    assert "resultPayload" in record.extra


async def test_finalize_queues_on_network_failure(service, store):
    created = await service.create_session("n-back", 2)
    await service.append_trial(created.id, 0, {}, SCORE)
    store.go_offline()

    payload = await service.finalize_session(created.id, 3, SUMMARY)

    assert [t.index for t in payload.trials] == [0]
    queued = await service.queue.load()
    assert len(queued) == 1
    assert isinstance(queued[0], FinalizeAction)
    assert queued[0].duration_ms == payload.duration_ms


async def test_whole_session_offline_syncs_later(service, store):
    store.go_offline()
    created = await service.create_session("n-back", 2)
    await service.append_trial(created.id, 0, {"stimulus": "A"}, SCORE)
    payload = await service.finalize_session(created.id, 3, SUMMARY)

    assert len(payload.trials) == 1
    assert [a.type for a in await service.queue.load()] == ["create", "trial", "finalize"]

    store.go_online()
    assert await service.flush_pending() is True

    stored = await service.get_session_with_trials(created.id)
    assert stored.session.completed is True
    assert stored.session.duration_ms == payload.duration_ms
    assert [t.index for t in stored.trials] == [0]


async def test_finalize_before_create_synced_is_queued_behind_it(service, store):
    store.go_offline()
    created = await service.create_session("n-back", 2)
    store.go_online()

    await service.finalize_session(created.id, 3, SUMMARY)

    assert [a.type for a in await service.queue.load()] == ["create", "finalize"]
    assert await service.flush_pending() is True
    assert (await service.get_session_with_trials(created.id)).session.completed is True


async def test_sync_status_reports_pending_writes(service, store):
    store.go_offline()
    await service.create_session("n-back", 2)

    status = await service.sync_status()

    assert status.pending_actions == 1
    assert status.supports_session_extensions is True
    assert status.next_flush_delay_s == 60


# ---------- minimal schema ----------


async def test_capability_downgrade_is_sticky(baseline_service, baseline_store):
    first = await baseline_service.create_session("n-back", 2, app_version="1.4.0")

    assert baseline_service.supports_session_extensions is False
    assert baseline_store.count("upsert", SESSIONS) == 2

    await baseline_service.create_session("n-back", 2)
    await baseline_service.finalize_session(first.id, 3, SUMMARY)

    assert baseline_store.count("upsert", SESSIONS) == 3
    assert baseline_store.count("update", SESSIONS) == 1
    row = await baseline_store.inner.select_one(SESSIONS, ("extra", "completed"), {"id": first.id})
    assert row["completed"] is True
    assert row["extra"]["idempotencyKey"] == first.id
    assert row["extra"]["appVersion"] == "1.4.0"
    assert row["extra"]["summary"] == SUMMARY
    assert row["extra"]["difficultyEnd"] == 3


async def test_trials_fall_back_to_events(baseline_service, baseline_store):
    created = await baseline_service.create_session("n-back", 2)

    await baseline_service.append_trial(created.id, 1, {"stimulus": "B"}, SCORE)
    await baseline_service.append_trial(created.id, 0, {"stimulus": "A"}, SCORE)
    await baseline_service.append_trial(created.id, 1, {"stimulus": "C"}, SCORE)

    assert baseline_service.supports_trial_table is False
    assert baseline_store.count("upsert", TRIALS) == 1
    payload = await baseline_service.finalize_session(created.id, 3, SUMMARY)
    assert [(t.index, t.trial_data) for t in payload.trials] == [(0, {"stimulus": "A"}), (1, {"stimulus": "C"})]


async def test_malformed_trial_events_are_skipped(baseline_service, baseline_store, clock):
    created = await baseline_service.create_session("n-back", 2)
    await baseline_service.append_trial(created.id, 0, {}, SCORE)
    await baseline_store.inner.insert(
        EVENTS,
        {
            "id": str(uuid.uuid4()),
            "session_id": created.id,
            "event_type": "TRIAL",
            "payload": {"garbage": True},
            "created_at": clock(),
        },
    )

    trials = (await baseline_service.get_session_with_trials(created.id)).trials

    assert [t.index for t in trials] == [0]


async def test_fresh_process_detects_minimal_schema_on_read(baseline_store, user_id):
    writer = make_service(baseline_store, user_id)
    created = await writer.create_session("n-back", 2)
    await writer.append_trial(created.id, 0, {}, SCORE)
    await writer.finalize_session(created.id, 3, SUMMARY, duration_ms=500)

    reader = make_service(baseline_store, user_id)
    stored = await reader.get_session_with_trials(created.id)

    assert reader.supports_session_extensions is False
    assert reader.supports_trial_table is False
    assert stored.session.difficulty_end == 3
    assert stored.session.duration_ms == 500
    assert stored.session.summary == SUMMARY
    assert [t.index for t in stored.trials] == [0]
    await writer.aclose()
    await reader.aclose()


# ---------- scenarios ----------


async def test_n_back_session_end_to_end(service):
    created = await service.create_session(game_id="n-back", difficulty_start=2)
    await service.append_trial(created.id, 0, {"stimulus": "K", "target": True}, StandardScore.model_validate(SCORE))

    payload = await service.finalize_session(created.id, 3, ResultSummary.model_validate(SUMMARY))

    assert len(payload.trials) == 1
    assert payload.trials[0].index == 0


async def test_self_test(service):
    result = await service.run_self_test()

    assert result.session_id
    assert [t.index for t in result.trials] == [0]
    assert result.trials[0].score.extras == {"selfTest": True}
    assert result.summary.accuracy_avg == 1
    assert result.summary.errors_total == 0
    record = (await service.get_session_with_trials(result.session_id)).session
    assert record.game_id == "self-test"
    assert record.completed is True


async def test_self_test_surfaces_identity_errors(store):
    with pytest.raises(IdentityError):
        await ResultsService(store, StaticIdentityResolver(None)).run_self_test()


async def test_store_capability_error_on_minimal_retry_propagates(service, store):
    store.error = StoreError("relation game_sessions does not exist", FailureKind.CAPABILITY)

    with pytest.raises(StoreError):
        await service.create_session("n-back", 2)

    assert service.supports_session_extensions is False
    assert await service.queue.pending_count() == 0


# ---------- ownership ----------


async def test_sessions_are_invisible_to_other_players(service, store, user_id):
    created = await service.create_session("n-back", 2)
    other = make_service(store, str(uuid.uuid4()))

    with pytest.raises(NotFoundError):
        await other.get_session_with_trials(created.id)
    with pytest.raises(NotFoundError):
        await other.finalize_session(created.id, 9, SUMMARY)
    with pytest.raises(NotFoundError):
        await other.append_trial(created.id, 0, {"stimulus": "X"}, SCORE)

    stored = await service.get_session_with_trials(created.id)
    assert stored.session.completed is False
    assert stored.trials == []
    await other.aclose()


async def test_create_cannot_take_over_another_players_session(service, store, user_id):
    created = await service.create_session("n-back", 2)
    other = make_service(store, str(uuid.uuid4()))

    with pytest.raises(ValidationError):
        await other.create_session("stroop", 5, session_id=created.id)

    rows = await stored_sessions(store, created.id)
    assert rows[0]["user_id"] == user_id
    assert (await service.get_session_with_trials(created.id)).session.game_id == "n-back"
    await other.aclose()


async def test_replayed_create_leaves_foreign_row_alone(service, store, user_id, clock):
    created = await service.create_session("n-back", 2)
    intruder = str(uuid.uuid4())
    action = CreateAction(
        session_id=created.id,
        user_id=intruder,
        game_id="stroop",
        difficulty_start=5,
        started_at=clock(),
        idempotency_key=created.id,
    )

    await service.replay(action)

    rows = await stored_sessions(store, created.id)
    assert rows[0]["user_id"] == user_id
    assert (await service.get_session_with_trials(created.id)).session.game_id == "n-back"


# ---------- finalize once ----------


async def test_second_finalize_returns_stored_result_without_writing(service, store):
    created = await service.create_session("n-back", 2)
    await service.append_trial(created.id, 0, {}, SCORE)
    first = await service.finalize_session(created.id, 3, SUMMARY)
    updates = store.count("update", SESSIONS)

    second = await service.finalize_session(created.id, 9, {**SUMMARY, "scoreTotal": 1})

    assert store.count("update", SESSIONS) == updates
    assert second.model_dump() == first.model_dump()
    record = (await service.get_session_with_trials(created.id)).session
    assert record.finished_at == first.ended_at
    assert record.difficulty_end == 3
    assert record.score == 1200
    assert record.summary == SUMMARY


async def test_second_finalize_on_minimal_schema_keeps_first_result(baseline_service, baseline_store):
    created = await baseline_service.create_session("n-back", 2)
    first = await baseline_service.finalize_session(created.id, 3, SUMMARY, duration_ms=500)

    second = await baseline_service.finalize_session(created.id, 9, {**SUMMARY, "scoreTotal": 1})

    assert baseline_store.count("update", SESSIONS) == 1
    assert second.ended_at == first.ended_at
    assert second.difficulty_end == 3
    assert second.duration_ms == 500
    assert second.summary.model_dump() == first.summary.model_dump()
    row = await baseline_store.inner.select_one(SESSIONS, ("score", "extra"), {"id": created.id})
    assert row["score"] == 1200
    assert row["extra"]["difficultyEnd"] == 3


async def test_queued_finalize_for_completed_session_is_skipped(service, store):
    created = await service.create_session("n-back", 2)
    store.go_offline()
    await service.finalize_session(created.id, 3, SUMMARY)
    store.go_online()
    await service.finalize_session(created.id, 7, {**SUMMARY, "scoreTotal": 5})

    assert await service.flush_pending() is True

    record = (await service.get_session_with_trials(created.id)).session
    assert record.difficulty_end == 7
    assert record.score == 5


# ---------- local ledger ----------


async def test_rejected_trial_is_left_out_of_the_result(service, store):
    created = await service.create_session("n-back", 2)

    class TrialTableLocked(type(store)):
        async def upsert(self, table, row, conflict_keys, update_columns=None, update_where=None):
            if table == TRIALS:
                raise StoreError("permission denied for table game_trials")
            await super().upsert(table, row, conflict_keys, update_columns, update_where)

    service.store = TrialTableLocked(store.inner)
    with pytest.raises(StoreError):
        await service.append_trial(created.id, 0, {"stimulus": "A"}, SCORE)
    service.store = store

    payload = await service.finalize_session(created.id, 3, SUMMARY)

    assert payload.trials == []
    assert await service.queue.pending_count() == 0


async def test_local_ledger_is_bounded(store, user_id):
    service = make_service(store, user_id, local_session_limit=10)

    for _ in range(50):
        await service.create_session("n-back", 2)

    assert len(service._local_sessions) == 10
    await service.aclose()


async def test_local_ledger_evicts_synced_sessions_first(store, user_id):
    service = make_service(store, user_id, local_session_limit=3)
    store.go_offline()
    offline = [(await service.create_session("n-back", 2)).id for _ in range(2)]
    store.go_online()

    for _ in range(5):
        await service.create_session("n-back", 2)

    assert len(service._local_sessions) == 3
    assert all(sid in service._local_sessions for sid in offline)
    await service.aclose()


async def test_finalize_forgets_local_session(service):
    created = await service.create_session("n-back", 2)
    assert created.id in service._local_sessions

    await service.finalize_session(created.id, 3, SUMMARY)

    assert created.id not in service._local_sessions
