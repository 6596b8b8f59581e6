"""Shared fixtures: SQLite stores (full and baseline-only schema), a flaky store wrapper, a ticking clock."""
import uuid
from datetime import datetime, timedelta, timezone

import pytest
import sqlalchemy as sa

from app.core.errors import FailureKind, StoreError
from app.db.session import create_tables, make_engine, make_sessionmaker
from app.db.store import SqlTableStore
from app.services.identity import StaticIdentityResolver
from app.services.results import ResultsService


class FlakyStore:
    """Wraps a real store; raises `error` from every call while it is set."""

    def __init__(self, inner):
        self.inner = inner
        self.error: Exception | None = None
        self.calls: list[tuple[str, str]] = []

    def go_offline(self):
        self.error = StoreError("network request failed: connection refused", FailureKind.NETWORK)

    def go_online(self):
        self.error = None

    def count(self, op: str, table: str) -> int:
        return self.calls.count((op, table))

    def _check(self, op, table):
        self.calls.append((op, table))
        if self.error is not None:
            raise self.error

    async def insert(self, table, row):
        self._check("insert", table)
        await self.inner.insert(table, row)

    async def upsert(self, table, row, conflict_keys, update_columns=None, update_where=None):
        self._check("upsert", table)
        await self.inner.upsert(table, row, conflict_keys, update_columns, update_where)

    async def update(self, table, values, match):
        self._check("update", table)
        return await self.inner.update(table, values, match)

    async def select_one(self, table, columns, match):
        self._check("select", table)
        return await self.inner.select_one(table, columns, match)

    async def select_many(self, table, columns, match, order_by=()):
        self._check("select", table)
        return await self.inner.select_many(table, columns, match, order_by)


class TickingClock:
    """Each call moves time forward by `step`."""

    def __init__(self, start=datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc), step=timedelta(seconds=1)):
        self.now = start
        self.step = step

    def __call__(self) -> datetime:
        self.now = self.now + self.step
        return self.now


def baseline_metadata() -> sa.MetaData:
    """game_sessions / game_events as revision 001 creates them: no extension columns, no game_trials."""
    metadata = sa.MetaData()
    sa.Table(
        "game_sessions",
        metadata,
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("game_id", sa.String(64), nullable=False),
        sa.Column("difficulty_level", sa.Float),
        sa.Column("variant", sa.String(64)),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True)),
        sa.Column("score", sa.Float),
        sa.Column("accuracy", sa.Float),
        sa.Column("completed", sa.Boolean, nullable=False, default=False),
        sa.Column("extra", sa.JSON),
    )
    sa.Table(
        "game_events",
        metadata,
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("session_id", sa.String(64), nullable=False),
        sa.Column("event_type", sa.String(32), nullable=False),
        sa.Column("payload", sa.JSON, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    return metadata


@pytest.fixture
def user_id() -> str:
    return str(uuid.uuid4())


@pytest.fixture
def clock() -> TickingClock:
    return TickingClock()


@pytest.fixture
async def engine(tmp_path):
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'results.db'}")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
async def baseline_engine(tmp_path):
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'baseline.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(baseline_metadata().create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def store(engine) -> FlakyStore:
    return FlakyStore(SqlTableStore(make_sessionmaker(engine)))


@pytest.fixture
def baseline_store(baseline_engine) -> FlakyStore:
    return FlakyStore(SqlTableStore(make_sessionmaker(baseline_engine)))


def make_service(store, user_id, clock=None, **kwargs) -> ResultsService:
    # long delays: tests drive flushes explicitly
    return ResultsService(
        store,
        StaticIdentityResolver(user_id),
        base_delay_s=60,
        max_delay_s=600,
        online_delay_s=60,
        clock=clock or TickingClock(),
        **kwargs,
    )


@pytest.fixture
async def service(store, user_id, clock):
    service = make_service(store, user_id, clock)
    yield service
    await service.aclose()


@pytest.fixture
async def baseline_service(baseline_store, user_id, clock):
    service = make_service(baseline_store, user_id, clock)
    yield service
    await service.aclose()
