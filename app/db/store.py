"""Durable Store Adapter: table-oriented insert / upsert / update / select over async SQLAlchemy.

Statements reference only the columns a call names (typed from the model
metadata where known), so a database that lacks a table or column fails the
call instead of the whole store. Every failure leaves this module as a
StoreError tagged network / capability / other.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Mapping, Sequence
from typing import Any, Protocol

import sqlalchemy as sa
from sqlalchemy import exc as sa_exc
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import async_sessionmaker

import app.db.base  # noqa: F401  (registers model tables on Base.metadata)
from app.core.errors import StoreError
from app.db.session import Base
from app.services.fallback import classify_failure

logger = logging.getLogger(__name__)

SESSIONS = "game_sessions"
TRIALS = "game_trials"
EVENTS = "game_events"


class TableStore(Protocol):
    """What the results engine needs from a backend."""

    async def insert(self, table: str, row: Mapping[str, Any]) -> None: ...

    async def upsert(
        self,
        table: str,
        row: Mapping[str, Any],
        conflict_keys: Sequence[str],
        update_columns: Sequence[str] | None = None,
        update_where: Mapping[str, Any] | None = None,
    ) -> None: ...

    async def update(self, table: str, values: Mapping[str, Any], match: Mapping[str, Any]) -> int: ...

    async def select_one(
        self, table: str, columns: Sequence[str], match: Mapping[str, Any]
    ) -> dict[str, Any] | None: ...

    async def select_many(
        self,
        table: str,
        columns: Sequence[str],
        match: Mapping[str, Any],
        order_by: Sequence[str] = (),
    ) -> list[dict[str, Any]]: ...


def _table(name: str, columns: Iterable[str]) -> sa.TableClause:
    known = Base.metadata.tables.get(name)
    cols = []
    for col in dict.fromkeys(columns):
        if known is not None and col in known.c:
            cols.append(sa.column(col, known.c[col].type))
        else:
            cols.append(sa.column(col))
    return sa.table(name, *cols)


def _where(table: sa.TableClause, match: Mapping[str, Any]) -> list:
    clauses = []
    for col, value in match.items():
        if isinstance(value, (list, tuple, set, frozenset)):
            clauses.append(table.c[col].in_(list(value)))
        else:
            clauses.append(table.c[col] == value)
    return clauses


class SqlTableStore:
    """TableStore over an async_sessionmaker (SQLite via aiosqlite, PostgreSQL via asyncpg)."""

    def __init__(self, sessionmaker: async_sessionmaker, timeout_s: float | None = 10.0):
        self._sessionmaker = sessionmaker
        self._timeout_s = timeout_s

    async def _execute(self, op: str, table: str, stmt) -> tuple[list[dict[str, Any]] | None, int]:
        async def run():
            async with self._sessionmaker() as session:
                async with session.begin():
                    result = await session.execute(stmt)
                    if result.returns_rows:
                        rows = [dict(r._mapping) for r in result.fetchall()]
                        return rows, result.rowcount
                    return None, result.rowcount

        try:
            if self._timeout_s:
                return await asyncio.wait_for(run(), timeout=self._timeout_s)
            return await run()
        except asyncio.TimeoutError as e:
            raise StoreError(f"{op} on {table}: timeout after {self._timeout_s}s", classify_failure(e)) from e
        except (sa_exc.SQLAlchemyError, OSError) as e:
            kind = classify_failure(e)
            logger.debug(f"{op} on {table} failed ({kind.value}): {e}")
            raise StoreError(f"{op} on {table} failed: {e}", kind) from e

    def _dialect_insert(self, table: sa.TableClause):
        dialect = self._sessionmaker.kw["bind"].dialect.name
        if dialect == "sqlite":
            return sqlite.insert(table)
        if dialect == "postgresql":
            return postgresql.insert(table)
        raise StoreError(f"upsert not supported for dialect {dialect}")

    async def insert(self, table: str, row: Mapping[str, Any]) -> None:
        t = _table(table, row.keys())
        await self._execute("insert", table, sa.insert(t).values(**row))

    async def upsert(
        self,
        table: str,
        row: Mapping[str, Any],
        conflict_keys: Sequence[str],
        update_columns: Sequence[str] | None = None,
        update_where: Mapping[str, Any] | None = None,
    ) -> None:
        """Insert `row`, or on a `conflict_keys` clash overwrite `update_columns` (default: all non-key).

        With `update_where`, the existing row is only overwritten when it matches; otherwise it is left as is.
        """
        t = _table(table, list(row.keys()) + list((update_where or {}).keys()))
        stmt = self._dialect_insert(t).values(**row)
        if update_columns is None:
            update_columns = [c for c in row if c not in conflict_keys and c != "id"]
        set_ = {c: stmt.excluded[c] for c in update_columns if c in row}
        if set_:
            stmt = stmt.on_conflict_do_update(
                index_elements=list(conflict_keys),
                set_=set_,
                where=sa.and_(*_where(t, update_where)) if update_where else None,
            )
        else:
            stmt = stmt.on_conflict_do_nothing(index_elements=list(conflict_keys))
        await self._execute("upsert", table, stmt)

    async def update(self, table: str, values: Mapping[str, Any], match: Mapping[str, Any]) -> int:
        """Update matching rows; returns how many rows matched."""
        t = _table(table, list(values.keys()) + list(match.keys()))
        stmt = sa.update(t).where(*_where(t, match)).values(**values)
        _, rowcount = await self._execute("update", table, stmt)
        return rowcount

    async def select_one(
        self, table: str, columns: Sequence[str], match: Mapping[str, Any]
    ) -> dict[str, Any] | None:
        rows = await self.select_many(table, columns, match)
        return rows[0] if rows else None

    async def select_many(
        self,
        table: str,
        columns: Sequence[str],
        match: Mapping[str, Any],
        order_by: Sequence[str] = (),
    ) -> list[dict[str, Any]]:
        t = _table(table, list(columns) + list(match.keys()) + list(order_by))
        stmt = sa.select(*[t.c[c] for c in columns]).where(*_where(t, match))
        if order_by:
            stmt = stmt.order_by(*[t.c[c].asc() for c in order_by])
        rows, _ = await self._execute("select", table, stmt)
        return rows or []
