"""Declarative base and async engine / session factories."""
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def make_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create the async engine; callers own it and dispose it on shutdown."""
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["timeout"] = 30  # seconds to wait on SQLite locks
    return create_async_engine(database_url, echo=echo, future=True, connect_args=connect_args)


def make_sessionmaker(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, expire_on_commit=False, autoflush=False)


async def create_tables(engine: AsyncEngine) -> None:
    """Create all tables that don't exist yet (dev / test convenience; prod uses Alembic)."""
    # models must be registered on Base.metadata first
    import app.db.base  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
