"""Async database engine, session factory, and table bootstrapping."""

from __future__ import annotations

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
)
from sqlalchemy.ext.asyncio import (
    create_async_engine as _sa_create_async_engine,
)
from sqlalchemy.pool import StaticPool

from vmfleet.db.models import Base

# Seconds a SQLite writer waits for a competing writer's lock.
_SQLITE_BUSY_TIMEOUT = 15.0


def _is_sqlite_memory(database_url: str) -> bool:
    return database_url in ("sqlite://", "sqlite+aiosqlite://") or ":memory:" in database_url


def create_async_engine(database_url: str) -> AsyncEngine:
    """Create an :class:`AsyncEngine` for the given *database_url*.

    Supported schemes:

    * ``postgresql+asyncpg://...``
    * ``sqlite+aiosqlite://...``

    SQLite connections may be used from any thread and wait on each
    other's write locks instead of failing.  In-memory SQLite shares one
    connection so every session sees the same database.
    """
    kwargs: dict[str, object] = {}

    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {
            "check_same_thread": False,
            "timeout": _SQLITE_BUSY_TIMEOUT,
        }
        if _is_sqlite_memory(database_url):
            kwargs["poolclass"] = StaticPool

    return _sa_create_async_engine(database_url, **kwargs)


def create_session_factory(
    engine: AsyncEngine,
) -> async_sessionmaker[AsyncSession]:
    """Return a session factory bound to *engine*.

    Sessions keep attributes loaded after commit (``expire_on_commit=False``)
    so store snapshots can be built without another round trip.
    """
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def create_tables(engine: AsyncEngine) -> None:
    """Create the ``servers`` table (and any other declared tables)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
