"""Database engine and session management — no global state."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.pool import AsyncAdaptedQueuePool, NullPool, StaticPool
from sqlmodel.ext.asyncio.session import AsyncSession


def is_sqlite(database_url: str) -> bool:
    return database_url.startswith("sqlite")


def _sqlite_options(database_url: str) -> dict[str, Any]:
    # An in-memory database only lives as long as its single connection
    pool = StaticPool if ":memory:" in database_url else NullPool
    return {"poolclass": pool, "connect_args": {"check_same_thread": False}}


def _server_options(pool_size: int, max_overflow: int) -> dict[str, Any]:
    return {
        "poolclass": AsyncAdaptedQueuePool,
        "pool_size": pool_size,
        "max_overflow": max_overflow,
        "pool_pre_ping": True,
        "pool_recycle": 3600,
    }


def create_engine(database_url: str, *, pool_size: int = 5, max_overflow: int = 10) -> AsyncEngine:
    """Create the async engine for a PostgreSQL (asyncpg) or SQLite (aiosqlite) URL.

    Pool sizing applies to PostgreSQL only; SQLite connections are not pooled.
    """
    if is_sqlite(database_url):
        options = _sqlite_options(database_url)
    else:
        options = _server_options(pool_size, max_overflow)
    return create_async_engine(database_url, echo=False, **options)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Rows handed back to callers stay readable after commit
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@asynccontextmanager
async def get_session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession]:
    """Open a unit of work: commit when the block exits cleanly, roll back otherwise."""
    async with session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        await session.commit()
