"""Async database engine and session management.

The ledger lives in PostgreSQL (asyncpg driver). Tests run the same models
against in-memory SQLite through ``create_test_engine``; the only dialect
difference the services see is hidden behind ``insert_for``.

Module state:
    engine: AsyncEngine, or None when DATABASE_URL is not set at import
    async_session_factory: session factory bound to ``engine`` (or None)

Usage:
    from app.database import get_session

    async def my_route(db: AsyncSession = Depends(get_session)):
        result = await db.execute(select(Task))
        ...
"""

import os
from collections.abc import AsyncGenerator
from typing import Any

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from app.config import get_database_pool_settings, get_database_url


def session_factory_for(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory used everywhere: attributes stay loaded after commit.

    Services return ORM instances to routes after committing, so
    expire_on_commit must stay False.
    """
    return async_sessionmaker(bind=bind, class_=AsyncSession, expire_on_commit=False)


def create_engine_from_env() -> AsyncEngine | None:
    """Build the production engine, or None when DATABASE_URL is unset."""
    if not os.getenv("DATABASE_URL"):
        return None
    return create_async_engine(
        get_database_url(),
        pool_pre_ping=True,
        **get_database_pool_settings(),
    )


# Engine creation is deferred in environments without DATABASE_URL (tests, tooling)
engine: AsyncEngine | None = create_engine_from_env()

async_session_factory: async_sessionmaker[AsyncSession] | None = (
    session_factory_for(engine) if engine is not None else None
)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding one session per request.

    Commits when the route returns normally and rolls back when it raises.
    Services that need a commit before the response (conditional updates,
    idempotency placeholders) commit explicitly; the final commit is then a
    no-op.

    Raises:
        RuntimeError: If database is not configured.
    """
    if async_session_factory is None:
        raise RuntimeError("Database not configured. Set DATABASE_URL environment variable.")

    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def insert_for(session: AsyncSession, table: Any) -> Any:
    """Build an INSERT supporting ``on_conflict_do_nothing`` for the session's dialect.

    Callers check ``result.rowcount``: 1 when the row was inserted, 0 when a
    row with the same key already existed.
    """
    if session.get_bind().dialect.name == "sqlite":
        return sqlite.insert(table)
    return postgresql.insert(table)


def create_test_engine(
    database_url: str = "sqlite+aiosqlite:///:memory:",
) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """Create an async engine for testing.

    StaticPool keeps a single connection, so every session (fixtures,
    request handlers, background drains) sees the same in-memory database.

    Returns:
        Tuple of (engine, session factory).
    """
    test_engine = create_async_engine(
        database_url,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    return test_engine, session_factory_for(test_engine)
