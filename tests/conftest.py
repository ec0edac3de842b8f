"""Shared pytest fixtures for async database and API testing.

This module provides reusable fixtures for testing SQLAlchemy models,
services and routes against an in-memory SQLite database. The engine uses
a StaticPool so every session (test fixtures, request sessions, outbox
drains) sees the same database.

Fixture data must be committed before calling the API: request sessions
share the single pooled connection.
"""

import httpx
import pytest
import pytest_asyncio
from cryptography.fernet import Fernet

import app.database as database
from app.database import create_test_engine, get_session, session_factory_for
from app.models import Base
from app.utils.encryption import EncryptionService

ADMIN_TOKEN = "test-admin-token"


@pytest.fixture
def valid_fernet_key() -> str:
    """Generate a valid Fernet key for testing.

    Returns a fresh, valid Fernet key string suitable for
    use with EncryptionService tests.
    """
    return Fernet.generate_key().decode()


@pytest.fixture(autouse=False)
def encryption_env(valid_fernet_key: str, monkeypatch: pytest.MonkeyPatch):
    """Set up encryption environment for tests.

    Sets FERNET_KEY environment variable and resets the
    EncryptionService singleton before and after the test.

    Use this fixture when tests need encryption capabilities.
    """
    EncryptionService.reset_instance()
    monkeypatch.setenv("FERNET_KEY", valid_fernet_key)
    yield valid_fernet_key
    EncryptionService.reset_instance()


@pytest.fixture(autouse=True)
def quiet_alerts(monkeypatch: pytest.MonkeyPatch):
    """Keep Discord alerts disabled unless a test opts in."""
    monkeypatch.delenv("DISCORD_WEBHOOK_URL", raising=False)


@pytest_asyncio.fixture
async def async_engine():
    """Create an async SQLite engine for testing.

    Creates all tables before yielding, disposes after.

    Yields:
        AsyncEngine: Configured test database engine.
    """
    engine, _ = create_test_engine()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(async_engine):
    """Session factory bound to the test engine (expire_on_commit=False)."""
    return session_factory_for(async_engine)


@pytest_asyncio.fixture
async def async_session(session_factory):
    """Create an async session for testing.

    Yields:
        AsyncSession: Database session for test operations.
    """
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def app_client(session_factory, encryption_env, monkeypatch: pytest.MonkeyPatch):
    """HTTP client for the FastAPI app wired to the test database.

    - get_session yields sessions from the test factory
    - background outbox drains use the same factory
    - ADMIN_API_TOKEN is set to ADMIN_TOKEN
    """
    from app.main import app

    async def override_get_session():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    monkeypatch.setattr(database, "async_session_factory", session_factory)
    monkeypatch.setenv("ADMIN_API_TOKEN", ADMIN_TOKEN)
    app.dependency_overrides[get_session] = override_get_session

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
