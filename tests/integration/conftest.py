"""Pytest fixtures for integration tests.

Provides an in-memory SQLite release ledger, a release coordinator wired to
in-memory collaborators, and an HTTP client for the operator API.

ASGITransport does not run the application lifespan, so the coordinator is
passed to create_app and the ledger session factory is attached to the app
state directly.
"""

from __future__ import annotations

from typing import AsyncGenerator

import pytest
import pytest_asyncio
from fakes import WEBHOOK_SECRET, Harness, make_harness
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from rollwright.config import DatabaseConfig, WebConfig
from rollwright.database.connection import create_schema, get_session_factory
from rollwright.database.ledger import ReleaseLedger
from rollwright.web.app import create_app


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    """Use asyncio as the async backend for pytest-asyncio.

    Returns:
        The name of the async backend to use.
    """
    return "asyncio"


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """Create an in-memory SQLite async engine for testing.

    Yields:
        Configured AsyncEngine instance using in-memory SQLite.
    """
    test_engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
    )
    await create_schema(test_engine)

    yield test_engine

    await test_engine.dispose()


@pytest_asyncio.fixture
async def session_factory(
    engine: AsyncEngine,
) -> async_sessionmaker[AsyncSession]:
    """Create an async session factory bound to the test engine.

    Args:
        engine: The test database engine.

    Returns:
        Configured async_sessionmaker for creating test sessions.
    """
    return get_session_factory(engine)


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Create a new async database session for each test.

    Args:
        session_factory: The session factory fixture.

    Yields:
        AsyncSession instance for the test.
    """
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture
async def harness(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[Harness, None]:
    """Coordinator for the ``shop`` unit with the ledger subscribed.

    Yields:
        Harness with the coordinator and its in-memory collaborators.
    """
    h = make_harness()
    h.coordinator.events.subscribe(ReleaseLedger(session_factory))

    yield h

    await h.coordinator.stop()


def build_app(
    harness: Harness,
    session_factory: async_sessionmaker[AsyncSession] | None,
    webhook_secret: str | None = None,
) -> FastAPI:
    """Operator API bound to the harness coordinator."""
    config = harness.config.model_copy(
        update={
            "database": DatabaseConfig(enabled=False),
            "web": WebConfig(webhook_secret=webhook_secret),
        }
    )
    app = create_app(config, coordinator=harness.coordinator)
    app.state.session_factory = session_factory
    return app


@pytest_asyncio.fixture
async def app(
    harness: Harness,
    session_factory: async_sessionmaker[AsyncSession],
) -> FastAPI:
    """Operator API with the ledger enabled and no webhook secret."""
    return build_app(harness, session_factory)


@pytest_asyncio.fixture
async def async_client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Create an async HTTP client for testing the FastAPI app.

    Yields:
        AsyncClient configured to test the application.
    """
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest_asyncio.fixture
async def signed_client(harness: Harness) -> AsyncGenerator[AsyncClient, None]:
    """Client for an app that requires signed webhooks and has no ledger.

    Yields:
        AsyncClient configured to test the application.
    """
    app = build_app(harness, None, webhook_secret=WEBHOOK_SECRET)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
