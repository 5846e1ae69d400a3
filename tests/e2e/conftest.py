"""Pytest fixtures for E2E tests.

Provides a release coordinator wired to in-memory collaborators (registry,
builder, scanner, manifest store and cluster) whose events are persisted to
an in-memory SQLite ledger, so full release scenarios run without Docker, a
git remote or a Kubernetes API server.
"""

from __future__ import annotations

from typing import AsyncGenerator

import pytest
import pytest_asyncio
from fakes import Harness, make_harness
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from rollwright.database.connection import create_schema, get_session_factory
from rollwright.database.ledger import ReleaseLedger


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    """Use asyncio as the async backend for pytest-asyncio.

    Returns:
        The name of the async backend to use.
    """
    return "asyncio"


@pytest_asyncio.fixture
async def e2e_engine() -> AsyncGenerator[AsyncEngine, None]:
    """Create an in-memory SQLite async engine holding the release ledger.

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
async def e2e_session_factory(
    e2e_engine: AsyncEngine,
) -> async_sessionmaker[AsyncSession]:
    """Create an async session factory bound to the test engine.

    Args:
        e2e_engine: The test database engine.

    Returns:
        Configured async_sessionmaker for creating test sessions.
    """
    return get_session_factory(e2e_engine)


@pytest_asyncio.fixture
async def shop(
    e2e_session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[Harness, None]:
    """A coordinator for the ``shop`` unit with the ledger subscribed.

    Args:
        e2e_session_factory: Session factory the ledger writes through.

    Yields:
        Harness with the coordinator and its in-memory collaborators.
    """
    harness = make_harness()
    harness.coordinator.events.subscribe(ReleaseLedger(e2e_session_factory))

    yield harness

    await harness.coordinator.stop()
