"""Liveness and readiness endpoints.

``/health/`` answers as long as the process serves requests. ``/health/ready``
additionally reports whether the release workers are running and, when the
ledger is enabled, whether the database accepts queries.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy import text

from rollwright.logging import get_logger

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = get_logger(__name__)


class HealthResponse(BaseModel):
    """Liveness response.

    Attributes:
        status: Always "ok" while the process serves requests
    """

    status: str


class ReadinessResponse(BaseModel):
    """Readiness response.

    Attributes:
        status: "ok" or "unhealthy"
        coordinator: "running" or "stopped"
        database: "connected", "disconnected" or "disabled"
    """

    status: str
    coordinator: str
    database: str


def get_session_factory(request: Request) -> async_sessionmaker[AsyncSession] | None:
    """Dependency returning the ledger session factory (None when disabled)."""
    return getattr(request.app.state, "session_factory", None)


def create_health_router() -> APIRouter:
    """Create the health router.

    Routes:
        GET /health/ - Liveness
        GET /health/ready - Readiness (coordinator and ledger database)
    """
    router = APIRouter(prefix="/health", tags=["health"])

    @router.get("/", response_model=HealthResponse)
    async def health() -> dict[str, Any]:
        return {"status": "ok"}

    @router.get("/ready", response_model=ReadinessResponse)
    async def readiness(
        request: Request,
        session_factory: async_sessionmaker[AsyncSession] | None = Depends(  # noqa: B008
            get_session_factory
        ),
    ) -> dict[str, Any]:
        coordinator = getattr(request.app.state, "coordinator", None)
        running = bool(coordinator is not None and coordinator.running)

        database = "disabled"
        if session_factory is not None:
            try:
                async with session_factory() as session:
                    await session.execute(text("SELECT 1"))
                database = "connected"
            except Exception as exc:
                logger.warning("readiness_check_failed", database="disconnected", error=str(exc))
                database = "disconnected"

        ok = running and database != "disconnected"
        return {
            "status": "ok" if ok else "unhealthy",
            "coordinator": "running" if running else "stopped",
            "database": database,
        }

    return router
