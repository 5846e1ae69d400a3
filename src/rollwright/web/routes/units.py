"""Operator endpoints for deployable units.

Every status-returning endpoint encodes the unit outcome in the HTTP status
code so scripts can branch without parsing the body:

- 200: the current release succeeded, failed before deploying, or the unit
  is idle
- 202: a release is queued or in flight
- 423: the unit is fatal and blocked until an operator clears it
"""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rollwright.database.queries.release_event import (
    ReleaseSummary,
    list_release_events,
    release_timeline,
)
from rollwright.errors import ConflictError, NoPriorGoodRevision, SyncFailure, UnknownUnit
from rollwright.logging import get_logger
from rollwright.models import (
    HealthStatus,
    Release,
    ReleaseState,
    SyncOperation,
    UnitOutcome,
    UnitStatus,
)
from rollwright.orchestrator.coordinator import ReleaseCoordinator
from rollwright.orchestrator.reconciler import ReconcilePhase
from rollwright.pipeline.manifest_store import ManifestStoreError
from rollwright.web.routes.health import get_session_factory

logger = get_logger(__name__)

OUTCOME_STATUS_CODES = {
    UnitOutcome.SUCCESS: 200,
    UnitOutcome.FAILED: 200,
    UnitOutcome.IN_PROGRESS: 202,
    UnitOutcome.FATAL: 423,
}


# --- Pydantic Schemas ---


class UnitStatusResponse(BaseModel):
    """Current state of one unit."""

    unit: str
    outcome: UnitOutcome
    state: ReleaseState | None
    release_id: str | None
    commit_id: str | None
    revision_seq: int | None
    head_seq: int | None
    last_health: HealthStatus | None
    last_error: str | None
    blocked: bool
    queued: int
    reconcile_phase: ReconcilePhase
    last_sync: SyncOperation | None = None


class SyncResponse(BaseModel):
    """Result of an operator sync-now request."""

    operation: SyncOperation
    status: UnitStatusResponse


class ReleaseEventResponse(BaseModel):
    """One ledger row."""

    release_id: str
    commit_id: str
    revision_seq: int | None
    state: str
    previous_state: str | None
    is_rollback: bool
    error: str | None
    occurred_at: datetime

    model_config = {"from_attributes": True}


# --- Dependency Injection ---


def get_coordinator(request: Request) -> ReleaseCoordinator:
    """Release coordinator from app state."""
    return request.app.state.coordinator


def _status_response(coordinator: ReleaseCoordinator, status: UnitStatus) -> UnitStatusResponse:
    release = status.release
    return UnitStatusResponse(
        unit=status.unit,
        outcome=status.outcome,
        state=status.state,
        release_id=release.id if release else None,
        commit_id=release.commit.id if release else None,
        revision_seq=release.revision_seq if release else None,
        head_seq=status.head_seq,
        last_health=release.last_health if release else None,
        last_error=status.last_error,
        blocked=status.blocked,
        queued=status.queued,
        reconcile_phase=coordinator.reconciler.phase(status.unit),
        last_sync=coordinator.reconciler.last_operation(status.unit),
    )


async def _unit_status(
    coordinator: ReleaseCoordinator, unit: str, response: Response
) -> UnitStatusResponse:
    try:
        status = await coordinator.status(unit)
    except UnknownUnit as e:
        raise HTTPException(status_code=404, detail=str(e))
    response.status_code = OUTCOME_STATUS_CODES[status.outcome]
    return _status_response(coordinator, status)


def create_units_router() -> APIRouter:
    """Create the units router.

    Routes:
        GET /units - Status of every configured unit
        GET /units/{unit} - Status of one unit
        POST /units/{unit}/sync - Immediate reconciliation pass
        POST /units/{unit}/rollback - Operator rollback
        POST /units/{unit}/clear - Lift a fatal block
        GET /units/{unit}/releases - Releases in the history window
        GET /units/{unit}/events - Release events from the ledger
        GET /units/{unit}/timeline - Releases reconstructed from the ledger
        GET /units/{unit}/syncs - Recent sync operations
    """
    router = APIRouter(prefix="/units", tags=["units"])

    @router.get("/", response_model=list[UnitStatusResponse])
    async def list_units(
        coordinator: ReleaseCoordinator = Depends(get_coordinator),  # noqa: B008
    ) -> list[UnitStatusResponse]:
        return [
            _status_response(coordinator, await coordinator.status(unit))
            for unit in coordinator.units
        ]

    @router.get("/{unit}", response_model=UnitStatusResponse)
    async def get_unit(
        unit: str,
        response: Response,
        coordinator: ReleaseCoordinator = Depends(get_coordinator),  # noqa: B008
    ) -> UnitStatusResponse:
        return await _unit_status(coordinator, unit, response)

    @router.post("/{unit}/sync", response_model=SyncResponse)
    async def sync_unit(
        unit: str,
        response: Response,
        coordinator: ReleaseCoordinator = Depends(get_coordinator),  # noqa: B008
    ) -> SyncResponse:
        """Run a reconciliation pass now.

        Raises:
            HTTPException: 404 for an unknown unit, 502 if the pass is stuck.
        """
        try:
            operation = await coordinator.sync_now(unit)
        except UnknownUnit as e:
            raise HTTPException(status_code=404, detail=str(e))
        except SyncFailure as e:
            logger.warning("operator_sync_failed", unit=unit, error=str(e))
            raise HTTPException(status_code=502, detail=str(e))
        status = await _unit_status(coordinator, unit, response)
        return SyncResponse(operation=operation, status=status)

    @router.post("/{unit}/rollback", response_model=UnitStatusResponse)
    async def rollback_unit(
        unit: str,
        response: Response,
        coordinator: ReleaseCoordinator = Depends(get_coordinator),  # noqa: B008
    ) -> UnitStatusResponse:
        """Roll the unit back to its last healthy artifacts.

        Raises:
            HTTPException: 404 for an unknown unit, 409 if there is no
                healthy release to restore or the manifest head kept moving.
        """
        try:
            status = await coordinator.rollback(unit)
        except UnknownUnit as e:
            raise HTTPException(status_code=404, detail=str(e))
        except (NoPriorGoodRevision, ConflictError) as e:
            logger.warning("operator_rollback_refused", unit=unit, error=str(e))
            raise HTTPException(status_code=409, detail=str(e))
        except ManifestStoreError as e:
            logger.error("operator_rollback_failed", unit=unit, error=str(e))
            raise HTTPException(status_code=502, detail=str(e))
        response.status_code = OUTCOME_STATUS_CODES[status.outcome]
        return _status_response(coordinator, status)

    @router.post("/{unit}/clear", response_model=UnitStatusResponse)
    async def clear_unit(
        unit: str,
        response: Response,
        coordinator: ReleaseCoordinator = Depends(get_coordinator),  # noqa: B008
    ) -> UnitStatusResponse:
        try:
            coordinator.clear(unit)
        except UnknownUnit as e:
            raise HTTPException(status_code=404, detail=str(e))
        return await _unit_status(coordinator, unit, response)

    @router.get("/{unit}/releases", response_model=list[Release])
    async def list_releases(
        unit: str,
        coordinator: ReleaseCoordinator = Depends(get_coordinator),  # noqa: B008
    ) -> list[Release]:
        try:
            return coordinator.releases(unit)
        except UnknownUnit as e:
            raise HTTPException(status_code=404, detail=str(e))

    @router.get("/{unit}/events", response_model=list[ReleaseEventResponse])
    async def list_events(
        unit: str,
        limit: int = Query(default=100, ge=1, le=1000),
        release_id: str | None = None,
        coordinator: ReleaseCoordinator = Depends(get_coordinator),  # noqa: B008
        session_factory: async_sessionmaker[AsyncSession] | None = Depends(  # noqa: B008
            get_session_factory
        ),
    ) -> list[ReleaseEventResponse]:
        """Release events of ``unit``, oldest first.

        Served from the ledger when it is enabled, otherwise from the
        in-memory event journal.
        """
        if unit not in coordinator.units:
            raise HTTPException(status_code=404, detail=f"Unknown unit: {unit}")

        if session_factory is not None:
            async with session_factory() as session:
                records = await list_release_events(
                    session, unit, limit=limit, release_id=release_id
                )
            return [ReleaseEventResponse.model_validate(record) for record in records]

        events = [
            e
            for e in coordinator.events.release_events(unit)
            if release_id is None or e.release_id == release_id
        ][-limit:]
        return [
            ReleaseEventResponse(
                release_id=e.release_id,
                commit_id=e.commit_id,
                revision_seq=e.revision_seq,
                state=e.state.value,
                previous_state=e.previous_state.value if e.previous_state else None,
                is_rollback=e.is_rollback,
                error=e.error,
                occurred_at=e.timestamp,
            )
            for e in events
        ]

    @router.get("/{unit}/timeline", response_model=list[ReleaseSummary])
    async def timeline(
        unit: str,
        coordinator: ReleaseCoordinator = Depends(get_coordinator),  # noqa: B008
        session_factory: async_sessionmaker[AsyncSession] | None = Depends(  # noqa: B008
            get_session_factory
        ),
    ) -> list[ReleaseSummary]:
        if unit not in coordinator.units:
            raise HTTPException(status_code=404, detail=f"Unknown unit: {unit}")
        if session_factory is None:
            raise HTTPException(status_code=404, detail="Release ledger is disabled")
        async with session_factory() as session:
            return await release_timeline(session, unit)

    @router.get("/{unit}/syncs", response_model=list[SyncOperation])
    async def list_syncs(
        unit: str,
        coordinator: ReleaseCoordinator = Depends(get_coordinator),  # noqa: B008
    ) -> list[SyncOperation]:
        """Recent sync operations of ``unit``, newest first."""
        if unit not in coordinator.units:
            raise HTTPException(status_code=404, detail=f"Unknown unit: {unit}")
        return list(reversed(coordinator.reconciler.history(unit)))

    return router
