"""Release ledger query functions.

Provides async functions for recording release transitions and sync
operations, and for reconstructing release history from the ledger alone.
"""

from __future__ import annotations

from datetime import datetime

import structlog
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from rollwright.database.models.release_event import ReleaseEventRecord
from rollwright.database.models.sync_operation import SyncOperationRecord
from rollwright.models import ReleaseEvent, SyncOperation

logger = structlog.get_logger(__name__)


class ReleaseSummary(BaseModel):
    """One release as reconstructed from its ledger rows.

    Attributes:
        release_id: Release identifier
        unit: Deployable unit
        commit_id: Commit the release deploys
        revision_seq: Last revision sequence number recorded for the release
        state: Latest recorded state
        is_rollback: Whether the release is a rollback release
        error: Last recorded error
        states: Every state entered, in order
        started_at: Time of the first record
        updated_at: Time of the latest record
    """

    release_id: str
    unit: str
    commit_id: str
    revision_seq: int | None
    state: str
    is_rollback: bool
    error: str | None
    states: list[str]
    started_at: datetime
    updated_at: datetime


async def record_release_event(session: AsyncSession, event: ReleaseEvent) -> ReleaseEventRecord:
    """Append one release transition to the ledger.

    Args:
        session: Active async database session.
        event: Release event emitted by the coordinator.

    Returns:
        The persisted record.
    """
    record = ReleaseEventRecord(
        unit=event.unit,
        release_id=event.release_id,
        commit_id=event.commit_id,
        revision_seq=event.revision_seq,
        state=event.state.value,
        previous_state=event.previous_state.value if event.previous_state else None,
        is_rollback=event.is_rollback,
        error=event.error,
        occurred_at=event.timestamp,
    )

    async with session.begin():
        session.add(record)
        await session.flush()

    logger.debug(
        "release_event_recorded",
        unit=event.unit,
        release_id=event.release_id,
        state=event.state.value,
    )
    return record


async def record_sync_operation(
    session: AsyncSession, operation: SyncOperation
) -> SyncOperationRecord:
    """Append one finished sync operation to the ledger."""
    record = SyncOperationRecord(
        operation_id=operation.id,
        unit=operation.unit,
        target_seq=operation.target_seq,
        trigger=operation.trigger.value,
        attempt=operation.attempt,
        outcome=operation.outcome.value,
        changes=[
            {"action": change.action.value, "resource": str(change.ref)}
            for change in operation.changes
        ],
        unchanged=operation.unchanged,
        error=operation.error,
        started_at=operation.started_at,
        finished_at=operation.finished_at,
    )

    async with session.begin():
        session.add(record)
        await session.flush()

    return record


async def list_release_events(
    session: AsyncSession,
    unit: str,
    limit: int = 100,
    release_id: str | None = None,
) -> list[ReleaseEventRecord]:
    """Most recent release events of a unit, oldest first.

    Args:
        session: Active async database session.
        unit: Deployable unit.
        limit: Maximum number of records.
        release_id: Optional filter on a single release.

    Returns:
        Up to ``limit`` records in chronological order.
    """
    stmt = select(ReleaseEventRecord).where(ReleaseEventRecord.unit == unit)
    if release_id is not None:
        stmt = stmt.where(ReleaseEventRecord.release_id == release_id)
    stmt = stmt.order_by(
        ReleaseEventRecord.occurred_at.desc(), ReleaseEventRecord.created_at.desc()
    ).limit(limit)
    result = await session.execute(stmt)
    return list(reversed(result.scalars().all()))


async def list_sync_operations(
    session: AsyncSession, unit: str, limit: int = 50
) -> list[SyncOperationRecord]:
    """Most recent sync operations of a unit, newest first."""
    result = await session.execute(
        select(SyncOperationRecord)
        .where(SyncOperationRecord.unit == unit)
        .order_by(SyncOperationRecord.finished_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def release_timeline(session: AsyncSession, unit: str) -> list[ReleaseSummary]:
    """Reconstruct every release of ``unit`` from its ledger rows.

    Returns:
        Releases ordered by their first record.
    """
    result = await session.execute(
        select(ReleaseEventRecord)
        .where(ReleaseEventRecord.unit == unit)
        .order_by(ReleaseEventRecord.occurred_at, ReleaseEventRecord.created_at)
    )

    summaries: dict[str, ReleaseSummary] = {}
    for record in result.scalars():
        summary = summaries.get(record.release_id)
        if summary is None:
            summaries[record.release_id] = ReleaseSummary(
                release_id=record.release_id,
                unit=record.unit,
                commit_id=record.commit_id,
                revision_seq=record.revision_seq,
                state=record.state,
                is_rollback=record.is_rollback,
                error=record.error,
                states=[record.state],
                started_at=record.occurred_at,
                updated_at=record.occurred_at,
            )
            continue
        summary.state = record.state
        summary.states.append(record.state)
        summary.updated_at = record.occurred_at
        if record.revision_seq is not None:
            summary.revision_seq = record.revision_seq
        if record.error is not None:
            summary.error = record.error

    return list(summaries.values())
