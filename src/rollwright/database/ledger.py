"""Event bus subscriber persisting release and sync events to the ledger."""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rollwright.database.queries.release_event import (
    record_release_event,
    record_sync_operation,
)
from rollwright.models import ReleaseEvent, SyncOperation
from rollwright.orchestrator.events import Event


class ReleaseLedger:
    """Writes every published event through its own session.

    Usage:
        >>> bus.subscribe(ReleaseLedger(session_factory))
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def __call__(self, event: Event) -> None:
        async with self.session_factory() as session:
            if isinstance(event, ReleaseEvent):
                await record_release_event(session, event)
            elif isinstance(event, SyncOperation):
                await record_sync_operation(session, event)
