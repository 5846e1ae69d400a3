"""Structured release and sync event fan-out.

Every release state transition and every finished SyncOperation is
published here. The bus writes one structured log line per event, keeps a
bounded in-memory journal, and forwards to async subscribers (the SSE
broadcaster and the database ledger). A failing subscriber is logged and
never fails the release that emitted the event.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Awaitable, Callable
from typing import Union

from rollwright.logging import get_logger
from rollwright.models import ReleaseEvent, SyncOperation

logger = get_logger(__name__)

Event = Union[ReleaseEvent, SyncOperation]
EventHandler = Callable[[Event], Awaitable[None]]


class EventBus:
    """In-process publish/subscribe for orchestration events.

    Attributes:
        journal_size: Events of each type retained in memory
    """

    def __init__(self, journal_size: int = 1000) -> None:
        self.journal_size = journal_size
        self._handlers: list[EventHandler] = []
        self._releases: deque[ReleaseEvent] = deque(maxlen=journal_size)
        self._syncs: deque[SyncOperation] = deque(maxlen=journal_size)

    def subscribe(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    def unsubscribe(self, handler: EventHandler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    async def publish_release(self, event: ReleaseEvent) -> None:
        self._releases.append(event)
        logger.info(
            "release_event",
            unit=event.unit,
            release_id=event.release_id,
            commit_id=event.commit_id,
            revision_seq=event.revision_seq,
            state=event.state.value,
            previous_state=event.previous_state.value if event.previous_state else None,
            is_rollback=event.is_rollback,
            error=event.error,
            timestamp=event.timestamp.isoformat(),
        )
        await self._dispatch(event)

    async def publish_sync(self, operation: SyncOperation) -> None:
        self._syncs.append(operation)
        log = logger.warning if operation.error else logger.info
        log(
            "sync_operation",
            unit=operation.unit,
            operation_id=operation.id,
            target_seq=operation.target_seq,
            trigger=operation.trigger.value,
            attempt=operation.attempt,
            outcome=operation.outcome.value,
            changes=[f"{c.action.value}:{c.ref}" for c in operation.changes],
            unchanged=operation.unchanged,
            error=operation.error,
            timestamp=operation.finished_at.isoformat(),
        )
        await self._dispatch(operation)

    async def _dispatch(self, event: Event) -> None:
        for handler in list(self._handlers):
            try:
                await handler(event)
            except Exception as e:
                logger.error(
                    "event_handler_failed",
                    handler=getattr(handler, "__qualname__", repr(handler)),
                    event_type=type(event).__name__,
                    error=str(e),
                )

    def release_events(self, unit: str | None = None) -> list[ReleaseEvent]:
        """Journaled release events, oldest first."""
        return [e for e in self._releases if unit is None or e.unit == unit]

    def sync_operations(self, unit: str | None = None) -> list[SyncOperation]:
        """Journaled sync operations, oldest first."""
        return [op for op in self._syncs if unit is None or op.unit == unit]
