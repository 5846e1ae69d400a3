"""Server-Sent Events stream of release transitions and sync operations.

The broadcaster is subscribed to the orchestration EventBus, so every
ReleaseEvent and SyncOperation is pushed to connected clients as it is
published.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator

from fastapi import APIRouter, Query, Request
from sse_starlette.sse import EventSourceResponse

from rollwright.logging import get_logger
from rollwright.models import ReleaseEvent, SyncOperation
from rollwright.orchestrator.events import Event

logger = get_logger(__name__)


class SSEEventType(str, Enum):
    """Types of SSE events."""

    RELEASE = "release"
    SYNC = "sync"


@dataclass
class SSEEvent:
    """Server-Sent Event data structure."""

    event: SSEEventType
    data: dict[str, Any]
    unit: str | None = None
    id: str | None = None

    @classmethod
    def from_event(cls, event: Event) -> SSEEvent:
        if isinstance(event, ReleaseEvent):
            return cls(
                event=SSEEventType.RELEASE,
                data=event.model_dump(mode="json"),
                unit=event.unit,
            )
        if isinstance(event, SyncOperation):
            return cls(
                event=SSEEventType.SYNC,
                data=event.model_dump(mode="json"),
                unit=event.unit,
                id=event.id,
            )
        raise TypeError(f"Cannot stream {type(event).__name__} as a server-sent event")

    def to_dict(self) -> dict[str, str]:
        """Convert event to dictionary format for SSE transmission."""
        result = {
            "event": self.event.value,
            "data": json.dumps(self.data),
        }
        if self.id is not None:
            result["id"] = self.id
        return result


class EventBroadcaster:
    """Fans published events out to connected SSE clients.

    Instances are callable so they can be subscribed to an EventBus
    directly.
    """

    def __init__(self) -> None:
        self._queues: list[asyncio.Queue[SSEEvent | None]] = []
        self._lock = asyncio.Lock()

    @property
    def client_count(self) -> int:
        return len(self._queues)

    async def __call__(self, event: Event) -> None:
        await self.broadcast(SSEEvent.from_event(event))

    async def subscribe(self) -> AsyncIterator[SSEEvent]:
        """Yield events as they are broadcast until closed."""
        queue: asyncio.Queue[SSEEvent | None] = asyncio.Queue()
        async with self._lock:
            self._queues.append(queue)
        logger.info("sse_client_connected", total_clients=len(self._queues))
        try:
            while True:
                event = await queue.get()
                if event is None:  # Shutdown signal
                    break
                yield event
        finally:
            async with self._lock:
                self._queues.remove(queue)
            logger.info("sse_client_disconnected", total_clients=len(self._queues))

    async def broadcast(self, event: SSEEvent) -> None:
        async with self._lock:
            for queue in self._queues:
                await queue.put(event)
        logger.debug(
            "sse_event_broadcast",
            event_type=event.event.value,
            unit=event.unit,
            client_count=len(self._queues),
        )

    async def close(self) -> None:
        """Signal every connected client to end its stream."""
        async with self._lock:
            for queue in self._queues:
                await queue.put(None)


def create_events_router() -> APIRouter:
    """Create the events router.

    Routes:
        GET /events - SSE stream, optionally filtered with ``?unit=``
    """
    router = APIRouter(tags=["events"])

    @router.get("/events")
    async def stream_events(
        request: Request, unit: str | None = Query(default=None)
    ) -> EventSourceResponse:
        broadcaster: EventBroadcaster = request.app.state.broadcaster

        async def event_generator() -> AsyncIterator[dict[str, str]]:
            async for event in broadcaster.subscribe():
                if await request.is_disconnected():
                    break
                if unit is not None and event.unit != unit:
                    continue
                yield event.to_dict()

        return EventSourceResponse(event_generator())

    return router
