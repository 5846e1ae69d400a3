"""Integration tests for the Server-Sent Events broadcaster and endpoint."""

from __future__ import annotations

import asyncio
import json

import pytest
from fakes import Harness
from fastapi import FastAPI

from rollwright.models import ReleaseEvent, ReleaseState, SyncOperation, SyncOutcome, SyncTrigger, utcnow
from rollwright.web.routes.events import EventBroadcaster, SSEEvent, SSEEventType


def _release_event(unit: str = "shop") -> ReleaseEvent:
    return ReleaseEvent(
        unit=unit,
        release_id="r1",
        commit_id="c1",
        revision_seq=None,
        state=ReleaseState.BUILDING,
        previous_state=ReleaseState.PENDING,
    )


def _sync_operation() -> SyncOperation:
    now = utcnow()
    return SyncOperation(
        unit="shop",
        target_seq=1,
        trigger=SyncTrigger.POLL,
        started_at=now,
        finished_at=now,
        outcome=SyncOutcome.CONVERGED,
    )


class TestSSEEvent:
    """Tests for event conversion."""

    def test_from_release_event(self) -> None:
        event = SSEEvent.from_event(_release_event())

        assert event.event == SSEEventType.RELEASE
        assert event.unit == "shop"
        assert event.data["state"] == "building"
        assert event.data["previous_state"] == "pending"
        assert "id" not in event.to_dict()

    def test_from_sync_operation(self) -> None:
        operation = _sync_operation()
        event = SSEEvent.from_event(operation)

        payload = event.to_dict()
        assert payload["event"] == "sync"
        assert payload["id"] == operation.id
        assert json.loads(payload["data"])["outcome"] == "converged"

    def test_unknown_event_type_rejected(self) -> None:
        with pytest.raises(TypeError, match="dict"):
            SSEEvent.from_event({"unit": "shop"})  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_client_connection_and_disconnection() -> None:
    """Test that clients can connect and disconnect cleanly."""
    broadcaster = EventBroadcaster()

    async def subscriber() -> None:
        async for _ in broadcaster.subscribe():
            pass

    task = asyncio.create_task(subscriber())
    await asyncio.sleep(0.05)
    assert broadcaster.client_count == 1

    task.cancel()
    await asyncio.gather(task, return_exceptions=True)

    assert broadcaster.client_count == 0


@pytest.mark.asyncio
async def test_multiple_clients_receive_same_event() -> None:
    """Every connected client receives a broadcast event."""
    broadcaster = EventBroadcaster()
    received: list[tuple[int, SSEEvent]] = []

    async def subscriber(client_id: int) -> None:
        async for event in broadcaster.subscribe():
            received.append((client_id, event))
            break

    tasks = [asyncio.create_task(subscriber(i)) for i in range(3)]
    await asyncio.sleep(0.05)

    await broadcaster(_release_event())
    await asyncio.wait_for(asyncio.gather(*tasks), timeout=2)

    assert sorted(client_id for client_id, _ in received) == [0, 1, 2]
    assert all(event.event == SSEEventType.RELEASE for _, event in received)


@pytest.mark.asyncio
async def test_close_ends_streams() -> None:
    """Closing the broadcaster ends every subscription."""
    broadcaster = EventBroadcaster()
    seen: list[SSEEvent] = []

    async def subscriber() -> None:
        async for event in broadcaster.subscribe():
            seen.append(event)

    task = asyncio.create_task(subscriber())
    await asyncio.sleep(0.05)

    await broadcaster.close()
    await asyncio.wait_for(task, timeout=2)

    assert seen == []
    assert broadcaster.client_count == 0


@pytest.mark.asyncio
async def test_coordinator_events_reach_broadcaster(app: FastAPI, harness: Harness) -> None:
    """create_app subscribes the broadcaster to the coordinator's event bus."""
    broadcaster: EventBroadcaster = app.state.broadcaster
    states: list[str] = []

    async def subscriber() -> None:
        async for event in broadcaster.subscribe():
            if event.event == SSEEventType.RELEASE:
                states.append(event.data["state"])
                if event.data["state"] == "healthy":
                    break

    task = asyncio.create_task(subscriber())
    await asyncio.sleep(0.05)

    await harness.release("c1")
    await asyncio.wait_for(task, timeout=2)

    assert states[0] == "pending"
    assert states[-1] == "healthy"


@pytest.mark.asyncio
async def test_events_route_registered(app: FastAPI) -> None:
    assert "/events" in {route.path for route in app.routes}
