"""Integration tests for the units API endpoints.

Tests the operator surface through the FastAPI app: unit status with its
outcome-encoding status codes, sync now, rollback, clear, release history
and the ledger-backed event and timeline views.
"""

from __future__ import annotations

import pytest
from fakes import BACKEND_REPO, Harness, reference
from fastapi import FastAPI
from httpx import AsyncClient

from rollwright.models import ResourceRef, TriggerEvent
from rollwright.orchestrator.coordinator import SubmitOutcome


@pytest.mark.asyncio
class TestUnitStatus:
    """Tests for GET /units."""

    async def test_list_units(self, async_client: AsyncClient) -> None:
        response = await async_client.get("/units/")

        assert response.status_code == 200
        [unit] = response.json()
        assert unit["unit"] == "shop"
        assert unit["state"] is None
        assert unit["outcome"] == "success"
        assert unit["reconcile_phase"] == "idle"

    async def test_unknown_unit(self, async_client: AsyncClient) -> None:
        response = await async_client.get("/units/billing")
        assert response.status_code == 404

    async def test_healthy_release(self, async_client: AsyncClient, harness: Harness) -> None:
        await harness.release("c1")

        response = await async_client.get("/units/shop")

        assert response.status_code == 200
        data = response.json()
        assert data["state"] == "healthy"
        assert data["commit_id"] == "c1"
        assert data["revision_seq"] == 1
        assert data["head_seq"] == 1
        assert data["last_health"] == "healthy"
        assert data["last_sync"]["outcome"] == "converged"

    async def test_failed_release_is_200(self, async_client: AsyncClient, harness: Harness) -> None:
        harness.builder.failing.add("frontend")
        await harness.release("c1")

        response = await async_client.get("/units/shop")

        assert response.status_code == 200
        assert response.json()["outcome"] == "failed"
        assert "compile_failure" in response.json()["last_error"]

    async def test_queued_release_is_202(self, async_client: AsyncClient, harness: Harness) -> None:
        await harness.coordinator.submit(TriggerEvent(commit_id="c1", changed_units=["shop"]))

        response = await async_client.get("/units/shop")
        await harness.coordinator.wait_idle()

        assert response.status_code == 202
        assert response.json()["outcome"] == "in_progress"

    async def test_fatal_unit_is_423(self, async_client: AsyncClient, harness: Harness) -> None:
        harness.cluster.crashing.add(reference(BACKEND_REPO, "c1"))
        await harness.release("c1")

        response = await async_client.get("/units/shop")

        assert response.status_code == 423
        assert response.json()["blocked"] is True


@pytest.mark.asyncio
class TestOperatorActions:
    """Tests for sync, rollback and clear."""

    async def test_sync_restores_drift(self, async_client: AsyncClient, harness: Harness) -> None:
        await harness.release("c1")
        await harness.cluster.delete(ResourceRef(kind="Service", name="backend", namespace="shop"))

        response = await async_client.post("/units/shop/sync")

        assert response.status_code == 200
        data = response.json()
        assert data["operation"]["trigger"] == "sync_now"
        assert data["operation"]["changes"] == [
            {
                "ref": {"kind": "Service", "name": "backend", "namespace": "shop"},
                "action": "create",
            }
        ]
        assert data["status"]["head_seq"] == 1

    async def test_sync_stuck_is_502(self, async_client: AsyncClient, harness: Harness) -> None:
        await harness.release("c1")
        await harness.cluster.delete(ResourceRef(kind="Service", name="backend", namespace="shop"))
        harness.cluster.apply_failures = 100

        response = await async_client.post("/units/shop/sync")

        assert response.status_code == 502
        assert "sync stuck" in response.json()["detail"]

    async def test_sync_unknown_unit(self, async_client: AsyncClient) -> None:
        response = await async_client.post("/units/billing/sync")
        assert response.status_code == 404

    async def test_rollback_without_history_is_409(self, async_client: AsyncClient) -> None:
        response = await async_client.post("/units/shop/rollback")

        assert response.status_code == 409
        assert "No prior healthy release" in response.json()["detail"]

    async def test_rollback(self, async_client: AsyncClient, harness: Harness) -> None:
        await harness.release("c1")
        await harness.release("c2", "shop/backend")

        response = await async_client.post("/units/shop/rollback")

        assert response.status_code == 200
        data = response.json()
        assert data["head_seq"] == 3
        assert data["commit_id"] == "c1"
        assert harness.revisions()[-1].rollback_of == 1
        assert harness.cluster.image_of("shop", "backend") == reference(BACKEND_REPO, "c1")

    async def test_clear(self, async_client: AsyncClient, harness: Harness) -> None:
        harness.cluster.crashing.add(reference(BACKEND_REPO, "c1"))
        await harness.release("c1")

        response = await async_client.post("/units/shop/clear")

        assert response.status_code == 200
        assert response.json()["blocked"] is False
        assert (await harness.release("c2")) == {"shop": SubmitOutcome.QUEUED}


@pytest.mark.asyncio
class TestHistory:
    """Tests for releases, events, timeline and syncs."""

    async def test_releases(self, async_client: AsyncClient, harness: Harness) -> None:
        await harness.release("c1")
        await harness.release("c2", "shop/backend")

        response = await async_client.get("/units/shop/releases")

        assert response.status_code == 200
        releases = response.json()
        assert [r["commit"]["id"] for r in releases] == ["c1", "c2"]
        assert releases[1]["components"] == ["backend"]
        assert releases[1]["state"] == "healthy"

    async def test_events_from_ledger(self, async_client: AsyncClient, harness: Harness) -> None:
        await harness.release("c1")

        response = await async_client.get("/units/shop/events")

        assert response.status_code == 200
        states = [e["state"] for e in response.json()]
        assert states[0] == "pending"
        assert states[-1] == "healthy"
        assert len(states) == 7

    async def test_events_filtered_by_release(
        self, async_client: AsyncClient, harness: Harness
    ) -> None:
        await harness.release("c1")
        await harness.release("c2", "shop/backend")
        release_id = harness.coordinator.releases("shop")[1].id

        response = await async_client.get(
            "/units/shop/events", params={"release_id": release_id, "limit": 3}
        )

        events = response.json()
        assert [e["state"] for e in events] == ["manifest_updated", "syncing", "healthy"]
        assert {e["commit_id"] for e in events} == {"c2"}

    async def test_events_from_journal_without_ledger(
        self, app: FastAPI, async_client: AsyncClient, harness: Harness
    ) -> None:
        app.state.session_factory = None
        await harness.release("c1")

        response = await async_client.get("/units/shop/events", params={"limit": 2})

        assert [e["state"] for e in response.json()] == ["syncing", "healthy"]

    async def test_timeline(self, async_client: AsyncClient, harness: Harness) -> None:
        await harness.release("c1")
        harness.cluster.crashing.add(reference(BACKEND_REPO, "c2"))
        await harness.release("c2", "shop/backend")

        response = await async_client.get("/units/shop/timeline")

        assert response.status_code == 200
        timeline = response.json()
        assert [(s["commit_id"], s["state"]) for s in timeline] == [
            ("c1", "healthy"),
            ("c2", "rolled_back"),
            ("c1", "healthy"),
        ]
        assert timeline[2]["is_rollback"] is True

    async def test_timeline_requires_ledger(
        self, app: FastAPI, async_client: AsyncClient
    ) -> None:
        app.state.session_factory = None

        response = await async_client.get("/units/shop/timeline")

        assert response.status_code == 404
        assert "disabled" in response.json()["detail"]

    async def test_syncs_newest_first(self, async_client: AsyncClient, harness: Harness) -> None:
        await harness.release("c1")
        await harness.coordinator.sync_now("shop")

        response = await async_client.get("/units/shop/syncs")

        syncs = response.json()
        assert syncs[0]["trigger"] == "sync_now"
        assert syncs[0]["changes"] == []
        assert all(s["target_seq"] == 1 for s in syncs)


@pytest.mark.asyncio
class TestHealthEndpoints:
    """Tests for liveness and readiness."""

    async def test_liveness(self, async_client: AsyncClient) -> None:
        response = await async_client.get("/health/")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    async def test_readiness_before_start(self, async_client: AsyncClient) -> None:
        response = await async_client.get("/health/ready")

        assert response.json() == {
            "status": "unhealthy",
            "coordinator": "stopped",
            "database": "connected",
        }

    async def test_readiness_running(self, async_client: AsyncClient, harness: Harness) -> None:
        await harness.coordinator.start()

        response = await async_client.get("/health/ready")

        assert response.json()["status"] == "ok"
        assert response.json()["coordinator"] == "running"
