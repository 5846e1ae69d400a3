"""Health Verifier: bounded-patience classification of a synced revision.

``check(revision)`` polls every resource the revision names until one of:

- every resource has been ready continuously for the stability window
  (Healthy),
- a workload restarted its containers at least ``restart_threshold`` times
  since the check began (Degraded, crash loop),
- the window expires without convergence (Degraded).

Readiness per kind: workloads need desired == ready == updated replicas for
the current generation; a PersistentVolumeClaim must be Bound; a Job must be
Complete; everything else must exist. Resources annotated
``rollwright.io/probe-http`` or ``rollwright.io/probe-tcp`` must also accept
requests or connections. The verifier never mutates cluster or manifest state.
"""

from __future__ import annotations

import asyncio
from typing import Any

import httpx

from rollwright.config import HealthConfig, UnitConfig
from rollwright.errors import UnknownUnit
from rollwright.logging import get_logger
from rollwright.models import (
    PROBE_HTTP_ANNOTATION,
    PROBE_TCP_ANNOTATION,
    HealthReport,
    HealthStatus,
    ManifestRevision,
    ResourceHealth,
    ResourceRef,
)
from rollwright.pipeline.cluster import KINDS, ClusterClient, ClusterError

logger = get_logger(__name__)

WORKLOAD_KINDS = frozenset({"Deployment", "StatefulSet", "DaemonSet"})


def _replicas_ready(kind: str, live: dict[str, Any]) -> tuple[bool, str]:
    spec = live.get("spec") or {}
    status = live.get("status") or {}
    generation = (live.get("metadata") or {}).get("generation")
    observed = status.get("observedGeneration")
    if generation is not None and observed is not None and observed < generation:
        return False, f"generation {generation} not yet observed"

    if kind == "DaemonSet":
        desired = status.get("desiredNumberScheduled", 0)
        ready = status.get("numberReady", 0)
        updated = status.get("updatedNumberScheduled", 0)
        current = desired
    else:
        desired = spec.get("replicas", 1)
        ready = status.get("readyReplicas", 0)
        updated = status.get("updatedReplicas", 0)
        current = status.get("replicas", 0)

    if ready == desired and updated == desired and current == desired:
        return True, f"{ready}/{desired} ready"
    return False, f"{ready}/{desired} ready, {updated} updated, {current} total"


def _job_state(live: dict[str, Any]) -> HealthStatus:
    for condition in (live.get("status") or {}).get("conditions") or []:
        if condition.get("status") != "True":
            continue
        if condition.get("type") == "Complete":
            return HealthStatus.HEALTHY
        if condition.get("type") == "Failed":
            return HealthStatus.DEGRADED
    return HealthStatus.PROGRESSING


def _pod_restarts(pods: list[dict[str, Any]]) -> dict[str, int]:
    counts: dict[str, int] = {}
    for pod in pods:
        name = (pod.get("metadata") or {}).get("name", "")
        statuses = (pod.get("status") or {}).get("containerStatuses") or []
        counts[name] = sum(s.get("restartCount", 0) for s in statuses)
    return counts


class HealthVerifier:
    """Classifies revision health with bounded patience.

    Args:
        cluster: Cluster client
        units: Unit name to configuration (namespace lookup)
        config: Health verification settings
    """

    def __init__(
        self,
        cluster: ClusterClient,
        units: dict[str, UnitConfig],
        config: HealthConfig | None = None,
    ) -> None:
        self.cluster = cluster
        self.units = units
        self.config = config or HealthConfig()
        self._http: httpx.AsyncClient | None = None

    def _refs(self, revision: ManifestRevision) -> list[tuple[ResourceRef, dict[str, Any]]]:
        try:
            namespace = self.units[revision.unit].namespace
        except KeyError as e:
            raise UnknownUnit(revision.unit) from e
        refs = []
        for document in revision.resources:
            ref = ResourceRef.from_manifest(document)
            info = KINDS.get(ref.kind)
            if ref.namespace is None and info is not None and info.namespaced:
                ref = ResourceRef(kind=ref.kind, name=ref.name, namespace=namespace)
            refs.append((ref, document))
        return refs

    async def _get_http(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(timeout=self.config.probe_timeout_seconds)
        return self._http

    async def _probe(self, document: dict[str, Any]) -> str | None:
        """Run annotated probes; returns a failure message or None."""
        annotations = (document.get("metadata") or {}).get("annotations") or {}
        url = annotations.get(PROBE_HTTP_ANNOTATION)
        if url:
            try:
                client = await self._get_http()
                response = await client.get(url)
            except httpx.HTTPError as e:
                return f"http probe {url} failed: {e}"
            if response.status_code >= 400:
                return f"http probe {url} returned {response.status_code}"
        address = annotations.get(PROBE_TCP_ANNOTATION)
        if address:
            host, _, port = address.rpartition(":")
            try:
                _, writer = await asyncio.wait_for(
                    asyncio.open_connection(host, int(port)),
                    timeout=self.config.probe_timeout_seconds,
                )
            except (OSError, ValueError, asyncio.TimeoutError) as e:
                return f"tcp probe {address} failed: {e!r}"
            writer.close()
            await writer.wait_closed()
        return None

    async def _pods(self, ref: ResourceRef, live: dict[str, Any]) -> list[dict[str, Any]]:
        selector = ((live.get("spec") or {}).get("selector") or {}).get("matchLabels")
        if not selector:
            return []
        return await self.cluster.list_pods(ref.namespace or "default", selector)

    async def restart_baseline(self, revision: ManifestRevision) -> dict[str, int]:
        """Container restart counts per pod of every workload in ``revision``."""
        baseline: dict[str, int] = {}
        for ref, _ in self._refs(revision):
            if ref.kind not in WORKLOAD_KINDS:
                continue
            try:
                live = await self.cluster.get(ref)
                if live is not None:
                    baseline.update(_pod_restarts(await self._pods(ref, live)))
            except ClusterError as e:
                logger.warning("restart_baseline_unavailable", resource=str(ref), error=str(e))
        return baseline

    async def _resource_health(
        self, ref: ResourceRef, document: dict[str, Any], baseline: dict[str, int] | None
    ) -> ResourceHealth:
        try:
            live = await self.cluster.get(ref)
            if live is None:
                return ResourceHealth(ref=ref, status=HealthStatus.PROGRESSING, message="not found")

            restarts = 0
            if ref.kind in WORKLOAD_KINDS:
                ready, message = _replicas_ready(ref.kind, live)
                if baseline is not None:
                    counts = _pod_restarts(await self._pods(ref, live))
                    restarts = sum(
                        max(0, count - baseline.get(pod, 0)) for pod, count in counts.items()
                    )
                    if restarts >= self.config.restart_threshold:
                        return ResourceHealth(
                            ref=ref,
                            status=HealthStatus.DEGRADED,
                            restarts=restarts,
                            message=f"crash loop: {restarts} restarts",
                        )
            elif ref.kind == "Job":
                state = _job_state(live)
                if state != HealthStatus.PROGRESSING:
                    return ResourceHealth(ref=ref, status=state, ready=state == HealthStatus.HEALTHY)
                ready, message = False, "job running"
            elif ref.kind == "PersistentVolumeClaim":
                phase = (live.get("status") or {}).get("phase")
                ready, message = phase == "Bound", f"phase {phase}"
            else:
                ready, message = True, "exists"
        except ClusterError as e:
            return ResourceHealth(ref=ref, status=HealthStatus.UNKNOWN, message=str(e))

        if ready:
            failure = await self._probe(document)
            if failure is not None:
                ready, message = False, failure
        status = HealthStatus.HEALTHY if ready else HealthStatus.PROGRESSING
        return ResourceHealth(ref=ref, status=status, ready=ready, restarts=restarts, message=message)

    async def snapshot(
        self,
        revision: ManifestRevision,
        baseline: dict[str, int] | None = None,
        elapsed_seconds: float = 0.0,
    ) -> HealthReport:
        """Single-point classification of every resource in ``revision``.

        Restarts are only judged against a ``baseline`` taken earlier.
        """
        resources = [
            await self._resource_health(ref, document, baseline)
            for ref, document in self._refs(revision)
        ]
        statuses = {r.status for r in resources}
        if HealthStatus.DEGRADED in statuses:
            status = HealthStatus.DEGRADED
        elif HealthStatus.UNKNOWN in statuses:
            status = HealthStatus.UNKNOWN
        elif all(r.ready for r in resources):
            status = HealthStatus.HEALTHY
        else:
            status = HealthStatus.PROGRESSING

        not_ready = [f"{r.ref}: {r.message}" for r in resources if not r.ready]
        return HealthReport(
            unit=revision.unit,
            seq=revision.seq,
            status=status,
            resources=resources,
            reason="; ".join(not_ready) or None,
            elapsed_seconds=elapsed_seconds,
        )

    async def check(self, revision: ManifestRevision) -> HealthReport:
        """``check(revision) -> HealthReport``, Healthy or Degraded.

        Bounded by ``window_seconds``; never returns Progressing or Unknown.
        """
        loop = asyncio.get_running_loop()
        started = loop.time()
        baseline = await self.restart_baseline(revision)
        ready_since: float | None = None
        log = logger.bind(unit=revision.unit, seq=revision.seq)
        log.info(
            "health_check_started",
            window_seconds=self.config.window_seconds,
            stability_seconds=self.config.stability_seconds,
        )

        while True:
            report = await self.snapshot(revision, baseline)
            now = loop.time()
            elapsed = now - started

            if report.status == HealthStatus.DEGRADED:
                log.warning("health_degraded", reason=report.reason, elapsed_seconds=round(elapsed, 2))
                return report.model_copy(update={"elapsed_seconds": elapsed})

            if report.status == HealthStatus.HEALTHY:
                if ready_since is None:
                    ready_since = now
                if now - ready_since >= self.config.stability_seconds:
                    log.info("health_healthy", elapsed_seconds=round(elapsed, 2))
                    return report.model_copy(update={"elapsed_seconds": elapsed})
            else:
                ready_since = None
                log.debug("health_progressing", status=report.status.value, reason=report.reason)

            if elapsed >= self.config.window_seconds:
                reason = f"not converged within {self.config.window_seconds}s"
                if report.reason:
                    reason += f": {report.reason}"
                log.warning("health_window_expired", reason=reason)
                return report.model_copy(
                    update={
                        "status": HealthStatus.DEGRADED,
                        "reason": reason,
                        "elapsed_seconds": elapsed,
                    }
                )

            remaining = self.config.window_seconds - elapsed
            await asyncio.sleep(min(self.config.poll_interval_seconds, max(remaining, 0.0)))

    async def close(self) -> None:
        if self._http is not None and not self._http.is_closed:
            await self._http.aclose()
        self._http = None
