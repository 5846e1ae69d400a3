"""In-memory collaborators for orchestration tests.

The fakes implement the registry, builder, scanner, manifest store and
cluster protocols closely enough to drive full releases: the registry hands
out deterministic digests, the cluster keeps applied objects with a
simulated status and pods, and images listed in ``FakeCluster.crashing``
crash-loop (their pods gain one restart per poll).
"""

from __future__ import annotations

import asyncio
import copy
import hashlib
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

from rollwright.config import (
    ComponentConfig,
    HealthConfig,
    ManifestConfig,
    ReconcilerConfig,
    RegistryConfig,
    ReleaseConfig,
    RollwrightConfig,
    UnitConfig,
)
from rollwright.models import Commit, ComponentSpec, ManifestRevision, ResourceRef, TriggerEvent
from rollwright.orchestrator.build_coordinator import BuildCoordinator
from rollwright.orchestrator.coordinator import ReleaseCoordinator, SubmitOutcome
from rollwright.orchestrator.events import EventBus
from rollwright.orchestrator.health_verifier import HealthVerifier
from rollwright.orchestrator.manifest_updater import ManifestUpdater
from rollwright.orchestrator.reconciler import Reconciler
from rollwright.orchestrator.rollback import RollbackController
from rollwright.pipeline.builder import BuiltImage, ImageBuildError
from rollwright.pipeline.cluster import KINDS, ClusterError
from rollwright.pipeline.manifest_store import HeadChanged, ManifestStoreError, validate_append
from rollwright.pipeline.registry import RegistryError
from rollwright.pipeline.scanner import Finding, ScanPolicy

FRONTEND_REPO = "registry.test/shop-frontend"
BACKEND_REPO = "registry.test/shop-backend"
WEBHOOK_SECRET = "integration-secret"
WORKLOAD_KINDS = {"Deployment", "StatefulSet", "DaemonSet"}


def fake_digest(repository: str, commit_id: str) -> str:
    return "sha256:" + hashlib.sha256(f"{repository}:{commit_id}".encode()).hexdigest()


def reference(repository: str, commit_id: str) -> str:
    return f"{repository}@{fake_digest(repository, commit_id)}"


def deployment(name: str, image: str, replicas: int = 1) -> dict[str, Any]:
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": name},
        "spec": {
            "replicas": replicas,
            "selector": {"matchLabels": {"app": name}},
            "template": {
                "metadata": {"labels": {"app": name}},
                "spec": {"containers": [{"name": name, "image": image}]},
            },
        },
    }


def service(name: str, port: int = 80) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {"name": name},
        "spec": {"selector": {"app": name}, "ports": [{"port": port}]},
    }


def shop_templates() -> list[dict[str, Any]]:
    """Base templates of the ``shop`` unit: two deployments and a service."""
    return [
        service("backend", 8080),
        deployment("frontend", f"{FRONTEND_REPO}:latest", replicas=2),
        deployment("backend", f"{BACKEND_REPO}:latest"),
    ]


def shop_config(**overrides: Any) -> RollwrightConfig:
    """Configuration with one ``shop`` unit and test-speed timings."""
    values: dict[str, Any] = {
        "units": {
            "shop": UnitConfig(
                namespace="shop",
                components={
                    "frontend": ComponentConfig(repository=FRONTEND_REPO),
                    "backend": ComponentConfig(repository=BACKEND_REPO),
                },
            )
        },
        "registry": RegistryConfig(push_initial_delay_seconds=0.0, push_max_attempts=3),
        "manifest": ManifestConfig(max_conflict_retries=5),
        "reconciler": ReconcilerConfig(
            poll_interval_seconds=0.05,
            retry_base_seconds=0.0,
            retry_cap_seconds=0.0,
            max_retries=2,
        ),
        "health": HealthConfig(
            window_seconds=2.0,
            stability_seconds=0.0,
            poll_interval_seconds=0.01,
            restart_threshold=2,
        ),
        "release": ReleaseConfig(),
    }
    values.update(overrides)
    return RollwrightConfig(**values)


class FakeRegistry:
    """Content-addressed registry keyed by repository and commit tag."""

    def __init__(self, push_failures: int = 0) -> None:
        self.published: dict[tuple[str, str], str] = {}
        self.push_calls: list[tuple[str, list[str]]] = []
        self.push_failures = push_failures

    async def exists(self, component: ComponentSpec, commit_id: str) -> str | None:
        return self.published.get((component.repository, commit_id))

    async def push(self, image: BuiltImage, tags: list[str]) -> str:
        self.push_calls.append((image.repository, list(tags)))
        if self.push_failures > 0:
            self.push_failures -= 1
            raise RegistryError("registry unavailable")
        digest = fake_digest(image.repository, image.commit_id)
        for tag in tags:
            self.published[(image.repository, tag)] = digest
        return digest

    async def pull(self, reference: str) -> str:
        return reference


class FakeBuilder:
    """Builds instantly; components listed in ``failing`` fail to compile."""

    def __init__(self, failing: set[str] | None = None, delay: float = 0.0) -> None:
        self.failing = set(failing or ())
        self.delay = delay
        self.builds: list[tuple[str, str]] = []

    async def build(self, component: ComponentSpec, commit: Commit) -> BuiltImage:
        if self.delay:
            await asyncio.sleep(self.delay)
        self.builds.append((component.name, commit.id))
        if component.name in self.failing:
            raise ImageBuildError(f"compile error in {component.name}", ["error: boom"])
        return BuiltImage(
            component=component.name,
            commit_id=commit.id,
            repository=component.repository,
            image_id=f"img-{component.name}-{commit.id}",
        )


class FakeScanner:
    """Returns configured findings per component name."""

    def __init__(self, findings: dict[str, list[Finding]] | None = None) -> None:
        self.findings = findings or {}
        self.scanned: list[str] = []

    async def scan(self, image: BuiltImage) -> list[Finding]:
        self.scanned.append(image.component)
        return list(self.findings.get(image.component, []))


class InMemoryManifestStore:
    """Append-only revision history per unit with compare-and-append."""

    def __init__(self, templates: dict[str, list[dict[str, Any]]] | None = None) -> None:
        self._templates = templates or {}
        self.revisions: dict[str, list[ManifestRevision]] = {}
        self.append_calls = 0
        self.append_delay = 0.0
        # Revisions another writer lands just before our next append
        self.interleave: list[ManifestRevision] = []

    async def templates(self, unit: str) -> list[dict[str, Any]]:
        if unit not in self._templates:
            raise ManifestStoreError(f"No base templates for {unit}")
        return copy.deepcopy(self._templates[unit])

    async def head(self, unit: str) -> ManifestRevision | None:
        history = self.revisions.get(unit)
        return history[-1] if history else None

    async def read(self, unit: str, seq: int) -> ManifestRevision:
        for revision in self.revisions.get(unit, []):
            if revision.seq == seq:
                return revision
        raise ManifestStoreError(f"Revision {seq} of {unit} not found")

    async def history(self, unit: str, limit: int | None = None) -> list[ManifestRevision]:
        history = list(self.revisions.get(unit, []))
        return history if limit is None else history[-limit:]

    async def append(self, unit: str, expected_seq: int, revision: ManifestRevision) -> int:
        self.append_calls += 1
        if self.append_delay:
            await asyncio.sleep(self.append_delay)
        history = self.revisions.setdefault(unit, [])
        if self.interleave:
            history.append(self.interleave.pop(0))
        validate_append(unit, expected_seq, history[-1].seq if history else 0, revision)
        history.append(revision)
        return revision.seq

    async def watch(self, unit: str, interval_seconds: float) -> AsyncIterator[HeadChanged]:
        last_seq: int | None = None
        while True:
            head = await self.head(unit)
            if head is not None and head.seq != last_seq:
                last_seq = head.seq
                yield HeadChanged(unit=unit, seq=head.seq)
            await asyncio.sleep(interval_seconds)


class FakeCluster:
    """Declarative object store with simulated workload status.

    Attributes:
        objects: Live objects by reference
        crashing: Image references whose pods crash-loop
        apply_failures: Number of upcoming applies that fail
        applied: References in the order they were applied
        deleted: References in the order they were deleted
    """

    def __init__(self) -> None:
        self.objects: dict[ResourceRef, dict[str, Any]] = {}
        self.pods: dict[ResourceRef, list[dict[str, Any]]] = {}
        self.crashing: set[str] = set()
        self.apply_failures = 0
        self.applied: list[ResourceRef] = []
        self.deleted: list[ResourceRef] = []

    @staticmethod
    def _images(document: dict[str, Any]) -> list[str]:
        pod_spec = ((document.get("spec") or {}).get("template") or {}).get("spec") or {}
        return [c.get("image", "") for c in pod_spec.get("containers") or []]

    def _simulate(self, ref: ResourceRef, live: dict[str, Any]) -> None:
        generation = live["metadata"]["generation"]
        if ref.kind not in WORKLOAD_KINDS:
            if ref.kind == "PersistentVolumeClaim":
                live["status"] = {"phase": "Bound"}
            return
        replicas = live["spec"].get("replicas", 1)
        crashing = any(image in self.crashing for image in self._images(live))
        live["status"] = {
            "observedGeneration": generation,
            "replicas": replicas,
            "updatedReplicas": replicas,
            "readyReplicas": 0 if crashing else replicas,
        }
        labels = (live["spec"].get("selector") or {}).get("matchLabels") or {}
        self.pods[ref] = [
            {
                "metadata": {"name": f"{ref.name}-{generation}-{i}", "labels": dict(labels)},
                "status": {"containerStatuses": [{"restartCount": 0}]},
                "_crashing": crashing,
            }
            for i in range(replicas)
        ]

    async def apply(self, manifest: dict[str, Any]) -> dict[str, Any]:
        if self.apply_failures > 0:
            self.apply_failures -= 1
            raise ClusterError("apply rejected (500): etcd unavailable", 500)
        ref = ResourceRef.from_manifest(manifest)
        previous = self.objects.get(ref)
        live = copy.deepcopy(manifest)
        generation = 1
        if previous is not None:
            generation = previous["metadata"]["generation"]
            if previous.get("spec") != live.get("spec"):
                generation += 1
        live["metadata"]["generation"] = generation
        live["metadata"]["uid"] = f"uid-{ref.name}"
        self.objects[ref] = live
        if previous is None or live["metadata"]["generation"] != previous["metadata"]["generation"]:
            self._simulate(ref, live)
        else:
            live["status"] = previous.get("status", {})
        self.applied.append(ref)
        return copy.deepcopy(live)

    async def get(self, ref: ResourceRef) -> dict[str, Any] | None:
        live = self.objects.get(ref)
        return copy.deepcopy(live) if live is not None else None

    async def list_managed(self, unit: str, namespace: str) -> list[dict[str, Any]]:
        items = []
        for ref, live in self.objects.items():
            labels = live["metadata"].get("labels") or {}
            if labels.get("rollwright.io/unit") != unit:
                continue
            info = KINDS.get(ref.kind)
            if info is not None and info.namespaced and ref.namespace != namespace:
                continue
            items.append(copy.deepcopy(live))
        return items

    async def delete(self, ref: ResourceRef) -> None:
        self.objects.pop(ref, None)
        self.pods.pop(ref, None)
        self.deleted.append(ref)

    async def list_pods(self, namespace: str, selector: dict[str, str]) -> list[dict[str, Any]]:
        result = []
        for ref, pods in self.pods.items():
            if ref.namespace != namespace:
                continue
            for pod in pods:
                labels = pod["metadata"]["labels"]
                if any(labels.get(k) != v for k, v in selector.items()):
                    continue
                if pod["_crashing"]:
                    pod["status"]["containerStatuses"][0]["restartCount"] += 1
                result.append(
                    {"metadata": copy.deepcopy(pod["metadata"]), "status": copy.deepcopy(pod["status"])}
                )
        return result

    def image_of(self, namespace: str, name: str) -> str:
        live = self.objects[ResourceRef(kind="Deployment", name=name, namespace=namespace)]
        return self._images(live)[0]


@dataclass
class Harness:
    """A release coordinator wired to in-memory collaborators."""

    config: RollwrightConfig
    registry: FakeRegistry
    builder: FakeBuilder
    scanner: FakeScanner
    store: InMemoryManifestStore
    cluster: FakeCluster
    coordinator: ReleaseCoordinator

    async def release(self, commit_id: str, *changed: str) -> dict[str, SubmitOutcome]:
        """Submit a trigger and wait for the unit queues to drain."""
        outcomes = await self.coordinator.submit(
            TriggerEvent(commit_id=commit_id, changed_units=list(changed or ["shop"]))
        )
        await asyncio.wait_for(self.coordinator.wait_idle(), timeout=10)
        return outcomes

    def revisions(self, unit: str = "shop") -> list[ManifestRevision]:
        return list(self.store.revisions.get(unit, []))


def make_harness(
    config: RollwrightConfig | None = None,
    builder: FakeBuilder | None = None,
    scanner: FakeScanner | None = None,
    policy: ScanPolicy | None = None,
) -> Harness:
    config = config or shop_config()
    registry = FakeRegistry()
    builder = builder or FakeBuilder()
    scanner = scanner or FakeScanner()
    store = InMemoryManifestStore({unit: shop_templates() for unit in config.units})
    cluster = FakeCluster()
    events = EventBus()
    builds = BuildCoordinator(
        registry=registry,
        builder=builder,
        scanner=scanner,
        policy=policy,
        registry_config=config.registry,
    )
    updater = ManifestUpdater(store, config.manifest)
    reconciler = Reconciler(store, cluster, config.units, config.reconciler, events)
    verifier = HealthVerifier(cluster, config.units, config.health)
    coordinator = ReleaseCoordinator(
        config=config,
        store=store,
        builds=builds,
        updater=updater,
        reconciler=reconciler,
        verifier=verifier,
        rollback=RollbackController(updater, reconciler, verifier),
        events=events,
    )
    return Harness(
        config=config,
        registry=registry,
        builder=builder,
        scanner=scanner,
        store=store,
        cluster=cluster,
        coordinator=coordinator,
    )
