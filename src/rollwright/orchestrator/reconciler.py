"""Reconciler: the GitOps loop converging a unit's cluster state to its head.

Per target revision the loop moves ``Idle -> Diffing -> Applying ->
Converged | Failed``. Two triggers feed one serialized queue per unit: a poll
timer and explicit ``sync_now`` requests. A request that arrives while another
is still waiting in the queue joins it, so a burst of triggers costs one pass.

Diffing compares every resource of the head revision against the live object
with a recursive subset check (fields the API server adds are ignored), so a
manual edit or deletion is reverted by the next pass without a new revision.
Live resources labelled as managed by rollwright but absent from the revision
are pruned only when pruning is enabled and their kind is allow-listed.

Apply order is fixed by dependency tier, not alphabetically:

    0  Namespace
    1  Secret, ConfigMap, ServiceAccount, PersistentVolumeClaim
    2  StatefulSet
    3  Deployment, DaemonSet, Job
    4  Service, Ingress

An apply error aborts the rest of the pass. The pass is retried with
exponential backoff and, once the retry budget is spent, reported as stuck.
"""

from __future__ import annotations

import asyncio
import copy
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from rollwright.config import ReconcilerConfig, UnitConfig
from rollwright.errors import SyncFailure, UnknownUnit
from rollwright.logging import get_logger
from rollwright.models import (
    MANAGED_BY_LABEL,
    MANAGED_BY_VALUE,
    REVISION_ANNOTATION,
    UNIT_LABEL,
    ManifestRevision,
    ResourceAction,
    ResourceChange,
    ResourceRef,
    SyncOperation,
    SyncOutcome,
    SyncTrigger,
    utcnow,
)
from rollwright.orchestrator.backoff import BackoffConfig, ExponentialBackoff
from rollwright.orchestrator.events import EventBus
from rollwright.pipeline.cluster import KINDS, ClusterClient, ClusterError
from rollwright.pipeline.manifest_store import ManifestStore, ManifestStoreError

logger = get_logger(__name__)

APPLY_TIERS: dict[str, int] = {
    "Namespace": 0,
    "Secret": 1,
    "ConfigMap": 1,
    "ServiceAccount": 1,
    "PersistentVolumeClaim": 1,
    "StatefulSet": 2,
    "Deployment": 3,
    "DaemonSet": 3,
    "Job": 3,
    "Service": 4,
    "Ingress": 4,
}
_DEFAULT_TIER = 3


class ReconcilePhase(str, Enum):
    IDLE = "idle"
    DIFFING = "diffing"
    APPLYING = "applying"
    CONVERGED = "converged"
    FAILED = "failed"


def apply_order(resources: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Sort by dependency tier; template order is kept within a tier."""
    return sorted(resources, key=lambda r: APPLY_TIERS.get(r.get("kind", ""), _DEFAULT_TIER))


def is_subset(desired: Any, live: Any) -> bool:
    """True if every field of ``desired`` is present with the same value in ``live``."""
    if isinstance(desired, dict):
        if not isinstance(live, dict):
            return False
        return all(key in live and is_subset(value, live[key]) for key, value in desired.items())
    if isinstance(desired, list):
        if not isinstance(live, list) or len(desired) != len(live):
            return False
        return all(is_subset(d, l) for d, l in zip(desired, live))
    return desired == live


def stamp(resource: dict[str, Any], unit: str, namespace: str, seq: int) -> dict[str, Any]:
    """Copy of ``resource`` with ownership labels, revision annotation and namespace."""
    document = copy.deepcopy(resource)
    metadata = document.setdefault("metadata", {})
    labels = metadata.setdefault("labels", {})
    labels[MANAGED_BY_LABEL] = MANAGED_BY_VALUE
    labels[UNIT_LABEL] = unit
    metadata.setdefault("annotations", {})[REVISION_ANNOTATION] = str(seq)
    info = KINDS.get(document.get("kind", ""))
    if info is not None and info.namespaced:
        metadata.setdefault("namespace", namespace)
    return document


class SyncPlan(BaseModel):
    """Result of a diff: what one pass would apply and delete.

    Attributes:
        apply: Documents to apply, in apply order, with their action
        prune: Live resources to delete
        orphaned: Live resources absent from the revision but not eligible for pruning
        unchanged: Resources already matching the revision
    """

    apply: list[tuple[ResourceAction, dict[str, Any]]] = Field(default_factory=list)
    prune: list[ResourceRef] = Field(default_factory=list)
    orphaned: list[ResourceRef] = Field(default_factory=list)
    unchanged: int = 0

    @property
    def empty(self) -> bool:
        return not self.apply and not self.prune


@dataclass
class _SyncRequest:
    trigger: SyncTrigger
    future: asyncio.Future[SyncOperation] | None = None


class Reconciler:
    """Per-unit serialized reconciliation of manifest head against the cluster.

    Args:
        store: Manifest store client
        cluster: Cluster client
        units: Unit name to unit configuration (namespace lookup)
        config: Reconciler configuration
        events: Event bus receiving every finished SyncOperation
    """

    def __init__(
        self,
        store: ManifestStore,
        cluster: ClusterClient,
        units: dict[str, UnitConfig],
        config: ReconcilerConfig | None = None,
        events: EventBus | None = None,
    ) -> None:
        self.store = store
        self.cluster = cluster
        self.units = units
        self.config = config or ReconcilerConfig()
        self.events = events
        self.backoff = ExponentialBackoff(
            BackoffConfig(
                initial_delay_seconds=self.config.retry_base_seconds,
                max_delay_seconds=self.config.retry_cap_seconds,
                multiplier=self.config.retry_factor,
                max_retries=self.config.max_retries,
            )
        )
        self._queues: dict[str, asyncio.Queue[_SyncRequest]] = {}
        self._pending: dict[str, _SyncRequest] = {}
        self._workers: dict[str, asyncio.Task[None]] = {}
        self._timers: dict[str, asyncio.Task[None]] = {}
        self._phases: dict[str, ReconcilePhase] = {}
        self._history: dict[str, deque[SyncOperation]] = {}
        self._running = False

    def _namespace(self, unit: str) -> str:
        try:
            return self.units[unit].namespace
        except KeyError as e:
            raise UnknownUnit(unit) from e

    # -- queries -----------------------------------------------------------

    def phase(self, unit: str) -> ReconcilePhase:
        return self._phases.get(unit, ReconcilePhase.IDLE)

    def history(self, unit: str) -> list[SyncOperation]:
        return list(self._history.get(unit, ()))

    def last_operation(self, unit: str) -> SyncOperation | None:
        history = self._history.get(unit)
        return history[-1] if history else None

    # -- diff and apply ----------------------------------------------------

    async def diff(self, revision: ManifestRevision) -> SyncPlan:
        """Compare a revision with live state."""
        unit = revision.unit
        namespace = self._namespace(unit)
        desired = [stamp(r, unit, namespace, revision.seq) for r in revision.resources]
        live = {
            ResourceRef.from_manifest(item): item
            for item in await self.cluster.list_managed(unit, namespace)
        }

        plan = SyncPlan()
        desired_refs: set[ResourceRef] = set()
        for document in apply_order(desired):
            ref = ResourceRef.from_manifest(document)
            desired_refs.add(ref)
            current = live.get(ref)
            if current is None:
                # Unlabelled objects are invisible to list_managed; apply adopts them
                current = await self.cluster.get(ref)
                if current is None:
                    plan.apply.append((ResourceAction.CREATE, document))
                    continue
            if is_subset(document, current):
                plan.unchanged += 1
            else:
                plan.apply.append((ResourceAction.UPDATE, document))

        for ref in live:
            if ref in desired_refs:
                continue
            if self.config.prune_enabled and ref.kind in self.config.prune_allowed_kinds:
                plan.prune.append(ref)
            else:
                plan.orphaned.append(ref)
        return plan

    async def sync_once(
        self, unit: str, trigger: SyncTrigger = SyncTrigger.POLL, attempt: int = 0
    ) -> SyncOperation:
        """Run one Diffing/Applying pass against the current head.

        Never raises for errors of the pass itself; they are recorded as a
        failed SyncOperation and retried by ``sync``. Cancellation is recorded
        and re-raised.
        """
        started_at = utcnow()
        changes: list[ResourceChange] = []
        target_seq: int | None = None
        unchanged = 0
        self._phases[unit] = ReconcilePhase.DIFFING
        try:
            revision = await self.store.head(unit)
            if revision is not None:
                target_seq = revision.seq
                plan = await self.diff(revision)
                unchanged = plan.unchanged
                if plan.orphaned:
                    logger.info(
                        "prune_skipped",
                        unit=unit,
                        seq=target_seq,
                        resources=[str(ref) for ref in plan.orphaned],
                        prune_enabled=self.config.prune_enabled,
                    )
                self._phases[unit] = ReconcilePhase.APPLYING
                for action, document in plan.apply:
                    await self.cluster.apply(document)
                    changes.append(ResourceChange(ref=ResourceRef.from_manifest(document), action=action))
                for ref in plan.prune:
                    await self.cluster.delete(ref)
                    changes.append(ResourceChange(ref=ref, action=ResourceAction.PRUNE))
        except asyncio.CancelledError:
            self._phases[unit] = ReconcilePhase.IDLE
            self._record(
                SyncOperation(
                    unit=unit,
                    target_seq=target_seq,
                    trigger=trigger,
                    attempt=attempt,
                    started_at=started_at,
                    finished_at=utcnow(),
                    outcome=SyncOutcome.CANCELLED,
                    changes=changes,
                    unchanged=unchanged,
                )
            )
            raise
        except Exception as e:
            error = str(e)
            if not isinstance(e, (ClusterError, ManifestStoreError)):
                error = f"{type(e).__name__}: {e}"
                logger.error(
                    "sync_pass_crashed",
                    unit=unit,
                    seq=target_seq,
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )
            self._phases[unit] = ReconcilePhase.FAILED
            operation = SyncOperation(
                unit=unit,
                target_seq=target_seq,
                trigger=trigger,
                attempt=attempt,
                started_at=started_at,
                finished_at=utcnow(),
                outcome=SyncOutcome.FAILED,
                changes=changes,
                unchanged=unchanged,
                error=error,
            )
        else:
            self._phases[unit] = ReconcilePhase.CONVERGED
            operation = SyncOperation(
                unit=unit,
                target_seq=target_seq,
                trigger=trigger,
                attempt=attempt,
                started_at=started_at,
                finished_at=utcnow(),
                outcome=SyncOutcome.CONVERGED,
                changes=changes,
                unchanged=unchanged,
            )

        self._record(operation)
        if self.events is not None:
            await self.events.publish_sync(operation)
        return operation

    def _record(self, operation: SyncOperation) -> None:
        history = self._history.setdefault(
            operation.unit, deque(maxlen=self.config.history_size)
        )
        history.append(operation)

    async def sync(self, unit: str, trigger: SyncTrigger = SyncTrigger.POLL) -> SyncOperation:
        """One pass plus bounded backoff retries.

        Raises:
            SyncFailure: ``stuck=True`` once every retry failed
        """
        attempt = 0
        operation = await self.sync_once(unit, trigger, attempt=attempt)
        while operation.outcome != SyncOutcome.CONVERGED and attempt < self.backoff.max_retries:
            await self.backoff.wait(attempt)
            attempt += 1
            operation = await self.sync_once(unit, trigger, attempt=attempt)
        if operation.outcome == SyncOutcome.CONVERGED:
            return operation

        logger.error(
            "sync_stuck",
            unit=unit,
            seq=operation.target_seq,
            attempts=self.backoff.max_retries + 1,
            error=operation.error,
        )
        raise SyncFailure(unit, operation.target_seq, operation.error or "unknown error", stuck=True)

    # -- serialized queue --------------------------------------------------

    def request_sync(
        self, unit: str, trigger: SyncTrigger = SyncTrigger.SYNC_NOW
    ) -> asyncio.Future[SyncOperation]:
        """Enqueue a pass for ``unit`` and return a future for its result."""
        return self._enqueue(unit, trigger, want_result=True)  # type: ignore[return-value]

    async def sync_now(self, unit: str) -> SyncOperation:
        """Explicit "sync now": wait for a full pass (with retries) to finish.

        Raises:
            SyncFailure: If the pass is stuck
        """
        return await asyncio.shield(self.request_sync(unit, SyncTrigger.SYNC_NOW))

    def _enqueue(
        self, unit: str, trigger: SyncTrigger, want_result: bool
    ) -> asyncio.Future[SyncOperation] | None:
        self._namespace(unit)
        request = self._pending.get(unit)
        if request is None:
            request = _SyncRequest(trigger=trigger)
            self._pending[unit] = request
            self._queue(unit).put_nowait(request)
        elif trigger == SyncTrigger.SYNC_NOW:
            request.trigger = SyncTrigger.SYNC_NOW
        if want_result and request.future is None:
            request.future = asyncio.get_running_loop().create_future()
        self._ensure_worker(unit)
        return request.future

    def _queue(self, unit: str) -> asyncio.Queue[_SyncRequest]:
        if unit not in self._queues:
            self._queues[unit] = asyncio.Queue()
        return self._queues[unit]

    def _ensure_worker(self, unit: str) -> None:
        worker = self._workers.get(unit)
        if worker is None or worker.done():
            self._workers[unit] = asyncio.create_task(self._worker(unit), name=f"reconcile-{unit}")

    async def _worker(self, unit: str) -> None:
        queue = self._queue(unit)
        while True:
            request = await queue.get()
            if self._pending.get(unit) is request:
                del self._pending[unit]
            future = request.future
            try:
                operation = await self.sync(unit, request.trigger)
            except SyncFailure as e:
                if future is not None and not future.done():
                    future.set_exception(e)
            except asyncio.CancelledError:
                if future is not None and not future.done():
                    future.cancel()
                raise
            except Exception as e:
                logger.error("sync_worker_error", unit=unit, error=str(e), exc_info=True)
                if future is not None and not future.done():
                    future.set_exception(e)
            else:
                if future is not None and not future.done():
                    future.set_result(operation)
            finally:
                queue.task_done()

    async def _poll_loop(self, unit: str) -> None:
        while self._running:
            self._enqueue(unit, SyncTrigger.POLL, want_result=False)
            await asyncio.sleep(self.config.poll_interval_seconds)

    # -- lifecycle ---------------------------------------------------------

    async def start(self) -> None:
        """Start the poll timer of every configured unit."""
        if self._running:
            logger.warning("reconciler_already_running")
            return
        self._running = True
        for unit in self.units:
            self._timers[unit] = asyncio.create_task(self._poll_loop(unit), name=f"poll-{unit}")
        logger.info(
            "reconciler_started",
            units=sorted(self.units),
            poll_interval_seconds=self.config.poll_interval_seconds,
            prune_enabled=self.config.prune_enabled,
        )

    async def stop(self) -> None:
        """Cancel timers and workers; an interrupted pass is resumed by the next poll."""
        self._running = False
        tasks = list(self._timers.values()) + list(self._workers.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._timers.clear()
        self._workers.clear()
        self._pending.clear()
        self._queues.clear()
        logger.info("reconciler_stopped")
