"""Release Coordinator: the top-level release state machine.

One release per commit and unit moves through::

    pending -> building -> scanning -> publishing -> manifest_updated
            -> syncing -> healthy
                       -> degraded -> rolling_back -> rolled_back

A degraded release is rolled back automatically once: the rollback is a new
release that starts in ``rolling_back`` and is synced and health checked like
any other. If it degrades too, it goes to ``fatal``, the unit is blocked and
no further automatic trigger is accepted until an operator clears it.

Every unit has its own queue and worker, so at most one release per unit is
non-terminal at a time while different units proceed in parallel. Duplicate
triggers for a commit that is queued, in flight or already finished are
no-ops. Each stage runs under its own timeout.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Awaitable
from dataclasses import dataclass, field
from enum import Enum
from typing import TypeVar

from rollwright.config import RollwrightConfig
from rollwright.errors import (
    BuildError,
    ConflictError,
    HealthDegraded,
    NoPriorGoodRevision,
    StageTimeout,
    SyncFailure,
    UnknownUnit,
)
from rollwright.logging import bind_release_context, clear_release_context, get_logger
from rollwright.models import (
    Commit,
    ComponentSpec,
    HealthStatus,
    ManifestRevision,
    Release,
    ReleaseEvent,
    ReleaseState,
    StateChange,
    SyncOperation,
    TriggerEvent,
    UnitStatus,
)
from rollwright.orchestrator.build_coordinator import BuildCoordinator, BuildPlan
from rollwright.orchestrator.events import EventBus
from rollwright.orchestrator.health_verifier import HealthVerifier
from rollwright.orchestrator.manifest_updater import ManifestUpdater
from rollwright.orchestrator.reconciler import Reconciler
from rollwright.orchestrator.rollback import RollbackController
from rollwright.orchestrator.state_machine import ReleaseStateMachine
from rollwright.pipeline.manifest_store import ManifestStore, ManifestStoreError

logger = get_logger(__name__)

T = TypeVar("T")

PRE_MANIFEST_STATES = frozenset(
    {
        ReleaseState.PENDING,
        ReleaseState.BUILDING,
        ReleaseState.SCANNING,
        ReleaseState.PUBLISHING,
    }
)


class SubmitOutcome(str, Enum):
    QUEUED = "queued"
    DUPLICATE = "duplicate"
    BLOCKED = "blocked"


@dataclass
class _Job:
    commit: Commit
    components: list[str]


@dataclass
class _UnitState:
    history: deque[Release]
    queue: asyncio.Queue[_Job] = field(default_factory=asyncio.Queue)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    unblocked: asyncio.Event = field(default_factory=asyncio.Event)
    queued_commits: set[str] = field(default_factory=set)
    current: Release | None = None
    blocked: bool = False
    last_error: str | None = None
    worker: asyncio.Task[None] | None = None

    def __post_init__(self) -> None:
        self.unblocked.set()


class ReleaseCoordinator:
    """Drives releases of every configured unit.

    Args:
        config: Root configuration (units, release timeouts)
        store: Manifest store client
        builds: Build Coordinator
        updater: Manifest Updater
        reconciler: Reconciler
        verifier: Health Verifier
        rollback: Rollback Controller
        events: Event bus receiving every release transition
    """

    def __init__(
        self,
        config: RollwrightConfig,
        store: ManifestStore,
        builds: BuildCoordinator,
        updater: ManifestUpdater,
        reconciler: Reconciler,
        verifier: HealthVerifier,
        rollback: RollbackController,
        events: EventBus | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.builds = builds
        self.updater = updater
        self.reconciler = reconciler
        self.verifier = verifier
        self.rollback_controller = rollback
        self.events = events or EventBus()
        self.state_machine = ReleaseStateMachine()
        self.timeouts = config.release.timeouts
        self._units: dict[str, _UnitState] = {}
        self._running = False

    # -- unit bookkeeping --------------------------------------------------

    def _unit(self, unit: str) -> _UnitState:
        if unit not in self.config.units:
            raise UnknownUnit(unit)
        if unit not in self._units:
            self._units[unit] = _UnitState(history=deque(maxlen=self.config.release.history_window))
        return self._units[unit]

    def _components(self, unit: str, names: list[str]) -> list[ComponentSpec]:
        unit_config = self.config.units[unit]
        selected = names or list(unit_config.components)
        specs = []
        for name in selected:
            component = unit_config.components.get(name)
            if component is None:
                raise UnknownUnit(f"{unit}/{name}")
            specs.append(
                ComponentSpec(
                    unit=unit,
                    name=name,
                    repository=component.repository,
                    context=component.context,
                    dockerfile=component.dockerfile,
                )
            )
        return specs

    async def _is_duplicate(self, unit: str, state: _UnitState, commit_id: str) -> bool:
        """Whether ``commit_id`` is queued, in the release window or already in the manifest."""
        revisions = await self.store.history(unit)
        if any(r.commit_id == commit_id and r.rollback_of is None for r in revisions):
            return True
        if commit_id in state.queued_commits:
            return True
        return any(r.commit.id == commit_id and not r.is_rollback for r in state.history)

    def _ensure_worker(self, unit: str, state: _UnitState) -> None:
        if state.worker is None or state.worker.done():
            state.worker = asyncio.create_task(self._worker(unit, state), name=f"release-{unit}")

    @property
    def units(self) -> list[str]:
        return sorted(self.config.units)

    @property
    def running(self) -> bool:
        return self._running

    # -- triggers ----------------------------------------------------------

    async def submit(self, event: TriggerEvent) -> dict[str, SubmitOutcome]:
        """Queue one release per changed unit.

        Entries of ``changed_units`` are ``unit`` (all components) or
        ``unit/component``.

        A commit already queued for a unit is a duplicate, and so is one the
        unit has released: found in the release history window or as a
        non-rollback revision of the unit's manifest history.

        Raises:
            UnknownUnit: If any entry names an unconfigured unit or component
            ManifestStoreError: If the manifest history cannot be read
        """
        requested: dict[str, list[str] | None] = {}
        for entry in event.changed_units:
            unit, _, component = entry.partition("/")
            self._unit(unit)
            if not component:
                requested[unit] = None
                continue
            self._components(unit, [component])
            names = requested.setdefault(unit, [])
            if names is not None and component not in names:
                names.append(component)

        commit = Commit(
            id=event.commit_id,
            timestamp=event.timestamp,
            author=event.author,
            message=event.message,
        )
        results: dict[str, SubmitOutcome] = {}
        for unit, components in requested.items():
            state = self._unit(unit)
            if state.blocked:
                logger.warning("trigger_refused_unit_blocked", unit=unit, commit_id=commit.id)
                results[unit] = SubmitOutcome.BLOCKED
                continue
            if await self._is_duplicate(unit, state, commit.id):
                logger.info("trigger_duplicate_ignored", unit=unit, commit_id=commit.id)
                results[unit] = SubmitOutcome.DUPLICATE
                continue
            state.queued_commits.add(commit.id)
            state.queue.put_nowait(_Job(commit=commit, components=list(components or [])))
            self._ensure_worker(unit, state)
            logger.info(
                "release_queued",
                unit=unit,
                commit_id=commit.id,
                components=components or "all",
                queue_depth=state.queue.qsize(),
            )
            results[unit] = SubmitOutcome.QUEUED
        return results

    # -- worker ------------------------------------------------------------

    async def _worker(self, unit: str, state: _UnitState) -> None:
        while True:
            await state.unblocked.wait()
            job = await state.queue.get()
            try:
                async with state.lock:
                    await self._run_release(unit, state, job)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "release_crashed",
                    unit=unit,
                    commit_id=job.commit.id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                if state.current is not None and not state.current.state.is_terminal:
                    await self._abort(state, state.current, f"{type(e).__name__}: {e}")
            finally:
                clear_release_context()
                state.queue.task_done()

    async def _run_release(self, unit: str, state: _UnitState, job: _Job) -> None:
        release = Release(unit=unit, commit=job.commit, components=job.components)
        state.queued_commits.discard(job.commit.id)
        state.current = release
        state.history.append(release)
        bind_release_context(unit, commit_id=job.commit.id, release_id=release.id)
        await self._emit(release, self.state_machine.start(release))

        plan = await self._build(state, release, self._components(unit, job.components))
        if plan is None:
            return

        revision = await self._update_manifest(state, release)
        if revision is None:
            return

        await self._advance(release, ReleaseState.SYNCING)
        error = await self._sync_and_verify(release)
        if error is None:
            await self._advance(release, ReleaseState.HEALTHY)
            state.last_error = None
            return

        await self._advance(release, ReleaseState.DEGRADED, error=error)
        state.last_error = error
        await self._handle_degraded(state, release)

    async def _build(
        self, state: _UnitState, release: Release, components: list[ComponentSpec]
    ) -> BuildPlan | None:
        try:
            await self._advance(release, ReleaseState.BUILDING)
            plan = await self._stage("building", self._prepare_and_build(release, components))
            await self._advance(release, ReleaseState.SCANNING)
            await self._stage("scanning", self.builds.scan(plan))
            await self._advance(release, ReleaseState.PUBLISHING)
            release.artifacts = await self._stage("publishing", self.builds.publish(plan))
        except (BuildError, StageTimeout) as e:
            await self._fail(state, release, str(e))
            return None
        return plan

    async def _prepare_and_build(self, release: Release, components: list[ComponentSpec]) -> BuildPlan:
        plan = await self.builds.prepare(release.commit, components)
        await self.builds.build_images(plan)
        return plan

    async def _update_manifest(
        self, state: _UnitState, release: Release
    ) -> ManifestRevision | None:
        if release.artifacts is None:
            raise RuntimeError(f"Release {release.id} has no published artifacts")
        unit = release.unit
        append = asyncio.ensure_future(
            self.updater.append_latest(unit, release.artifacts.references(), release.commit.id)
        )
        try:
            revision = await self._stage("manifest_updated", asyncio.shield(append))
        except StageTimeout as e:
            # The append keeps running; its outcome decides failed or degraded
            logger.warning("manifest_append_overran", unit=unit, error=str(e))
            try:
                revision = await append
            except (ConflictError, ManifestStoreError) as append_error:
                await self._fail(state, release, f"{e}; {append_error}")
                return None
            release.bind_revision(revision)
            await self._advance(release, ReleaseState.MANIFEST_UPDATED)
            await self._advance(release, ReleaseState.DEGRADED, error=str(e))
            state.last_error = str(e)
            await self._handle_degraded(state, release)
            return None
        except (ConflictError, ManifestStoreError) as e:
            await self._fail(state, release, str(e))
            return None

        release.bind_revision(revision)
        await self._advance(release, ReleaseState.MANIFEST_UPDATED)
        return revision

    async def _sync_and_verify(self, release: Release) -> str | None:
        """Sync the release's revision and check its health; returns the error, if any."""
        if release.revision is None:
            raise RuntimeError(f"Release {release.id} has no manifest revision to sync")
        try:
            await self._stage("syncing", self.reconciler.sync_now(release.unit))
            report = await self._stage("health", self.verifier.check(release.revision))
        except (SyncFailure, StageTimeout) as e:
            release.last_health = HealthStatus.UNKNOWN
            return str(e)
        release.last_health = report.status
        if report.status != HealthStatus.HEALTHY:
            return str(HealthDegraded(report))
        return None

    async def _handle_degraded(self, state: _UnitState, release: Release) -> None:
        if release.is_rollback:
            await self._make_fatal(state, release, "rollback release degraded")
            return
        if not self.config.release.auto_rollback:
            await self._make_fatal(state, release, "automatic rollback disabled")
            return

        await self._advance(release, ReleaseState.ROLLING_BACK)
        try:
            replacement = await self.rollback_controller.rollback(release, list(state.history))
        except (NoPriorGoodRevision, ConflictError, ManifestStoreError) as e:
            await self._make_fatal(state, release, str(e))
            return

        release.superseded_by = replacement.id
        ok = await self._restore(state, replacement)
        if ok:
            await self._advance(release, ReleaseState.ROLLED_BACK)
        else:
            await self._advance(release, ReleaseState.FATAL, error="rollback failed")

    async def _restore(self, state: _UnitState, replacement: Release) -> bool:
        """Drive a rollback release through sync and health."""
        state.current = replacement
        state.history.append(replacement)
        bind_release_context(
            replacement.unit, commit_id=replacement.commit.id, release_id=replacement.id
        )
        await self._emit(replacement, self.state_machine.start(replacement))
        await self._advance(replacement, ReleaseState.SYNCING)
        seconds = self.timeouts.syncing + self.timeouts.health
        try:
            await self._stage(
                "syncing", self.rollback_controller.restore(replacement), seconds=seconds
            )
        except (SyncFailure, HealthDegraded, StageTimeout) as e:
            if replacement.last_health is None:
                replacement.last_health = HealthStatus.UNKNOWN
            await self._advance(replacement, ReleaseState.DEGRADED, error=str(e))
            await self._make_fatal(state, replacement, str(e))
            return False
        await self._advance(replacement, ReleaseState.HEALTHY)
        state.last_error = None
        return True

    # -- transitions -------------------------------------------------------

    async def _stage(self, stage: str, awaitable: Awaitable[T], seconds: float | None = None) -> T:
        timeout = seconds if seconds is not None else getattr(self.timeouts, stage)
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError as e:
            raise StageTimeout(stage, timeout) from e

    async def _advance(
        self, release: Release, target: ReleaseState, error: str | None = None
    ) -> None:
        change = self.state_machine.transition(release, target, error=error)
        await self._emit(release, change)

    async def _emit(self, release: Release, change: StateChange) -> None:
        await self.events.publish_release(
            ReleaseEvent(
                unit=release.unit,
                release_id=release.id,
                commit_id=release.commit.id,
                revision_seq=release.revision_seq,
                state=change.to_state,
                previous_state=change.from_state,
                is_rollback=release.is_rollback,
                error=change.error,
                timestamp=change.at,
            )
        )

    async def _fail(self, state: _UnitState, release: Release, error: str) -> None:
        state.last_error = error
        await self._advance(release, ReleaseState.FAILED, error=error)

    async def _make_fatal(self, state: _UnitState, release: Release, error: str) -> None:
        state.last_error = error
        if release.state != ReleaseState.FATAL:
            await self._advance(release, ReleaseState.FATAL, error=error)
        self._block(state, release.unit)

    def _block(self, state: _UnitState, unit: str) -> None:
        state.blocked = True
        state.unblocked.clear()
        logger.error("unit_blocked", unit=unit, error=state.last_error)

    async def _abort(self, state: _UnitState, release: Release, error: str) -> None:
        if release.state in PRE_MANIFEST_STATES:
            await self._fail(state, release, error)
            return
        if release.state in (ReleaseState.MANIFEST_UPDATED, ReleaseState.SYNCING):
            await self._advance(release, ReleaseState.DEGRADED, error=error)
        await self._make_fatal(state, release, error)

    # -- operator surface --------------------------------------------------

    async def status(self, unit: str) -> UnitStatus:
        """Current release state and last error of ``unit``."""
        state = self._unit(unit)
        head = await self.store.head(unit)
        current = state.current
        return UnitStatus(
            unit=unit,
            state=current.state if current else None,
            release=current.model_copy(deep=True) if current else None,
            head_seq=head.seq if head else None,
            last_error=state.last_error,
            blocked=state.blocked,
            queued=state.queue.qsize(),
        )

    def releases(self, unit: str) -> list[Release]:
        """Releases retained in the history window, oldest first."""
        return list(self._unit(unit).history)

    async def sync_now(self, unit: str) -> SyncOperation:
        """Run an explicit reconciliation pass for ``unit``.

        Raises:
            SyncFailure: If the pass is stuck after retries
        """
        self._unit(unit)
        operation = await self.reconciler.sync_now(unit)
        logger.info(
            "operator_sync_finished",
            unit=unit,
            outcome=operation.outcome.value,
            changes=len(operation.changes),
        )
        return operation

    async def rollback(self, unit: str) -> UnitStatus:
        """Operator rollback of the unit's latest revision.

        Returns immediately with the in-progress status if a release is
        running. A healthy rollback clears a fatal block.

        Raises:
            NoPriorGoodRevision: If there is nothing healthy to restore
        """
        state = self._unit(unit)
        if state.lock.locked():
            logger.info("operator_rollback_deferred", unit=unit)
            return await self.status(unit)

        async with state.lock:
            failed = next((r for r in reversed(state.history) if r.revision is not None), None)
            if failed is None:
                raise NoPriorGoodRevision(unit)
            replacement = await self.rollback_controller.rollback(failed, list(state.history))
            failed.superseded_by = replacement.id
            logger.warning(
                "operator_rollback_started",
                unit=unit,
                failed_release=failed.id,
                rollback_release=replacement.id,
                seq=replacement.revision_seq,
            )
            try:
                if await self._restore(state, replacement):
                    self.clear(unit)
            finally:
                clear_release_context()
        return await self.status(unit)

    def clear(self, unit: str) -> None:
        """Lift the fatal block so automatic triggers are accepted again."""
        state = self._unit(unit)
        if state.blocked:
            logger.warning("unit_cleared", unit=unit, release_id=state.current.id if state.current else None)
        state.blocked = False
        state.unblocked.set()

    async def wait_idle(self, unit: str | None = None) -> None:
        """Wait until the queue of ``unit`` (or of every unit) is drained."""
        targets = [self._unit(unit)] if unit is not None else list(self._units.values())
        for state in targets:
            await state.queue.join()

    # -- lifecycle ---------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            logger.warning("release_coordinator_already_running")
            return
        self._running = True
        for unit in self.units:
            self._ensure_worker(unit, self._unit(unit))
        await self.reconciler.start()
        logger.info("release_coordinator_started", units=self.units)

    async def stop(self) -> None:
        self._running = False
        workers = [s.worker for s in self._units.values() if s.worker is not None]
        for worker in workers:
            worker.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        await self.reconciler.stop()
        await self.verifier.close()
        logger.info("release_coordinator_stopped")


def create_release_coordinator(
    config: RollwrightConfig, events: EventBus | None = None
) -> ReleaseCoordinator:
    """Wire a coordinator from configuration with the production collaborators."""
    from rollwright.pipeline.builder import DockerImageBuilder
    from rollwright.pipeline.cluster import KubernetesClusterClient
    from rollwright.pipeline.manifest_store import GitManifestStore
    from rollwright.pipeline.registry import DockerArtifactRegistry
    from rollwright.pipeline.scanner import ScanPolicy, TrivyScanner

    events = events or EventBus()
    store = GitManifestStore(config.manifest)
    cluster = KubernetesClusterClient(config.cluster)
    builds = BuildCoordinator(
        registry=DockerArtifactRegistry(config.registry),
        builder=DockerImageBuilder(config.build, source_repo=config.build.source_repo),
        scanner=TrivyScanner(config.build) if config.build.scan_enabled else None,
        policy=ScanPolicy.from_config(config.build),
        registry_config=config.registry,
    )
    updater = ManifestUpdater(store, config.manifest)
    reconciler = Reconciler(store, cluster, config.units, config.reconciler, events)
    verifier = HealthVerifier(cluster, config.units, config.health)
    return ReleaseCoordinator(
        config=config,
        store=store,
        builds=builds,
        updater=updater,
        reconciler=reconciler,
        verifier=verifier,
        rollback=RollbackController(updater, reconciler, verifier),
        events=events,
    )
