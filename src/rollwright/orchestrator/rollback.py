"""Rollback Controller: restore the last known-good artifacts as a new revision.

A rollback never replays or edits an old revision. It appends a new sequence
number whose resources are the failed revision's predecessor with the
artifact references of the most recent release that was verified Healthy.
The resulting release goes through the same sync and health contract as any
other release.
"""

from __future__ import annotations

from collections.abc import Iterable

from rollwright.errors import HealthDegraded, NoPriorGoodRevision
from rollwright.logging import get_logger
from rollwright.models import HealthReport, HealthStatus, Release, ReleaseState
from rollwright.orchestrator.health_verifier import HealthVerifier
from rollwright.orchestrator.manifest_updater import ManifestUpdater
from rollwright.orchestrator.reconciler import Reconciler

logger = get_logger(__name__)


def select_rollback_target(failed: Release, history: Iterable[Release]) -> Release:
    """Most recent prior release whose last health report was Healthy.

    Raises:
        NoPriorGoodRevision: If the history window holds no such release
    """
    failed_seq = failed.revision_seq
    for candidate in reversed(list(history)):
        if candidate.id == failed.id or candidate.revision is None:
            continue
        if candidate.last_health != HealthStatus.HEALTHY:
            continue
        if failed_seq is not None and candidate.revision.seq >= failed_seq:
            continue
        return candidate
    raise NoPriorGoodRevision(failed.unit)


class RollbackController:
    """``rollback(failed_release) -> new_release | NoPriorGoodRevision``.

    Args:
        updater: Manifest updater used for the rollback append
        reconciler: Reconciler triggered against the rollback revision
        verifier: Health verifier for the fresh health pass
    """

    def __init__(
        self, updater: ManifestUpdater, reconciler: Reconciler, verifier: HealthVerifier
    ) -> None:
        self.updater = updater
        self.reconciler = reconciler
        self.verifier = verifier

    async def rollback(self, failed: Release, history: Iterable[Release]) -> Release:
        """Append the rollback revision and return the new release.

        The new release starts in ``rolling_back``; ``restore`` drives it
        through sync and health.
        """
        target = select_rollback_target(failed, history)
        if target.revision is None:
            raise NoPriorGoodRevision(failed.unit)

        template = target.revision.resources
        if failed.revision is not None and failed.revision.parent_seq is not None:
            predecessor = await self.updater.store.read(failed.unit, failed.revision.parent_seq)
            template = predecessor.resources

        revision = await self.updater.append_latest(
            failed.unit,
            dict(target.revision.artifacts),
            target.commit.id,
            template=template,
            rollback_of=target.revision.seq,
        )
        release = Release(
            unit=failed.unit,
            commit=target.commit,
            components=list(target.components),
            state=ReleaseState.ROLLING_BACK,
            artifacts=target.artifacts,
            is_rollback=True,
            rollback_of=failed.id,
        )
        release.bind_revision(revision)
        logger.info(
            "rollback_revision_appended",
            unit=failed.unit,
            failed_release=failed.id,
            failed_seq=failed.revision_seq,
            restored_release=target.id,
            restored_seq=target.revision.seq,
            seq=revision.seq,
            artifacts=revision.artifacts,
        )
        return release

    async def restore(self, release: Release) -> HealthReport:
        """Sync the rollback revision and run a fresh health pass.

        Raises:
            SyncFailure: If the sync is stuck
            HealthDegraded: If the restored revision is not healthy
        """
        if release.revision is None:
            raise ValueError(f"Rollback release {release.id} has no manifest revision")
        await self.reconciler.sync_now(release.unit)
        report = await self.verifier.check(release.revision)
        release.last_health = report.status
        if report.status != HealthStatus.HEALTHY:
            raise HealthDegraded(report)
        return report
