"""Error taxonomy for the release orchestration core.

Propagation policy:
- PublishFailure and SyncFailure are retried locally with bounded
  exponential backoff before they surface.
- ConflictError is retried immediately with a fresh read of the manifest head.
- Policy rejections and NoPriorGoodRevision are never retried automatically
  and surface to an operator.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from rollwright.models import Artifact, HealthReport


class RollwrightError(Exception):
    """Base class for all orchestration errors."""

    retryable: bool = False


class BuildErrorKind(str, Enum):
    """Failure classes of the Build Coordinator."""

    COMPILE_FAILURE = "compile_failure"
    POLICY_REJECTED = "policy_rejected"
    PUBLISH_FAILURE = "publish_failure"


class BuildError(RollwrightError):
    """Raised when a commit could not be turned into a full artifact set.

    Attributes:
        kind: Failure class
        component: Component that failed (None for whole-build failures)
        partial: Sibling artifacts that were published before the failure
    """

    def __init__(
        self,
        kind: BuildErrorKind,
        message: str,
        component: str | None = None,
        partial: list[Artifact] | None = None,
    ) -> None:
        self.kind = kind
        self.component = component
        self.partial = list(partial or [])
        prefix = f"{kind.value}"
        if component:
            prefix += f" [{component}]"
        super().__init__(f"{prefix}: {message}")

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return self.kind == BuildErrorKind.PUBLISH_FAILURE


class ConflictError(RollwrightError):
    """Manifest append lost the optimistic-concurrency race.

    The caller re-reads the head and retries the substitution, never
    force-overwriting.
    """

    retryable = True

    def __init__(self, unit: str, expected_seq: int, actual_seq: int) -> None:
        self.unit = unit
        self.expected_seq = expected_seq
        self.actual_seq = actual_seq
        super().__init__(
            f"Manifest head for {unit} moved: expected seq {expected_seq}, found {actual_seq}"
        )


class SyncFailure(RollwrightError):
    """A reconciliation pass failed.

    Attributes:
        unit: Unit being reconciled
        seq: Target revision sequence number (None if no revision exists)
        stuck: True once retries are exhausted
    """

    retryable = True

    def __init__(
        self, unit: str, seq: int | None, message: str, stuck: bool = False
    ) -> None:
        self.unit = unit
        self.seq = seq
        self.stuck = stuck
        label = "sync stuck" if stuck else "sync failed"
        super().__init__(f"{label} for {unit} at seq {seq}: {message}")


class HealthDegraded(RollwrightError):
    """Health verification ended Degraded (convergence timeout or crash loop)."""

    def __init__(self, report: HealthReport) -> None:
        self.report = report
        super().__init__(f"Revision {report.seq} of {report.unit} degraded: {report.reason}")


class NoPriorGoodRevision(RollwrightError):
    """Rollback impossible: no healthy release inside the history window."""

    def __init__(self, unit: str) -> None:
        self.unit = unit
        super().__init__(f"No prior healthy release for {unit}; operator intervention required")


class UnknownUnit(RollwrightError):
    """The unit is not configured."""

    def __init__(self, unit: str) -> None:
        self.unit = unit
        super().__init__(f"Unknown unit: {unit}")


class StageTimeout(RollwrightError):
    """A release stage exceeded its configured timeout."""

    def __init__(self, stage: str, seconds: float) -> None:
        self.stage = stage
        self.seconds = seconds
        super().__init__(f"Stage {stage} exceeded {seconds}s")
