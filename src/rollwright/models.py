"""Domain models for the release orchestration core.

Commits, artifacts, manifest revisions, sync operations and health reports
are immutable once created. A Release is the only mutable entity and is
only mutated by the Release Coordinator.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "rollwright"
UNIT_LABEL = "rollwright.io/unit"
REVISION_ANNOTATION = "rollwright.io/revision"
PROBE_HTTP_ANNOTATION = "rollwright.io/probe-http"
PROBE_TCP_ANNOTATION = "rollwright.io/probe-tcp"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Commit(BaseModel):
    """A source change identified by the content hash of its tree."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    timestamp: datetime = Field(default_factory=utcnow)
    author: str | None = None
    message: str | None = None


class ComponentSpec(BaseModel):
    """A buildable component of a unit."""

    model_config = ConfigDict(frozen=True)

    unit: str
    name: str
    repository: str
    context: Path = Path(".")
    dockerfile: str = "Dockerfile"


class Artifact(BaseModel):
    """An immutable, content-addressed build output.

    The digest is the authoritative identity; the tag is advisory.
    """

    model_config = ConfigDict(frozen=True)

    component: str
    commit_id: str
    repository: str
    digest: str
    tag: str

    @property
    def reference(self) -> str:
        """Digest-pinned image reference (``repository@sha256:...``)."""
        return f"{self.repository}@{self.digest}"


class ArtifactSet(BaseModel):
    """All artifacts published for one commit of one unit."""

    model_config = ConfigDict(frozen=True)

    commit_id: str
    artifacts: dict[str, Artifact] = Field(default_factory=dict)

    def references(self) -> dict[str, str]:
        """Component name to digest-pinned reference."""
        return {name: artifact.reference for name, artifact in self.artifacts.items()}


class ResourceRef(BaseModel):
    """Identity of a declarative resource: kind, namespace and name."""

    model_config = ConfigDict(frozen=True)

    kind: str
    name: str
    namespace: str | None = None

    @classmethod
    def from_manifest(cls, manifest: dict[str, Any]) -> ResourceRef:
        metadata = manifest.get("metadata") or {}
        return cls(
            kind=manifest["kind"],
            name=metadata["name"],
            namespace=metadata.get("namespace"),
        )

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.kind}/{self.namespace}/{self.name}"
        return f"{self.kind}/{self.name}"


class ManifestRevision(BaseModel):
    """One append-only, sequence-numbered description of desired state.

    Attributes:
        unit: Deployable unit the revision belongs to
        seq: Monotonically increasing sequence number (starts at 1)
        parent_seq: Sequence number of the previous head (None for the first)
        commit_id: Commit whose artifacts this revision references
        artifacts: Component name to digest-pinned reference
        resources: Declarative resource documents, in template order
        rollback_of: Sequence number whose artifacts were restored, if this
            revision is a rollback
        created_at: Append time
    """

    model_config = ConfigDict(frozen=True)

    unit: str
    seq: int = Field(ge=1)
    parent_seq: int | None = None
    commit_id: str
    artifacts: dict[str, str] = Field(default_factory=dict)
    resources: list[dict[str, Any]] = Field(default_factory=list)
    rollback_of: int | None = None
    created_at: datetime = Field(default_factory=utcnow)

    def refs(self) -> list[ResourceRef]:
        return [ResourceRef.from_manifest(resource) for resource in self.resources]


class ReleaseState(str, Enum):
    """Release lifecycle states.

    Terminal states: healthy, fatal, failed, rolled_back.
    """

    PENDING = "pending"
    BUILDING = "building"
    SCANNING = "scanning"
    PUBLISHING = "publishing"
    MANIFEST_UPDATED = "manifest_updated"
    SYNCING = "syncing"
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    ROLLING_BACK = "rolling_back"
    FATAL = "fatal"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {
        ReleaseState.HEALTHY,
        ReleaseState.FATAL,
        ReleaseState.FAILED,
        ReleaseState.ROLLED_BACK,
    }
)


class HealthStatus(str, Enum):
    """Point-in-time health classification."""

    HEALTHY = "healthy"
    PROGRESSING = "progressing"
    DEGRADED = "degraded"
    UNKNOWN = "unknown"


class StateChange(BaseModel):
    """One recorded transition of a release."""

    model_config = ConfigDict(frozen=True)

    from_state: ReleaseState | None
    to_state: ReleaseState
    at: datetime = Field(default_factory=utcnow)
    error: str | None = None


class Release(BaseModel):
    """Binds one commit to one manifest revision and tracks its lifecycle.

    The revision reference is set once and never changes; a rollback creates
    a new Release with a new revision.
    """

    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    unit: str
    commit: Commit
    components: list[str] = Field(default_factory=list)
    state: ReleaseState = ReleaseState.PENDING
    artifacts: ArtifactSet | None = None
    revision: ManifestRevision | None = None
    last_health: HealthStatus | None = None
    last_error: str | None = None
    is_rollback: bool = False
    rollback_of: str | None = None
    superseded_by: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    transitions: list[StateChange] = Field(default_factory=list)

    def bind_revision(self, revision: ManifestRevision) -> None:
        """Attach the manifest revision; allowed exactly once."""
        if self.revision is not None and self.revision.seq != revision.seq:
            raise ValueError(
                f"Release {self.id} already references revision {self.revision.seq}"
            )
        self.revision = revision

    @property
    def revision_seq(self) -> int | None:
        return self.revision.seq if self.revision is not None else None


class SyncOutcome(str, Enum):
    """Outcome of one reconciliation pass."""

    CONVERGED = "converged"
    FAILED = "failed"
    CANCELLED = "cancelled"


class SyncTrigger(str, Enum):
    POLL = "poll"
    SYNC_NOW = "sync_now"


class ResourceAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    PRUNE = "prune"


class ResourceChange(BaseModel):
    """One applied per-resource difference."""

    model_config = ConfigDict(frozen=True)

    ref: ResourceRef
    action: ResourceAction


class SyncOperation(BaseModel):
    """One reconciliation attempt against a target revision; immutable."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    unit: str
    target_seq: int | None
    trigger: SyncTrigger
    attempt: int = 0
    started_at: datetime
    finished_at: datetime
    outcome: SyncOutcome
    changes: list[ResourceChange] = Field(default_factory=list)
    unchanged: int = 0
    error: str | None = None

    @property
    def is_noop(self) -> bool:
        return self.outcome == SyncOutcome.CONVERGED and not self.changes


class ResourceHealth(BaseModel):
    """Health of a single resource at one poll."""

    model_config = ConfigDict(frozen=True)

    ref: ResourceRef
    status: HealthStatus
    ready: bool = False
    restarts: int = 0
    message: str | None = None


class HealthReport(BaseModel):
    """Classification of the resources named by a revision."""

    model_config = ConfigDict(frozen=True)

    unit: str
    seq: int
    status: HealthStatus
    resources: list[ResourceHealth] = Field(default_factory=list)
    reason: str | None = None
    checked_at: datetime = Field(default_factory=utcnow)
    elapsed_seconds: float = 0.0


class TriggerEvent(BaseModel):
    """Inbound event that starts releases (e.g. a webhook payload).

    ``changed_units`` entries are ``unit`` or ``unit/component``.
    """

    commit_id: str = Field(min_length=1)
    changed_units: list[str] = Field(min_length=1)
    timestamp: datetime = Field(default_factory=utcnow)
    author: str | None = None
    message: str | None = None


class ReleaseEvent(BaseModel):
    """Structured record of one release state transition."""

    model_config = ConfigDict(frozen=True)

    unit: str
    release_id: str
    commit_id: str
    revision_seq: int | None
    state: ReleaseState
    previous_state: ReleaseState | None = None
    is_rollback: bool = False
    error: str | None = None
    timestamp: datetime = Field(default_factory=utcnow)


class UnitOutcome(str, Enum):
    """Operator-facing summary of a unit's current release."""

    SUCCESS = "success"
    IN_PROGRESS = "in_progress"
    FATAL = "fatal"
    FAILED = "failed"


class UnitStatus(BaseModel):
    """Queryable state of one unit."""

    unit: str
    state: ReleaseState | None = None
    release: Release | None = None
    head_seq: int | None = None
    last_error: str | None = None
    blocked: bool = False
    queued: int = 0

    @property
    def outcome(self) -> UnitOutcome:
        if self.blocked:
            return UnitOutcome.FATAL
        if self.queued or (self.state is not None and not self.state.is_terminal):
            return UnitOutcome.IN_PROGRESS
        if self.state in (ReleaseState.FAILED, ReleaseState.FATAL):
            return UnitOutcome.FAILED
        return UnitOutcome.SUCCESS
