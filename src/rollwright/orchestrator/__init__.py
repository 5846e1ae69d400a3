"""Release orchestration core.

This module implements the release coordinator state machine, the build
coordinator, the manifest updater, the GitOps reconciler, the health
verifier, the rollback controller and the event bus that fans their
transitions out to logs, the SSE stream and the release ledger.
"""

from __future__ import annotations

from rollwright.orchestrator.backoff import BackoffConfig, ExponentialBackoff
from rollwright.orchestrator.build_coordinator import BuildCoordinator, BuildPlan
from rollwright.orchestrator.coordinator import (
    ReleaseCoordinator,
    SubmitOutcome,
    create_release_coordinator,
)
from rollwright.orchestrator.events import EventBus
from rollwright.orchestrator.health_verifier import HealthVerifier
from rollwright.orchestrator.manifest_updater import ManifestUpdater, render
from rollwright.orchestrator.reconciler import ReconcilePhase, Reconciler, SyncPlan
from rollwright.orchestrator.rollback import RollbackController, select_rollback_target
from rollwright.orchestrator.state_machine import (
    VALID_TRANSITIONS,
    InvalidTransitionError,
    ReleaseStateMachine,
    validate_transition,
)

__all__ = [
    "BackoffConfig",
    "BuildCoordinator",
    "BuildPlan",
    "EventBus",
    "ExponentialBackoff",
    "HealthVerifier",
    "InvalidTransitionError",
    "ManifestUpdater",
    "ReconcilePhase",
    "Reconciler",
    "ReleaseCoordinator",
    "ReleaseStateMachine",
    "RollbackController",
    "SubmitOutcome",
    "SyncPlan",
    "VALID_TRANSITIONS",
    "create_release_coordinator",
    "render",
    "select_rollback_target",
    "validate_transition",
]
