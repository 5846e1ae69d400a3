"""Release state machine for the Rollwright orchestrator.

This module holds the authoritative release lifecycle table and the single
place where a Release changes state. Transitions are one-directional except
the Degraded -> RollingBack -> Syncing loop, which the Release Coordinator
runs at most once automatically.

Rollback releases are created directly in ``rolling_back``. The release a
rollback supersedes ends in ``rolled_back``.
"""

from __future__ import annotations

import structlog

from rollwright.models import Release, ReleaseState, StateChange, utcnow

logger = structlog.get_logger(__name__)


class InvalidTransitionError(Exception):
    """Raised when an invalid state transition is attempted.

    Attributes:
        current: The current release state.
        target: The attempted target state.
        release_id: The ID of the release that failed to transition.
    """

    def __init__(
        self, current: ReleaseState, target: ReleaseState, release_id: str | None = None
    ):
        self.current = current
        self.target = target
        self.release_id = release_id
        msg = f"Invalid transition from {current.value} to {target.value}"
        if release_id:
            msg += f" for release {release_id}"
        super().__init__(msg)


# Authoritative state machine definition
VALID_TRANSITIONS: dict[ReleaseState, set[ReleaseState]] = {
    ReleaseState.PENDING: {ReleaseState.BUILDING, ReleaseState.FAILED},
    ReleaseState.BUILDING: {ReleaseState.SCANNING, ReleaseState.FAILED},
    ReleaseState.SCANNING: {ReleaseState.PUBLISHING, ReleaseState.FAILED},
    ReleaseState.PUBLISHING: {ReleaseState.MANIFEST_UPDATED, ReleaseState.FAILED},
    ReleaseState.MANIFEST_UPDATED: {ReleaseState.SYNCING, ReleaseState.DEGRADED},
    ReleaseState.SYNCING: {ReleaseState.HEALTHY, ReleaseState.DEGRADED},
    ReleaseState.DEGRADED: {ReleaseState.ROLLING_BACK, ReleaseState.FATAL},
    ReleaseState.ROLLING_BACK: {
        ReleaseState.SYNCING,
        ReleaseState.FATAL,
        ReleaseState.ROLLED_BACK,
    },
    ReleaseState.HEALTHY: set(),  # Terminal states - no transitions allowed
    ReleaseState.FATAL: set(),
    ReleaseState.FAILED: set(),
    ReleaseState.ROLLED_BACK: set(),
}


def validate_transition(current: ReleaseState, target: ReleaseState) -> bool:
    """Validate if a state transition is allowed.

    Args:
        current: Current release state.
        target: Target release state.

    Returns:
        True if the transition is valid according to VALID_TRANSITIONS.
    """
    return target in VALID_TRANSITIONS.get(current, set())


class ReleaseStateMachine:
    """Applies validated transitions to in-memory releases."""

    def __init__(self):
        self.logger = logger.bind(machine="release")

    def transition(
        self, release: Release, target: ReleaseState, error: str | None = None
    ) -> StateChange:
        """Move ``release`` to ``target``.

        Args:
            release: Release to mutate.
            target: Target state.
            error: Error that caused the transition, recorded as last_error.

        Returns:
            The recorded StateChange.

        Raises:
            InvalidTransitionError: If the transition is not valid.
        """
        current = release.state
        if not validate_transition(current, target):
            raise InvalidTransitionError(current, target, release.id)

        change = StateChange(from_state=current, to_state=target, error=error)
        release.state = target
        release.updated_at = change.at
        release.transitions.append(change)
        if error is not None:
            release.last_error = error

        self.logger.info(
            "release_transition",
            unit=release.unit,
            release_id=release.id,
            commit_id=release.commit.id,
            revision_seq=release.revision_seq,
            from_state=current.value,
            to_state=target.value,
            error=error,
        )
        return change

    def start(self, release: Release) -> StateChange:
        """Record the initial state of a freshly created release."""
        change = StateChange(from_state=None, to_state=release.state, at=utcnow())
        release.transitions.append(change)
        return change
