"""Release event ledger model.

One row per release state transition. The rows alone are sufficient to
reconstruct every release's history without replaying the manifest store.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from rollwright.database.models.base import Base, TimestampMixin


class ReleaseEventRecord(TimestampMixin, Base):
    """A recorded release state transition.

    Attributes:
        unit: Deployable unit
        release_id: Release the transition belongs to
        commit_id: Commit the release deploys
        revision_seq: Manifest revision bound to the release, if any
        state: State entered
        previous_state: State left (None for the initial record)
        is_rollback: Whether the release is a rollback release
        error: Error that caused the transition
        occurred_at: Transition time
    """

    __tablename__ = "release_events"
    __table_args__ = (
        Index("ix_release_events_unit_occurred_at", "unit", "occurred_at"),
        Index("ix_release_events_release_id", "release_id"),
    )

    unit: Mapped[str] = mapped_column(Text, nullable=False)
    release_id: Mapped[str] = mapped_column(Text, nullable=False)
    commit_id: Mapped[str] = mapped_column(Text, nullable=False)
    revision_seq: Mapped[int | None] = mapped_column(Integer, nullable=True)
    state: Mapped[str] = mapped_column(Text, nullable=False)
    previous_state: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_rollback: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
