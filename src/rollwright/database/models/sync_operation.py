"""Sync operation ledger model."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Index, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from rollwright.database.models.base import Base, TimestampMixin


class SyncOperationRecord(TimestampMixin, Base):
    """A finished reconciliation pass.

    Attributes:
        operation_id: SyncOperation id
        unit: Deployable unit
        target_seq: Revision the pass converged toward
        trigger: poll or sync_now
        attempt: Retry attempt number (0 for the first pass)
        outcome: converged, failed or cancelled
        changes: Applied per-resource changes as ``[{"action", "resource"}]``
        unchanged: Resources already matching the revision
        error: Failure message
        started_at: Pass start
        finished_at: Pass end
    """

    __tablename__ = "sync_operations"
    __table_args__ = (Index("ix_sync_operations_unit_finished_at", "unit", "finished_at"),)

    operation_id: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    unit: Mapped[str] = mapped_column(Text, nullable=False)
    target_seq: Mapped[int | None] = mapped_column(Integer, nullable=True)
    trigger: Mapped[str] = mapped_column(Text, nullable=False)
    attempt: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    outcome: Mapped[str] = mapped_column(Text, nullable=False)
    changes: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list, nullable=False)
    unchanged: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    finished_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
