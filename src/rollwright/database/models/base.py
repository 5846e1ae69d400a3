"""SQLAlchemy declarative base and common column mixins for the ledger.

All ledger models inherit from Base and include TimestampMixin for a
consistent primary key and creation timestamp.

Example:
    >>> class MyModel(TimestampMixin, Base):
    ...     __tablename__ = "my_table"
    ...     name: Mapped[str] = mapped_column(Text, nullable=False)
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import DateTime, Uuid, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """SQLAlchemy 2.0 declarative base for all ledger models."""

    pass


class TimestampMixin:
    """Mixin providing id (UUID) and created_at columns.

    The ledger is append-only, so rows carry no updated_at.

    Attributes:
        id: UUID primary key generated client-side (portable across SQLite
            and PostgreSQL).
        created_at: Timestamp set by the database on row creation.
    """

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
