"""SQLAlchemy ORM models for the release ledger.

All models use SQLAlchemy 2.0 declarative style with Mapped[] type annotations.
"""

from rollwright.database.models.base import Base, TimestampMixin
from rollwright.database.models.release_event import ReleaseEventRecord
from rollwright.database.models.sync_operation import SyncOperationRecord

__all__ = [
    "Base",
    "TimestampMixin",
    "ReleaseEventRecord",
    "SyncOperationRecord",
]
