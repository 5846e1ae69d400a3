"""Database query functions for the release ledger."""

from rollwright.database.queries.release_event import (
    ReleaseSummary,
    list_release_events,
    list_sync_operations,
    record_release_event,
    record_sync_operation,
    release_timeline,
)

__all__ = [
    "ReleaseSummary",
    "list_release_events",
    "list_sync_operations",
    "record_release_event",
    "record_sync_operation",
    "release_timeline",
]
