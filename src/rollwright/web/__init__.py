"""Operator API for Rollwright.

FastAPI application exposing unit status, sync-now, rollback and clear
operations, the release ledger, an SSE event stream and the inbound commit
webhook.
"""

from __future__ import annotations

from rollwright.web.app import create_app
from rollwright.web.middleware import RequestLoggingMiddleware
from rollwright.web.routes.events import EventBroadcaster, SSEEvent, SSEEventType

__all__ = [
    "create_app",
    "RequestLoggingMiddleware",
    "EventBroadcaster",
    "SSEEvent",
    "SSEEventType",
]
