"""FastAPI route definitions for the operator API."""

from __future__ import annotations

from rollwright.web.routes.events import create_events_router
from rollwright.web.routes.health import (
    HealthResponse,
    ReadinessResponse,
    create_health_router,
)
from rollwright.web.routes.units import (
    OUTCOME_STATUS_CODES,
    SyncResponse,
    UnitStatusResponse,
    create_units_router,
)
from rollwright.web.routes.webhooks import (
    TriggerResponse,
    create_webhooks_router,
    sign_payload,
)

__all__ = [
    "create_events_router",
    "HealthResponse",
    "ReadinessResponse",
    "create_health_router",
    "OUTCOME_STATUS_CODES",
    "SyncResponse",
    "UnitStatusResponse",
    "create_units_router",
    "TriggerResponse",
    "create_webhooks_router",
    "sign_payload",
]
