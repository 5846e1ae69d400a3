"""Inbound commit webhook.

``POST /webhooks/commit`` accepts a TriggerEvent payload::

    {"commit_id": "c1", "changed_units": ["shop", "billing/worker"]}

When a webhook secret is configured the raw body must carry a valid
``X-Hub-Signature-256: sha256=<hex>`` HMAC-SHA256 signature. Deliveries are
assumed at-least-once; redelivery of a commit is answered as a duplicate.
"""

from __future__ import annotations

import hashlib
import hmac

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from pydantic import BaseModel, ValidationError

from rollwright.errors import UnknownUnit
from rollwright.logging import get_logger
from rollwright.models import TriggerEvent
from rollwright.orchestrator.coordinator import ReleaseCoordinator, SubmitOutcome
from rollwright.pipeline.manifest_store import ManifestStoreError
from rollwright.web.routes.units import get_coordinator

logger = get_logger(__name__)

SIGNATURE_HEADER = "X-Hub-Signature-256"


class TriggerResponse(BaseModel):
    """Per-unit result of a trigger."""

    commit_id: str
    units: dict[str, SubmitOutcome]


def sign_payload(body: bytes, secret: str) -> str:
    """``sha256=<hex>`` signature of ``body``."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_signature(body: bytes, secret: str, signature: str | None) -> bool:
    if not signature:
        return False
    return hmac.compare_digest(sign_payload(body, secret), signature)


def create_webhooks_router() -> APIRouter:
    """Create the webhook router.

    Routes:
        POST /webhooks/commit - Queue releases for a commit
    """
    router = APIRouter(prefix="/webhooks", tags=["webhooks"])

    @router.post("/commit", response_model=TriggerResponse)
    async def commit_webhook(
        request: Request,
        response: Response,
        coordinator: ReleaseCoordinator = Depends(get_coordinator),  # noqa: B008
    ) -> TriggerResponse:
        """Queue one release per changed unit.

        Responds 202 when at least one release was queued, 423 when every
        named unit is blocked, 200 when everything was a duplicate.

        Raises:
            HTTPException: 401 on a bad signature, 422 on an invalid payload,
                404 for an unknown unit or component.
        """
        body = await request.body()
        secret = request.app.state.config.web.webhook_secret
        if secret and not verify_signature(body, secret, request.headers.get(SIGNATURE_HEADER)):
            client = request.client.host if request.client else None
            logger.warning("webhook_signature_invalid", client=client)
            raise HTTPException(status_code=401, detail="Invalid webhook signature")

        try:
            event = TriggerEvent.model_validate_json(body)
        except ValidationError as e:
            raise HTTPException(
                status_code=422, detail=e.errors(include_url=False, include_context=False)
            )

        try:
            outcomes = await coordinator.submit(event)
        except UnknownUnit as e:
            logger.warning("webhook_unknown_unit", commit_id=event.commit_id, error=str(e))
            raise HTTPException(status_code=404, detail=str(e))
        except ManifestStoreError as e:
            logger.error("webhook_manifest_unavailable", commit_id=event.commit_id, error=str(e))
            raise HTTPException(status_code=503, detail=str(e))

        values = set(outcomes.values())
        if SubmitOutcome.QUEUED in values:
            response.status_code = 202
        elif SubmitOutcome.BLOCKED in values:
            response.status_code = 423

        logger.info(
            "webhook_commit_received",
            commit_id=event.commit_id,
            outcomes={unit: outcome.value for unit, outcome in outcomes.items()},
        )
        return TriggerResponse(commit_id=event.commit_id, units=outcomes)

    return router
