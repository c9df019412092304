"""Webhook routes — Polar."""

import base64
import json
import logging
from typing import Any, Mapping

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession
from standardwebhooks.webhooks import Webhook, WebhookVerificationError

from canvas_billing.config import get_settings
from canvas_billing.db.session import get_db
from canvas_billing.schemas.polar import parse_webhook_event
from canvas_billing.services.reconcile_service import process_billing_event

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _verify_and_parse(body: bytes, headers: Mapping[str, str]) -> Any:
    """Verify the Standard Webhooks signature (when a secret is set) and decode JSON."""
    settings = get_settings()
    if not settings.polar_webhook_secret:
        logger.warning("POLAR_WEBHOOK_SECRET not set: parsing webhook WITHOUT verification")
        return json.loads(body)

    # Polar signs with the raw secret; Standard Webhooks expects it base64-encoded
    secret = base64.b64encode(settings.polar_webhook_secret.encode()).decode()
    return Webhook(secret).verify(body, dict(headers))


@router.post("/polar")
async def polar_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    body = await request.body()

    try:
        payload = _verify_and_parse(body, request.headers)
    except WebhookVerificationError:
        raise HTTPException(status_code=400, detail="Invalid signature")
    except ValueError:
        logger.info("Dropping webhook with a non-JSON body")
        return {"status": "ignored", "action": "ignored", "message": "Body is not JSON"}

    event = parse_webhook_event(payload, fallback_id=request.headers.get("webhook-id"))
    if event is None:
        return {"status": "ignored", "action": "ignored", "message": "Unrecognized event shape"}

    logger.info(f"Polar webhook: {event.type} ({event.id})")

    # Persistence errors propagate as 500 so the provider redelivers
    outcome = await process_billing_event(db, event)
    return outcome.as_dict()
