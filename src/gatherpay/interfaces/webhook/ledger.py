# src/gatherpay/interfaces/webhook/ledger.py
"""
Webhook endpoint for the external payment ledger.

The signature is checked against the raw body before anything is parsed.
Business outcomes (duplicates, unknown references, unhandled types) are
acknowledged with 200; a processing error returns 500 so the ledger
redelivers, and the idempotency row rolled back with the failed work lets
that redelivery run again.
"""

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from gatherpay.application.services import LedgerWebhookDispatcher
from gatherpay.config import settings
from gatherpay.domain.errors import ValidationError
from gatherpay.infrastructure.ledger.client import verify_signature
from gatherpay.infrastructure.monitoring.metrics import LEDGER_WEBHOOKS
from gatherpay.interfaces.api.deps import get_webhook_dispatcher
from gatherpay.interfaces.api.schemas import WebhookAck

log = logging.getLogger(__name__)
router = APIRouter(prefix="/webhook", tags=["Webhooks"])

SIGNATURE_HEADER = "X-Ledger-Signature"


@router.post("/ledger", response_model=WebhookAck)
async def ledger_webhook(
    request: Request,
    dispatcher: LedgerWebhookDispatcher = Depends(get_webhook_dispatcher),
):
    body = await request.body()
    if not settings.LEDGER_WEBHOOK_SECRET:
        log.critical("LEDGER_WEBHOOK_SECRET is not set; refusing ledger webhooks.")
        raise HTTPException(status_code=503, detail="Webhook endpoint not configured")
    if not verify_signature(settings.LEDGER_WEBHOOK_SECRET, body, request.headers.get(SIGNATURE_HEADER)):
        log.warning("Invalid ledger webhook signature received.")
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Body is not valid JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Body must be a JSON object")

    try:
        result = await dispatcher.dispatch(payload)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        LEDGER_WEBHOOKS.labels(event_type=str(payload.get("type")), outcome="error").inc()
        log.error(f"Ledger webhook {payload.get('id')} failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Webhook processing failed")
    return WebhookAck(outcome=result.outcome)
