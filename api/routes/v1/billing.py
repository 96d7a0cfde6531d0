"""
api/routes/v1/billing.py -- PayPal webhook receiver.

Routes:
  POST /api/v1/paypal/webhook

Order is fixed:
  1. verify the signature with PayPal    -- 400 if PayPal says no
  2. claim the event id (atomic)         -- duplicate -> 200, nothing else runs
  3. dispatch the event                  -- failure -> release claim, 500
  4. mark the event COMPLETED            -- 200

A 200 for duplicates stops PayPal from retrying an event we already own. A
500 is returned only when processing itself failed, after the claim has been
released, so PayPal's retry can claim it again.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from api.models import WebhookAck
from billing.paypal import PayPalError, dispatch_event
from billing.webhooks import WebhookEventStore

logger = logging.getLogger("pecal.api.billing")

router = APIRouter()


@router.post("/paypal/webhook", response_model=WebhookAck)
async def paypal_webhook(request: Request) -> JSONResponse:
    try:
        event = await request.json()
    except ValueError as exc:
        raise HTTPException(
            status_code=400, detail={"code": "invalid", "message": "Body must be a JSON object."}
        ) from exc
    if not isinstance(event, dict):
        raise HTTPException(status_code=400, detail={"code": "invalid", "message": "Body must be a JSON object."})

    event_id = event.get("id")
    event_type = event.get("event_type") or ""
    if not event_id or not isinstance(event_id, str):
        raise HTTPException(status_code=400, detail={"code": "invalid", "message": "Event id is missing."})

    try:
        verified = await run_in_threadpool(request.app.state.paypal.verify_webhook_signature, request.headers, event)
    except PayPalError as exc:
        logger.error("PayPal signature verification unavailable: %s", exc)
        raise HTTPException(
            status_code=502,
            detail={"code": "upstream_error", "message": "Could not verify the webhook signature."},
        ) from exc
    if not verified:
        logger.warning("Rejected PayPal webhook %s: signature did not verify", event_id)
        raise HTTPException(
            status_code=400, detail={"code": "invalid_signature", "message": "Webhook signature is invalid."}
        )

    events: WebhookEventStore = request.app.state.webhook_events
    if not events.claim(event_id, event_type, event):
        return JSONResponse(content=WebhookAck(duplicate=True).model_dump())

    try:
        dispatch_event(event)
    except Exception:
        events.release(event_id)
        logger.exception("PayPal webhook %s (%s) failed; claim released", event_id, event_type)
        return JSONResponse(
            status_code=500,
            content={"error": {"code": "webhook_failed", "message": "Failed to process webhook."}},
        )

    events.complete(event_id)
    return JSONResponse(content=WebhookAck().model_dump())
