"""Ledger Webhook Routes

POST /api/webhook/stripe  - Stripe webhook endpoint
POST /api/webhooks/stripe - Alias (Stripe may be configured with this URL)

Status codes drive Stripe's retry behaviour: 2xx once the event is recorded
PROCESSED (or already was), 400 on a bad signature, 409 while another worker
holds the event, 500 when processing failed and should be retried.
"""
from fastapi import APIRouter, HTTPException, Request, Header
import logging

from ledger.exceptions import EventInProgressError, InvalidSignatureError
from ledger.services.webhook_reconciler import webhook_reconciler

logger = logging.getLogger(__name__)
router = APIRouter(tags=["webhooks"])


async def _handle_stripe_webhook(request: Request, stripe_signature: str = None):
    payload = await request.body()
    try:
        result = await webhook_reconciler.process_webhook(payload, stripe_signature)
    except (InvalidSignatureError, EventInProgressError) as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    except Exception as e:
        logger.exception(f"Stripe webhook error: {e}")
        raise HTTPException(status_code=500, detail="Webhook processing failed")
    return {"received": True, **result}


@router.post("/api/webhook/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None, alias="Stripe-Signature")
):
    """Handle Stripe webhooks at /api/webhook/stripe"""
    return await _handle_stripe_webhook(request, stripe_signature)


@router.post("/api/webhooks/stripe")
async def stripe_webhook_alias(
    request: Request,
    stripe_signature: str = Header(None, alias="Stripe-Signature")
):
    """Handle Stripe webhooks at /api/webhooks/stripe (alias)"""
    return await _handle_stripe_webhook(request, stripe_signature)
