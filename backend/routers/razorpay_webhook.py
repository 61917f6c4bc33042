"""Razorpay webhook endpoint: verifies the signature and applies payment events."""
import json
import logging

import razorpay
from fastapi import APIRouter, HTTPException, Request

from config import RAZORPAY_KEY_ID, RAZORPAY_KEY_SECRET, RAZORPAY_WEBHOOK_SECRET
from services.exceptions import (
    ConcurrencyConflict,
    InvalidPlanDuration,
    MalformedPaymentNotes,
    PlanNotFound,
    UpgradeNotAllowed,
)
from services.payment_webhook_service import PaymentWebhookService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/razorpay", tags=["razorpay"])

# Razorpay client (signature utilities only)
razorpay_client = razorpay.Client(auth=(RAZORPAY_KEY_ID, RAZORPAY_KEY_SECRET))

_webhook_service = None

# Errors a redelivery cannot fix; acknowledged so Razorpay stops retrying
PERMANENT_ERRORS = (InvalidPlanDuration, PlanNotFound, MalformedPaymentNotes, UpgradeNotAllowed)


def init_router(db):
    """Initialize router with database instance."""
    global _webhook_service
    _webhook_service = PaymentWebhookService(db)


@router.post("/webhook")
async def razorpay_webhook(request: Request):
    """
    Handle Razorpay payment webhooks.

    - 400 if the X-Razorpay-Signature header is missing or wrong, or the body
      is not a UTF-8 JSON object
    - 200 with status "error" for permanent failures (bad plan, bad notes)
    - 503 when the membership kept changing concurrently, so Razorpay retries
    """
    body = await request.body()
    signature = request.headers.get("X-Razorpay-Signature")

    if not RAZORPAY_WEBHOOK_SECRET:
        logger.error("[WEBHOOK] RAZORPAY_WEBHOOK_SECRET is not configured")
        raise HTTPException(status_code=500, detail="Webhook secret not configured")
    if not signature:
        raise HTTPException(status_code=400, detail="Missing webhook signature")

    try:
        payload = body.decode("utf-8")
    except UnicodeDecodeError:
        raise HTTPException(status_code=400, detail="Webhook payload is not valid UTF-8")

    try:
        razorpay_client.utility.verify_webhook_signature(payload, signature, RAZORPAY_WEBHOOK_SECRET)
    except razorpay.errors.SignatureVerificationError:
        logger.warning("[WEBHOOK] Invalid Razorpay webhook signature")
        raise HTTPException(status_code=400, detail="Invalid webhook signature")

    try:
        event = json.loads(payload)
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail="Invalid JSON payload")
    if not isinstance(event, dict):
        raise HTTPException(status_code=400, detail="Webhook payload must be a JSON object")

    try:
        result = await _webhook_service.handle_event(event)
        return {"status": "success", "result": result}

    except PERMANENT_ERRORS as e:
        logger.error(f"[WEBHOOK] Permanent error processing {event.get('event')}: {str(e)}")
        return {"status": "error", "message": str(e)}
    except ConcurrencyConflict as e:
        logger.warning(f"[WEBHOOK] Concurrency conflict, asking Razorpay to retry: {str(e)}")
        raise HTTPException(status_code=503, detail="Membership is being updated, retry later")
    except Exception as e:
        logger.error(f"[WEBHOOK] Error processing webhook: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to process webhook")
