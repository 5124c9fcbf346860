# routes/webhooks.py
import json
import logging

import stripe
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlmodel import Session

from core.config import settings
from core.database import get_session
from core.dependencies import get_hour_ledger, get_plan_lifecycle
from services.hour_service import HourPackLedger
from services.plan_service import PlanLifecycle
from services.webhook_service import WebhookProcessor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    session: Session = Depends(get_session),
    lifecycle: PlanLifecycle = Depends(get_plan_lifecycle),
    ledger: HourPackLedger = Depends(get_hour_ledger),
):
    """Handle Stripe webhook events for plans and hour packs"""
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    webhook_secret = settings.STRIPE_WEBHOOK_SECRET

    if not webhook_secret:
        logger.error("❌ STRIPE_WEBHOOK_SECRET not configured")
        return JSONResponse(status_code=500, content={"error": "Webhook secret not configured"})

    if not sig_header:
        logger.warning("❌ Missing stripe-signature header")
        return JSONResponse(status_code=400, content={"error": "Missing stripe-signature header"})

    try:
        stripe.Webhook.construct_event(payload=payload, sig_header=sig_header, secret=webhook_secret)
    except ValueError as e:
        logger.warning("❌ Invalid payload: %s", e)
        return JSONResponse(status_code=400, content={"error": "Invalid payload"})
    except stripe.SignatureVerificationError as e:
        logger.warning("❌ Invalid signature: %s", e)
        return JSONResponse(status_code=400, content={"error": "Invalid signature"})

    # Verified above; handlers work on the plain JSON
    event = json.loads(payload)
    result = WebhookProcessor(session, lifecycle, ledger).process(event)
    return JSONResponse(status_code=200, content=result)
