"""Stripe webhook endpoint.

The signature is verified over the raw body before anything is parsed.
Verified events are dispatched to the PaymentOrchestrator; a 2xx is only
returned once the event's effects are committed, so Stripe redelivers
anything that failed midway.
"""

import json
import logging

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from grannhjalp.infra.database import get_db
from grannhjalp.infra.stripe_gateway import StripeGateway, get_stripe_gateway
from grannhjalp.services.errors import Invalid, ServiceError
from grannhjalp.services.payment_orchestrator import PaymentOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/stripe", tags=["stripe"])


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
):
    settings = gateway.settings
    if not settings.stripe_webhook_secret:
        logger.error("Stripe webhook received but no webhook secret is configured")
        raise HTTPException(status_code=503, detail="Webhook not configured")

    max_bytes = settings.webhook_max_body_bytes
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > max_bytes:
        raise HTTPException(status_code=413, detail="Payload too large")
    body = await request.body()
    if len(body) > max_bytes:
        raise HTTPException(status_code=413, detail="Payload too large")

    sig_header = request.headers.get("stripe-signature")
    if not sig_header:
        raise HTTPException(status_code=400, detail="Missing Stripe-Signature header")

    try:
        gateway.construct_event(body, sig_header)
    except stripe.SignatureVerificationError:
        logger.warning("Stripe webhook signature verification failed")
        raise HTTPException(status_code=400, detail="Invalid signature")
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")

    event = json.loads(body)
    try:
        outcome = await PaymentOrchestrator(db, gateway).handle_event(event)
    except Invalid as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ServiceError as e:
        logger.error("Stripe event handling failed: %s", e)
        raise HTTPException(status_code=e.status_code, detail=str(e))

    return {"received": True, "outcome": outcome}
