#!/usr/bin/env python3
"""
Stripe Payment Routes
Webhook intake for billing events that drive the credit ledger
"""

import json
import logging
from datetime import UTC, datetime
from functools import lru_cache

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse

from src.config.config import Config
from src.db.webhook_events import record_event_received
from src.schemas.payments import WebhookProcessingResult
from src.services.stripe_gateway import StripeGateway
from src.services.webhook_dispatcher import enqueue_stripe_event, event_user_id
from src.utils.security_validators import sanitize_for_logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/stripe", tags=["Stripe Payments"])


@lru_cache(maxsize=1)
def get_stripe_gateway() -> StripeGateway:
    return StripeGateway(
        api_key=Config.STRIPE_SECRET_KEY,
        webhook_secret=Config.STRIPE_WEBHOOK_SECRET,
    )


def _response(status_code: int, result: WebhookProcessingResult) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=result.model_dump(mode="json"))


# ==================== Webhook Endpoint ====================


@router.post("/webhook", status_code=200)
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None, alias="stripe-signature"),
    gateway: StripeGateway = Depends(get_stripe_gateway),
):
    """
    Stripe webhook endpoint - receives all billing events

    Events reconciled against the credit ledger:
    - checkout.session.completed - one-time credit purchases
    - customer.subscription.created / updated - activation or upgrade
    - customer.subscription.deleted - cancellation, credits forfeited
    - invoice.payment_succeeded - monthly renewal with rollover
    - invoice.payment_failed - subscription marked past due

    The event is verified, recorded and queued; reconciliation runs in the
    RQ worker. Responses:
    - 200 once the event is queued (including redeliveries and unhandled types)
    - 400 when the signature is missing or invalid, so forged payloads never queue
    - 503 when the queue is unavailable, so Stripe redelivers later

    Setup:
    1. Stripe Dashboard -> Developers -> Webhooks
    2. Add endpoint: https://your-domain.com/api/stripe/webhook
    3. Copy the signing secret to STRIPE_WEBHOOK_SECRET
    """
    payload = await request.body()

    try:
        gateway.construct_event(payload, stripe_signature)
        event = json.loads(payload)
    except ValueError as e:
        logger.error(f"Webhook validation failed: {sanitize_for_logging(str(e))}")
        return _response(
            400,
            WebhookProcessingResult(
                success=False,
                message=f"Validation failed: {e}",
                processed_at=datetime.now(UTC),
            ),
        )

    event_id = event.get("id")
    event_type = event.get("type")

    first_delivery = record_event_received(
        event_id,
        event_type,
        user_id=event_user_id(event),
        metadata={"livemode": event.get("livemode"), "api_version": event.get("api_version")},
    )
    if not first_delivery:
        logger.info(f"Stripe event {event_id} redelivered; queueing again (reconciliation is idempotent)")

    try:
        job = enqueue_stripe_event(event)
    except Exception as e:
        logger.error(
            f"Failed to queue Stripe event {event_id} ({event_type}): {e}",
            exc_info=True,
        )
        return _response(
            503,
            WebhookProcessingResult(
                success=False,
                event_type=event_type,
                event_id=event_id,
                message="Event could not be queued; retry later",
                processed_at=datetime.now(UTC),
            ),
        )

    logger.info(f"Queued Stripe event {event_id} ({event_type}) as job {job.id}")
    return _response(
        200,
        WebhookProcessingResult(
            success=True,
            event_type=event_type,
            event_id=event_id,
            message="Event queued for processing",
            processed_at=datetime.now(UTC),
        ),
    )
