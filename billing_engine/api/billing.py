"""
Billing API routes.

- POST /api/billing/webhook: Payment outcome notifications

When STRIPE_WEBHOOK_SECRET is configured the body must be a signed Stripe
event; otherwise a typed JSON payload is accepted (internal gateways,
local development).

Delivery is idempotent on the gateway event id: a redelivered event is
acknowledged with duplicate=true and changes nothing. Outcomes that no
longer apply (subscription moved on) are acknowledged with applied=false
so the gateway stops retrying.
"""
import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, ValidationError as PydanticValidationError

from billing_engine.api.deps import get_container
from billing_engine.core.logging import log_context, log_event
from billing_engine.features.billing.event_log import make_dedup_key
from billing_engine.features.billing.provider import BillingWebhookError, PaymentWebhook
from billing_engine.features.billing.stripe_provider import parse_webhook


router = APIRouter(prefix="/billing", tags=["billing"])
logger = logging.getLogger("billing_engine.webhooks")


class WebhookPayload(BaseModel):
    """Unsigned webhook body."""
    event_id: str
    subscription_id: str
    kind: Literal["initial", "renewal"]
    success: bool


class WebhookResponse(BaseModel):
    received: bool = True
    applied: bool = False
    duplicate: bool = False
    ignored: bool = False
    status: Optional[str] = None
    error_code: Optional[str] = None


def _read_webhook(headers, body: bytes, webhook_secret: Optional[str]) -> Optional[PaymentWebhook]:
    if webhook_secret:
        return parse_webhook(headers, body, webhook_secret)
    try:
        payload = WebhookPayload.model_validate_json(body)
    except PydanticValidationError as e:
        raise BillingWebhookError(f"Invalid payload: {e.error_count()} validation errors")
    return PaymentWebhook(
        event_id=payload.event_id,
        subscription_id=payload.subscription_id,
        kind=payload.kind,
        success=payload.success,
    )


@router.post("/webhook", response_model=WebhookResponse)
async def payment_webhook(request: Request, container=Depends(get_container)):
    """
    Apply a payment outcome.

    initial  -> confirm_payment (incomplete subscriptions)
    renewal  -> record_payment_result (renewals and dunning)

    Errors:
        400: Invalid signature or payload
    """
    body = await request.body()
    try:
        webhook = _read_webhook(dict(request.headers), body, container.webhook_secret)
    except BillingWebhookError as e:
        logger.warning("webhook.rejected", extra={"error": str(e)})
        raise HTTPException(status_code=400, detail=str(e))

    if webhook is None:
        return WebhookResponse(ignored=True)

    service = container.subscriptions
    dedup_key = make_dedup_key("webhook", webhook.event_id)
    with log_context(subscription_id=webhook.subscription_id, event_id=webhook.event_id):
        if webhook.kind == "initial":
            result = service.confirm_payment(webhook.subscription_id, webhook.success, dedup_key=dedup_key)
        else:
            result = service.record_payment_result(webhook.subscription_id, webhook.success, dedup_key=dedup_key)

    if result.duplicate:
        log_event("info", "webhook.duplicate", subscription_id=webhook.subscription_id, extra={"event_id": webhook.event_id})
        return WebhookResponse(duplicate=True, status=result.subscription.status.value)

    status = result.subscription.status.value if result.subscription else None
    if not result.ok:
        return WebhookResponse(applied=False, status=status, error_code=result.error.code)
    return WebhookResponse(applied=True, status=status)
