"""
Stripe payment gateway implementation.

Implements the PaymentGateway protocol with off-session PaymentIntents and
parses signed Stripe webhooks into PaymentWebhook values.
"""
import os
from typing import Any, Dict, Optional

import stripe

from billing_engine.features.billing.provider import (
    BillingWebhookError,
    ChargeResult,
    PaymentGatewayError,
    PaymentWebhook,
)


# Stripe event type -> success flag
PAYMENT_EVENT_TYPES = {
    "payment_intent.succeeded": True,
    "payment_intent.payment_failed": False,
    "invoice.paid": True,
    "invoice.payment_failed": False,
}


class StripeGateway:
    """Stripe implementation of PaymentGateway."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        currency: str = "usd",
    ):
        """
        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY env var)
            webhook_secret: Stripe webhook secret (defaults to STRIPE_WEBHOOK_SECRET env var)
            currency: ISO currency for all charges (no conversion is done)
        """
        self.secret_key = secret_key or os.getenv("STRIPE_SECRET_KEY")
        self.webhook_secret = webhook_secret or os.getenv("STRIPE_WEBHOOK_SECRET")
        self.currency = currency

        if not self.secret_key:
            raise PaymentGatewayError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key

    def _create_intent(self, amount: int, payment_method_ref: Optional[str], idempotency_key: str, **params) -> ChargeResult:
        if not payment_method_ref:
            return ChargeResult(succeeded=False, failure_code="no_payment_method", failure_message="No payment method on file")
        try:
            intent = stripe.PaymentIntent.create(
                amount=amount,
                currency=self.currency,
                payment_method=payment_method_ref,
                confirm=True,
                off_session=True,
                idempotency_key=idempotency_key,
                **params,
            )
        except stripe.CardError as e:
            return ChargeResult(succeeded=False, failure_code=e.code or "card_declined", failure_message=e.user_message)
        except stripe.StripeError as e:
            raise PaymentGatewayError(f"Stripe charge failed: {e}") from e

        status = intent.get("status")
        if status in ("succeeded", "requires_capture"):
            return ChargeResult(succeeded=True, reference=intent.get("id"))
        return ChargeResult(succeeded=False, reference=intent.get("id"), failure_code=status)

    def charge(self, amount, payment_method_ref, *, idempotency_key, description=None) -> ChargeResult:
        params: Dict[str, Any] = {}
        if description:
            params["description"] = description
        return self._create_intent(amount, payment_method_ref, idempotency_key, **params)

    def authorize(self, amount, payment_method_ref, *, idempotency_key) -> ChargeResult:
        return self._create_intent(amount, payment_method_ref, idempotency_key, capture_method="manual")

    def refund(self, reference, amount, *, idempotency_key) -> ChargeResult:
        try:
            refund = stripe.Refund.create(
                payment_intent=reference,
                amount=amount,
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as e:
            raise PaymentGatewayError(f"Stripe refund failed: {e}") from e

        status = refund.get("status")
        if status in ("succeeded", "pending"):
            return ChargeResult(succeeded=True, reference=refund.get("id"))
        return ChargeResult(succeeded=False, reference=refund.get("id"), failure_code=status)


def parse_webhook(headers: Dict[str, str], body: bytes, webhook_secret: Optional[str] = None) -> Optional[PaymentWebhook]:
    """
    Verify Stripe signature and normalize a payment event.

    Returns None for event types the engine does not act on.
    """
    secret = webhook_secret or os.getenv("STRIPE_WEBHOOK_SECRET")
    if not secret:
        raise BillingWebhookError("STRIPE_WEBHOOK_SECRET not configured")

    sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")
    if not sig_header:
        raise BillingWebhookError("Missing stripe-signature header")
    try:
        event = stripe.Webhook.construct_event(body, sig_header, secret)
    except ValueError as e:
        raise BillingWebhookError(f"Invalid payload: {e}")
    except stripe.SignatureVerificationError as e:
        raise BillingWebhookError(f"Invalid signature: {e}")

    return event_to_webhook(event)


def event_to_webhook(event: Dict[str, Any]) -> Optional[PaymentWebhook]:
    event_type = event["type"]
    if event_type not in PAYMENT_EVENT_TYPES:
        return None

    data = event.get("data", {}).get("object", {})
    metadata = data.get("metadata") or {}
    subscription_id = metadata.get("subscription_id")
    if not subscription_id:
        raise BillingWebhookError(f"{event_type} {event['id']} carries no subscription_id metadata")

    # invoice.billing_reason: subscription_create | subscription_cycle | ...
    reason = data.get("billing_reason") or metadata.get("charge_kind")
    kind = "initial" if reason in ("subscription_create", "initial") else "renewal"

    return PaymentWebhook(
        event_id=event["id"],
        subscription_id=subscription_id,
        kind=kind,
        success=PAYMENT_EVENT_TYPES[event_type],
        event_type=event_type,
    )
