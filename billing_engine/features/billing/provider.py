"""
Payment gateway protocol.

Defines the interface the command service charges through (Stripe, test
doubles). The engine only sees ChargeResult / PaymentWebhook values, so
providers can be swapped without touching lifecycle logic.
"""
from typing import Dict, List, Optional, Protocol, Tuple
from dataclasses import dataclass, field


@dataclass(frozen=True)
class ChargeResult:
    """Outcome of a charge or authorization attempt."""
    succeeded: bool
    reference: Optional[str] = None
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None


@dataclass(frozen=True)
class PaymentWebhook:
    """Normalized payment notification from a gateway."""
    event_id: str
    subscription_id: str
    kind: str  # initial | renewal
    success: bool
    event_type: Optional[str] = None


class PaymentGateway(Protocol):
    """
    Protocol for payment gateways.

    Implementations must:
    - Honor idempotency_key (the same key never charges twice)
    - Report declines as ChargeResult(succeeded=False), not exceptions
    - Raise PaymentGatewayError only when the outcome is unknown
    """

    def charge(
        self,
        amount: int,
        payment_method_ref: Optional[str],
        *,
        idempotency_key: str,
        description: Optional[str] = None,
    ) -> ChargeResult:
        """
        Capture amount (integer minor units) from the payment method.

        Raises:
            PaymentGatewayError: transport/API failure with unknown outcome
        """
        ...

    def authorize(
        self,
        amount: int,
        payment_method_ref: Optional[str],
        *,
        idempotency_key: str,
    ) -> ChargeResult:
        """
        Place a hold without capturing.

        Part of the gateway contract for integrations that verify a card
        before subscribing; lifecycle commands only charge and refund.
        """
        ...

    def refund(
        self,
        reference: str,
        amount: int,
        *,
        idempotency_key: str,
    ) -> ChargeResult:
        """
        Return a captured charge that no committed transition accounts for.

        Raises:
            PaymentGatewayError: transport/API failure with unknown outcome
        """
        ...


class PaymentGatewayError(Exception):
    """Base exception for gateway failures."""
    pass


class BillingWebhookError(PaymentGatewayError):
    """Exception for webhook verification/parsing errors."""
    pass


@dataclass
class FakeGateway:
    """
    Scriptable in-process gateway.

    Used when no STRIPE_SECRET_KEY is configured and in tests. Outcomes are
    popped from ``script`` (default: ``default_success``); repeated
    idempotency keys replay the first outcome.
    """
    default_success: bool = True
    script: List[bool] = field(default_factory=list)
    charges: List[Tuple[int, str]] = field(default_factory=list)
    refunds: List[Tuple[str, int]] = field(default_factory=list)
    _seen: Dict[str, ChargeResult] = field(default_factory=dict)

    def _attempt(self, amount: int, idempotency_key: str) -> ChargeResult:
        if idempotency_key in self._seen:
            return self._seen[idempotency_key]
        success = self.script.pop(0) if self.script else self.default_success
        result = (
            ChargeResult(succeeded=True, reference=f"ch_{len(self._seen) + 1}")
            if success
            else ChargeResult(succeeded=False, failure_code="card_declined", failure_message="Card declined")
        )
        self._seen[idempotency_key] = result
        if success:
            self.charges.append((amount, idempotency_key))
        return result

    def charge(self, amount, payment_method_ref, *, idempotency_key, description=None) -> ChargeResult:
        return self._attempt(amount, idempotency_key)

    def authorize(self, amount, payment_method_ref, *, idempotency_key) -> ChargeResult:
        return self._attempt(amount, f"auth:{idempotency_key}")

    def refund(self, reference, amount, *, idempotency_key) -> ChargeResult:
        if idempotency_key not in self._seen:
            self._seen[idempotency_key] = ChargeResult(succeeded=True, reference=f"re_{len(self.refunds) + 1}")
            self.refunds.append((reference, amount))
        return self._seen[idempotency_key]
