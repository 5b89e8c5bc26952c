"""
billing_engine/models/subscription.py

Subscription aggregate and its status enum.

Instances are frozen; the state machine produces updated copies. The
``version`` counter backs optimistic concurrency in the repositories.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


class SubscriptionStatus(str, Enum):
    """Canonical lifecycle status.

    Unifies the client-facing names (trial/active/canceled/past_due) and
    the gateway-facing names (incomplete, incomplete_expired, unpaid).
    """
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"


ALWAYS_TERMINAL = frozenset({
    SubscriptionStatus.UNPAID,
    SubscriptionStatus.INCOMPLETE_EXPIRED,
})


def new_subscription_id() -> str:
    return f"sub_{uuid4().hex}"


class PendingPlanChange(BaseModel):
    """Downgrade scheduled for the end of the current period."""
    model_config = ConfigDict(frozen=True)

    target_plan_id: str
    effective_at: datetime
    requested_at: datetime


class Subscription(BaseModel):
    model_config = ConfigDict(frozen=True)

    subscription_id: str = Field(default_factory=new_subscription_id)
    user_id: str
    plan_id: str
    status: SubscriptionStatus
    quantity: int = Field(default=1, ge=1)

    current_period_start: datetime
    current_period_end: datetime
    trial_ends_at: Optional[datetime] = None
    cancel_at_period_end: bool = False
    ends_at: Optional[datetime] = None
    pending_change: Optional[PendingPlanChange] = None

    # Dunning
    grace_ends_at: Optional[datetime] = None
    failed_payment_count: int = 0
    next_payment_retry_at: Optional[datetime] = None
    awaiting_trial_conversion: bool = False
    # Declined charge the dunning retries collect (proration or period price)
    outstanding_amount: Optional[int] = None

    payment_method_ref: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    archived_at: Optional[datetime] = None
    version: int = 0

    def is_terminal(self, now: datetime) -> bool:
        """Terminal: expired/unpaid, or canceled with its end reached."""
        if self.status in ALWAYS_TERMINAL:
            return True
        if self.status == SubscriptionStatus.CANCELED:
            return self.ends_at is None or now >= self.ends_at
        return False

    def is_open(self, now: datetime) -> bool:
        return not self.is_terminal(now)
