"""
Read-side view of a user's subscription.

"none" is a projection-only status for users without any subscription;
it never appears on a Subscription record.
"""
from datetime import datetime
from typing import Dict, Optional, Tuple

from pydantic import BaseModel

from billing_engine.models.plan import Plan
from billing_engine.models.subscription import Subscription, SubscriptionStatus


NO_SUBSCRIPTION = "none"

# status -> (label, tone)
_BADGES: Dict[str, Tuple[str, str]] = {
    SubscriptionStatus.TRIALING.value: ("Trial", "info"),
    SubscriptionStatus.ACTIVE.value: ("Active", "success"),
    SubscriptionStatus.PAST_DUE.value: ("Past due", "warning"),
    SubscriptionStatus.CANCELED.value: ("Canceled", "danger"),
    SubscriptionStatus.UNPAID.value: ("Unpaid", "danger"),
    SubscriptionStatus.INCOMPLETE.value: ("Incomplete", "warning"),
    SubscriptionStatus.INCOMPLETE_EXPIRED.value: ("Expired", "default"),
    NO_SUBSCRIPTION: ("No subscription", "default"),
}


class StatusBadge(BaseModel):
    status: str
    label: str
    tone: str  # success | info | warning | danger | default


def status_badge(status) -> StatusBadge:
    key = status.value if isinstance(status, SubscriptionStatus) else str(status)
    label, tone = _BADGES.get(key, (key.replace("_", " ").capitalize(), "default"))
    return StatusBadge(status=key, label=label, tone=tone)


class SubscriptionDetails(BaseModel):
    """What a subscriber's billing page shows."""
    status: str
    badge: StatusBadge
    subscription_id: Optional[str] = None
    plan_id: Optional[str] = None
    plan_name: Optional[str] = None
    price: Optional[int] = None
    billing_period: Optional[str] = None
    quantity: Optional[int] = None
    features: list = []
    next_billing_date: Optional[datetime] = None
    next_billing_amount: Optional[int] = None
    trial_ends_at: Optional[datetime] = None
    trial_days_remaining: Optional[int] = None
    cancel_at_period_end: bool = False
    ends_at: Optional[datetime] = None
    pending_plan_id: Optional[str] = None
    pending_plan_name: Optional[str] = None
    pending_effective_at: Optional[datetime] = None
    grace_ends_at: Optional[datetime] = None


def _days_remaining(until: datetime, now: datetime) -> int:
    """Whole days left, counting a partial day as one."""
    seconds = (until - now).total_seconds()
    if seconds <= 0:
        return 0
    return int(-(-seconds // 86400))


def project_details(
    subscription: Optional[Subscription],
    plan: Optional[Plan],
    now: datetime,
    pending_plan: Optional[Plan] = None,
) -> SubscriptionDetails:
    if subscription is None or plan is None:
        return SubscriptionDetails(status=NO_SUBSCRIPTION, badge=status_badge(NO_SUBSCRIPTION))

    status = subscription.status
    renews = status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING) and not subscription.cancel_at_period_end
    next_plan = pending_plan or plan
    trial_remaining = None
    if status == SubscriptionStatus.TRIALING and subscription.trial_ends_at is not None:
        trial_remaining = _days_remaining(subscription.trial_ends_at, now)

    pending = subscription.pending_change
    return SubscriptionDetails(
        status=status.value,
        badge=status_badge(status),
        subscription_id=subscription.subscription_id,
        plan_id=plan.plan_id,
        plan_name=plan.name,
        price=plan.price,
        billing_period=plan.billing_period.value,
        quantity=subscription.quantity,
        features=list(plan.features),
        next_billing_date=subscription.current_period_end if renews else None,
        next_billing_amount=next_plan.price * subscription.quantity if renews else None,
        trial_ends_at=subscription.trial_ends_at,
        trial_days_remaining=trial_remaining,
        cancel_at_period_end=subscription.cancel_at_period_end,
        ends_at=subscription.ends_at,
        pending_plan_id=pending.target_plan_id if pending else None,
        pending_plan_name=pending_plan.name if pending_plan else None,
        pending_effective_at=pending.effective_at if pending else None,
        grace_ends_at=subscription.grace_ends_at,
    )
