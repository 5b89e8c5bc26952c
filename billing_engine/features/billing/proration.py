"""
Plan change calculator.

Pure pricing for plan changes:
- Upgrades apply now and charge the prorated difference for the rest of
  the current period (never negative).
- Downgrades charge nothing now; the target price applies from the next
  renewal at ``current_period_end``.
- Billing-period changes restart the period at the effective date.

All arithmetic is integer (minor units, microseconds) so results are exact.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from billing_engine.features.plans.catalog import ChangeDirection
from billing_engine.models.plan import Plan
from billing_engine.models.subscription import Subscription


_MICROSECOND = timedelta(microseconds=1)


@dataclass(frozen=True)
class PlanChangeQuote:
    """Priced plan change."""
    direction: ChangeDirection
    amount: int
    effective_at: datetime
    period_start: datetime
    period_end: datetime
    period_restarts: bool
    next_renewal_amount: int


def _micros(delta: timedelta) -> int:
    return delta // _MICROSECOND


def _ceil_div(numerator: int, denominator: int) -> int:
    return -(-numerator // denominator)


def remaining_fraction(period_start: datetime, period_end: datetime, now: datetime) -> float:
    """(end - now) / (end - start), clamped to [0, 1]."""
    total = _micros(period_end - period_start)
    if total <= 0:
        return 0.0
    remaining = _micros(period_end - now)
    return min(1.0, max(0.0, remaining / total))


def prorate(amount: int, period_start: datetime, period_end: datetime, now: datetime) -> int:
    """ceil(amount * remaining_fraction) without floating point error."""
    total = _micros(period_end - period_start)
    if total <= 0 or amount <= 0:
        return 0
    remaining = min(total, max(0, _micros(period_end - now)))
    return _ceil_div(amount * remaining, total)


def period_length(plan: Plan) -> timedelta:
    return timedelta(days=plan.period_days)


def renewal_amount(plan: Plan, quantity: int = 1) -> int:
    return plan.price * quantity


def upgrade_proration(
    current: Plan,
    target: Plan,
    period_start: datetime,
    period_end: datetime,
    now: datetime,
    quantity: int = 1,
) -> int:
    """
    Prorated upgrade charge on the same billing period.

    ceil(target * f) - ceil(current * f), floored at zero.
    """
    delta = (
        prorate(target.price * quantity, period_start, period_end, now)
        - prorate(current.price * quantity, period_start, period_end, now)
    )
    return max(0, delta)


def quote_upgrade(subscription: Subscription, current: Plan, target: Plan, now: datetime) -> PlanChangeQuote:
    quantity = subscription.quantity
    start = subscription.current_period_start
    end = subscription.current_period_end

    if current.billing_period == target.billing_period:
        return PlanChangeQuote(
            direction=ChangeDirection.UPGRADE,
            amount=upgrade_proration(current, target, start, end, now, quantity),
            effective_at=now,
            period_start=start,
            period_end=end,
            period_restarts=False,
            next_renewal_amount=renewal_amount(target, quantity),
        )

    # New period begins now: full target price less unused credit.
    unused_credit = prorate(current.price * quantity, start, end, now)
    amount = max(0, renewal_amount(target, quantity) - unused_credit)
    return PlanChangeQuote(
        direction=ChangeDirection.UPGRADE,
        amount=amount,
        effective_at=now,
        period_start=now,
        period_end=now + period_length(target),
        period_restarts=True,
        next_renewal_amount=renewal_amount(target, quantity),
    )


def quote_downgrade(subscription: Subscription, current: Plan, target: Plan, now: Optional[datetime] = None) -> PlanChangeQuote:
    effective_at = subscription.current_period_end
    restarts = current.billing_period != target.billing_period
    return PlanChangeQuote(
        direction=ChangeDirection.DOWNGRADE,
        amount=0,
        effective_at=effective_at,
        period_start=effective_at,
        period_end=effective_at + period_length(target),
        period_restarts=restarts,
        next_renewal_amount=renewal_amount(target, subscription.quantity),
    )
