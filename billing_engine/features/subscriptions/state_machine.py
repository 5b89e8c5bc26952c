"""
Subscription state machine.

Pure transition functions: (subscription, inputs, now) -> Transition.
Nothing here performs I/O or reads the wall clock. An illegal command
returns a Transition carrying a typed error and the untouched input state;
these functions never raise for rejected commands.

Payment outcomes are inputs. The command service charges the gateway,
then re-runs the transition on freshly loaded state with the outcome.

    trialing ──► active ──► past_due ──► unpaid | canceled
        │          │  ▲          │
        │          │  └──────────┘ (payment recovered)
        │          └──► canceled (immediate, or at period end)
    incomplete ──► active | incomplete_expired
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple

from billing_engine.core.config import EnginePolicy
from billing_engine.core.errors import (
    AlreadyCanceled,
    AlreadySubscribed,
    AppError,
    InvalidQuantity,
    InvalidTransition,
    NotDowngradable,
    NotUpgradable,
    PlanUnavailable,
    ResumeWindowExpired,
)
from billing_engine.features.billing.proration import period_length, quote_upgrade, renewal_amount
from billing_engine.features.plans.catalog import PlanCatalog
from billing_engine.models.billing import EventKind
from billing_engine.models.plan import Plan
from billing_engine.models.subscription import (
    PendingPlanChange,
    Subscription,
    SubscriptionStatus,
    new_subscription_id,
)


CHANGEABLE = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})


@dataclass(frozen=True)
class EventDraft:
    """Event emitted by a transition, before the log stamps it."""
    kind: EventKind
    amount: Optional[int] = None
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Transition:
    subscription: Optional[Subscription]
    events: Tuple[EventDraft, ...] = ()
    error: Optional[AppError] = None
    charged_amount: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def event_kinds(self) -> Tuple[EventKind, ...]:
        return tuple(e.kind for e in self.events)


def _reject(subscription: Optional[Subscription], error: AppError) -> Transition:
    return Transition(subscription=subscription, error=error)


def _accept(subscription: Subscription, *events: EventDraft, charged: Optional[int] = None) -> Transition:
    return Transition(subscription=subscription, events=tuple(events), charged_amount=charged)


def _update(subscription: Subscription, now: datetime, **changes) -> Subscription:
    changes["updated_at"] = now
    return subscription.model_copy(update=changes)


def retry_backoff(attempt: int, base: timedelta) -> timedelta:
    """Dunning retry delay: base, 2x, then capped at 4x base."""
    return min(base * (2 ** max(0, attempt - 1)), base * 4)


def _past_due(subscription: Subscription, now: datetime, policy: EnginePolicy, amount: int, **changes) -> Subscription:
    """Open the grace window; amount is what the dunning retries collect."""
    grace_ends_at = now + policy.grace_period
    return _update(
        subscription,
        now,
        status=SubscriptionStatus.PAST_DUE,
        grace_ends_at=grace_ends_at,
        failed_payment_count=1,
        next_payment_retry_at=min(now + retry_backoff(1, policy.dunning_retry_interval), grace_ends_at),
        outstanding_amount=amount,
        **changes,
    )


def initial_charge(plan: Plan, quantity: int) -> int:
    """Amount charged at subscribe time (0 for trials and free plans)."""
    if plan.trial_days > 0 or plan.is_free:
        return 0
    return renewal_amount(plan, quantity)


def subscribe(
    *,
    user_id: str,
    plan: Plan,
    quantity: int,
    now: datetime,
    open_subscription: Optional[Subscription] = None,
    payment_succeeded: Optional[bool] = None,
    subscription_id: Optional[str] = None,
    payment_method_ref: Optional[str] = None,
) -> Transition:
    """
    Create a subscription.

    trial plan -> trialing; free plan -> active; paid plan -> active when
    the first charge succeeded synchronously, else incomplete.
    """
    if open_subscription is not None and open_subscription.is_open(now):
        return _reject(open_subscription, AlreadySubscribed(
            f"User {user_id} already holds subscription {open_subscription.subscription_id}"
        ))
    if not plan.is_active:
        return _reject(None, PlanUnavailable(f"Plan {plan.plan_id} is not available for new subscriptions"))
    if quantity < 1 or (plan.max_users is not None and quantity > plan.max_users):
        return _reject(None, InvalidQuantity(f"Quantity {quantity} not allowed for plan {plan.plan_id}"))

    base = dict(
        subscription_id=subscription_id or new_subscription_id(),
        user_id=user_id,
        plan_id=plan.plan_id,
        quantity=quantity,
        payment_method_ref=payment_method_ref,
        created_at=now,
        updated_at=now,
    )

    if plan.trial_days > 0:
        trial_ends_at = now + timedelta(days=plan.trial_days)
        sub = Subscription(
            **base,
            status=SubscriptionStatus.TRIALING,
            trial_ends_at=trial_ends_at,
            current_period_start=now,
            current_period_end=trial_ends_at,
        )
        return _accept(
            sub,
            EventDraft(EventKind.CREATED),
            EventDraft(EventKind.TRIAL_STARTED, data={"trial_ends_at": trial_ends_at.isoformat()}),
        )

    period_end = now + period_length(plan)
    if plan.is_free:
        sub = Subscription(**base, status=SubscriptionStatus.ACTIVE, current_period_start=now, current_period_end=period_end)
        return _accept(sub, EventDraft(EventKind.CREATED))

    if payment_succeeded:
        amount = renewal_amount(plan, quantity)
        sub = Subscription(**base, status=SubscriptionStatus.ACTIVE, current_period_start=now, current_period_end=period_end)
        return _accept(sub, EventDraft(EventKind.CREATED, amount=amount), charged=amount)

    sub = Subscription(**base, status=SubscriptionStatus.INCOMPLETE, current_period_start=now, current_period_end=period_end)
    return _accept(sub, EventDraft(EventKind.CREATED, data={"awaiting_payment": True}))


def confirm_payment(subscription: Subscription, plan: Plan, success: bool, now: datetime) -> Transition:
    """Settle the first charge of an incomplete subscription."""
    if subscription.status != SubscriptionStatus.INCOMPLETE:
        return _reject(subscription, InvalidTransition(
            f"confirm_payment requires incomplete, subscription is {subscription.status.value}"
        ))
    if success:
        amount = renewal_amount(plan, subscription.quantity)
        sub = _update(subscription, now, status=SubscriptionStatus.ACTIVE)
        return _accept(sub, EventDraft(EventKind.ACTIVATED, amount=amount), charged=amount)

    sub = _update(subscription, now, status=SubscriptionStatus.INCOMPLETE_EXPIRED, ends_at=now)
    return _accept(sub, EventDraft(EventKind.EXPIRED, data={"reason": "first_payment_failed"}))


def convert_trial(
    subscription: Subscription,
    plan: Plan,
    now: datetime,
    payment_succeeded: bool,
    policy: EnginePolicy,
) -> Transition:
    if subscription.status != SubscriptionStatus.TRIALING:
        return _reject(subscription, InvalidTransition(
            f"convert_trial requires trialing, subscription is {subscription.status.value}"
        ))
    if subscription.trial_ends_at is None or now < subscription.trial_ends_at:
        return _reject(subscription, InvalidTransition("Trial has not ended yet"))
    if subscription.cancel_at_period_end:
        return _reject(subscription, InvalidTransition("Trial ends in cancellation, not conversion"))

    period_start = subscription.trial_ends_at
    period_end = period_start + period_length(plan)
    common = dict(trial_ends_at=None, current_period_start=period_start, current_period_end=period_end)

    if plan.is_free:
        sub = _update(subscription, now, status=SubscriptionStatus.ACTIVE, **common)
        return _accept(sub, EventDraft(EventKind.TRIAL_CONVERTED))

    amount = renewal_amount(plan, subscription.quantity)
    if payment_succeeded:
        sub = _update(subscription, now, status=SubscriptionStatus.ACTIVE, **common)
        return _accept(sub, EventDraft(EventKind.TRIAL_CONVERTED, amount=amount), charged=amount)

    sub = _past_due(subscription, now, policy, amount, awaiting_trial_conversion=True, **common)
    return _accept(sub, EventDraft(
        EventKind.PAYMENT_FAILED,
        data={"attempt": 1, "attempted_amount": amount, "reason": "trial_conversion"},
    ))


def renewal_due(subscription: Subscription, now: datetime) -> bool:
    return subscription.status == SubscriptionStatus.ACTIVE and now >= subscription.current_period_end


def record_payment_result(
    subscription: Subscription,
    plan: Plan,
    success: bool,
    now: datetime,
    policy: EnginePolicy,
) -> Transition:
    """
    Apply the outcome of a renewal or dunning charge.

    active + due: period advances; success renews, failure opens the grace
    window. past_due: success recovers; failure retries until the grace
    deadline, then ends the subscription per policy.
    """
    amount = renewal_amount(plan, subscription.quantity)

    if subscription.status == SubscriptionStatus.ACTIVE:
        if now < subscription.current_period_end:
            return _reject(subscription, InvalidTransition("Renewal is not due yet"))
        if subscription.cancel_at_period_end:
            return _reject(subscription, InvalidTransition("Subscription ends at period end; nothing to renew"))
        pending = subscription.pending_change
        if pending is not None and pending.effective_at <= now:
            return _reject(subscription, InvalidTransition("Pending plan change must be applied before renewal"))

        period_start = subscription.current_period_end
        period = dict(current_period_start=period_start, current_period_end=period_start + period_length(plan))
        if success:
            sub = _update(subscription, now, **period)
            return _accept(sub, EventDraft(EventKind.RENEWED, amount=amount), charged=amount)
        sub = _past_due(subscription, now, policy, amount, **period)
        return _accept(sub, EventDraft(
            EventKind.PAYMENT_FAILED,
            data={"attempt": 1, "attempted_amount": amount, "reason": "renewal"},
        ))

    if subscription.status == SubscriptionStatus.PAST_DUE:
        if subscription.outstanding_amount is not None:
            amount = subscription.outstanding_amount
        if success:
            kind = EventKind.TRIAL_CONVERTED if subscription.awaiting_trial_conversion else EventKind.PAYMENT_RECOVERED
            sub = _update(
                subscription,
                now,
                status=SubscriptionStatus.ACTIVE,
                grace_ends_at=None,
                failed_payment_count=0,
                next_payment_retry_at=None,
                awaiting_trial_conversion=False,
                outstanding_amount=None,
            )
            return _accept(sub, EventDraft(kind, amount=amount), charged=amount)

        attempts = subscription.failed_payment_count + 1
        grace_ends_at = subscription.grace_ends_at or now
        if now >= grace_ends_at:
            terminal = (
                SubscriptionStatus.CANCELED
                if policy.past_due_policy == "canceled"
                else SubscriptionStatus.UNPAID
            )
            sub = _update(
                subscription,
                now,
                status=terminal,
                ends_at=now,
                failed_payment_count=attempts,
                next_payment_retry_at=None,
                cancel_at_period_end=False,
                pending_change=None,
            )
            return _accept(sub, EventDraft(
                EventKind.EXPIRED,
                data={"reason": "grace_period_exhausted", "failed_payments": attempts},
            ))

        next_retry = min(now + retry_backoff(attempts, policy.dunning_retry_interval), grace_ends_at)
        sub = _update(subscription, now, failed_payment_count=attempts, next_payment_retry_at=next_retry)
        return _accept(sub, EventDraft(
            EventKind.PAYMENT_FAILED,
            data={"attempt": attempts, "attempted_amount": amount, "reason": "dunning_retry"},
        ))

    return _reject(subscription, InvalidTransition(
        f"Payment results do not apply to {subscription.status.value} subscriptions"
    ))


def upgrade_charge(subscription: Subscription, current: Plan, target: Plan, now: datetime) -> int:
    """Amount the upgrade would charge right now (0 while trialing)."""
    if subscription.status == SubscriptionStatus.TRIALING:
        return 0
    return quote_upgrade(subscription, current, target, now).amount


def _check_change(
    subscription: Subscription,
    catalog: PlanCatalog,
    current: Plan,
    target: Plan,
    upgrade: bool,
) -> Optional[AppError]:
    if subscription.status not in CHANGEABLE:
        return InvalidTransition(f"Plan changes are not allowed while {subscription.status.value}")
    if not target.is_active:
        return PlanUnavailable(f"Plan {target.plan_id} is not available")
    if upgrade and not catalog.can_upgrade(current, target):
        return NotUpgradable(f"{target.plan_id} is not an upgrade from {current.plan_id}")
    if not upgrade and not catalog.can_downgrade(current, target):
        return NotDowngradable(f"{target.plan_id} is not a downgrade from {current.plan_id}")
    if target.max_users is not None and subscription.quantity > target.max_users:
        return InvalidQuantity(f"Plan {target.plan_id} allows at most {target.max_users} seats")
    return None


def request_upgrade(
    subscription: Subscription,
    catalog: PlanCatalog,
    current: Plan,
    target: Plan,
    now: datetime,
    policy: EnginePolicy,
    payment_succeeded: bool = True,
) -> Transition:
    """
    Swap to a higher plan immediately.

    The prorated difference is charged now; current_period_end is kept
    unless the billing period changes. A declined charge keeps the swap
    and moves the subscription to past_due.
    """
    error = _check_change(subscription, catalog, current, target, upgrade=True)
    if error is not None:
        return _reject(subscription, error)

    data = {"from_plan": current.plan_id, "to_plan": target.plan_id}

    if subscription.status == SubscriptionStatus.TRIALING:
        sub = _update(subscription, now, plan_id=target.plan_id, pending_change=None)
        return _accept(sub, EventDraft(EventKind.UPGRADED, data=data))

    quote = quote_upgrade(subscription, current, target, now)
    changes: Dict[str, Any] = dict(
        plan_id=target.plan_id,
        pending_change=None,
        current_period_start=quote.period_start,
        current_period_end=quote.period_end,
    )
    if subscription.cancel_at_period_end:
        changes["ends_at"] = quote.period_end
    if quote.period_restarts:
        data["period_restarted"] = True

    if quote.amount > 0 and not payment_succeeded:
        sub = _past_due(subscription, now, policy, quote.amount, **changes)
        return _accept(
            sub,
            EventDraft(EventKind.UPGRADED, data=data),
            EventDraft(EventKind.PAYMENT_FAILED, data={"attempt": 1, "attempted_amount": quote.amount, "reason": "upgrade"}),
        )

    sub = _update(subscription, now, **changes)
    charged = quote.amount if quote.amount > 0 else None
    return _accept(sub, EventDraft(EventKind.UPGRADED, amount=charged, data=data), charged=charged)


def request_downgrade(
    subscription: Subscription,
    catalog: PlanCatalog,
    current: Plan,
    target: Plan,
    now: datetime,
) -> Transition:
    """Schedule a downgrade at current_period_end, replacing any pending one."""
    error = _check_change(subscription, catalog, current, target, upgrade=False)
    if error is not None:
        return _reject(subscription, error)

    pending = PendingPlanChange(
        target_plan_id=target.plan_id,
        effective_at=subscription.current_period_end,
        requested_at=now,
    )
    return _accept(_update(subscription, now, pending_change=pending))


def apply_pending_change(subscription: Subscription, now: datetime) -> Transition:
    pending = subscription.pending_change
    if pending is None:
        return _reject(subscription, InvalidTransition("No pending plan change"))
    if now < pending.effective_at:
        return _reject(subscription, InvalidTransition("Pending plan change is not effective yet"))
    if subscription.status not in CHANGEABLE:
        return _reject(subscription, InvalidTransition(
            f"Cannot apply plan change while {subscription.status.value}"
        ))

    sub = _update(subscription, now, plan_id=pending.target_plan_id, pending_change=None)
    return _accept(sub, EventDraft(
        EventKind.DOWNGRADED,
        data={
            "from_plan": subscription.plan_id,
            "to_plan": pending.target_plan_id,
            "effective_at": pending.effective_at.isoformat(),
        },
    ))


def cancel(subscription: Subscription, now: datetime, immediate: bool = False) -> Transition:
    """
    Cancel now, or at the end of the current period.

    past_due and incomplete subscriptions have no paid period to run out,
    so they are always canceled immediately.
    """
    if subscription.is_terminal(now) or subscription.status == SubscriptionStatus.CANCELED:
        return _reject(subscription, AlreadyCanceled(f"Subscription {subscription.subscription_id} is already canceled"))

    if not immediate and subscription.status in CHANGEABLE:
        if subscription.cancel_at_period_end:
            return _reject(subscription, AlreadyCanceled("Cancellation is already scheduled"))
        sub = _update(subscription, now, cancel_at_period_end=True, ends_at=subscription.current_period_end)
        return _accept(sub, EventDraft(
            EventKind.CANCELLATION_SCHEDULED,
            data={"ends_at": subscription.current_period_end.isoformat()},
        ))

    sub = _update(
        subscription,
        now,
        status=SubscriptionStatus.CANCELED,
        ends_at=now,
        cancel_at_period_end=False,
        trial_ends_at=None,
        pending_change=None,
        grace_ends_at=None,
        next_payment_retry_at=None,
        outstanding_amount=None,
    )
    return _accept(sub, EventDraft(EventKind.CANCELED, data={"immediate": True, "from_status": subscription.status.value}))


def finalize_cancellation(subscription: Subscription, now: datetime) -> Transition:
    """Period-end cancellation reaching its end date."""
    if not subscription.cancel_at_period_end or subscription.status not in CHANGEABLE:
        return _reject(subscription, InvalidTransition("No scheduled cancellation"))
    if subscription.ends_at is None or now < subscription.ends_at:
        return _reject(subscription, InvalidTransition("Scheduled cancellation is not due yet"))

    sub = _update(
        subscription,
        now,
        status=SubscriptionStatus.CANCELED,
        cancel_at_period_end=False,
        trial_ends_at=None,
        pending_change=None,
    )
    return _accept(sub, EventDraft(EventKind.CANCELED, data={"immediate": False, "from_status": subscription.status.value}))


def resume(subscription: Subscription, now: datetime) -> Transition:
    """Undo a cancellation while its end date has not been reached."""
    scheduled = subscription.cancel_at_period_end and subscription.status in CHANGEABLE
    canceled = subscription.status == SubscriptionStatus.CANCELED
    if not (scheduled or canceled) or subscription.ends_at is None:
        return _reject(subscription, ResumeWindowExpired("No cancellation to resume"))
    if now >= subscription.ends_at:
        return _reject(subscription, ResumeWindowExpired(
            f"Resume window closed at {subscription.ends_at.isoformat()}"
        ))

    status = SubscriptionStatus.ACTIVE if canceled else subscription.status
    sub = _update(subscription, now, status=status, cancel_at_period_end=False, ends_at=None)
    return _accept(sub, EventDraft(EventKind.RESUMED))


def archive(subscription: Subscription, now: datetime, policy: EnginePolicy) -> Transition:
    """Mark a long-terminated subscription archived. Records are never deleted."""
    if subscription.archived_at is not None:
        return _reject(subscription, InvalidTransition("Subscription is already archived"))
    if not subscription.is_terminal(now):
        return _reject(subscription, InvalidTransition("Only terminated subscriptions can be archived"))
    anchor = subscription.ends_at or subscription.updated_at
    if now < anchor + policy.archive_after:
        return _reject(subscription, InvalidTransition("Archive retention window has not elapsed"))
    return _accept(_update(subscription, now, archived_at=now))


def incomplete_expired(subscription: Subscription, now: datetime, policy: EnginePolicy) -> bool:
    """True when an incomplete subscription waited too long for its first payment."""
    return (
        subscription.status == SubscriptionStatus.INCOMPLETE
        and now >= subscription.created_at + policy.incomplete_expiry
    )
