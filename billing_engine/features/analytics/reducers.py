"""
billing_engine/features/analytics/reducers.py

Pure deterministic reducers over the billing event log.
All reducers: (events, catalog, window) -> number or immutable read model.

Every event carries the subscription's resulting plan, status and quantity,
so the state of any subscription at an instant is its latest event before
that instant. Nothing here keeps running counters.
"""

from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from billing_engine.features.analytics.models import (
    MetricsSnapshot,
    MonthlyPoint,
    MonthlySeries,
    PlanDistribution,
    PlanShare,
)
from billing_engine.features.plans.catalog import PlanCatalog
from billing_engine.models.billing import BillingEvent, EventKind
from billing_engine.models.subscription import SubscriptionStatus


TERMINAL_KINDS = frozenset({EventKind.CANCELED, EventKind.EXPIRED})

# Views "as of now" include events stamped exactly at now
_TICK = timedelta(microseconds=1)


def _ordered(events: Iterable[BillingEvent]) -> List[BillingEvent]:
    return sorted(events, key=lambda e: (e.timestamp, e.subscription_id, e.sequence))


def states_before(events: Iterable[BillingEvent], instant: datetime) -> Dict[str, BillingEvent]:
    """Latest event strictly before ``instant``, per subscription."""
    latest: Dict[str, BillingEvent] = {}
    for e in _ordered(events):
        if e.timestamp >= instant:
            break
        latest[e.subscription_id] = e
    return latest


def active_before(events: Iterable[BillingEvent], instant: datetime) -> List[BillingEvent]:
    return [
        e for e in states_before(events, instant).values()
        if e.status == SubscriptionStatus.ACTIVE
    ]


def in_window(events: Iterable[BillingEvent], start: datetime, end: datetime) -> List[BillingEvent]:
    return [e for e in _ordered(events) if start <= e.timestamp < end]


def reduce_mrr(events: Sequence[BillingEvent], catalog: PlanCatalog, end: datetime) -> float:
    """
    Sum of price * quantity / period_months over subscriptions active at ``end``.

    Yearly plans contribute a twelfth of their price. Minor units.
    """
    total = 0.0
    for state in active_before(events, end):
        plan = catalog.resolve_held(state.plan_id)
        total += plan.price * state.quantity / plan.period_months
    return total


def reduce_churn(events: Sequence[BillingEvent], start: datetime, end: datetime) -> Tuple[float, int, int]:
    """
    (rate, churned, active_at_start).

    Churned = distinct subscriptions ending (canceled / expired) in the window.
    An incomplete subscription that never paid is not churn.
    """
    active_at_start = len(active_before(events, start))
    churned = {
        e.subscription_id
        for e in in_window(events, start, end)
        if e.kind in TERMINAL_KINDS and e.status != SubscriptionStatus.INCOMPLETE_EXPIRED
    }
    if active_at_start == 0:
        return 0.0, len(churned), 0
    return len(churned) / active_at_start, len(churned), active_at_start


def reduce_trial_conversion(events: Sequence[BillingEvent], start: datetime, end: datetime) -> Tuple[float, int, int]:
    """
    (rate, converted, lapsed).

    Lapsed = a subscription that started a trial and ended (canceled or
    expired) in the window without ever converting.
    """
    trialed = set()
    converted_ever = set()
    converted = 0
    lapsed = 0
    for e in _ordered(events):
        if e.timestamp >= end:
            break
        if e.kind == EventKind.TRIAL_STARTED:
            trialed.add(e.subscription_id)
            continue
        if e.kind == EventKind.TRIAL_CONVERTED:
            converted_ever.add(e.subscription_id)
            if e.timestamp >= start:
                converted += 1
            continue
        if (
            e.kind in TERMINAL_KINDS
            and e.timestamp >= start
            and e.subscription_id in trialed
            and e.subscription_id not in converted_ever
        ):
            lapsed += 1

    denominator = converted + lapsed
    if denominator == 0:
        return 0.0, 0, 0
    return converted / denominator, converted, lapsed


def charged_by_subscription(events: Iterable[BillingEvent]) -> Dict[str, int]:
    totals: Dict[str, int] = defaultdict(int)
    for e in events:
        if e.amount:
            totals[e.subscription_id] += e.amount
    return dict(totals)


def reduce_lifetime_value(events: Sequence[BillingEvent], start: datetime, end: datetime) -> Tuple[float, int]:
    """
    (mean total charged over subscriptions terminated in window, count).

    Incomplete subscriptions that never paid are left out, as in churn.
    """
    terminated = {
        e.subscription_id
        for e in in_window(events, start, end)
        if e.kind in TERMINAL_KINDS and e.status != SubscriptionStatus.INCOMPLETE_EXPIRED
    }
    if not terminated:
        return 0.0, 0
    totals = charged_by_subscription(events)
    value = sum(totals.get(sid, 0) for sid in terminated) / len(terminated)
    return value, len(terminated)


def reduce_metrics(
    events: Sequence[BillingEvent],
    catalog: PlanCatalog,
    start: datetime,
    end: datetime,
    now: Optional[datetime] = None,
) -> MetricsSnapshot:
    """
    Bundle the four core metrics for [start, end).

    Pure function: same events + same window => identical output.
    """
    if now is None:
        now = datetime.now(timezone.utc)
    events = list(events)

    churn_rate, churned, active_at_start = reduce_churn(events, start, end)
    conversion_rate, converted, lapsed = reduce_trial_conversion(events, start, end)
    ltv, terminated = reduce_lifetime_value(events, start, end)

    return MetricsSnapshot(
        window_start=start,
        window_end=end,
        mrr=reduce_mrr(events, catalog, end),
        active_subscriptions=len(active_before(events, end)),
        churn_rate=churn_rate,
        churned=churned,
        active_at_start=active_at_start,
        trial_conversion_rate=conversion_rate,
        trials_converted=converted,
        trials_lapsed=lapsed,
        average_lifetime_value=ltv,
        terminated=terminated,
        computed_at=now,
    )


# ---------------------------------------------------------------------------
# Dashboard series
# ---------------------------------------------------------------------------

def month_start(value: datetime) -> datetime:
    return value.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def add_months(value: datetime, months: int) -> datetime:
    index = value.year * 12 + (value.month - 1) + months
    return value.replace(year=index // 12, month=index % 12 + 1, day=1)


def month_starts(now: datetime, months: int) -> List[datetime]:
    """First instants of the ``months`` calendar months ending with now's month."""
    current = month_start(now)
    return [add_months(current, -offset) for offset in range(months - 1, -1, -1)]


def _label(value: datetime) -> str:
    return value.strftime("%b %Y")


def reduce_revenue_series(events: Sequence[BillingEvent], now: datetime, months: int = 12) -> MonthlySeries:
    """Charged amounts per calendar month (minor units)."""
    points = []
    for first in month_starts(now, months):
        last = add_months(first, 1)
        total = sum(e.amount or 0 for e in events if first <= e.timestamp < last)
        points.append(MonthlyPoint(label=_label(first), month_start=first, value=float(total)))
    return MonthlySeries(metric="revenue", points=points)


def reduce_growth_series(events: Sequence[BillingEvent], now: datetime, months: int = 12) -> MonthlySeries:
    """Active subscriptions at each month end (at ``now`` for the current month)."""
    points = []
    for first in month_starts(now, months):
        cutoff = min(add_months(first, 1), now + _TICK)
        points.append(MonthlyPoint(
            label=_label(first),
            month_start=first,
            value=float(len(active_before(events, cutoff))),
        ))
    return MonthlySeries(metric="active_subscriptions", points=points)


def reduce_plan_distribution(events: Sequence[BillingEvent], catalog: PlanCatalog, now: datetime) -> PlanDistribution:
    """Active subscriptions per plan; every catalog plan is listed, even at zero."""
    counts: Dict[str, int] = defaultdict(int)
    for state in active_before(events, now + _TICK):
        counts[state.plan_id] += 1
    total = sum(counts.values())

    shares = []
    for plan in catalog.all():
        count = counts.get(plan.plan_id, 0)
        shares.append(PlanShare(
            plan_id=plan.plan_id,
            name=plan.name,
            count=count,
            percentage=round(count / total * 100, 1) if total else 0.0,
        ))
    return PlanDistribution(total_active=total, plans=shares, computed_at=now)
