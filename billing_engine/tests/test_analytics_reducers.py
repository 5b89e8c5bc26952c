"""
billing_engine/tests/test_analytics_reducers.py

Tests for the analytics reducers over billing events.
"""

import pytest
from datetime import datetime, timezone, timedelta

from billing_engine.features.analytics.reducers import (
    add_months,
    month_starts,
    reduce_churn,
    reduce_growth_series,
    reduce_lifetime_value,
    reduce_metrics,
    reduce_mrr,
    reduce_plan_distribution,
    reduce_revenue_series,
    reduce_trial_conversion,
    states_before,
)
from billing_engine.models.billing import BillingEvent, EventKind
from billing_engine.models.subscription import SubscriptionStatus as S


NOW = datetime(2025, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def _ev(sid, kind, at, status, plan="basic", amount=None, quantity=1, seq=1):
    return BillingEvent(
        subscription_id=sid,
        user_id=f"user-{sid}",
        kind=kind,
        timestamp=at,
        amount=amount,
        plan_id=plan,
        status=status,
        quantity=quantity,
        sequence=seq,
    )


def days(n):
    return timedelta(days=n)


class TestReplay:
    def test_latest_event_strictly_before_instant(self):
        events = [
            _ev("a", EventKind.CREATED, NOW - days(10), S.ACTIVE),
            _ev("a", EventKind.CANCELED, NOW, S.CANCELED, seq=2),
        ]
        assert states_before(events, NOW)["a"].status == S.ACTIVE
        assert states_before(events, NOW + timedelta(microseconds=1))["a"].status == S.CANCELED

    def test_input_order_does_not_matter(self):
        events = [
            _ev("a", EventKind.UPGRADED, NOW - days(1), S.ACTIVE, plan="professional", seq=2),
            _ev("a", EventKind.CREATED, NOW - days(10), S.ACTIVE),
        ]
        assert states_before(events, NOW)["a"].plan_id == "professional"


class TestMRR:
    def test_yearly_contributes_a_twelfth_and_quantity_scales(self, catalog):
        events = [
            _ev("a", EventKind.CREATED, NOW - days(10), S.ACTIVE, plan="basic", quantity=2),
            _ev("b", EventKind.CREATED, NOW - days(10), S.ACTIVE, plan="professional-yearly"),
            _ev("c", EventKind.TRIAL_STARTED, NOW - days(2), S.TRIALING, plan="enterprise"),
        ]
        assert reduce_mrr(events, catalog, NOW) == pytest.approx(999 * 2 + 28790 / 12)

    def test_past_due_is_not_recurring_revenue(self, catalog):
        events = [
            _ev("a", EventKind.CREATED, NOW - days(40), S.ACTIVE),
            _ev("a", EventKind.PAYMENT_FAILED, NOW - days(5), S.PAST_DUE, seq=2),
        ]
        assert reduce_mrr(events, catalog, NOW) == 0.0

    def test_empty_log(self, catalog):
        assert reduce_mrr([], catalog, NOW) == 0.0


class TestChurn:
    def test_churn_counts_distinct_endings_over_active_at_start(self):
        start = NOW - days(30)
        events = [
            _ev("a", EventKind.CREATED, NOW - days(40), S.ACTIVE),
            _ev("b", EventKind.CREATED, NOW - days(40), S.ACTIVE),
            _ev("c", EventKind.CREATED, NOW - days(40), S.ACTIVE),
            _ev("c", EventKind.CANCELED, NOW - days(5), S.CANCELED, seq=2),
            _ev("d", EventKind.CREATED, NOW - days(4), S.INCOMPLETE),
            _ev("d", EventKind.EXPIRED, NOW - days(3), S.INCOMPLETE_EXPIRED, seq=2),
        ]
        rate, churned, active_at_start = reduce_churn(events, start, NOW)
        assert (churned, active_at_start) == (1, 3)
        assert rate == pytest.approx(1 / 3)

    def test_no_active_at_start_is_zero(self):
        events = [_ev("a", EventKind.CREATED, NOW - days(1), S.ACTIVE)]
        assert reduce_churn(events, NOW - days(30), NOW) == (0.0, 0, 0)

    def test_unpaid_expiry_is_churn(self):
        events = [
            _ev("a", EventKind.CREATED, NOW - days(60), S.ACTIVE),
            _ev("a", EventKind.PAYMENT_FAILED, NOW - days(20), S.PAST_DUE, seq=2),
            _ev("a", EventKind.EXPIRED, NOW - days(13), S.UNPAID, seq=3),
        ]
        assert reduce_churn(events, NOW - days(30), NOW)[1] == 1


class TestTrialConversion:
    def test_converted_over_converted_plus_lapsed(self):
        start = NOW - days(30)
        events = [
            _ev("e", EventKind.TRIAL_STARTED, NOW - days(20), S.TRIALING),
            _ev("e", EventKind.TRIAL_CONVERTED, NOW - days(13), S.ACTIVE, amount=999, seq=2),
            _ev("f", EventKind.TRIAL_STARTED, NOW - days(20), S.TRIALING),
            _ev("f", EventKind.CANCELED, NOW - days(13), S.CANCELED, seq=2),
            _ev("g", EventKind.TRIAL_STARTED, NOW - days(2), S.TRIALING),
        ]
        assert reduce_trial_conversion(events, start, NOW) == (0.5, 1, 1)

    def test_cancel_after_conversion_is_not_lapse(self):
        events = [
            _ev("e", EventKind.TRIAL_STARTED, NOW - days(40), S.TRIALING),
            _ev("e", EventKind.TRIAL_CONVERTED, NOW - days(33), S.ACTIVE, seq=2),
            _ev("e", EventKind.CANCELED, NOW - days(3), S.CANCELED, seq=3),
        ]
        assert reduce_trial_conversion(events, NOW - days(30), NOW) == (0.0, 0, 0)


class TestLifetimeValue:
    def test_mean_total_charged_of_terminated(self):
        events = [
            _ev("a", EventKind.CREATED, NOW - days(90), S.ACTIVE, amount=1000),
            _ev("a", EventKind.RENEWED, NOW - days(60), S.ACTIVE, amount=1000, seq=2),
            _ev("a", EventKind.CANCELED, NOW - days(10), S.CANCELED, seq=3),
            _ev("b", EventKind.CREATED, NOW - days(40), S.ACTIVE, amount=500),
            _ev("b", EventKind.CANCELED, NOW - days(5), S.CANCELED, seq=2),
            _ev("c", EventKind.CREATED, NOW - days(40), S.ACTIVE, amount=9999),
        ]
        value, count = reduce_lifetime_value(events, NOW - days(30), NOW)
        assert count == 2
        assert value == pytest.approx(1250)

    def test_nothing_terminated(self):
        assert reduce_lifetime_value([], NOW - days(30), NOW) == (0.0, 0)

    def test_incomplete_expired_left_out(self):
        events = [
            _ev("a", EventKind.CREATED, NOW - days(90), S.ACTIVE, amount=1200),
            _ev("a", EventKind.CANCELED, NOW - days(10), S.CANCELED, seq=2),
            _ev("d", EventKind.CREATED, NOW - days(3), S.INCOMPLETE),
            _ev("d", EventKind.EXPIRED, NOW - days(2), S.INCOMPLETE_EXPIRED, seq=2),
        ]
        value, count = reduce_lifetime_value(events, NOW - days(30), NOW)
        assert count == 1
        assert value == pytest.approx(1200)


class TestMetricsDeterminism:
    def test_same_events_same_window_identical_output(self, catalog):
        events = [
            _ev("a", EventKind.CREATED, NOW - days(40), S.ACTIVE, amount=999),
            _ev("b", EventKind.TRIAL_STARTED, NOW - days(3), S.TRIALING),
        ]
        first = reduce_metrics(events, catalog, NOW - days(30), NOW, now=NOW)
        second = reduce_metrics(list(reversed(events)), catalog, NOW - days(30), NOW, now=NOW)
        assert first.model_dump_json() == second.model_dump_json()
        assert first.active_subscriptions == 1
        assert first.mrr == pytest.approx(999)


class TestSeries:
    def test_month_helpers(self):
        assert add_months(datetime(2025, 1, 31, tzinfo=timezone.utc), -1) == datetime(2024, 12, 1, tzinfo=timezone.utc)
        starts = month_starts(NOW, 3)
        assert [s.month for s in starts] == [1, 2, 3]
        assert starts[0].year == 2025

    def test_revenue_by_calendar_month(self):
        events = [
            _ev("a", EventKind.CREATED, datetime(2025, 1, 15, tzinfo=timezone.utc), S.ACTIVE, amount=999),
            _ev("a", EventKind.UPGRADED, datetime(2025, 2, 10, tzinfo=timezone.utc), S.ACTIVE, amount=2999, seq=2),
            _ev("b", EventKind.CREATED, datetime(2025, 3, 1, 10, tzinfo=timezone.utc), S.ACTIVE, amount=500),
            _ev("c", EventKind.CREATED, datetime(2024, 11, 1, tzinfo=timezone.utc), S.ACTIVE, amount=7777),
        ]
        series = reduce_revenue_series(events, NOW, months=3)
        assert series.labels == ["Jan 2025", "Feb 2025", "Mar 2025"]
        assert series.data == [999.0, 2999.0, 500.0]

    def test_growth_counts_active_at_month_end(self):
        events = [
            _ev("a", EventKind.CREATED, datetime(2025, 1, 10, tzinfo=timezone.utc), S.ACTIVE),
            _ev("a", EventKind.CANCELED, datetime(2025, 2, 20, tzinfo=timezone.utc), S.CANCELED, seq=2),
            _ev("b", EventKind.CREATED, datetime(2025, 2, 5, tzinfo=timezone.utc), S.ACTIVE),
            _ev("c", EventKind.CREATED, datetime(2025, 3, 1, 8, tzinfo=timezone.utc), S.ACTIVE),
        ]
        series = reduce_growth_series(events, NOW, months=3)
        assert series.data == [1.0, 1.0, 2.0]


class TestPlanDistribution:
    def test_every_plan_listed_with_percentages(self, catalog):
        events = [
            _ev("a", EventKind.CREATED, NOW - days(5), S.ACTIVE, plan="basic"),
            _ev("b", EventKind.CREATED, NOW - days(5), S.ACTIVE, plan="basic"),
            _ev("c", EventKind.CREATED, NOW, S.ACTIVE, plan="professional"),
            _ev("d", EventKind.TRIAL_STARTED, NOW - days(1), S.TRIALING, plan="enterprise"),
        ]
        dist = reduce_plan_distribution(events, catalog, NOW)
        shares = {p.plan_id: p for p in dist.plans}
        assert dist.total_active == 3
        assert len(dist.plans) == len(catalog)
        assert shares["basic"].percentage == 66.7
        assert shares["professional"].percentage == 33.3
        assert shares["free"].count == 0
        assert shares["enterprise"].percentage == 0.0

    def test_empty(self, catalog):
        dist = reduce_plan_distribution([], catalog, NOW)
        assert dist.total_active == 0
        assert all(p.percentage == 0.0 for p in dist.plans)
