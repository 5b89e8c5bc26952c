"""
Tests for the pure subscription state machine.

Every transition takes ``now`` explicitly; nothing here touches a clock,
a store or a gateway.
"""
from datetime import timedelta

import pytest

from billing_engine.core.config import EnginePolicy
from billing_engine.core.errors import (
    AlreadyCanceled,
    AlreadySubscribed,
    InvalidQuantity,
    InvalidTransition,
    NotDowngradable,
    NotUpgradable,
    PlanUnavailable,
    ResumeWindowExpired,
)
from billing_engine.features.subscriptions import state_machine as sm
from billing_engine.models.billing import EventKind
from billing_engine.models.plan import Plan
from billing_engine.models.subscription import SubscriptionStatus


@pytest.fixture
def no_trial_plan():
    return Plan(plan_id="starter", name="Starter", price=1500)


def _active(catalog, plan_id, now, quantity=1):
    t = sm.subscribe(
        user_id="u1",
        plan=catalog.get(plan_id).model_copy(update={"trial_days": 0}),
        quantity=quantity,
        now=now,
        payment_succeeded=True,
    )
    assert t.ok
    return t.subscription


def _trialing(catalog, now, plan_id="basic"):
    t = sm.subscribe(user_id="u1", plan=catalog.get(plan_id), quantity=1, now=now)
    assert t.ok
    return t.subscription


class TestSubscribe:
    def test_trial_plan_starts_trialing(self, catalog, fixed_now):
        t = sm.subscribe(user_id="u1", plan=catalog.get("basic"), quantity=1, now=fixed_now)
        assert t.ok
        sub = t.subscription
        assert sub.status == SubscriptionStatus.TRIALING
        assert sub.trial_ends_at == fixed_now + timedelta(days=7)
        assert sub.current_period_end == sub.trial_ends_at
        assert t.event_kinds == (EventKind.CREATED, EventKind.TRIAL_STARTED)
        assert t.charged_amount is None

    def test_free_plan_active_without_charge(self, catalog, fixed_now):
        t = sm.subscribe(user_id="u1", plan=catalog.get("free"), quantity=1, now=fixed_now)
        assert t.subscription.status == SubscriptionStatus.ACTIVE
        assert t.charged_amount is None
        assert t.subscription.current_period_end == fixed_now + timedelta(days=30)

    def test_paid_plan_charged_synchronously(self, no_trial_plan, fixed_now):
        t = sm.subscribe(user_id="u1", plan=no_trial_plan, quantity=2, now=fixed_now, payment_succeeded=True)
        assert t.subscription.status == SubscriptionStatus.ACTIVE
        assert t.charged_amount == 3000
        assert t.events[0].amount == 3000

    def test_paid_plan_pending_payment_is_incomplete(self, no_trial_plan, fixed_now):
        t = sm.subscribe(user_id="u1", plan=no_trial_plan, quantity=1, now=fixed_now, payment_succeeded=None)
        assert t.subscription.status == SubscriptionStatus.INCOMPLETE
        assert t.event_kinds == (EventKind.CREATED,)

    def test_rejects_second_open_subscription(self, catalog, fixed_now):
        existing = _trialing(catalog, fixed_now)
        t = sm.subscribe(
            user_id="u1", plan=catalog.get("free"), quantity=1, now=fixed_now, open_subscription=existing
        )
        assert isinstance(t.error, AlreadySubscribed)
        assert t.subscription is existing

    def test_terminal_subscription_does_not_block(self, catalog, fixed_now):
        old = sm.cancel(_trialing(catalog, fixed_now), fixed_now, immediate=True).subscription
        t = sm.subscribe(user_id="u1", plan=catalog.get("free"), quantity=1, now=fixed_now, open_subscription=old)
        assert t.ok

    def test_retired_plan_rejected(self, fixed_now):
        retired = Plan(plan_id="legacy", name="Legacy", price=100, is_active=False)
        t = sm.subscribe(user_id="u1", plan=retired, quantity=1, now=fixed_now)
        assert isinstance(t.error, PlanUnavailable)

    @pytest.mark.parametrize("quantity", [0, 2])
    def test_quantity_bounds(self, catalog, fixed_now, quantity):
        # free plan caps at one seat
        t = sm.subscribe(user_id="u1", plan=catalog.get("free"), quantity=quantity, now=fixed_now)
        assert isinstance(t.error, InvalidQuantity)


class TestConfirmPayment:
    def test_success_activates(self, no_trial_plan, fixed_now):
        sub = sm.subscribe(user_id="u1", plan=no_trial_plan, quantity=1, now=fixed_now).subscription
        t = sm.confirm_payment(sub, no_trial_plan, True, fixed_now + timedelta(minutes=5))
        assert t.subscription.status == SubscriptionStatus.ACTIVE
        assert t.event_kinds == (EventKind.ACTIVATED,)
        assert t.events[0].amount == 1500

    def test_failure_expires(self, no_trial_plan, fixed_now):
        sub = sm.subscribe(user_id="u1", plan=no_trial_plan, quantity=1, now=fixed_now).subscription
        t = sm.confirm_payment(sub, no_trial_plan, False, fixed_now)
        assert t.subscription.status == SubscriptionStatus.INCOMPLETE_EXPIRED
        assert t.subscription.is_terminal(fixed_now)

    def test_only_from_incomplete(self, catalog, fixed_now):
        sub = _active(catalog, "basic", fixed_now)
        t = sm.confirm_payment(sub, catalog.get("basic"), True, fixed_now)
        assert isinstance(t.error, InvalidTransition)
        assert t.subscription is sub


class TestTrialConversion:
    def test_converts_at_trial_end(self, catalog, fixed_now, policy):
        sub = _trialing(catalog, fixed_now)
        trial_end = sub.trial_ends_at
        t = sm.convert_trial(sub, catalog.get("basic"), trial_end, True, policy)
        assert t.subscription.status == SubscriptionStatus.ACTIVE
        assert t.subscription.trial_ends_at is None
        assert t.subscription.current_period_start == trial_end
        assert t.subscription.current_period_end == trial_end + timedelta(days=30)
        assert t.event_kinds == (EventKind.TRIAL_CONVERTED,)
        assert t.charged_amount == 999

    def test_not_before_trial_end(self, catalog, fixed_now, policy):
        sub = _trialing(catalog, fixed_now)
        t = sm.convert_trial(sub, catalog.get("basic"), sub.trial_ends_at - timedelta(seconds=1), True, policy)
        assert isinstance(t.error, InvalidTransition)

    def test_failed_conversion_enters_grace(self, catalog, fixed_now, policy):
        sub = _trialing(catalog, fixed_now)
        now = sub.trial_ends_at
        t = sm.convert_trial(sub, catalog.get("basic"), now, False, policy)
        out = t.subscription
        assert out.status == SubscriptionStatus.PAST_DUE
        assert out.awaiting_trial_conversion
        assert out.grace_ends_at == now + timedelta(days=7)
        assert out.next_payment_retry_at == now + timedelta(hours=24)
        assert t.event_kinds == (EventKind.PAYMENT_FAILED,)

    def test_recovery_after_failed_conversion_counts_as_conversion(self, catalog, fixed_now, policy):
        sub = _trialing(catalog, fixed_now)
        past_due = sm.convert_trial(sub, catalog.get("basic"), sub.trial_ends_at, False, policy).subscription
        t = sm.record_payment_result(past_due, catalog.get("basic"), True, sub.trial_ends_at + timedelta(days=1), policy)
        assert t.subscription.status == SubscriptionStatus.ACTIVE
        assert t.event_kinds == (EventKind.TRIAL_CONVERTED,)
        assert not t.subscription.awaiting_trial_conversion


class TestRenewalAndDunning:
    def test_renewal_not_due(self, catalog, fixed_now, policy):
        sub = _active(catalog, "basic", fixed_now)
        t = sm.record_payment_result(sub, catalog.get("basic"), True, fixed_now + timedelta(days=1), policy)
        assert isinstance(t.error, InvalidTransition)

    def test_successful_renewal_advances_period(self, catalog, fixed_now, policy):
        sub = _active(catalog, "basic", fixed_now)
        due = sub.current_period_end
        t = sm.record_payment_result(sub, catalog.get("basic"), True, due, policy)
        assert t.subscription.current_period_start == due
        assert t.subscription.current_period_end == due + timedelta(days=30)
        assert t.event_kinds == (EventKind.RENEWED,)

    def test_failed_renewal_then_grace_exhaustion(self, catalog, fixed_now, policy):
        plan = catalog.get("basic")
        sub = _active(catalog, "basic", fixed_now)
        due = sub.current_period_end
        sub = sm.record_payment_result(sub, plan, False, due, policy).subscription
        assert sub.status == SubscriptionStatus.PAST_DUE
        assert sub.failed_payment_count == 1

        sub = sm.record_payment_result(sub, plan, False, due + timedelta(days=1), policy).subscription
        assert sub.status == SubscriptionStatus.PAST_DUE
        assert sub.failed_payment_count == 2
        assert sub.next_payment_retry_at == due + timedelta(days=3)

        t = sm.record_payment_result(sub, plan, False, sub.grace_ends_at, policy)
        assert t.subscription.status == SubscriptionStatus.UNPAID
        assert t.event_kinds == (EventKind.EXPIRED,)
        assert t.subscription.is_terminal(sub.grace_ends_at)

    def test_past_due_policy_canceled(self, catalog, fixed_now):
        policy = EnginePolicy(past_due_policy="canceled")
        plan = catalog.get("basic")
        sub = _active(catalog, "basic", fixed_now)
        sub = sm.record_payment_result(sub, plan, False, sub.current_period_end, policy).subscription
        t = sm.record_payment_result(sub, plan, False, sub.grace_ends_at, policy)
        assert t.subscription.status == SubscriptionStatus.CANCELED
        assert t.subscription.ends_at == sub.grace_ends_at

    def test_payment_recovered(self, catalog, fixed_now, policy):
        plan = catalog.get("basic")
        sub = _active(catalog, "basic", fixed_now)
        sub = sm.record_payment_result(sub, plan, False, sub.current_period_end, policy).subscription
        assert sub.outstanding_amount == 999
        t = sm.record_payment_result(sub, plan, True, sub.next_payment_retry_at, policy)
        assert t.subscription.status == SubscriptionStatus.ACTIVE
        assert t.subscription.grace_ends_at is None
        assert t.event_kinds == (EventKind.PAYMENT_RECOVERED,)
        assert t.charged_amount == 999
        assert t.subscription.outstanding_amount is None

    def test_backoff_doubles_and_caps(self):
        base = timedelta(hours=24)
        assert sm.retry_backoff(1, base) == base
        assert sm.retry_backoff(2, base) == base * 2
        assert sm.retry_backoff(5, base) == base * 4


class TestPlanChanges:
    def test_upgrade_charges_proration_and_keeps_period(self, catalog, fixed_now, policy):
        sub = _active(catalog, "basic", fixed_now)
        now = fixed_now + timedelta(days=10)
        t = sm.request_upgrade(sub, catalog, catalog.get("basic"), catalog.get("professional"), now, policy)
        assert t.ok
        assert t.subscription.plan_id == "professional"
        assert t.subscription.current_period_end == sub.current_period_end
        # ceil(2999*2/3) - ceil(999*2/3) = 2000 - 666
        assert t.charged_amount == 1334
        assert t.event_kinds == (EventKind.UPGRADED,)

    def test_upgrade_while_trialing_never_charges(self, catalog, fixed_now, policy):
        sub = _trialing(catalog, fixed_now)
        t = sm.request_upgrade(sub, catalog, catalog.get("basic"), catalog.get("professional"), fixed_now, policy)
        assert t.subscription.status == SubscriptionStatus.TRIALING
        assert t.charged_amount is None

    def test_upgrade_payment_failure_keeps_swap(self, catalog, fixed_now, policy):
        sub = _active(catalog, "basic", fixed_now)
        now = fixed_now + timedelta(days=10)
        t = sm.request_upgrade(
            sub, catalog, catalog.get("basic"), catalog.get("professional"), now, policy, payment_succeeded=False
        )
        assert t.ok
        assert t.subscription.plan_id == "professional"
        assert t.subscription.status == SubscriptionStatus.PAST_DUE
        assert t.event_kinds == (EventKind.UPGRADED, EventKind.PAYMENT_FAILED)

    def test_declined_upgrade_dunning_collects_the_proration(self, catalog, fixed_now, policy):
        plan = catalog.get("professional")
        sub = _active(catalog, "basic", fixed_now)
        now = fixed_now + timedelta(days=10)
        sub = sm.request_upgrade(
            sub, catalog, catalog.get("basic"), plan, now, policy, payment_succeeded=False
        ).subscription
        assert sub.outstanding_amount == 1334

        failed = sm.record_payment_result(sub, plan, False, sub.next_payment_retry_at, policy)
        assert failed.events[0].data["attempted_amount"] == 1334
        assert failed.subscription.outstanding_amount == 1334

        t = sm.record_payment_result(failed.subscription, plan, True, failed.subscription.next_payment_retry_at, policy)
        assert t.charged_amount == 1334
        assert t.events[0].amount == 1334
        assert t.subscription.outstanding_amount is None

    def test_upgrade_not_adjacent(self, catalog, fixed_now, policy):
        sub = _active(catalog, "professional", fixed_now)
        t = sm.request_upgrade(sub, catalog, catalog.get("professional"), catalog.get("basic"), fixed_now, policy)
        assert isinstance(t.error, NotUpgradable)

    def test_upgrade_clears_pending_downgrade(self, catalog, fixed_now, policy):
        sub = _active(catalog, "professional", fixed_now)
        sub = sm.request_downgrade(sub, catalog, catalog.get("professional"), catalog.get("basic"), fixed_now).subscription
        assert sub.pending_change is not None
        t = sm.request_upgrade(sub, catalog, catalog.get("professional"), catalog.get("enterprise"), fixed_now, policy)
        assert t.subscription.pending_change is None

    def test_downgrade_schedules_at_period_end(self, catalog, fixed_now):
        sub = _active(catalog, "professional", fixed_now)
        t = sm.request_downgrade(sub, catalog, catalog.get("professional"), catalog.get("basic"), fixed_now)
        assert t.ok
        assert t.events == ()
        assert t.subscription.plan_id == "professional"
        assert t.subscription.pending_change.target_plan_id == "basic"
        assert t.subscription.pending_change.effective_at == sub.current_period_end

    def test_downgrade_replaces_pending(self, catalog, fixed_now):
        sub = _active(catalog, "professional", fixed_now)
        sub = sm.request_downgrade(sub, catalog, catalog.get("professional"), catalog.get("basic"), fixed_now).subscription
        sub = sm.request_downgrade(sub, catalog, catalog.get("professional"), catalog.get("free"), fixed_now).subscription
        assert sub.pending_change.target_plan_id == "free"

    def test_downgrade_not_reachable(self, catalog, fixed_now):
        sub = _active(catalog, "basic", fixed_now)
        t = sm.request_downgrade(sub, catalog, catalog.get("basic"), catalog.get("enterprise"), fixed_now)
        assert isinstance(t.error, NotDowngradable)

    def test_apply_pending_change_once(self, catalog, fixed_now):
        sub = _active(catalog, "professional", fixed_now)
        sub = sm.request_downgrade(sub, catalog, catalog.get("professional"), catalog.get("basic"), fixed_now).subscription
        early = sm.apply_pending_change(sub, sub.current_period_end - timedelta(seconds=1))
        assert isinstance(early.error, InvalidTransition)

        applied = sm.apply_pending_change(sub, sub.current_period_end)
        assert applied.subscription.plan_id == "basic"
        assert applied.event_kinds == (EventKind.DOWNGRADED,)

        again = sm.apply_pending_change(applied.subscription, sub.current_period_end)
        assert isinstance(again.error, InvalidTransition)


class TestCancelAndResume:
    def test_period_end_cancel(self, catalog, fixed_now):
        sub = _active(catalog, "basic", fixed_now)
        t = sm.cancel(sub, fixed_now)
        assert t.subscription.status == SubscriptionStatus.ACTIVE
        assert t.subscription.cancel_at_period_end
        assert t.subscription.ends_at == sub.current_period_end
        assert t.event_kinds == (EventKind.CANCELLATION_SCHEDULED,)

    def test_double_period_end_cancel_rejected(self, catalog, fixed_now):
        sub = sm.cancel(_active(catalog, "basic", fixed_now), fixed_now).subscription
        assert isinstance(sm.cancel(sub, fixed_now).error, AlreadyCanceled)

    def test_immediate_cancel(self, catalog, fixed_now):
        sub = _active(catalog, "basic", fixed_now)
        t = sm.cancel(sub, fixed_now, immediate=True)
        assert t.subscription.status == SubscriptionStatus.CANCELED
        assert t.subscription.ends_at == fixed_now
        assert isinstance(sm.cancel(t.subscription, fixed_now).error, AlreadyCanceled)

    def test_cancel_past_due_is_immediate(self, catalog, fixed_now, policy):
        plan = catalog.get("basic")
        sub = _active(catalog, "basic", fixed_now)
        sub = sm.record_payment_result(sub, plan, False, sub.current_period_end, policy).subscription
        t = sm.cancel(sub, sub.current_period_start)
        assert t.subscription.status == SubscriptionStatus.CANCELED

    def test_finalize_at_ends_at(self, catalog, fixed_now):
        sub = sm.cancel(_active(catalog, "basic", fixed_now), fixed_now).subscription
        assert not sm.finalize_cancellation(sub, sub.ends_at - timedelta(seconds=1)).ok
        t = sm.finalize_cancellation(sub, sub.ends_at)
        assert t.subscription.status == SubscriptionStatus.CANCELED
        assert t.event_kinds == (EventKind.CANCELED,)

    def test_resume_one_second_before_end(self, catalog, fixed_now):
        sub = sm.cancel(_active(catalog, "basic", fixed_now), fixed_now).subscription
        t = sm.resume(sub, sub.ends_at - timedelta(seconds=1))
        assert t.ok
        assert not t.subscription.cancel_at_period_end
        assert t.subscription.ends_at is None
        assert t.event_kinds == (EventKind.RESUMED,)

    def test_resume_at_end_rejected(self, catalog, fixed_now):
        sub = sm.cancel(_active(catalog, "basic", fixed_now), fixed_now).subscription
        t = sm.resume(sub, sub.ends_at)
        assert isinstance(t.error, ResumeWindowExpired)
        assert t.subscription is sub

    def test_resume_trialing_stays_trialing(self, catalog, fixed_now):
        sub = sm.cancel(_trialing(catalog, fixed_now), fixed_now).subscription
        t = sm.resume(sub, fixed_now + timedelta(days=1))
        assert t.subscription.status == SubscriptionStatus.TRIALING

    def test_resume_without_cancellation(self, catalog, fixed_now):
        sub = _active(catalog, "basic", fixed_now)
        assert isinstance(sm.resume(sub, fixed_now).error, ResumeWindowExpired)


class TestArchive:
    def test_archive_after_retention(self, catalog, fixed_now, policy):
        sub = sm.cancel(_active(catalog, "basic", fixed_now), fixed_now, immediate=True).subscription
        assert not sm.archive(sub, fixed_now + timedelta(days=29), policy).ok
        t = sm.archive(sub, fixed_now + timedelta(days=30), policy)
        assert t.subscription.archived_at == fixed_now + timedelta(days=30)
        assert t.events == ()

    def test_open_subscription_not_archivable(self, catalog, fixed_now, policy):
        sub = _active(catalog, "basic", fixed_now)
        assert isinstance(sm.archive(sub, fixed_now + timedelta(days=400), policy).error, InvalidTransition)
