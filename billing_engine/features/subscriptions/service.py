"""
Subscription command service.

Coordinates:
- Repository loads and compare-and-swap commits
- Pure state-machine transitions
- Gateway charges (outside the lock-held transition step)
- Billing event appends with dedup keys

Command flow:
1. Under the subscription lock: load, evaluate the transition assuming the
   charge succeeds, and read the amount it would charge.
2. Charge the gateway with an idempotency key of (subscription, version,
   command), without holding the lock.
3. Under the lock again: reload, re-evaluate with the real outcome, then
   commit the CAS save on ``version`` and the event appends atomically.
A moved version restarts the command, up to CONFLICT_RETRY_LIMIT times;
the charge key stays that of the first attempt. A captured charge the
committed transition does not record is refunded.

Rejections come back as CommandResult.error; nothing is raised for an
illegal command.
"""
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from billing_engine.core.clock import Clock, SystemClock
from billing_engine.core.config import EnginePolicy, settings
from billing_engine.core.errors import (
    AppError,
    ConcurrentModification,
    EventOrderError,
    InvalidTransition,
    NotFoundError,
    PaymentFailed,
)
from billing_engine.core.logging import log_event
from billing_engine.core.metrics import gateway_charges_total, subscription_transitions_total
from billing_engine.features.billing.event_log import EventLog, make_dedup_key
from billing_engine.features.billing.provider import ChargeResult, PaymentGateway, PaymentGatewayError
from billing_engine.features.plans.catalog import CatalogSource, PlanCatalog
from billing_engine.features.subscriptions import state_machine as sm
from billing_engine.features.subscriptions.projections import SubscriptionDetails, project_details
from billing_engine.features.subscriptions.repository import SubscriptionRepository
from billing_engine.models.billing import BillingEvent
from billing_engine.models.subscription import Subscription, SubscriptionStatus, new_subscription_id


# (subscription, catalog, now, payment_succeeded) -> Transition
Step = Callable[[Subscription, PlanCatalog, datetime, bool], sm.Transition]


class KeyedLocks:
    """Registry of re-entrant locks keyed by subscription or user id."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}

    def _lock_for(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, *keys: str) -> Iterator[None]:
        # Sorted acquisition order avoids lock-order inversion
        locks = [self._lock_for(k) for k in sorted(set(keys))]
        for lock in locks:
            lock.acquire()
        try:
            yield
        finally:
            for lock in reversed(locks):
                lock.release()


@dataclass(frozen=True)
class CommandResult:
    subscription: Optional[Subscription]
    events: Tuple[BillingEvent, ...] = ()
    error: Optional[AppError] = None
    duplicate: bool = False
    charged_amount: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> Subscription:
        """Return the subscription, raising the carried error (HTTP boundary)."""
        if self.error is not None:
            raise self.error
        return self.subscription


class SubscriptionService:
    def __init__(
        self,
        repo: SubscriptionRepository,
        event_log: EventLog,
        catalog_source: CatalogSource,
        gateway: PaymentGateway,
        clock: Optional[Clock] = None,
        policy: Optional[EnginePolicy] = None,
        conflict_retry_limit: Optional[int] = None,
    ):
        self.repo = repo
        self.event_log = event_log
        self.catalog_source = catalog_source
        self.gateway = gateway
        self.clock = clock or SystemClock()
        self.policy = policy or EnginePolicy.from_settings()
        self.conflict_retry_limit = conflict_retry_limit or settings.CONFLICT_RETRY_LIMIT
        self.locks = KeyedLocks()

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _rejected(self, command: str, subscription: Optional[Subscription], error: AppError) -> CommandResult:
        subscription_transitions_total.inc(labels={"command": command, "result": "rejected"})
        log_event(
            "warning",
            "subscription.command_rejected",
            subscription_id=subscription.subscription_id if subscription else None,
            user_id=subscription.user_id if subscription else None,
            event_type=command,
            error_code=error.code,
            extra={"reason": error.message},
        )
        return CommandResult(subscription=subscription, error=error)

    def _charge(self, subscription: Subscription, amount: int, command: str, key: str) -> Optional[ChargeResult]:
        """Charge the gateway; None when the outcome is unknown."""
        try:
            result = self.gateway.charge(
                amount,
                subscription.payment_method_ref,
                idempotency_key=key,
                description=f"{command} {subscription.plan_id}",
            )
        except PaymentGatewayError as e:
            gateway_charges_total.inc(labels={"result": "error"})
            log_event(
                "warning",
                "gateway.charge_error",
                subscription_id=subscription.subscription_id,
                user_id=subscription.user_id,
                event_type=command,
                error_code="gateway_error",
                extra={"amount": amount, "error": str(e)},
            )
            return None

        gateway_charges_total.inc(labels={"result": "succeeded" if result.succeeded else "declined"})
        if not result.succeeded:
            log_event(
                "warning",
                "gateway.charge_declined",
                subscription_id=subscription.subscription_id,
                user_id=subscription.user_id,
                event_type=command,
                error_code=result.failure_code,
                extra={"amount": amount, "failure_message": result.failure_message},
            )
        return result

    def _release_unapplied(self, command: str, subscription_id: str, settled: Dict[int, ChargeResult], result: "CommandResult") -> None:
        """
        Refund captured charges the committed transition does not account for.

        A charge is unapplied when the command was rejected after it went
        through, or when a retry settled on a different amount. A refund the
        gateway cannot confirm is logged as orphaned for manual follow-up.
        """
        applied = result.charged_amount if result.ok else None
        for amount, charged in settled.items():
            if not charged.succeeded or amount == applied:
                continue
            refund: Optional[ChargeResult] = None
            error: Optional[str] = None
            try:
                refund = self.gateway.refund(
                    charged.reference,
                    amount,
                    idempotency_key=f"{charged.reference}:refund",
                )
            except PaymentGatewayError as e:
                error = str(e)

            if refund is not None and refund.succeeded:
                gateway_charges_total.inc(labels={"result": "refunded"})
                log_event(
                    "warning",
                    "subscription.charge_refunded",
                    subscription_id=subscription_id,
                    event_type=command,
                    error_code=result.error.code if result.error else None,
                    extra={"amount": amount, "reference": charged.reference},
                )
                continue

            gateway_charges_total.inc(labels={"result": "orphaned"})
            log_event(
                "error",
                "subscription.charge_orphaned",
                subscription_id=subscription_id,
                event_type=command,
                error_code="refund_failed",
                extra={
                    "amount": amount,
                    "reference": charged.reference,
                    "error": error or (refund.failure_code if refund else None),
                },
            )

    def _record(self, subscription: Subscription, transition: sm.Transition, now: datetime, dedup_base: str) -> Tuple[BillingEvent, ...]:
        stored: List[BillingEvent] = []
        for index, draft in enumerate(transition.events):
            key = dedup_base if index == 0 else f"{dedup_base}:{draft.kind.value}"
            event = BillingEvent(
                subscription_id=subscription.subscription_id,
                user_id=subscription.user_id,
                kind=draft.kind,
                timestamp=now,
                amount=draft.amount,
                plan_id=subscription.plan_id,
                status=subscription.status,
                quantity=subscription.quantity,
                dedup_key=key,
                data=draft.data,
            )
            if self.event_log.append(event, key):
                stored.append(event)
        return tuple(stored)

    def _committed(self, command: str, subscription: Subscription, events: Tuple[BillingEvent, ...], charged: Optional[int]) -> CommandResult:
        subscription_transitions_total.inc(labels={"command": command, "result": "committed"})
        log_event(
            "info",
            "subscription.transition",
            subscription_id=subscription.subscription_id,
            user_id=subscription.user_id,
            event_type=command,
            extra={
                "status": subscription.status.value,
                "plan_id": subscription.plan_id,
                "events": [e.kind.value for e in events],
                "charged": charged,
            },
        )
        return CommandResult(subscription=subscription, events=events, charged_amount=charged)

    def _execute(
        self,
        command: str,
        subscription_id: str,
        step: Step,
        dedup_key: Optional[str] = None,
        charge: bool = True,
    ) -> CommandResult:
        """Run step with the load/charge/reload/commit cycle.

        charge=False is for outcomes the gateway already reported (webhooks).
        Charges made along the way are refunded unless the committed
        transition records them.
        """
        settled: Dict[int, ChargeResult] = {}
        result = self._attempt(command, subscription_id, step, dedup_key, charge, settled)
        if settled:
            self._release_unapplied(command, subscription_id, settled, result)
        return result

    def _attempt(
        self,
        command: str,
        subscription_id: str,
        step: Step,
        dedup_key: Optional[str],
        charge: bool,
        settled: Dict[int, ChargeResult],
    ) -> CommandResult:
        charge_key: Optional[str] = None
        for _try in range(self.conflict_retry_limit):
            with self.locks.hold(subscription_id):
                loaded = self.repo.get(subscription_id)
                if loaded is None:
                    return self._rejected(command, None, NotFoundError(f"Subscription {subscription_id} not found"))
                if dedup_key is not None and self.event_log.has_key(subscription_id, dedup_key):
                    subscription_transitions_total.inc(labels={"command": command, "result": "duplicate"})
                    return CommandResult(subscription=loaded, duplicate=True)
                catalog = self.catalog_source.current
                # The commit re-runs step at the same instant on the same version,
                # so its charge matches this one
                now = self.clock.now()
                expected = step(loaded, catalog, now, True)
            if not expected.ok:
                return self._rejected(command, loaded, expected.error)

            paid = True
            amount = expected.charged_amount if charge else None
            if amount:
                if amount not in settled:
                    if charge_key is None:
                        key = charge_key = f"{subscription_id}:v{loaded.version}:{command}"
                    else:
                        key = f"{charge_key}:{amount}"
                    outcome = self._charge(loaded, amount, command, key)
                    if outcome is None:
                        return self._rejected(command, loaded, PaymentFailed("Payment gateway unavailable; try again later"))
                    settled[amount] = outcome
                paid = settled[amount].succeeded

            with self.locks.hold(subscription_id):
                fresh = self.repo.get(subscription_id)
                if fresh is None or fresh.version != loaded.version:
                    subscription_transitions_total.inc(labels={"command": command, "result": "conflict"})
                    continue
                transition = step(fresh, catalog, now, paid)
                if not transition.ok:
                    return self._rejected(command, fresh, transition.error)
                try:
                    # State and events commit together or not at all
                    with self.repo.atomic():
                        saved = self.repo.save(transition.subscription, expected_version=fresh.version)
                        base = dedup_key or make_dedup_key(command, version=saved.version)
                        events = self._record(saved, transition, now, base)
                except ConcurrentModification:
                    subscription_transitions_total.inc(labels={"command": command, "result": "conflict"})
                    continue
                except EventOrderError as e:
                    return self._rejected(command, fresh, e)
            return self._committed(command, saved, events, transition.charged_amount)

        return self._rejected(command, self.repo.get(subscription_id), ConcurrentModification(
            f"Subscription {subscription_id} kept changing; gave up after {self.conflict_retry_limit} attempts"
        ))

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def subscribe(
        self,
        user_id: str,
        plan_id: str,
        quantity: int = 1,
        payment_method_ref: Optional[str] = None,
    ) -> CommandResult:
        """Create a subscription; at most one open subscription per user."""
        command = "subscribe"
        catalog = self.catalog_source.current
        plan = catalog.find(plan_id)
        if plan is None:
            return self._rejected(command, None, NotFoundError(f"Plan {plan_id} not found"))
        subscription_id = new_subscription_id()

        def evaluate(paid: Optional[bool]) -> sm.Transition:
            now = self.clock.now()
            return sm.subscribe(
                user_id=user_id,
                plan=plan,
                quantity=quantity,
                now=now,
                open_subscription=self.repo.find_open_for_user(user_id, now),
                payment_succeeded=paid,
                subscription_id=subscription_id,
                payment_method_ref=payment_method_ref,
            )

        user_key = f"user:{user_id}"
        with self.locks.hold(user_key):
            expected = evaluate(True)
        if not expected.ok:
            return self._rejected(command, expected.subscription, expected.error)

        settled: Dict[int, ChargeResult] = {}
        paid: Optional[bool] = True
        if expected.charged_amount:
            outcome = self._charge(expected.subscription, expected.charged_amount, command, f"{subscription_id}:v0:{command}")
            paid = outcome.succeeded if outcome is not None else None
            if outcome is not None:
                settled[expected.charged_amount] = outcome

        result = self._create(command, user_key, evaluate, paid)
        if settled:
            self._release_unapplied(command, subscription_id, settled, result)
        return result

    def _create(self, command: str, user_key: str, evaluate: Callable[[Optional[bool]], sm.Transition], paid: Optional[bool]) -> CommandResult:
        with self.locks.hold(user_key):
            transition = evaluate(paid)
            if not transition.ok:
                return self._rejected(command, transition.subscription, transition.error)
            now = transition.subscription.created_at
            with self.repo.atomic():
                saved = self.repo.insert(transition.subscription)
                events = self._record(saved, transition, now, make_dedup_key(command, version=saved.version))
        return self._committed(command, saved, events, transition.charged_amount)

    def confirm_payment(self, subscription_id: str, success: bool, dedup_key: Optional[str] = None) -> CommandResult:
        """First-payment outcome for an incomplete subscription (webhook)."""
        def step(sub, catalog, now, _paid):
            return sm.confirm_payment(sub, catalog.resolve_held(sub.plan_id), success, now)
        return self._execute("confirm_payment", subscription_id, step, dedup_key, charge=False)

    def record_payment_result(self, subscription_id: str, success: bool, dedup_key: Optional[str] = None) -> CommandResult:
        """Renewal/dunning outcome reported by the gateway (webhook)."""
        def step(sub, catalog, now, _paid):
            return sm.record_payment_result(sub, catalog.resolve_held(sub.plan_id), success, now, self.policy)
        return self._execute("record_payment_result", subscription_id, step, dedup_key, charge=False)

    def convert_trial(self, subscription_id: str, dedup_key: Optional[str] = None) -> CommandResult:
        def step(sub, catalog, now, paid):
            return sm.convert_trial(sub, catalog.resolve_held(sub.plan_id), now, paid, self.policy)
        return self._execute("convert_trial", subscription_id, step, dedup_key)

    def renew(self, subscription_id: str, dedup_key: Optional[str] = None) -> CommandResult:
        """Charge the renewal of an active subscription whose period ended."""
        def step(sub, catalog, now, paid):
            if sub.status != SubscriptionStatus.ACTIVE:
                return sm.Transition(subscription=sub, error=InvalidTransition(
                    f"renew requires active, subscription is {sub.status.value}"
                ))
            return sm.record_payment_result(sub, catalog.resolve_held(sub.plan_id), paid, now, self.policy)
        return self._execute("renew", subscription_id, step, dedup_key)

    def retry_payment(self, subscription_id: str, dedup_key: Optional[str] = None) -> CommandResult:
        """Dunning retry for a past_due subscription once its retry is due."""
        def step(sub, catalog, now, paid):
            if sub.status != SubscriptionStatus.PAST_DUE:
                return sm.Transition(subscription=sub, error=InvalidTransition(
                    f"retry_payment requires past_due, subscription is {sub.status.value}"
                ))
            due_at = sub.next_payment_retry_at or sub.grace_ends_at
            if due_at is not None and now < due_at:
                return sm.Transition(subscription=sub, error=InvalidTransition("Payment retry is not due yet"))
            return sm.record_payment_result(sub, catalog.resolve_held(sub.plan_id), paid, now, self.policy)
        return self._execute("retry_payment", subscription_id, step, dedup_key)

    def request_upgrade(self, subscription_id: str, target_plan_id: str) -> CommandResult:
        def step(sub, catalog, now, paid):
            target = catalog.find(target_plan_id)
            if target is None:
                return sm.Transition(subscription=sub, error=NotFoundError(f"Plan {target_plan_id} not found"))
            current = catalog.resolve_held(sub.plan_id)
            return sm.request_upgrade(sub, catalog, current, target, now, self.policy, paid)
        return self._execute("upgrade", subscription_id, step)

    def request_downgrade(self, subscription_id: str, target_plan_id: str) -> CommandResult:
        def step(sub, catalog, now, _paid):
            target = catalog.find(target_plan_id)
            if target is None:
                return sm.Transition(subscription=sub, error=NotFoundError(f"Plan {target_plan_id} not found"))
            current = catalog.resolve_held(sub.plan_id)
            return sm.request_downgrade(sub, catalog, current, target, now)
        return self._execute("downgrade", subscription_id, step)

    def apply_pending_change(self, subscription_id: str, dedup_key: Optional[str] = None) -> CommandResult:
        def step(sub, catalog, now, _paid):
            if sub.pending_change is not None:
                # Retired targets stay resolvable; unknown ones are corruption
                catalog.resolve_held(sub.pending_change.target_plan_id)
            return sm.apply_pending_change(sub, now)
        return self._execute("apply_pending_change", subscription_id, step, dedup_key)

    def cancel(self, subscription_id: str, immediate: bool = False) -> CommandResult:
        def step(sub, _catalog, now, _paid):
            return sm.cancel(sub, now, immediate=immediate)
        return self._execute("cancel", subscription_id, step)

    def resume(self, subscription_id: str) -> CommandResult:
        def step(sub, _catalog, now, _paid):
            return sm.resume(sub, now)
        return self._execute("resume", subscription_id, step)

    def finalize_cancellation(self, subscription_id: str, dedup_key: Optional[str] = None) -> CommandResult:
        def step(sub, _catalog, now, _paid):
            return sm.finalize_cancellation(sub, now)
        return self._execute("finalize_cancellation", subscription_id, step, dedup_key)

    def expire_incomplete(self, subscription_id: str, dedup_key: Optional[str] = None) -> CommandResult:
        """Give up on an incomplete subscription whose first payment never settled."""
        def step(sub, catalog, now, _paid):
            if not sm.incomplete_expired(sub, now, self.policy):
                return sm.Transition(subscription=sub, error=InvalidTransition("Incomplete subscription has not expired"))
            return sm.confirm_payment(sub, catalog.resolve_held(sub.plan_id), False, now)
        return self._execute("expire_incomplete", subscription_id, step, dedup_key)

    def archive(self, subscription_id: str) -> CommandResult:
        def step(sub, _catalog, now, _paid):
            return sm.archive(sub, now, self.policy)
        return self._execute("archive", subscription_id, step)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, subscription_id: str) -> Optional[Subscription]:
        return self.repo.get(subscription_id)

    def current_for_user(self, user_id: str) -> Optional[Subscription]:
        """Open subscription, else the most recent one."""
        now = self.clock.now()
        subs = self.repo.list_for_user(user_id)
        for sub in subs:
            if sub.is_open(now):
                return sub
        return subs[0] if subs else None

    def details(self, user_id: str) -> SubscriptionDetails:
        sub = self.current_for_user(user_id)
        plan = self.catalog_source.current.resolve_held(sub.plan_id) if sub else None
        pending = None
        if sub is not None and sub.pending_change is not None:
            pending = self.catalog_source.current.resolve_held(sub.pending_change.target_plan_id)
        return project_details(sub, plan, self.clock.now(), pending_plan=pending)

    def events(self, subscription_id: str, since: Optional[datetime] = None) -> List[BillingEvent]:
        return self.event_log.events_for(subscription_id, since).to_list()
