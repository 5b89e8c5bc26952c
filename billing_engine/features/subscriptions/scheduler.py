"""
Due-transition scheduler.

scan_due() walks non-archived subscriptions and issues whatever time-driven
commands are due, through the public SubscriptionService methods:

- apply_pending_change   (pending downgrade reached its effective date)
- finalize_cancellation  (period-end cancel reached ends_at)
- convert_trial          (trial ended)
- renew                  (active period ended)
- retry_payment          (dunning retry due)
- expire_incomplete      (first payment never settled)
- archive                (terminated long enough ago)

Every scheduler command carries a deterministic dedup key built from the
action and the instant it is due for, so overlapping or repeated scans
never record the same transition twice.
"""
import logging
from collections import Counter as TallyCounter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from billing_engine.core.errors import CatalogCorruptionError, PersistenceUnavailableError
from billing_engine.core.logging import log_context
from billing_engine.core.metrics import scheduler_dispatch_total, scheduler_last_scan_due
from billing_engine.features.billing.event_log import make_dedup_key
from billing_engine.features.subscriptions import state_machine as sm
from billing_engine.features.subscriptions.service import CommandResult, SubscriptionService
from billing_engine.models.subscription import Subscription, SubscriptionStatus

logger = logging.getLogger("billing_engine.scheduler")

# A subscription several periods behind catches up one step at a time
MAX_STEPS_PER_SUBSCRIPTION = 24


@dataclass
class ScanReport:
    scanned: int = 0
    dispatched: Dict[str, int] = field(default_factory=dict)
    committed: int = 0
    duplicates: int = 0
    rejected: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def total_dispatched(self) -> int:
        return sum(self.dispatched.values())

    def as_dict(self) -> dict:
        return {
            "scanned": self.scanned,
            "dispatched": dict(self.dispatched),
            "committed": self.committed,
            "duplicates": self.duplicates,
            "rejected": self.rejected,
            "errors": list(self.errors),
        }


def _iso(value: datetime) -> str:
    return value.isoformat()


def next_action(
    sub: Subscription,
    now: datetime,
    service: SubscriptionService,
) -> Optional[Tuple[str, Callable[[], CommandResult]]]:
    """The single most urgent due command for sub, or None."""
    sid = sub.subscription_id
    policy = service.policy

    if sub.archived_at is not None:
        return None

    if sub.is_terminal(now):
        anchor = sub.ends_at or sub.updated_at
        if now >= anchor + policy.archive_after:
            return "archive", lambda: service.archive(sid)
        return None

    if sm.incomplete_expired(sub, now, policy):
        key = make_dedup_key("expired", created_at=sub.created_at)
        return "expire_incomplete", lambda: service.expire_incomplete(sid, dedup_key=key)

    pending = sub.pending_change
    if pending is not None and now >= pending.effective_at and sub.status in sm.CHANGEABLE:
        key = make_dedup_key("downgraded", effective_at=pending.effective_at)
        return "apply_pending_change", lambda: service.apply_pending_change(sid, dedup_key=key)

    if sub.cancel_at_period_end and sub.ends_at is not None and now >= sub.ends_at:
        key = make_dedup_key("canceled", ends_at=sub.ends_at)
        return "finalize_cancellation", lambda: service.finalize_cancellation(sid, dedup_key=key)

    if sub.status == SubscriptionStatus.TRIALING and sub.trial_ends_at is not None and now >= sub.trial_ends_at:
        key = make_dedup_key("trial_converted", trial_ends_at=sub.trial_ends_at)
        return "convert_trial", lambda: service.convert_trial(sid, dedup_key=key)

    if sm.renewal_due(sub, now) and not sub.cancel_at_period_end:
        key = make_dedup_key("renewed", period_end=sub.current_period_end)
        return "renew", lambda: service.renew(sid, dedup_key=key)

    if sub.status == SubscriptionStatus.PAST_DUE:
        due_at = sub.next_payment_retry_at or sub.grace_ends_at
        if due_at is not None and now >= due_at:
            key = make_dedup_key(
                "payment_retry",
                attempt=sub.failed_payment_count + 1,
                period_end=sub.current_period_end,
            )
            return "retry_payment", lambda: service.retry_payment(sid, dedup_key=key)

    return None


def _drive(sub: Subscription, now: datetime, service: SubscriptionService, report: ScanReport, tally: TallyCounter) -> None:
    for _ in range(MAX_STEPS_PER_SUBSCRIPTION):
        action = next_action(sub, now, service)
        if action is None:
            return
        name, run = action
        tally[name] += 1
        scheduler_dispatch_total.inc(labels={"action": name})
        with log_context(subscription_id=sub.subscription_id, command=name):
            result = run()
        if result.duplicate:
            report.duplicates += 1
            return
        if not result.ok:
            report.rejected += 1
            return
        report.committed += 1
        if result.subscription is None:
            return
        sub = result.subscription


def scan_due(service: SubscriptionService, now: Optional[datetime] = None, limit: Optional[int] = None) -> ScanReport:
    """
    Dispatch every due transition once.

    Raises:
        PersistenceUnavailableError: store is down; nothing further can run
    """
    now = now or service.clock.now()
    report = ScanReport()
    tally: TallyCounter = TallyCounter()

    for sub in service.repo.list_active(limit=limit):
        report.scanned += 1
        try:
            _drive(sub, now, service, report, tally)
        except PersistenceUnavailableError:
            raise
        except CatalogCorruptionError as e:
            logger.error(
                "scheduler.catalog_corruption",
                extra={"subscription_id": sub.subscription_id, "error_code": e.code, "error": e.message},
            )
            report.errors.append(f"{sub.subscription_id}: {e.message}")

    report.dispatched = dict(tally)
    scheduler_last_scan_due.set(report.total_dispatched)
    logger.info("scheduler.scan_complete", extra=report.as_dict())
    return report
