"""
billing_engine/features/subscriptions/repository.py

Subscription storage with optimistic concurrency.

save(sub, expected_version) is a compare-and-swap: it succeeds only when the
stored version still equals expected_version, and stores the subscription
with version + 1. A moved version raises ConcurrentModification so the
command service can reload and retry.
"""

import threading
from datetime import datetime
from contextlib import contextmanager
from typing import ContextManager, Dict, Iterator, List, Optional, Protocol, Tuple

from sqlalchemy import and_, insert, select, update
from sqlalchemy.exc import IntegrityError

from billing_engine.core.clock import ensure_utc
from billing_engine.core.database import get_db_session, subscriptions, transaction
from billing_engine.core.errors import ConcurrentModification
from billing_engine.models.subscription import PendingPlanChange, Subscription, SubscriptionStatus


class SubscriptionRepository(Protocol):
    def get(self, subscription_id: str) -> Optional[Subscription]:
        ...

    def find_open_for_user(self, user_id: str, now: datetime) -> Optional[Subscription]:
        ...

    def list_for_user(self, user_id: str) -> List[Subscription]:
        ...

    def list_active(self, limit: Optional[int] = None) -> List[Subscription]:
        ...

    def insert(self, subscription: Subscription) -> Subscription:
        ...

    def save(self, subscription: Subscription, expected_version: int) -> Subscription:
        ...

    def atomic(self) -> ContextManager:
        """Writes inside the block (here and in the event log) commit together."""
        ...

def _latest_first(items: List[Subscription]) -> List[Subscription]:
    return sorted(items, key=lambda s: (s.created_at, s.subscription_id), reverse=True)


class InMemorySubscriptionRepository:
    """Process-local repository (default when DATABASE_URL is unset)."""

    def __init__(self):
        self._lock = threading.Lock()
        self._items: Dict[str, Subscription] = {}
        self._journal = threading.local()

    def get(self, subscription_id: str) -> Optional[Subscription]:
        with self._lock:
            return self._items.get(subscription_id)

    def list_for_user(self, user_id: str) -> List[Subscription]:
        with self._lock:
            items = [s for s in self._items.values() if s.user_id == user_id]
        return _latest_first(items)

    def find_open_for_user(self, user_id: str, now: datetime) -> Optional[Subscription]:
        for sub in self.list_for_user(user_id):
            if sub.is_open(now):
                return sub
        return None

    def list_active(self, limit: Optional[int] = None) -> List[Subscription]:
        """Non-archived subscriptions, oldest first."""
        with self._lock:
            items = [s for s in self._items.values() if s.archived_at is None]
        items.sort(key=lambda s: (s.created_at, s.subscription_id))
        return items[:limit] if limit is not None else items

    def insert(self, subscription: Subscription) -> Subscription:
        with self._lock:
            if subscription.subscription_id in self._items:
                raise ConcurrentModification(f"Subscription {subscription.subscription_id} already exists")
            stored = subscription.model_copy(update={"version": 1})
            self._note(None, stored)
            self._items[stored.subscription_id] = stored
        return stored

    def save(self, subscription: Subscription, expected_version: int) -> Subscription:
        with self._lock:
            current = self._items.get(subscription.subscription_id)
            if current is None or current.version != expected_version:
                raise ConcurrentModification(
                    f"Subscription {subscription.subscription_id} changed since version {expected_version}"
                )
            stored = subscription.model_copy(update={"version": expected_version + 1})
            self._note(current, stored)
            self._items[stored.subscription_id] = stored
        return stored

    def _note(self, previous: Optional[Subscription], stored: Subscription) -> None:
        entries = getattr(self._journal, "entries", None)
        if entries is not None:
            entries.append((previous, stored))

    @contextmanager
    def atomic(self) -> Iterator[None]:
        """Undo this thread's writes in the block if it raises."""
        if getattr(self._journal, "entries", None) is not None:
            yield
            return
        entries: List[Tuple[Optional[Subscription], Subscription]] = []
        self._journal.entries = entries
        try:
            yield
        except Exception:
            with self._lock:
                for previous, stored in reversed(entries):
                    current = self._items.get(stored.subscription_id)
                    if current is not None and current.version != stored.version:
                        continue
                    if previous is None:
                        self._items.pop(stored.subscription_id, None)
                    else:
                        self._items[stored.subscription_id] = previous
            raise
        finally:
            self._journal.entries = None

    def clear(self) -> None:
        """FOR TESTING ONLY."""
        with self._lock:
            self._items.clear()


def _optional_utc(value: Optional[datetime]) -> Optional[datetime]:
    return ensure_utc(value) if value is not None else None


def _pending_to_json(pending: Optional[PendingPlanChange]) -> Optional[dict]:
    if pending is None:
        return None
    return pending.model_dump(mode="json")


def _pending_from_json(raw: Optional[dict]) -> Optional[PendingPlanChange]:
    if not raw:
        return None
    change = PendingPlanChange.model_validate(raw)
    return change.model_copy(update={
        "effective_at": ensure_utc(change.effective_at),
        "requested_at": ensure_utc(change.requested_at),
    })


def _row_to_subscription(row) -> Subscription:
    return Subscription(
        subscription_id=row.subscription_id,
        user_id=row.user_id,
        plan_id=row.plan_id,
        status=SubscriptionStatus(row.status),
        quantity=row.quantity,
        current_period_start=ensure_utc(row.current_period_start),
        current_period_end=ensure_utc(row.current_period_end),
        trial_ends_at=_optional_utc(row.trial_ends_at),
        cancel_at_period_end=bool(row.cancel_at_period_end),
        ends_at=_optional_utc(row.ends_at),
        pending_change=_pending_from_json(row.pending_change),
        grace_ends_at=_optional_utc(row.grace_ends_at),
        failed_payment_count=row.failed_payment_count,
        next_payment_retry_at=_optional_utc(row.next_payment_retry_at),
        awaiting_trial_conversion=bool(row.awaiting_trial_conversion),
        outstanding_amount=row.outstanding_amount,
        payment_method_ref=row.payment_method_ref,
        created_at=ensure_utc(row.created_at),
        updated_at=ensure_utc(row.updated_at),
        archived_at=_optional_utc(row.archived_at),
        version=row.version,
    )


def _subscription_values(sub: Subscription) -> dict:
    return {
        "user_id": sub.user_id,
        "plan_id": sub.plan_id,
        "status": sub.status.value,
        "quantity": sub.quantity,
        "current_period_start": sub.current_period_start,
        "current_period_end": sub.current_period_end,
        "trial_ends_at": sub.trial_ends_at,
        "cancel_at_period_end": sub.cancel_at_period_end,
        "ends_at": sub.ends_at,
        "pending_change": _pending_to_json(sub.pending_change),
        "grace_ends_at": sub.grace_ends_at,
        "failed_payment_count": sub.failed_payment_count,
        "next_payment_retry_at": sub.next_payment_retry_at,
        "awaiting_trial_conversion": sub.awaiting_trial_conversion,
        "outstanding_amount": sub.outstanding_amount,
        "payment_method_ref": sub.payment_method_ref,
        "created_at": sub.created_at,
        "updated_at": sub.updated_at,
        "archived_at": sub.archived_at,
    }


class SqlSubscriptionRepository:
    """Repository on the ``subscriptions`` table (SQLAlchemy Core)."""

    def atomic(self):
        return transaction()

    def get(self, subscription_id: str) -> Optional[Subscription]:
        with get_db_session() as session:
            row = session.execute(
                select(subscriptions).where(subscriptions.c.subscription_id == subscription_id)
            ).fetchone()
        return _row_to_subscription(row) if row is not None else None

    def list_for_user(self, user_id: str) -> List[Subscription]:
        with get_db_session() as session:
            rows = session.execute(
                select(subscriptions)
                .where(subscriptions.c.user_id == user_id)
                .order_by(subscriptions.c.created_at.desc(), subscriptions.c.subscription_id.desc())
            ).fetchall()
        return [_row_to_subscription(r) for r in rows]

    def find_open_for_user(self, user_id: str, now: datetime) -> Optional[Subscription]:
        for sub in self.list_for_user(user_id):
            if sub.is_open(now):
                return sub
        return None

    def list_active(self, limit: Optional[int] = None) -> List[Subscription]:
        query = (
            select(subscriptions)
            .where(subscriptions.c.archived_at.is_(None))
            .order_by(subscriptions.c.created_at.asc(), subscriptions.c.subscription_id.asc())
        )
        if limit is not None:
            query = query.limit(limit)
        with get_db_session() as session:
            rows = session.execute(query).fetchall()
        return [_row_to_subscription(r) for r in rows]

    def insert(self, subscription: Subscription) -> Subscription:
        try:
            with get_db_session() as session:
                session.execute(
                    insert(subscriptions).values(
                        subscription_id=subscription.subscription_id,
                        version=1,
                        **_subscription_values(subscription),
                    )
                )
        except IntegrityError as e:
            raise ConcurrentModification(
                f"Subscription {subscription.subscription_id} already exists"
            ) from e
        return subscription.model_copy(update={"version": 1})

    def save(self, subscription: Subscription, expected_version: int) -> Subscription:
        with get_db_session() as session:
            result = session.execute(
                update(subscriptions)
                .where(
                    and_(
                        subscriptions.c.subscription_id == subscription.subscription_id,
                        subscriptions.c.version == expected_version,
                    )
                )
                .values(version=expected_version + 1, **_subscription_values(subscription))
            )
            if result.rowcount != 1:
                raise ConcurrentModification(
                    f"Subscription {subscription.subscription_id} changed since version {expected_version}"
                )
        return subscription.model_copy(update={"version": expected_version + 1})
