"""
billing_engine/features/billing/event_log_sql.py

SQL-backed billing event log.

Maintains the same contract as InMemoryEventLog:
- Append-only, idempotent on (subscription_id, dedup_key) via a unique constraint
- Per-subscription sequence numbers, forward ordering
- Lazy cursors using keyset pagination on sequence
"""

from datetime import datetime
from typing import Iterable, Iterator, List, Optional

from sqlalchemy import and_, func, insert, select
from sqlalchemy.exc import IntegrityError

from billing_engine.core.clock import ensure_utc
from billing_engine.core.database import billing_events, get_db_session, in_transaction
from billing_engine.core.errors import ConcurrentModification, EventOrderError
from billing_engine.core.metrics import billing_events_appended_total
from billing_engine.features.billing.event_log import EventCursor
from billing_engine.models.billing import BillingEvent, EventKind
from billing_engine.models.subscription import SubscriptionStatus


PAGE_SIZE = 200


def _row_to_event(row) -> BillingEvent:
    return BillingEvent(
        event_id=row.event_id,
        subscription_id=row.subscription_id,
        user_id=row.user_id,
        kind=EventKind(row.kind),
        timestamp=ensure_utc(row.occurred_at),
        amount=row.amount,
        plan_id=row.plan_id,
        status=SubscriptionStatus(row.status),
        quantity=row.quantity,
        sequence=row.sequence,
        dedup_key=row.dedup_key,
        data=row.data or {},
    )


class SqlEventLog:
    """Billing event log stored in the ``billing_events`` table."""

    def __init__(self, page_size: int = PAGE_SIZE):
        self.page_size = page_size

    def append(self, event: BillingEvent, dedup_key: str) -> bool:
        """
        Append event; False if (subscription_id, dedup_key) already exists.

        A sequence collision with a different dedup key means another writer
        appended concurrently; that surfaces as ConcurrentModification.
        """
        try:
            with get_db_session() as session:
                if self._key_exists(session, event.subscription_id, dedup_key):
                    return False
                last = session.execute(
                    select(billing_events.c.sequence, billing_events.c.occurred_at)
                    .where(billing_events.c.subscription_id == event.subscription_id)
                    .order_by(billing_events.c.sequence.desc())
                    .limit(1)
                ).fetchone()
                if last is not None and event.timestamp < ensure_utc(last.occurred_at):
                    raise EventOrderError(
                        f"Event at {event.timestamp.isoformat()} predates latest event for {event.subscription_id}"
                    )
                session.execute(
                    insert(billing_events).values(
                        event_id=event.event_id,
                        subscription_id=event.subscription_id,
                        user_id=event.user_id,
                        sequence=(last.sequence if last is not None else 0) + 1,
                        kind=event.kind.value,
                        occurred_at=event.timestamp,
                        amount=event.amount,
                        plan_id=event.plan_id,
                        status=event.status.value,
                        quantity=event.quantity,
                        dedup_key=dedup_key,
                        data=event.data,
                    )
                )
        except IntegrityError:
            if in_transaction():
                # The failed statement poisoned the shared session; the caller retries
                raise ConcurrentModification(f"Concurrent append to event log for {event.subscription_id}")
            if self.has_key(event.subscription_id, dedup_key):
                return False
            raise ConcurrentModification(
                f"Concurrent append to event log for {event.subscription_id}"
            )
        billing_events_appended_total.inc(labels={"kind": event.kind.value})
        return True

    @staticmethod
    def _key_exists(session, subscription_id: str, dedup_key: str) -> bool:
        return session.execute(
            select(billing_events.c.id).where(
                and_(
                    billing_events.c.subscription_id == subscription_id,
                    billing_events.c.dedup_key == dedup_key,
                )
            )
        ).first() is not None

    def has_key(self, subscription_id: str, dedup_key: str) -> bool:
        with get_db_session() as session:
            return self._key_exists(session, subscription_id, dedup_key)

    def events_for(self, subscription_id: str, since: Optional[datetime] = None) -> EventCursor:
        page_size = self.page_size

        def iterate() -> Iterator[BillingEvent]:
            after = 0
            while True:
                query = (
                    select(billing_events)
                    .where(billing_events.c.subscription_id == subscription_id)
                    .where(billing_events.c.sequence > after)
                    .order_by(billing_events.c.sequence.asc())
                    .limit(page_size)
                )
                if since is not None:
                    query = query.where(billing_events.c.occurred_at >= since)
                with get_db_session() as session:
                    rows = session.execute(query).fetchall()
                if not rows:
                    return
                for row in rows:
                    yield _row_to_event(row)
                after = rows[-1].sequence
                if len(rows) < page_size:
                    return

        return EventCursor(iterate)

    def all_events(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        kinds: Optional[Iterable[EventKind]] = None,
    ) -> List[BillingEvent]:
        query = select(billing_events)
        if start is not None:
            query = query.where(billing_events.c.occurred_at >= start)
        if end is not None:
            query = query.where(billing_events.c.occurred_at < end)
        if kinds is not None:
            query = query.where(billing_events.c.kind.in_([k.value for k in kinds]))
        query = query.order_by(
            billing_events.c.occurred_at.asc(),
            billing_events.c.subscription_id.asc(),
            billing_events.c.sequence.asc(),
        )
        with get_db_session() as session:
            rows = session.execute(query).fetchall()
        return [_row_to_event(r) for r in rows]

    def count(self) -> int:
        with get_db_session() as session:
            return session.execute(select(func.count()).select_from(billing_events)).scalar() or 0
