"""
billing_engine/features/billing/event_log.py

Append-only billing event log.

- append() is idempotent on (subscription_id, dedup_key) so webhook
  retries and repeated scheduler scans never double-record.
- Per subscription, events are forward-ordered by (timestamp, sequence);
  an event older than the latest one is rejected.
- events_for() returns a lazy cursor that can be iterated again and
  picks up events appended in between.
"""

import threading
from datetime import datetime
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Protocol, Set, Tuple

from billing_engine.core.clock import ensure_utc
from billing_engine.core.errors import EventOrderError
from billing_engine.core.metrics import billing_events_appended_total
from billing_engine.models.billing import BillingEvent, EventKind


class EventCursor:
    """
    Restartable, forward-ordered view over a subscription's events.

    Each iteration calls the factory again, so nothing is materialized up
    front and a second pass re-reads the store.
    """

    def __init__(self, factory: Callable[[], Iterator[BillingEvent]]):
        self._factory = factory

    def __iter__(self) -> Iterator[BillingEvent]:
        return self._factory()

    def to_list(self) -> List[BillingEvent]:
        return list(self)


class EventLog(Protocol):
    def append(self, event: BillingEvent, dedup_key: str) -> bool:
        ...

    def has_key(self, subscription_id: str, dedup_key: str) -> bool:
        ...

    def events_for(self, subscription_id: str, since: Optional[datetime] = None) -> EventCursor:
        ...

    def all_events(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        kinds: Optional[Iterable[EventKind]] = None,
    ) -> List[BillingEvent]:
        ...


def make_dedup_key(*parts, **attrs) -> str:
    """
    Build a deterministic dedup key.

    Examples:
        make_dedup_key("webhook", "evt_123")        -> "webhook:evt_123"
        make_dedup_key("renewed", period_end=ts)    -> "renewed:period_end=<iso>"
    """
    out = [str(p) for p in parts]
    for key in sorted(attrs):
        value = attrs[key]
        if isinstance(value, datetime):
            value = ensure_utc(value).isoformat()
        out.append(f"{key}={value}")
    return ":".join(out)


class InMemoryEventLog:
    """Process-local event log (default when DATABASE_URL is unset)."""

    def __init__(self):
        self._lock = threading.Lock()
        self._events: List[BillingEvent] = []
        self._by_subscription: Dict[str, List[BillingEvent]] = {}
        self._keys: Set[Tuple[str, str]] = set()

    def append(self, event: BillingEvent, dedup_key: str) -> bool:
        """
        Append event with idempotency guarantee.

        Returns:
            True if stored, False if (subscription_id, dedup_key) was already seen

        Raises:
            EventOrderError: event predates the subscription's latest event
        """
        key = (event.subscription_id, dedup_key)
        with self._lock:
            if key in self._keys:
                return False
            history = self._by_subscription.setdefault(event.subscription_id, [])
            if history and event.timestamp < history[-1].timestamp:
                raise EventOrderError(
                    f"Event at {event.timestamp.isoformat()} predates latest event "
                    f"{history[-1].timestamp.isoformat()} for {event.subscription_id}"
                )
            stored = event.model_copy(update={"sequence": len(history) + 1, "dedup_key": dedup_key})
            history.append(stored)
            self._events.append(stored)
            self._keys.add(key)
        billing_events_appended_total.inc(labels={"kind": event.kind.value})
        return True

    def has_key(self, subscription_id: str, dedup_key: str) -> bool:
        with self._lock:
            return (subscription_id, dedup_key) in self._keys

    def events_for(self, subscription_id: str, since: Optional[datetime] = None) -> EventCursor:
        def iterate() -> Iterator[BillingEvent]:
            index = 0
            while True:
                with self._lock:
                    history = self._by_subscription.get(subscription_id, [])
                    if index >= len(history):
                        return
                    event = history[index]
                index += 1
                if since is None or event.timestamp >= since:
                    yield event

        return EventCursor(iterate)

    def all_events(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        kinds: Optional[Iterable[EventKind]] = None,
    ) -> List[BillingEvent]:
        """Events in [start, end), ordered by (timestamp, subscription, sequence)."""
        wanted = set(kinds) if kinds is not None else None
        with self._lock:
            snapshot = list(self._events)
        filtered = [
            e for e in snapshot
            if (start is None or e.timestamp >= start)
            and (end is None or e.timestamp < end)
            and (wanted is None or e.kind in wanted)
        ]
        return sorted(filtered, key=lambda e: (e.timestamp, e.subscription_id, e.sequence))

    def count(self) -> int:
        with self._lock:
            return len(self._events)

    def clear(self) -> None:
        """FOR TESTING ONLY."""
        with self._lock:
            self._events.clear()
            self._by_subscription.clear()
            self._keys.clear()
