"""
billing_engine/features/analytics/service.py
Analytics service: recomputes metrics from the billing event log on every call
"""

from datetime import datetime, timedelta
from typing import Optional

from billing_engine.core.clock import Clock, SystemClock, ensure_utc
from billing_engine.core.errors import ValidationError
from billing_engine.features.analytics.models import MetricsSnapshot, MonthlySeries, PlanDistribution
from billing_engine.features.analytics.reducers import (
    reduce_growth_series,
    reduce_metrics,
    reduce_plan_distribution,
    reduce_revenue_series,
)
from billing_engine.features.billing.event_log import EventLog
from billing_engine.features.plans.catalog import CatalogSource


DEFAULT_WINDOW = timedelta(days=30)
MAX_MONTHS = 36
_TICK = timedelta(microseconds=1)


class AnalyticsService:
    """Read side over the event log; holds no state of its own"""

    def __init__(self, event_log: EventLog, catalog_source: CatalogSource, clock: Optional[Clock] = None):
        self.event_log = event_log
        self.catalog_source = catalog_source
        self.clock = clock or SystemClock()

    def _window(self, start: Optional[datetime], end: Optional[datetime]):
        end = ensure_utc(end) if end else self.clock.now() + _TICK
        start = ensure_utc(start) if start else end - DEFAULT_WINDOW
        if start >= end:
            raise ValidationError("Window start must be before window end")
        return start, end

    @staticmethod
    def _months(months: int) -> int:
        if months < 1 or months > MAX_MONTHS:
            raise ValidationError(f"months must be between 1 and {MAX_MONTHS}")
        return months

    def metrics(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> MetricsSnapshot:
        """MRR, churn, trial conversion and lifetime value for [start, end)."""
        start, end = self._window(start, end)
        # Lifetime value needs full history; everything before ``end`` is read
        events = self.event_log.all_events(end=end)
        return reduce_metrics(events, self.catalog_source.current, start, end, now=self.clock.now())

    def revenue(self, months: int = 12) -> MonthlySeries:
        now = self.clock.now()
        return reduce_revenue_series(self.event_log.all_events(end=now + _TICK), now, self._months(months))

    def growth(self, months: int = 12) -> MonthlySeries:
        now = self.clock.now()
        return reduce_growth_series(self.event_log.all_events(end=now + _TICK), now, self._months(months))

    def plan_distribution(self) -> PlanDistribution:
        now = self.clock.now()
        return reduce_plan_distribution(
            self.event_log.all_events(end=now + _TICK),
            self.catalog_source.current,
            now,
        )
