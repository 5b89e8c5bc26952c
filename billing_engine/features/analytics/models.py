"""
billing_engine/features/analytics/models.py
Analytics read models: MRR, churn, trial conversion, lifetime value, dashboard series
"""

from datetime import datetime
from typing import List

from pydantic import BaseModel, ConfigDict, Field


class MetricsSnapshot(BaseModel):
    """Core business metrics for a window [window_start, window_end)"""

    model_config = ConfigDict(frozen=True)

    window_start: datetime
    window_end: datetime
    mrr: float = Field(ge=0, description="Monthly recurring revenue at window_end, minor units")
    active_subscriptions: int = Field(ge=0, description="Subscriptions active at window_end")
    churn_rate: float = Field(ge=0, description="Churned / active at window_start (0.0 when none were active)")
    churned: int = Field(ge=0)
    active_at_start: int = Field(ge=0)
    trial_conversion_rate: float = Field(ge=0, le=1, description="Converted / (converted + lapsed trials)")
    trials_converted: int = Field(ge=0)
    trials_lapsed: int = Field(ge=0)
    average_lifetime_value: float = Field(ge=0, description="Mean total charged over subscriptions terminated in window")
    terminated: int = Field(ge=0)
    computed_at: datetime


class MonthlyPoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    label: str = Field(description="'Jan 2025'")
    month_start: datetime
    value: float


class MonthlySeries(BaseModel):
    """Chart-ready series (labels/data pairs as the dashboards expect)"""

    model_config = ConfigDict(frozen=True)

    metric: str
    points: List[MonthlyPoint]

    @property
    def labels(self) -> List[str]:
        return [p.label for p in self.points]

    @property
    def data(self) -> List[float]:
        return [p.value for p in self.points]


class PlanShare(BaseModel):
    model_config = ConfigDict(frozen=True)

    plan_id: str
    name: str
    count: int = Field(ge=0)
    percentage: float = Field(ge=0, le=100, description="Share of active subscriptions, 1 decimal")


class PlanDistribution(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_active: int = Field(ge=0)
    plans: List[PlanShare]
    computed_at: datetime
