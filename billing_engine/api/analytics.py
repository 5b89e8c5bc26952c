"""
Analytics API routes.

- GET /api/analytics/metrics?start=&end=   MRR, churn, trial conversion, LTV
- GET /api/analytics/revenue?months=12     Charged amounts per month
- GET /api/analytics/growth?months=12      Active subscriptions per month end
- GET /api/analytics/plans                 Active subscriptions per plan

All values are recomputed from the billing event log on each request.
"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query

from billing_engine.api.deps import get_analytics_service
from billing_engine.features.analytics.models import MetricsSnapshot, MonthlySeries, PlanDistribution
from billing_engine.features.analytics.service import AnalyticsService


router = APIRouter(prefix="/analytics", tags=["analytics"])


@router.get("/metrics", response_model=MetricsSnapshot)
def metrics(
    start: Optional[datetime] = Query(None, description="Window start (default: end - 30 days)"),
    end: Optional[datetime] = Query(None, description="Window end, exclusive (default: now)"),
    analytics: AnalyticsService = Depends(get_analytics_service),
):
    return analytics.metrics(start, end)


@router.get("/revenue", response_model=MonthlySeries)
def revenue(months: int = Query(12), analytics: AnalyticsService = Depends(get_analytics_service)):
    return analytics.revenue(months)


@router.get("/growth", response_model=MonthlySeries)
def growth(months: int = Query(12), analytics: AnalyticsService = Depends(get_analytics_service)):
    return analytics.growth(months)


@router.get("/plans", response_model=PlanDistribution)
def plan_distribution(analytics: AnalyticsService = Depends(get_analytics_service)):
    return analytics.plan_distribution()
