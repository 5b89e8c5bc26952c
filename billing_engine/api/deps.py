"""Request-scoped access to the services wired in main.create_app."""
from fastapi import Request

from billing_engine.features.analytics.service import AnalyticsService
from billing_engine.features.plans.catalog import PlanCatalog
from billing_engine.features.subscriptions.service import SubscriptionService


def get_container(request: Request):
    return request.app.state.container


def get_subscription_service(request: Request) -> SubscriptionService:
    return request.app.state.container.subscriptions


def get_analytics_service(request: Request) -> AnalyticsService:
    return request.app.state.container.analytics


def get_catalog(request: Request) -> PlanCatalog:
    return request.app.state.container.catalog_source.current
