import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

from fastapi import FastAPI, HTTPException

from billing_engine.core.clock import Clock, SystemClock
from billing_engine.core.config import EnginePolicy, Settings, settings, validate_config
from billing_engine.core.database import create_all_tables, get_database_url, init_engine
from billing_engine.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from billing_engine.core.logging import configure_logging
from billing_engine.core.middleware.metrics import MetricsMiddleware
from billing_engine.core.middleware.request_id import RequestIdMiddleware
from billing_engine.features.analytics.service import AnalyticsService
from billing_engine.features.billing.event_log import EventLog, InMemoryEventLog
from billing_engine.features.billing.event_log_sql import SqlEventLog
from billing_engine.features.billing.provider import FakeGateway, PaymentGateway
from billing_engine.features.billing.stripe_provider import StripeGateway
from billing_engine.features.plans.catalog import CatalogSource
from billing_engine.features.subscriptions.repository import (
    InMemorySubscriptionRepository,
    SqlSubscriptionRepository,
    SubscriptionRepository,
)
from billing_engine.features.subscriptions.service import SubscriptionService


logger = logging.getLogger("billing_engine")


@dataclass
class Container:
    """Everything the routes and workers share."""
    subscriptions: SubscriptionService
    analytics: AnalyticsService
    catalog_source: CatalogSource
    event_log: EventLog
    repo: SubscriptionRepository
    gateway: PaymentGateway
    clock: Clock
    persistent: bool
    webhook_secret: Optional[str] = None


def _select_gateway(cfg: Settings) -> PaymentGateway:
    if cfg.STRIPE_SECRET_KEY:
        return StripeGateway(secret_key=cfg.STRIPE_SECRET_KEY, webhook_secret=cfg.STRIPE_WEBHOOK_SECRET)
    logger.warning("gateway.fake_in_use", extra={"reason": "STRIPE_SECRET_KEY not set"})
    return FakeGateway()


def build_container(
    *,
    cfg: Optional[Settings] = None,
    clock: Optional[Clock] = None,
    gateway: Optional[PaymentGateway] = None,
    catalog_source: Optional[CatalogSource] = None,
    persistent: Optional[bool] = None,
) -> Container:
    """
    Wire stores, gateway and services.

    DATABASE_URL set -> SQL stores (tables created if missing);
    otherwise process-local in-memory stores.
    """
    cfg = cfg or settings
    clock = clock or SystemClock()
    use_sql = persistent if persistent is not None else bool(get_database_url())

    if use_sql:
        init_engine()
        create_all_tables()
        repo: SubscriptionRepository = SqlSubscriptionRepository()
        event_log: EventLog = SqlEventLog()
    else:
        repo = InMemorySubscriptionRepository()
        event_log = InMemoryEventLog()

    catalog_source = catalog_source or CatalogSource(path=cfg.PLAN_CATALOG_PATH)
    gateway = gateway or _select_gateway(cfg)
    service = SubscriptionService(
        repo,
        event_log,
        catalog_source,
        gateway,
        clock=clock,
        policy=EnginePolicy.from_settings(cfg),
        conflict_retry_limit=cfg.CONFLICT_RETRY_LIMIT,
    )
    return Container(
        subscriptions=service,
        analytics=AnalyticsService(event_log, catalog_source, clock),
        catalog_source=catalog_source,
        event_log=event_log,
        repo=repo,
        gateway=gateway,
        clock=clock,
        persistent=use_sql,
        webhook_secret=cfg.STRIPE_WEBHOOK_SECRET,
    )


def build_service() -> SubscriptionService:
    """Service wired from settings (used by workers)."""
    return build_container().subscriptions


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.getLogger("billing_engine").info("Starting billing engine...")
    app.state.startup_time = time.time()
    try:
        yield
    finally:
        logging.getLogger("billing_engine").info("Stopping billing engine...")


def create_app(container: Optional[Container] = None) -> FastAPI:
    from billing_engine.api import analytics, billing, health, metrics, plans, subscriptions

    configure_logging(settings.ENV)
    validate_config(strict=getattr(settings, "CONFIG_STRICT", False))

    app = FastAPI(title="Billing Engine", lifespan=lifespan)
    app.state.container = container or build_container()

    # Middlewares
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(MetricsMiddleware)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(subscriptions.router, prefix="/api", tags=["subscriptions"])
    app.include_router(billing.router, prefix="/api", tags=["billing"])
    app.include_router(analytics.router, prefix="/api", tags=["analytics"])
    app.include_router(plans.router, prefix="/api", tags=["plans"])
    app.include_router(health.root_router, tags=["health"])
    app.include_router(metrics.router, tags=["metrics"])
    return app
