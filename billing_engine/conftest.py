# billing_engine/conftest.py
from datetime import datetime, timezone

import pytest

from billing_engine.core.clock import FixedClock
from billing_engine.core.config import EnginePolicy
from billing_engine.core.metrics import METRICS
from billing_engine.features.billing.event_log import InMemoryEventLog
from billing_engine.features.billing.provider import FakeGateway
from billing_engine.features.plans.catalog import CatalogSource, PlanCatalog
from billing_engine.features.subscriptions.repository import InMemorySubscriptionRepository
from billing_engine.features.subscriptions.service import SubscriptionService


SQLITE_MEMORY_URL = "sqlite:///:memory:"


@pytest.fixture
def fixed_now():
    """Fixed timestamp for deterministic testing."""
    return datetime(2025, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock(fixed_now):
    return FixedClock(fixed_now)


@pytest.fixture
def policy():
    """Defaults: 7-day grace, unpaid after grace, 24h dunning base."""
    return EnginePolicy()


@pytest.fixture
def catalog():
    return PlanCatalog.default()


@pytest.fixture
def catalog_source(catalog):
    return CatalogSource(catalog=catalog)


@pytest.fixture
def event_log():
    return InMemoryEventLog()


@pytest.fixture
def repo():
    return InMemorySubscriptionRepository()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def service(repo, event_log, catalog_source, gateway, clock, policy):
    return SubscriptionService(
        repo,
        event_log,
        catalog_source,
        gateway,
        clock=clock,
        policy=policy,
        conflict_retry_limit=3,
    )


@pytest.fixture
def sqlite_db():
    """
    Fresh in-memory SQLite database bound to the global engine.

    StaticPool keeps every session on the same connection, so the schema
    survives between sessions for the duration of a test.
    """
    from billing_engine.core.database import create_all_tables, dispose_engine, init_engine

    init_engine(SQLITE_MEMORY_URL)
    create_all_tables()
    yield
    dispose_engine()


@pytest.fixture(scope="function", autouse=True)
def reset_metrics():
    """Counters are process-global; start every test from zero."""
    METRICS.reset()
    yield
