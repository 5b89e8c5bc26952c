"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults (StaticPool for in-memory SQLite)
- Table definitions for subscriptions and the billing event log
"""
from typing import Optional
from contextlib import contextmanager
from contextvars import ContextVar
from sqlalchemy import (
    create_engine,
    MetaData,
    Table,
    Column,
    Integer,
    String,
    DateTime,
    Boolean,
    JSON,
    Index,
    UniqueConstraint,
)
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker
import os

from billing_engine.core.config import settings
from billing_engine.core.errors import PersistenceUnavailableError


# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

# Global engine and session factory
_engine = None
_SessionLocal = None

# Session shared by every get_db_session() inside transaction()
_ambient_session: ContextVar = ContextVar("db_session", default=None)


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL")
    if test_url:
        return test_url

    return os.getenv("DATABASE_URL") or settings.DATABASE_URL


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url.rstrip("/") == "sqlite:":
            kwargs["poolclass"] = StaticPool
        return kwargs
    return {
        "poolclass": QueuePool,
        "pool_size": POOL_SIZE,
        "max_overflow": MAX_OVERFLOW,
        "pool_timeout": POOL_TIMEOUT,
        "pool_recycle": POOL_RECYCLE,
    }


def init_engine(database_url: Optional[str] = None):
    """
    Initialize the SQLAlchemy engine.

    Args:
        database_url: Optional override for DATABASE_URL
    """
    global _engine, _SessionLocal

    url = database_url or get_database_url()

    if not url:
        raise ValueError(
            "DATABASE_URL is not configured. "
            "Set DATABASE_URL in environment or .env file."
        )

    _engine = create_engine(url, echo=False, **_engine_kwargs(url))

    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


def get_engine():
    """Get the current SQLAlchemy engine."""
    global _engine
    if _engine is None:
        init_engine()
    return _engine


def get_session_factory():
    """Get the session factory."""
    global _SessionLocal
    if _SessionLocal is None:
        init_engine()
    return _SessionLocal


def dispose_engine() -> None:
    """Drop the global engine (tests switch databases between modules)."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


@contextmanager
def get_db_session():
    """
    Context manager for database sessions.

    Usage:
        with get_db_session() as session:
            session.execute(...)

    Connection-level failures surface as PersistenceUnavailableError.
    """
    ambient = _ambient_session.get()
    if ambient is not None:
        # Commit and rollback belong to the enclosing transaction()
        yield ambient
        return

    SessionLocal = get_session_factory()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except OperationalError as e:
        session.rollback()
        raise PersistenceUnavailableError(f"Database unavailable: {e.orig}") from e
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def transaction():
    """
    Run several store calls in one session and one commit.

    Any exception inside the block rolls every write back. Nested calls
    join the outer transaction.
    """
    if _ambient_session.get() is not None:
        yield _ambient_session.get()
        return
    with get_db_session() as session:
        token = _ambient_session.set(session)
        try:
            yield session
        finally:
            _ambient_session.reset(token)


def in_transaction() -> bool:
    return _ambient_session.get() is not None


def create_all_tables():
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    engine = get_engine()
    metadata.create_all(bind=engine)


# Subscriptions (one row per subscription; archived rows are kept)
subscriptions = Table(
    'subscriptions',
    metadata,
    Column('subscription_id', String(64), primary_key=True),
    Column('user_id', String(100), nullable=False),
    Column('plan_id', String(100), nullable=False),
    Column('status', String(32), nullable=False),
    Column('quantity', Integer, nullable=False, server_default='1'),
    Column('current_period_start', DateTime(timezone=True), nullable=False),
    Column('current_period_end', DateTime(timezone=True), nullable=False),
    Column('trial_ends_at', DateTime(timezone=True), nullable=True),
    Column('cancel_at_period_end', Boolean, nullable=False, server_default='0'),
    Column('ends_at', DateTime(timezone=True), nullable=True),
    Column('pending_change', JSON, nullable=True),  # {target_plan_id, effective_at, requested_at}
    Column('grace_ends_at', DateTime(timezone=True), nullable=True),
    Column('failed_payment_count', Integer, nullable=False, server_default='0'),
    Column('next_payment_retry_at', DateTime(timezone=True), nullable=True),
    Column('awaiting_trial_conversion', Boolean, nullable=False, server_default='0'),
    Column('outstanding_amount', Integer, nullable=True),  # amount the dunning retries collect
    Column('payment_method_ref', String(200), nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    Column('archived_at', DateTime(timezone=True), nullable=True),
    Column('version', Integer, nullable=False, server_default='0'),
    Index('idx_subscriptions_user_id', 'user_id'),
    Index('idx_subscriptions_status', 'status'),
    Index('idx_subscriptions_period_end', 'current_period_end'),
)

# Billing event log (append-only)
billing_events = Table(
    'billing_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('event_id', String(64), nullable=False, unique=True),
    Column('subscription_id', String(64), nullable=False),
    Column('user_id', String(100), nullable=False),
    Column('sequence', Integer, nullable=False),
    Column('kind', String(50), nullable=False),
    Column('occurred_at', DateTime(timezone=True), nullable=False),
    Column('amount', Integer, nullable=True),
    Column('plan_id', String(100), nullable=False),
    Column('status', String(32), nullable=False),
    Column('quantity', Integer, nullable=False, server_default='1'),
    Column('dedup_key', String(255), nullable=False),
    Column('data', JSON, nullable=True),
    UniqueConstraint('subscription_id', 'dedup_key', name='uq_billing_events_dedup'),
    UniqueConstraint('subscription_id', 'sequence', name='uq_billing_events_sequence'),
    Index('idx_billing_events_occurred_at', 'occurred_at'),
    Index('idx_billing_events_kind', 'kind'),
)
