"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support (SQLite in-memory or file)
- Table definitions for the billing core
"""
import logging
from typing import Callable, ContextManager, Optional
from contextlib import contextmanager
from sqlalchemy import (
    create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, JSON, Text,
    Numeric, Index, ForeignKey, UniqueConstraint, text,
)
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.sql import func
import os

from backoffice.core.config import settings

logger = logging.getLogger("backoffice")

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Zero-argument callable yielding a committed-on-exit session
SessionScope = Callable[[], ContextManager[Session]]

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

# Statuses that occupy a user's single subscription slot
OPEN_SUBSCRIPTION_STATUSES = ("pending_payment", "trialing", "active", "past_due")
_OPEN_STATUS_SQL = "status IN ({})".format(", ".join(f"'{s}'" for s in OPEN_SUBSCRIPTION_STATUSES))

# Global engine and session factory
_engine = None
_SessionLocal = None


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL")
    if test_url:
        return test_url

    return settings.DATABASE_URL


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

    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url in ("sqlite://", "sqlite+pysqlite://"):
            # One shared connection, otherwise every checkout sees an empty database
            kwargs["poolclass"] = StaticPool
        _engine = create_engine(url, echo=False, **kwargs)
    else:
        _engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_timeout=POOL_TIMEOUT,
            pool_recycle=POOL_RECYCLE,
            echo=False,  # Set to True for SQL query logging
        )

    # Create session factory
    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


def dispose_engine() -> None:
    """Drop the global engine so the next call re-initializes it."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


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


@contextmanager
def get_db_session(session_factory: Optional[Callable[[], Session]] = None):
    """
    Context manager for database sessions.

    Commits on clean exit, rolls back on any exception. Sessions come from
    session_factory when given, otherwise from the global engine.

    Usage:
        with get_db_session() as session:
            session.execute(...)
    """
    SessionLocal = session_factory or get_session_factory()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def session_scope_factory(session_factory: Optional[Callable[[], Session]] = None) -> SessionScope:
    """Bind get_db_session to a session factory, for injection into services."""
    return lambda: get_db_session(session_factory)


def create_all_tables():
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    engine = get_engine()
    metadata.create_all(bind=engine)


# Users table (read by the customer directory only)
users = Table(
    'app_users',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('display_name', Text, nullable=True),
    Column('email', String(320), nullable=True),
    Column('phone', String(50), nullable=True),
    Column('status', String(50), nullable=False, server_default='active'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_users_created_at', 'created_at'),
)

# Plan catalog
plans = Table(
    'plans',
    metadata,
    Column('plan_id', String(50), primary_key=True),
    Column('name', String(200), nullable=False),
    Column('description', Text, nullable=True),
    Column('price_monthly', Numeric(12, 2), nullable=False),
    Column('price_annual', Numeric(12, 2), nullable=False),
    Column('currency', String(3), nullable=False),
    Column('trial_days', Integer, nullable=False, server_default='0'),
    Column('is_active', Boolean, nullable=False, server_default='true'),
    Column('sort_order', Integer, nullable=False, server_default='0'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    Index('idx_plans_active_sort', 'is_active', 'sort_order'),
)

# Feature entitlements per plan
plan_features = Table(
    'plan_features',
    metadata,
    Column('plan_id', String(50), ForeignKey('plans.plan_id'), nullable=False),
    Column('feature_key', String(100), nullable=False),
    Column('enabled', Boolean, nullable=False),
    Column('limit', Integer, nullable=True),  # NULL = unbounded
    Column('description', Text, nullable=True),
    UniqueConstraint('plan_id', 'feature_key', name='uq_plan_features_plan_key'),
    Index('idx_plan_features_plan_id', 'plan_id'),
)

# Subscriptions
subscriptions = Table(
    'subscriptions',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('user_id', String(100), nullable=False),
    Column('plan_id', String(50), ForeignKey('plans.plan_id'), nullable=False),
    Column('billing_period', String(20), nullable=False),
    Column('status', String(30), nullable=False),
    Column('unit_price', Numeric(12, 2), nullable=False),
    Column('currency', String(3), nullable=False),
    Column('current_period_start', DateTime(timezone=True), nullable=True),
    Column('current_period_end', DateTime(timezone=True), nullable=True),
    Column('trial_end', DateTime(timezone=True), nullable=True),
    Column('grace_until', DateTime(timezone=True), nullable=True),
    Column('cancel_at_period_end', Boolean, nullable=False, server_default='false'),
    Column('cancelled_at', DateTime(timezone=True), nullable=True),
    Column('cancellation_reason', Text, nullable=True),
    Column('pending_billing_period', String(20), nullable=True),
    Column('transaction_id', String(36), nullable=True),
    Column('version', Integer, nullable=False, server_default='1'),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    Index('idx_subscriptions_user_id', 'user_id'),
    Index('idx_subscriptions_status_end', 'status', 'current_period_end'),
    # At most one open subscription per user, enforced by the store
    Index(
        'uq_subscriptions_user_open',
        'user_id',
        unique=True,
        sqlite_where=text(_OPEN_STATUS_SQL),
        postgresql_where=text(_OPEN_STATUS_SQL),
    ),
)

# Transaction ledger (append-only)
transactions = Table(
    'transactions',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('user_id', String(100), nullable=False),
    Column('subscription_id', String(36), nullable=True),
    Column('type', String(30), nullable=False),
    Column('status', String(20), nullable=False),
    Column('amount', Numeric(12, 2), nullable=False),
    Column('currency', String(3), nullable=False),
    Column('provider', String(30), nullable=False),
    Column('reference', String(120), nullable=False),
    Column('provider_transaction_id', String(120), nullable=True),
    Column('supersedes_id', String(36), nullable=True),
    Column('failure_reason', Text, nullable=True),
    Column('metadata', JSON, nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('resolved_at', DateTime(timezone=True), nullable=True),
    UniqueConstraint('provider_transaction_id', name='uq_transactions_provider_txn_id'),
    Index('idx_transactions_reference', 'reference'),
    Index('idx_transactions_user_created', 'user_id', 'created_at'),
    Index('idx_transactions_subscription', 'subscription_id'),
    Index('idx_transactions_status_created', 'status', 'created_at'),
)

# One row per transaction whose effects reached a subscription
transaction_applications = Table(
    'transaction_applications',
    metadata,
    Column('transaction_id', String(36), primary_key=True),
    Column('subscription_id', String(36), nullable=True),
    Column('outcome', String(20), nullable=False),  # applied | skipped
    Column('applied_at', DateTime(timezone=True), nullable=False),
)

# Webhook deliveries
webhook_events = Table(
    'webhook_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('provider', String(30), nullable=False),
    Column('event_type', String(100), nullable=True),
    Column('provider_event_id', String(120), nullable=True),
    Column('provider_transaction_id', String(120), nullable=True),
    Column('reference', String(120), nullable=True),
    Column('payload_hash', String(64), nullable=False),  # SHA256 of raw body
    Column('outcome', String(20), nullable=True),
    Column('error', Text, nullable=True),
    Column('received_at', DateTime(timezone=True), nullable=False),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Index('idx_webhook_events_provider_txn', 'provider_transaction_id'),
    Index('idx_webhook_events_received_at', 'received_at'),
)

# Usage event log used to rebuild metering counters
usage_events = Table(
    'usage_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False),
    Column('feature_key', String(100), nullable=False),
    Column('quantity', Integer, nullable=False, server_default='1'),
    Column('occurred_at', DateTime(timezone=True), nullable=False),
    Index('idx_usage_events_user_key_occurred', 'user_id', 'feature_key', 'occurred_at'),
)

# Sweep job runs
job_runs = Table(
    'job_runs',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('job_name', String(100), nullable=False),
    Column('started_at', DateTime(timezone=True), nullable=False),
    Column('finished_at', DateTime(timezone=True), nullable=True),
    Column('status', String(20), nullable=False),
    Column('stats_json', JSON, nullable=True),
    Column('error', Text, nullable=True),
    Index('idx_job_runs_name_started', 'job_name', 'started_at'),
)
