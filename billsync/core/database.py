"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support (in-memory SQLite)
- Table definitions for the local subscription store
"""
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, Numeric, Text, Index, UniqueConstraint
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func, text
import logging
import os

from billsync.core.config import settings

logger = logging.getLogger("billsync.database")

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
        # Single shared connection so in-memory databases survive across sessions
        _engine = create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=False,
        )
    else:
        _engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_timeout=POOL_TIMEOUT,
            pool_recycle=POOL_RECYCLE,
            pool_pre_ping=True,
            echo=False,  # Set to True for SQL query logging
        )

    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


def dispose_engine() -> None:
    """Drop the global engine (tests swap databases between cases)."""
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
def get_db_session():
    """
    Context manager for database sessions.

    Usage:
        with get_db_session() as session:
            session.execute(...)

    Commits on exit, rolls back on exception.
    """
    SessionLocal = get_session_factory()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables():
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    engine = get_engine()
    metadata.create_all(bind=engine)


def check_connection() -> bool:
    """
    Check if database connection is available.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database connection check failed: {e}")
        return False


# Canonical account table (identity fallback by email)
users = Table(
    'app_users',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('email', String(320), nullable=True),
    Column('display_name', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_users_email', 'email'),
)

# Local subscription store: one row per user, read by feature gating
subscriptions = Table(
    'subscriptions',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('user_email', String(320), nullable=True),
    Column('status', String(20), nullable=False, server_default='free'),  # free, trial, active, past_due, cancelled
    Column('plan_type', String(50), nullable=True),
    Column('provider_customer_id', String(100), nullable=True),
    Column('provider_subscription_id', String(100), nullable=True),
    Column('trial_ends_at', DateTime(timezone=True), nullable=True),
    Column('current_period_end', DateTime(timezone=True), nullable=True),
    Column('monthly_amount_due', Numeric(10, 2), nullable=True),  # always a monthly rate
    Column('has_discount', Boolean, nullable=False, server_default=text('false')),
    Column('discount_percent', Numeric(5, 2), nullable=True),
    Column('discount_ends_at', DateTime(timezone=True), nullable=True),
    Column('coupon_id', String(100), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_subscriptions_provider_customer_id', 'provider_customer_id'),
    Index('idx_subscriptions_provider_subscription_id', 'provider_subscription_id'),
    Index('idx_subscriptions_status', 'status'),
    Index('idx_subscriptions_user_email', 'user_email'),
)

# Denormalized profile record carrying the provider customer reference
user_profiles = Table(
    'user_profiles',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('provider_customer_id', String(100), nullable=True),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Provider subscriptions whose identity could not be resolved
orphaned_subscriptions = Table(
    'orphaned_subscriptions',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('provider_subscription_id', String(100), nullable=False),
    Column('provider_customer_id', String(100), nullable=True),
    Column('customer_email', String(320), nullable=True),
    Column('status', String(50), nullable=False),
    Column('resolved', Boolean, nullable=False, server_default=text('false')),
    Column('resolved_user_id', String(100), nullable=True),
    Column('first_seen_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('last_seen_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('provider_subscription_id', name='uq_orphaned_subscriptions_provider_id'),
    Index('idx_orphaned_subscriptions_resolved', 'resolved'),
)

# One row per reconciliation run
reconcile_runs = Table(
    'reconcile_runs',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('run_id', String(64), nullable=False, unique=True),
    Column('job_name', String(100), nullable=False),
    Column('trigger', String(20), nullable=False),  # scheduled | manual
    Column('started_at', DateTime(timezone=True), nullable=False),
    Column('finished_at', DateTime(timezone=True), nullable=True),
    Column('status', String(20), nullable=False),  # success | partial | failed
    Column('stats_json', Text, nullable=True),
    Index('idx_reconcile_runs_started_at', 'started_at'),
)
