"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults (PostgreSQL)
- SQLite support for local development and tests
- Billing table definitions
"""
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Text, Index, UniqueConstraint
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
import os

from teammove.core.config import settings


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
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
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
            echo=False,  # Set to True for SQL query logging
        )

    # Create session factory
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


@contextmanager
def get_db_session():
    """
    Context manager for database sessions.

    Usage:
        with get_db_session() as session:
            session.execute(...)
            session.commit()
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


def drop_all_tables():
    """
    Drop all tables defined in metadata.

    WARNING: This is destructive! Only use in tests or development.
    """
    engine = get_engine()
    metadata.drop_all(bind=engine)


# One subscription record per organization
organization_subscriptions = Table(
    'organization_subscriptions',
    metadata,
    Column('organization_id', String(100), primary_key=True),
    Column('plan_id', String(50), nullable=False),
    Column('status', String(20), nullable=False, index=True),  # active, pending, past_due, cancelled
    Column('external_customer_ref', String(100), nullable=True),
    Column('external_subscription_ref', String(100), nullable=True, index=True),
    Column('current_period_end', DateTime(timezone=True), nullable=True),
    Column('package_expiry', DateTime(timezone=True), nullable=True),
    Column('remaining_pack_units', Integer, nullable=True),
    Column('last_applied_event_id', String(200), nullable=True),
    Column('last_event_at', DateTime(timezone=True), nullable=True),
    Column('version', Integer, nullable=False, server_default='0'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    Index('idx_org_subscriptions_plan_status', 'plan_id', 'status'),
)

# Correlation records for checkout sessions opened with the gateway
checkout_sessions = Table(
    'checkout_sessions',
    metadata,
    Column('session_id', String(200), primary_key=True),
    Column('organization_id', String(100), nullable=False, index=True),
    Column('plan_id', String(50), nullable=False),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('expires_at', DateTime(timezone=True), nullable=True),
    Column('consumed_at', DateTime(timezone=True), nullable=True),
    Column('consumed_by', String(20), nullable=True),  # verify | webhook
)

billing_customers = Table(
    'billing_customers',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('organization_id', String(100), nullable=False, unique=True),
    Column('stripe_customer_id', String(100), nullable=False, unique=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Applied-event log: idempotency guard and reconciliation audit trail
billing_events = Table(
    'billing_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('organization_id', String(100), nullable=False),
    Column('idempotency_key', String(200), nullable=False),
    Column('event_type', String(100), nullable=False, index=True),
    Column('source', String(20), nullable=False),  # webhook | verify | cancel | expiry | free
    Column('outcome', String(20), nullable=False),  # applied | ignored
    Column('payload_hash', String(64), nullable=True),  # SHA256 of the raw webhook body
    Column('detail', Text, nullable=True),
    Column('applied_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('organization_id', 'idempotency_key', name='uq_billing_events_org_key'),
    Index('idx_billing_events_applied_at', 'applied_at'),
)
