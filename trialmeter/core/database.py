"""
Engine, session scope and schema for trialmeter.

Tables are SQLAlchemy Core objects on one MetaData. PostgreSQL gets a pooled
engine; SQLite (tests, local runs) gets a shared-file engine whose
transactions start with BEGIN IMMEDIATE so writers queue instead of racing.
"""
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import create_engine, event, false, MetaData, Table, Column, Integer, BigInteger, String, DateTime, Boolean, Text, Index, ForeignKey, UniqueConstraint, text
from sqlalchemy.pool import QueuePool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
import logging
import os

from trialmeter.core.config import settings


logger = logging.getLogger("trialmeter")

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
    """TEST_DATABASE_URL wins over DATABASE_URL when set."""
    return os.getenv("TEST_DATABASE_URL") or settings.DATABASE_URL


def init_engine(database_url: Optional[str] = None):
    """(Re)create the engine and session factory; returns the engine."""
    global _engine, _SessionLocal

    url = database_url or get_database_url()

    if not url:
        raise ValueError("DATABASE_URL is not set; trialmeter needs a database to meter usage")

    if _engine is not None:
        _engine.dispose()

    if url.startswith("sqlite"):
        # Worker threads share the file; writers are serialized by SQLite itself
        _engine = create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": 30},
            echo=False,
        )
        _enable_sqlite_savepoints(_engine)
    else:
        _engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_timeout=POOL_TIMEOUT,
            pool_recycle=POOL_RECYCLE,
            echo=False,
        )

    _SessionLocal = sessionmaker(bind=_engine, autoflush=False)

    return _engine


def _enable_sqlite_savepoints(engine) -> None:
    """
    Let SQLAlchemy own BEGIN on pysqlite so SAVEPOINT nests correctly.

    Without this the driver defers BEGIN and a RELEASE of the first
    savepoint commits the whole transaction.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


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
    """Close pooled connections and forget the engine (tests, shutdown)."""
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

    Commits on clean exit, rolls back on any exception.
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
        logger.warning(f"Database connection check failed: {e}")
        return False


# Tenants: lifecycle state owned by the metering core
tenants = Table(
    'tenants',
    metadata,
    Column('tenant_id', String(100), primary_key=True),
    Column('trial_variant_key', String(50), nullable=True),
    Column('subscription_status', String(20), nullable=False, index=True),  # trialing, blocked, active, canceled
    Column('trial_period_end', DateTime(timezone=True), nullable=False),
    Column('billing_account_ref', String(100), nullable=True),
    Column('billing_subscription_ref', String(100), nullable=True, unique=True),
    Column('blocked_at', DateTime(timezone=True), nullable=True),
    Column('block_reason', String(30), nullable=True),  # calls, duration, trial_expired
    Column('converted_at', DateTime(timezone=True), nullable=True),
    Column('canceled_at', DateTime(timezone=True), nullable=True),
    Column('trial_settled_at', DateTime(timezone=True), nullable=True),  # period-end settlement done
    Column('usage_frozen', Boolean, nullable=False, server_default=false()),
    Column('frozen_reason', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    Index('idx_tenants_status_trial_end', 'subscription_status', 'trial_period_end'),
)

# Usage periods: one open accounting window per tenant
usage_periods = Table(
    'usage_periods',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('tenant_id', String(100), ForeignKey('tenants.tenant_id'), nullable=False, index=True),
    Column('status', String(20), nullable=False, server_default='open'),  # open, archived
    Column('period_start', DateTime(timezone=True), nullable=False),
    Column('period_end', DateTime(timezone=True), nullable=False),
    Column('calls_consumed', Integer, nullable=False, server_default='0'),
    Column('duration_consumed_seconds', BigInteger, nullable=False, server_default='0'),
    Column('archived_at', DateTime(timezone=True), nullable=True),
    Column('archive_reason', String(50), nullable=True),
    Column('event_ids_pruned_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    # At most one open period per tenant
    Index(
        'uq_usage_periods_open_tenant',
        'tenant_id',
        unique=True,
        postgresql_where=text("status = 'open'"),
        sqlite_where=text("status = 'open'"),
    ),
    Index('idx_usage_periods_status_archived', 'status', 'archived_at'),
)

# Applied event ids (idempotency index for usage periods)
usage_period_events = Table(
    'usage_period_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('period_id', Integer, ForeignKey('usage_periods.id'), nullable=False, index=True),
    Column('tenant_id', String(100), nullable=False),
    Column('event_id', String(255), nullable=False),
    Column('duration_seconds', Integer, nullable=False),
    Column('has_prior_usage', Boolean, nullable=False, server_default=false()),
    Column('occurred_at', DateTime(timezone=True), nullable=True),
    Column('applied_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    # Duplicate deliveries collide here, across periods of the same tenant
    UniqueConstraint('tenant_id', 'event_id', name='uq_usage_period_events_tenant_event'),
)

# Trial state transitions (audit trail)
trial_transitions = Table(
    'trial_transitions',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('tenant_id', String(100), ForeignKey('tenants.tenant_id'), nullable=False, index=True),
    Column('from_status', String(20), nullable=False),
    Column('to_status', String(20), nullable=False),
    Column('trigger', String(30), nullable=False),
    Column('reason', String(100), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False, index=True),
)

# Billing events (webhook idempotency)
billing_events = Table(
    'billing_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('stripe_event_id', String(100), nullable=False),
    Column('event_type', String(100), nullable=False, index=True),
    Column('tenant_id', String(100), nullable=True, index=True),
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('payload_hash', String(64), nullable=False),  # SHA256 hash for deduplication
    Column('processed', Boolean, nullable=False, server_default=false(), index=True),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Column('error', Text, nullable=True),
    UniqueConstraint('stripe_event_id', name='uq_billing_events_stripe_id'),
    Index('idx_billing_events_received_at', 'received_at'),
)
