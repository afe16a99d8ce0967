"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults (PostgreSQL)
- SQLite support for development and tests (foreign keys enforced)
- Table definitions for the coaching subscription ledger
"""
import logging
import os
from contextlib import contextmanager
from typing import Optional

from sqlalchemy import (
    create_engine,
    event,
    inspect,
    text,
    MetaData,
    Table,
    Column,
    Integer,
    String,
    Date,
    DateTime,
    Boolean,
    Text,
    Index,
    ForeignKey,
    CheckConstraint,
)
from sqlalchemy.pool import QueuePool
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.sql import func

from coachmeter.core.config import settings

logger = logging.getLogger("coachmeter.database")

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

# Seconds a SQLite writer waits on a locked database before failing
SQLITE_BUSY_TIMEOUT = 30

# Global engine and session factory
_engine = None
_SessionLocal = None


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL") or settings.TEST_DATABASE_URL
    if test_url:
        return test_url

    return settings.DATABASE_URL


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


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

    if _engine is not None:
        _engine.dispose()

    if url.startswith("sqlite"):
        _engine = create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT},
            echo=False,
        )
        event.listen(_engine, "connect", _enable_sqlite_foreign_keys)
    else:
        # Create engine with connection pooling
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


def _apply_statement_timeout(session: Session, timeout_ms: Optional[int]) -> None:
    ms = settings.STATEMENT_TIMEOUT_MS if timeout_ms is None else timeout_ms
    if not ms or ms <= 0:
        return
    if session.get_bind().dialect.name != "postgresql":
        return
    # SET LOCAL does not accept bound parameters; ms is coerced to int
    session.execute(text(f"SET LOCAL statement_timeout = {int(ms)}"))


@contextmanager
def get_db_session(timeout_ms: Optional[int] = None):
    """
    Context manager for database sessions.

    One transaction per block: commits on success, rolls back on any error.
    On PostgreSQL, a positive timeout (argument or STATEMENT_TIMEOUT_MS)
    aborts the transaction when exceeded.

    Usage:
        with get_db_session() as session:
            session.execute(...)
    """
    SessionLocal = get_session_factory()
    session = SessionLocal()
    try:
        _apply_statement_timeout(session, timeout_ms)
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


def clear_all_tables():
    """Delete every row, children tables first. Only use in tests."""
    engine = get_engine()
    with engine.begin() as conn:
        for table in reversed(metadata.sorted_tables):
            conn.execute(table.delete())


def missing_tables(required: Optional[list] = None) -> list:
    """Return required table names not present in the connected database."""
    names = required or [table.name for table in metadata.sorted_tables]
    present = set(inspect(get_engine()).get_table_names())
    return [name for name in names if name not in present]


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


# Beneficiary directory (child identity lookup)
children = Table(
    'children',
    metadata,
    Column('id', String(100), primary_key=True),
    Column('name', Text, nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_children_name', 'name'),
)

# Billing templates
coaching_plans = Table(
    'coaching_plans',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('name', String(200), nullable=False),
    Column('billing_type', String(20), nullable=False),  # 'fixed' | 'recurring'
    Column('default_sessions_per_period', Integer, nullable=True),
    Column('default_duration_weeks', Integer, nullable=True),
    Column('notes', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    CheckConstraint("billing_type IN ('fixed', 'recurring')", name='ck_coaching_plans_billing_type'),
    Index('idx_coaching_plans_name', 'name'),
)

# One row per child-to-coach billing arrangement
coaching_subscriptions = Table(
    'coaching_subscriptions',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('child_id', String(100), ForeignKey('children.id'), nullable=False),
    # RESTRICT: a plan cannot be deleted while referenced
    Column('plan_id', String(36), ForeignKey('coaching_plans.id', ondelete='RESTRICT'), nullable=False),
    Column('start_date', Date, nullable=False),
    Column('end_date', Date, nullable=True),
    Column('status', String(20), nullable=False, server_default='active'),
    Column('sessions_per_period', Integer, nullable=False),
    Column('period_type', String(10), nullable=False),
    Column('current_period_start', DateTime(timezone=True), nullable=False),
    Column('current_period_end', DateTime(timezone=True), nullable=False),
    Column('sessions_used_in_period', Integer, nullable=False, server_default='0'),
    Column('total_sessions_used', Integer, nullable=False, server_default='0'),
    Column('last_session_date', Date, nullable=True),
    Column('admin_notes', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    CheckConstraint("status IN ('active', 'paused', 'ended')", name='ck_coaching_subscriptions_status'),
    CheckConstraint("period_type IN ('week', 'month')", name='ck_coaching_subscriptions_period_type'),
    CheckConstraint("sessions_per_period > 0", name='ck_coaching_subscriptions_quota_positive'),
    CheckConstraint("sessions_used_in_period >= 0", name='ck_coaching_subscriptions_used_nonneg'),
    CheckConstraint("total_sessions_used >= 0", name='ck_coaching_subscriptions_total_nonneg'),
    CheckConstraint("current_period_end > current_period_start", name='ck_coaching_subscriptions_period_order'),
    # Rollover scan: active rows whose period has ended
    Index('idx_coaching_subscriptions_status_period_end', 'status', 'current_period_end'),
    Index('idx_coaching_subscriptions_plan_id', 'plan_id'),
    Index('idx_coaching_subscriptions_child_id', 'child_id'),
    Index('idx_coaching_subscriptions_created_at', 'created_at'),
)

# Append-only history of logged sessions
coaching_session_logs = Table(
    'coaching_session_logs',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('subscription_id', String(36), ForeignKey('coaching_subscriptions.id'), nullable=False),
    Column('logged_at', DateTime(timezone=True), nullable=False),
    Column('period_start', DateTime(timezone=True), nullable=False),
    Column('over_limit', Boolean, nullable=False, server_default='false'),
    Column('notes', Text, nullable=True),
    Index('idx_coaching_session_logs_sub_logged', 'subscription_id', 'logged_at'),
)
