"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Table definitions for users, modules, grants, audit and billing events
"""
from typing import Optional
from contextlib import contextmanager
import logging
import os

from sqlalchemy import (
    create_engine,
    event,
    MetaData,
    Table,
    Column,
    Integer,
    String,
    DateTime,
    Boolean,
    JSON,
    Text,
    Index,
    ForeignKey,
    UniqueConstraint,
    false,
)
from sqlalchemy.engine.url import make_url
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func

from saas_engine.core.config import settings

logger = logging.getLogger(__name__)

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour
SQLITE_BUSY_TIMEOUT = 30  # seconds a writer waits for the database lock

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

    if make_url(url).get_backend_name() == "sqlite":
        # Local development and tests; connections are shared with TestClient threads
        _engine = create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT},
            echo=False,
        )
        _use_immediate_transactions(_engine)
    else:
        _engine = create_engine(
            url,
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


def _use_immediate_transactions(engine) -> None:
    """
    Make every SQLite transaction take the write lock at BEGIN.

    SQLite ignores SELECT ... FOR UPDATE, and pysqlite defers BEGIN until the
    first write, so two read-decide-write transactions could both read the
    same row before either writes. BEGIN IMMEDIATE serializes them instead.
    """

    @event.listens_for(engine, "connect")
    def _disable_driver_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def dispose_engine() -> None:
    """Drop the global engine (tests switch databases between cases)."""
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
    Context manager for a single transaction.

    Commits when the block exits cleanly, rolls back on any exception.

    Usage:
        with get_db_session() as session:
            session.execute(...)
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


# Users. Email is stored lower-cased so the unique constraint is case-insensitive.
users = Table(
    'users',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('email', String(320), nullable=False),
    Column('role', String(20), nullable=False, server_default='USER'),
    Column('plan', String(20), nullable=False, server_default='FREE'),
    Column('subscription_status', String(20), nullable=False, server_default='INACTIVE'),
    Column('billing_customer_ref', String(255), nullable=True),
    Column('billing_subscription_ref', String(255), nullable=True),
    Column('is_deleted', Boolean, nullable=False, default=False, server_default=false()),
    Column('deleted_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    UniqueConstraint('email', name='uq_users_email'),
    UniqueConstraint('billing_customer_ref', name='uq_users_billing_customer_ref'),
    Index('idx_users_deleted_at', 'is_deleted', 'deleted_at'),
)

# Module registry
modules = Table(
    'modules',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('key', String(100), nullable=False),
    Column('name', String(200), nullable=False),
    Column('description', Text, nullable=True),
    Column('min_plan', String(20), nullable=False, server_default='FREE'),
    Column('enabled', Boolean, nullable=False, default=False, server_default=false()),
    Column('is_archived', Boolean, nullable=False, default=False, server_default=false()),
    Column('activated_at', DateTime(timezone=True), nullable=True),  # first enable; null while DRAFT
    Column('archived_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    UniqueConstraint('key', name='uq_modules_key'),
    Index('idx_modules_visible', 'enabled', 'is_archived'),
)

# Explicit per-user module grants: at most one row per (user, module)
module_access_grants = Table(
    'module_access_grants',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(36), ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
    Column('module_id', String(36), ForeignKey('modules.id', ondelete='CASCADE'), nullable=False),
    Column('granted_by', String(36), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('user_id', 'module_id', name='uq_module_access_grants_user_module'),
    Index('idx_module_access_grants_user', 'user_id'),
)

# Append-only audit trail of entitlement-changing events
audit_entries = Table(
    'audit_entries',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('action', String(50), nullable=False),
    Column('entity_type', String(50), nullable=False),
    Column('entity_id', String(255), nullable=False),
    Column('performed_by_user_id', String(36), nullable=True),  # null = system / webhook
    Column('metadata', JSON, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_audit_entries_entity', 'entity_type', 'entity_id'),
    Index('idx_audit_entries_action', 'action'),
    Index('idx_audit_entries_created_at', 'created_at'),
)

# Inbound billing webhook bookkeeping (dedup by provider event id)
billing_events = Table(
    'billing_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('provider_event_id', String(255), nullable=False),
    Column('event_type', String(100), nullable=False),
    Column('user_id', String(36), nullable=True),
    Column('payload_hash', String(64), nullable=False),  # SHA256 of raw body
    Column('processed', Boolean, nullable=False, default=False, server_default=false()),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Column('error', Text, nullable=True),
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('provider_event_id', name='uq_billing_events_provider_event_id'),
    Index('idx_billing_events_processed', 'processed'),
)
