"""
Database engine, sessions and the billing schema.

Two tables:
- entitlements: one row per tenant, the access gate's view of billing
- billing_events: ledger of every processed provider event (idempotency, audit)

Postgres in production; SQLite (in memory or file) for tests and local runs.
"""
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional
import logging
import os

from sqlalchemy import (
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    UniqueConstraint,
    create_engine,
    inspect,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.sql import func

from clinic_billing.core.config import settings

logger = logging.getLogger("clinic_billing")

metadata = MetaData()

POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # seconds

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def get_database_url() -> Optional[str]:
    """TEST_DATABASE_URL from the environment wins over DATABASE_URL."""
    return os.getenv("TEST_DATABASE_URL") or settings.DATABASE_URL


def _engine_options(url: str) -> Dict[str, Any]:
    if url.startswith("sqlite"):
        # One shared connection: an in-memory database lives only as long as it
        return {"poolclass": StaticPool, "connect_args": {"check_same_thread": False}}
    return {
        "poolclass": QueuePool,
        "pool_size": POOL_SIZE,
        "max_overflow": MAX_OVERFLOW,
        "pool_timeout": POOL_TIMEOUT,
        "pool_recycle": POOL_RECYCLE,
        "pool_pre_ping": True,
    }


def init_engine(database_url: Optional[str] = None) -> Engine:
    """(Re)create the engine and session factory.

    Raises:
        ValueError: no URL given and none configured
    """
    global _engine, _session_factory

    url = database_url or get_database_url()
    if not url:
        raise ValueError("DATABASE_URL is not configured. Set DATABASE_URL in environment or .env file.")

    _engine = create_engine(url, echo=False, **_engine_options(url))
    _session_factory = sessionmaker(bind=_engine, autoflush=False)
    return _engine


def dispose_engine() -> None:
    """Close pooled connections; the next use re-initializes from config."""
    global _engine, _session_factory
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _session_factory = None


def get_engine() -> Engine:
    if _engine is None:
        init_engine()
    return _engine


@contextmanager
def get_db_session() -> Iterator[Session]:
    """
    One unit of work: commits when the block exits, rolls back if it raises.

    Usage:
        with get_db_session() as session:
            session.execute(...)
    """
    if _session_factory is None:
        init_engine()
    session = _session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables() -> None:
    """Create missing tables (existing ones are left alone)."""
    metadata.create_all(bind=get_engine())


def drop_all_tables() -> None:
    """Destructive; tests and local development only."""
    metadata.drop_all(bind=get_engine())


def reset_database() -> None:
    drop_all_tables()
    create_all_tables()


def missing_tables(engine: Optional[Engine] = None) -> List[str]:
    """Billing tables absent from the connected database."""
    inspector = inspect(engine or get_engine())
    return [name for name in metadata.tables if not inspector.has_table(name)]


# Tenants live with the hosted auth provider, so tenant_id is not a foreign key.
entitlements = Table(
    'entitlements',
    metadata,
    Column('tenant_id', String(100), primary_key=True),
    Column('billing_customer_ref', String(100), nullable=True),
    Column('billing_subscription_ref', String(100), nullable=True),
    Column('status', String(20), nullable=False, server_default='none'),  # none, trialing, active, past_due, canceled
    Column('plan_tier', String(20), nullable=False, server_default='basic'),  # basic, pro
    Column('period_end', DateTime(timezone=True), nullable=True),
    Column('last_event_at', DateTime(timezone=True), nullable=True),  # created time of the last applied event
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_entitlements_subscription_ref', 'billing_subscription_ref'),
    Index('idx_entitlements_customer_ref', 'billing_customer_ref'),
    Index('idx_entitlements_status', 'status'),
)

billing_events = Table(
    'billing_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('event_id', String(100), nullable=False),
    Column('event_type', String(100), nullable=False),
    Column('tenant_id', String(100), nullable=True),
    Column('subscription_ref', String(100), nullable=True),
    Column('outcome', String(50), nullable=False),  # applied, ignored, unknown_subscription, stale
    Column('payload_hash', String(64), nullable=True),  # sha256 of the raw body
    Column('occurred_at', DateTime(timezone=True), nullable=True),
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('event_id', name='uq_billing_events_event_id'),
    Index('idx_billing_events_event_type', 'event_type'),
    Index('idx_billing_events_tenant_id', 'tenant_id'),
)
