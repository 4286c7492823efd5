"""
Billing storage: engine, sessions and table definitions.

All billing state lives in PostgreSQL in production. Tests run against an
in-memory SQLite database that shares one connection across sessions, so
row locks are no-ops there and callers must not nest sessions.
"""
import os
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Text, Index, UniqueConstraint, inspect, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.sql import func

from mattrainer.core.config import settings
from mattrainer.core.logging import log_event

metadata = MetaData()

POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600

_engine = None
_SessionLocal = None


def get_database_url() -> Optional[str]:
    """TEST_DATABASE_URL wins over DATABASE_URL when set."""
    return os.getenv("TEST_DATABASE_URL") or settings.TEST_DATABASE_URL or settings.DATABASE_URL


def _engine_options(url: str) -> Dict[str, Any]:
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}, "poolclass": StaticPool}
    return {
        "poolclass": QueuePool,
        "pool_size": POOL_SIZE,
        "max_overflow": MAX_OVERFLOW,
        "pool_timeout": POOL_TIMEOUT,
        "pool_recycle": POOL_RECYCLE,
        "pool_pre_ping": True,
    }


def init_engine(database_url: Optional[str] = None):
    global _engine, _SessionLocal

    url = database_url or get_database_url()
    if not url:
        raise ValueError("DATABASE_URL is not configured. Set DATABASE_URL in environment or .env file.")

    _engine = create_engine(url, echo=False, **_engine_options(url))
    _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=_engine)
    return _engine


def dispose_engine() -> None:
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


def get_engine():
    if _engine is None:
        init_engine()
    return _engine


@contextmanager
def get_db_session() -> Iterator[Session]:
    """
    Open a session for one unit of work.

    Commits when the block exits normally, rolls back and re-raises on any
    exception, and always closes.
    """
    if _SessionLocal is None:
        init_engine()
    session = _SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables() -> None:
    metadata.create_all(bind=get_engine())


def drop_all_tables() -> None:
    """Destructive; tests and local resets only."""
    metadata.drop_all(bind=get_engine())


def check_connection() -> bool:
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except (SQLAlchemyError, ValueError) as e:
        log_event("warning", "db.connection_check_failed", extra={"error": str(e)})
        return False


def missing_tables() -> List[str]:
    """Billing tables not present in the connected database."""
    present = set(inspect(get_engine()).get_table_names())
    return [name for name in metadata.tables if name not in present]


# Payer entitlements: one row per principal, created on first observation, never deleted
payer_entitlements = Table(
    'payer_entitlements',
    metadata,
    Column('payer_id', String(100), primary_key=True),
    Column('trial_ends_at', DateTime(timezone=True), nullable=True),
    Column('paid_until', DateTime(timezone=True), nullable=True),
    Column('billing_status', String(20), nullable=False, server_default='none'),  # none, active, past_due, cancelled
    Column('gateway_subscription_id', String(100), nullable=True),
    Column('card_fingerprint', String(32), nullable=True),
    Column('card_token', String(255), nullable=True),
    Column('billing_updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_payer_entitlements_subscription', 'gateway_subscription_id'),
    Index('idx_payer_entitlements_status', 'billing_status'),
)

# Delegation links: at most one payer per beneficiary
delegation_links = Table(
    'delegation_links',
    metadata,
    Column('beneficiary_id', String(100), primary_key=True),
    Column('payer_id', String(100), nullable=False),
    Column('linked_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_delegation_links_payer', 'payer_id'),
)

# Referral attributions: at most one per referred account
referral_attributions = Table(
    'referral_attributions',
    metadata,
    Column('referred_id', String(100), primary_key=True),
    Column('referrer_id', String(100), nullable=False),
    Column('attributed_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('first_paid_at', DateTime(timezone=True), nullable=True),
    Index('idx_referral_attributions_referrer', 'referrer_id'),
)

# Webhook seen-set (bounded retention, purged by purge_job)
billing_webhook_events = Table(
    'billing_webhook_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('event_kind', String(20), nullable=False),  # pay, fail
    Column('event_key', String(100), nullable=False),  # gateway TransactionId
    Column('payer_id', String(100), nullable=True),
    Column('payload_hash', String(64), nullable=False),  # SHA256 of the raw body
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('event_kind', 'event_key', name='uq_billing_webhook_events_kind_key'),
    Index('idx_billing_webhook_events_received_at', 'received_at'),
)

# Admin audit log
billing_admin_audit = Table(
    'billing_admin_audit',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('actor', String(100), nullable=False),  # admin principal id or "legacy:<hash>"
    Column('action', String(100), nullable=False),  # "cancel_subscription"
    Column('target_user_id', String(100), nullable=True),
    Column('target_resource', String(200), nullable=True),  # gateway subscription id
    Column('payload_json', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_billing_admin_audit_action', 'action'),
    Index('idx_billing_admin_audit_user_id', 'target_user_id'),
    Index('idx_billing_admin_audit_created_at', 'created_at'),
)
