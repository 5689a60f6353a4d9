"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support (in-memory SQLite)
- Table definitions for the evaluation core
"""
from typing import Optional
from contextlib import contextmanager
from datetime import datetime, timezone
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, Date, DateTime, Boolean, JSON, Text, Float, Index, ForeignKey, UniqueConstraint, CheckConstraint, text
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
import logging
import os

from codeduel.core.config import settings

logger = logging.getLogger("codeduel")

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour
SQLITE_BUSY_TIMEOUT = 30

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

    return os.getenv("DATABASE_URL") or settings.DATABASE_URL


def _is_memory_sqlite(url: str) -> bool:
    path = url.split("://", 1)[-1].lstrip("/")
    return not path or path.startswith(":memory:") or "mode=memory" in url


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

    if url.startswith("sqlite") and _is_memory_sqlite(url):
        # Single shared connection so in-memory databases survive across sessions
        _engine = create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=False,
        )
    elif url.startswith("sqlite"):
        # File-backed: one connection per session, writers wait on the file lock
        _engine = create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT},
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

    # Create session factory
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
        logger.warning("Database connection check failed: %s", e)
        return False


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; every stored timestamp is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# Users (only the fields the evaluation core reads)
users = Table(
    'app_users',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('username', String(100), nullable=False, unique=True),
    Column('email', String(255), nullable=True),
    Column('leetcode_username', String(100), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Challenges
challenges = Table(
    'challenges',
    metadata,
    Column('id', String(100), primary_key=True),
    Column('owner_id', String(100), ForeignKey('app_users.user_id'), nullable=False, index=True),
    Column('name', String(200), nullable=False),
    Column('description', Text, nullable=True),
    Column('difficulty_filter', JSON, nullable=False),  # [] = no filter
    Column('min_submissions_per_day', Integer, nullable=False, server_default='1'),
    Column('unique_problem_constraint', Boolean, nullable=False, server_default='true'),
    Column('penalty_amount', Integer, nullable=False, server_default='0'),
    Column('start_date', Date, nullable=False),
    Column('end_date', Date, nullable=False),
    Column('status', String(20), nullable=False, server_default='PENDING'),
    Column('visibility', String(20), nullable=False, server_default='PUBLIC'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    CheckConstraint('end_date > start_date', name='ck_challenges_date_range'),
    CheckConstraint('min_submissions_per_day >= 1', name='ck_challenges_min_submissions'),
    CheckConstraint('penalty_amount >= 0', name='ck_challenges_penalty_amount'),
    # Fan-out query: active challenges in window
    Index('idx_challenges_status_window', 'status', 'start_date', 'end_date'),
)

# Memberships
challenge_members = Table(
    'challenge_members',
    metadata,
    Column('id', String(100), primary_key=True),
    Column('challenge_id', String(100), ForeignKey('challenges.id'), nullable=False),
    Column('user_id', String(100), ForeignKey('app_users.user_id'), nullable=False, index=True),
    Column('current_streak', Integer, nullable=False, server_default='0'),
    Column('longest_streak', Integer, nullable=False, server_default='0'),
    Column('total_penalties', Integer, nullable=False, server_default='0'),
    Column('is_active', Boolean, nullable=False, server_default='true'),
    Column('joined_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('challenge_id', 'user_id', name='uq_challenge_members_challenge_user'),
    CheckConstraint('current_streak >= 0', name='ck_members_current_streak'),
    CheckConstraint('longest_streak >= current_streak', name='ck_members_longest_streak'),
    Index('idx_challenge_members_challenge_active', 'challenge_id', 'is_active'),
)

# Daily results: at most one per (challenge, member, date)
daily_results = Table(
    'daily_results',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('challenge_id', String(100), ForeignKey('challenges.id'), nullable=False),
    Column('member_id', String(100), ForeignKey('challenge_members.id'), nullable=False),
    Column('date', Date, nullable=False),
    Column('completed', Boolean, nullable=True),  # NULL = pending
    Column('submissions_count', Integer, nullable=False, server_default='0'),
    Column('problems_solved', JSON, nullable=False),
    Column('evaluated_at', DateTime(timezone=True), nullable=True),
    Column('metadata', JSON, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('challenge_id', 'member_id', 'date', name='uq_daily_results_challenge_member_date'),
    Index('idx_daily_results_member_date', 'member_id', 'date'),
    Index('idx_daily_results_date_completed', 'date', 'completed'),
)

# Penalty ledger (append-only)
penalty_ledger = Table(
    'penalty_ledger',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('member_id', String(100), ForeignKey('challenge_members.id'), nullable=False, index=True),
    Column('amount', Integer, nullable=False),
    Column('reason', Text, nullable=False),
    Column('date', Date, nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    CheckConstraint('amount >= 0', name='ck_penalty_ledger_amount'),
    Index('idx_penalty_ledger_member_date', 'member_id', 'date'),
)

# Problem metadata cache
problem_metadata = Table(
    'problem_metadata',
    metadata,
    Column('title_slug', String(200), primary_key=True),
    Column('question_id', String(50), nullable=True),
    Column('title', String(300), nullable=True),
    Column('difficulty', String(20), nullable=True),
    Column('topic_tags', JSON, nullable=False),
    Column('ac_rate', Float, nullable=True),
    Column('likes', Integer, nullable=False, server_default='0'),
    Column('dislikes', Integer, nullable=False, server_default='0'),
    Column('is_paid_only', Boolean, nullable=False, server_default='false'),
    Column('last_fetched_at', DateTime(timezone=True), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
)

# Encrypted LeetCode sessions
leetcode_sessions = Table(
    'leetcode_sessions',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), ForeignKey('app_users.user_id'), nullable=False),
    Column('session_data', Text, nullable=False),
    Column('csrf_token', Text, nullable=True),
    Column('is_active', Boolean, nullable=False, server_default='true'),
    Column('expires_at', DateTime(timezone=True), nullable=True),
    Column('last_used_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_leetcode_sessions_user_active', 'user_id', 'is_active'),
)

# Invite codes
invite_codes = Table(
    'invite_codes',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('code', String(32), nullable=False, unique=True),
    Column('challenge_id', String(100), ForeignKey('challenges.id'), nullable=False, index=True),
    Column('created_by', String(100), ForeignKey('app_users.user_id'), nullable=False),
    Column('max_uses', Integer, nullable=False),
    Column('used_count', Integer, nullable=False, server_default='0'),
    Column('expires_at', DateTime(timezone=True), nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    CheckConstraint('used_count <= max_uses', name='ck_invite_codes_usage'),
)

# Evaluation trigger audit
evaluation_runs = Table(
    'evaluation_runs',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('run_date', Date, nullable=False, index=True),
    Column('trigger', String(50), nullable=False),  # cron | manual | pending_retry
    Column('challenges_queued', Integer, nullable=False, server_default='0'),
    Column('status', String(20), nullable=False),
    Column('stats', JSON, nullable=True),
    Column('started_at', DateTime(timezone=True), nullable=False),
    Column('finished_at', DateTime(timezone=True), nullable=True),
    Index('idx_evaluation_runs_started_at', 'started_at'),
)

# Idempotency keys table
idempotency_keys = Table(
    'idempotency_keys',
    metadata,
    Column('key', String(255), primary_key=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('scope', String(100), nullable=True, index=True),
    Index('idx_idempotency_keys_scope_created', 'scope', 'created_at'),
)
