"""
codeduel/core/idempotency.py
Idempotency key management for in-process job dispatch.
"""

from datetime import datetime, timezone
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from codeduel.core.database import get_db_session, get_database_url, get_session_factory, idempotency_keys

# In-memory fallback
_in_memory_keys: set = set()


def check_and_set(key: str, operation: str = "generic") -> bool:
    """
    Check if idempotency key exists, and set it if not (atomic).

    Args:
        key: Idempotency key string
        operation: Operation type (stored as scope)

    Returns:
        True if key was already seen (duplicate)
        False if key is new (first time seeing it)
    """
    if get_database_url():
        SessionLocal = get_session_factory()
        session = SessionLocal()
        try:
            session.execute(
                idempotency_keys.insert().values(
                    key=key,
                    scope=operation,
                    created_at=datetime.now(timezone.utc),
                )
            )
            session.commit()
            return False
        except IntegrityError:
            # UNIQUE violation: someone already claimed the key
            session.rollback()
            return True
        finally:
            session.close()
    else:
        if key in _in_memory_keys:
            return True
        _in_memory_keys.add(key)
        return False


def release_key(key: str) -> None:
    """Forget a key so the same unit of work can be dispatched again (manual recovery)."""
    if get_database_url():
        with get_db_session() as session:
            session.execute(idempotency_keys.delete().where(idempotency_keys.c.key == key))
    _in_memory_keys.discard(key)


def check_key(key: str) -> bool:
    """
    Check if idempotency key exists (read-only).
    """
    if get_database_url():
        with get_db_session() as session:
            result = session.execute(
                select(idempotency_keys.c.key).where(
                    idempotency_keys.c.key == key
                )
            ).first()
            return result is not None
    return key in _in_memory_keys


def clear_all_keys() -> None:
    """Clear all idempotency keys (testing only)."""
    if get_database_url():
        with get_db_session() as session:
            session.execute(idempotency_keys.delete())
    _in_memory_keys.clear()
