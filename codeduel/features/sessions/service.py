"""
Encrypted LeetCode session vault.

Each user has at most one active session. The cookie/CSRF pair is stored as an
AES-256-GCM ciphertext of a JSON payload; the CSRF token is additionally
encrypted on its own column so it can be rotated independently.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import and_, or_, select, update

from codeduel.core.database import as_utc, get_db_session, leetcode_sessions
from codeduel.core.encryption import decrypt, encrypt
from codeduel.core.errors import UpstreamError, ValidationError
from codeduel.core.logging import log_event
from codeduel.models.session import LeetCodeCredentials, LinkResult

logger = logging.getLogger("codeduel")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def get_user_session(user_id: str, now: Optional[datetime] = None) -> Optional[LeetCodeCredentials]:
    """
    Active, unexpired session with the most recent last_used_at; touches last_used_at.

    Returns None when no session exists or the stored payload cannot be decrypted.
    """
    now = now or _now()
    with get_db_session() as session:
        row = session.execute(
            select(leetcode_sessions)
            .where(
                and_(
                    leetcode_sessions.c.user_id == user_id,
                    leetcode_sessions.c.is_active.is_(True),
                    or_(leetcode_sessions.c.expires_at.is_(None), leetcode_sessions.c.expires_at > now),
                )
            )
            .order_by(leetcode_sessions.c.last_used_at.desc(), leetcode_sessions.c.id.desc())
            .limit(1)
        ).mappings().first()
        if row is None:
            return None

        session.execute(
            update(leetcode_sessions)
            .where(leetcode_sessions.c.id == row["id"])
            .values(last_used_at=now)
        )

    plain = decrypt(row["session_data"])
    if plain is None:
        log_event("warning", "session.undecryptable", event_type="session.undecryptable", extra={"user_id": user_id})
        return None
    try:
        payload = json.loads(plain)
    except ValueError:
        log_event("warning", "session.corrupt_payload", event_type="session.corrupt_payload", extra={"user_id": user_id})
        return None

    credentials = LeetCodeCredentials.from_payload(payload)
    if not credentials.csrf_token and row["csrf_token"]:
        credentials.csrf_token = decrypt(row["csrf_token"])
    return credentials


def store_user_session(user_id: str, data: LeetCodeCredentials, expires_at: Optional[datetime] = None) -> int:
    """Deactivate every older session for the user and store the new one. Returns the new row id."""
    if not data.cookie:
        raise ValidationError("LeetCode session cookie is required")
    if expires_at is not None and as_utc(expires_at) <= _now():
        raise ValidationError("expires_at must be in the future")

    session_blob = encrypt(json.dumps(data.to_payload()))
    csrf_blob = encrypt(data.csrf_token) if data.csrf_token else None
    now = _now()

    with get_db_session() as session:
        session.execute(
            update(leetcode_sessions)
            .where(and_(leetcode_sessions.c.user_id == user_id, leetcode_sessions.c.is_active.is_(True)))
            .values(is_active=False)
        )
        result = session.execute(
            leetcode_sessions.insert().values(
                user_id=user_id,
                session_data=session_blob,
                csrf_token=csrf_blob,
                is_active=True,
                expires_at=as_utc(expires_at) if expires_at else None,
                last_used_at=now,
                created_at=now,
            )
        )
        new_id = result.inserted_primary_key[0]

    log_event("info", "session.stored", event_type="session.stored", extra={"user_id": user_id})
    return new_id


def invalidate_user_session(user_id: str) -> int:
    """Deactivate all active sessions (called when LeetCode reports the session expired)."""
    with get_db_session() as session:
        result = session.execute(
            update(leetcode_sessions)
            .where(and_(leetcode_sessions.c.user_id == user_id, leetcode_sessions.c.is_active.is_(True)))
            .values(is_active=False)
        )
        count = result.rowcount or 0
    if count:
        log_event("info", "session.invalidated", event_type="session.invalidated", extra={"user_id": user_id, "count": count})
    return count


def link_session(user_id: str, username: str, data: LeetCodeCredentials, client=None, expires_at: Optional[datetime] = None) -> LinkResult:
    """
    Validate the session against the user's profile, then store it.

    A failed validation is logged and the session is stored anyway; the caller
    sees validated=False.
    """
    if client is None:
        from codeduel.services.leetcode_client import get_leetcode_client

        client = get_leetcode_client()

    validated = True
    error: Optional[str] = None
    try:
        client.fetch_user_profile(username, session=data)
    except UpstreamError as exc:
        validated = False
        error = exc.message
        log_event(
            "warning",
            "session.validation_failed",
            event_type="session.validation_failed",
            error_code=exc.code,
            extra={"user_id": user_id},
        )

    store_user_session(user_id, data, expires_at)
    return LinkResult(user_id=user_id, username=username, validated=validated, error=error)
