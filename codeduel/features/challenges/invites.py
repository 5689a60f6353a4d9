"""
Invite codes: limited-use, expiring codes that grant membership to any
challenge, private ones included.

Redemption is a single transaction: a conditional increment claims one use
(only while uses remain and the code has not expired), then the membership is
inserted. If the insert conflicts, the whole transaction rolls back, so the
claimed use is returned.
"""
from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import and_, select, update
from sqlalchemy.exc import IntegrityError

from codeduel.core.database import as_utc, get_db_session, invite_codes
from codeduel.core.errors import ConflictError, NotFoundError, PermissionError, ValidationError
from codeduel.core.logging import log_event
from codeduel.features.challenges.service import CLOSED_STATUSES, add_membership, get_challenge
from codeduel.models.invite import InviteCode, RedemptionResult

MIN_EXPIRY_HOURS = 1
MAX_EXPIRY_HOURS = 168
MIN_USES = 1
MAX_USES = 100
CODE_BYTES = 4  # 8 hex chars


def _new_code() -> str:
    return secrets.token_hex(CODE_BYTES).upper()


def generate_invite_code(
    owner_id: str,
    challenge_id: str,
    expires_in_hours: int = 24,
    max_uses: int = 10,
    now: Optional[datetime] = None,
) -> InviteCode:
    if not (MIN_EXPIRY_HOURS <= expires_in_hours <= MAX_EXPIRY_HOURS):
        raise ValidationError(f"expires_in_hours must be between {MIN_EXPIRY_HOURS} and {MAX_EXPIRY_HOURS}")
    if not (MIN_USES <= max_uses <= MAX_USES):
        raise ValidationError(f"max_uses must be between {MIN_USES} and {MAX_USES}")

    challenge = get_challenge(challenge_id)
    if challenge.owner_id != owner_id:
        raise PermissionError("Only the challenge owner can generate invite codes")
    if challenge.status in CLOSED_STATUSES:
        raise ValidationError("Cannot invite to a completed or cancelled challenge")

    now = now or datetime.now(timezone.utc)
    expires_at = now + timedelta(hours=expires_in_hours)

    for _ in range(5):
        code = _new_code()
        try:
            with get_db_session() as session:
                session.execute(
                    invite_codes.insert().values(
                        code=code,
                        challenge_id=challenge_id,
                        created_by=owner_id,
                        max_uses=max_uses,
                        used_count=0,
                        expires_at=expires_at,
                        created_at=now,
                    )
                )
        except IntegrityError:
            # Code collision; draw again
            continue
        log_event("info", "invite.created", challenge_id=challenge_id, event_type="invite.created")
        return InviteCode(
            code=code,
            challenge_id=challenge_id,
            created_by=owner_id,
            max_uses=max_uses,
            used_count=0,
            expires_at=expires_at,
        )
    raise ConflictError("Could not allocate a unique invite code")


def get_invite_code(code: str) -> InviteCode:
    with get_db_session() as session:
        row = session.execute(select(invite_codes).where(invite_codes.c.code == code.strip().upper())).mappings().first()
    if row is None:
        raise NotFoundError("Invite code not found")
    return InviteCode(
        code=row["code"],
        challenge_id=row["challenge_id"],
        created_by=row["created_by"],
        max_uses=row["max_uses"],
        used_count=row["used_count"],
        expires_at=as_utc(row["expires_at"]),
    )


def redeem_invite_code(user_id: str, code: str, now: Optional[datetime] = None) -> RedemptionResult:
    """
    Claim one use of an invite code and join its challenge.

    Concurrent redemptions of the same code never exceed max_uses: the
    increment only matches while used_count < max_uses.
    """
    normalized = (code or "").strip().upper()
    if not normalized:
        raise ValidationError("Invite code is required")
    now = now or datetime.now(timezone.utc)

    invite = get_invite_code(normalized)
    challenge = get_challenge(invite.challenge_id)
    if challenge.status in CLOSED_STATUSES:
        raise ValidationError("Cannot join a completed or cancelled challenge")

    try:
        with get_db_session() as session:
            claimed = session.execute(
                update(invite_codes)
                .where(
                    and_(
                        invite_codes.c.code == normalized,
                        invite_codes.c.used_count < invite_codes.c.max_uses,
                        invite_codes.c.expires_at > now,
                    )
                )
                .values(used_count=invite_codes.c.used_count + 1)
            )
            if not claimed.rowcount:
                raise ValidationError("Invite code is expired or fully used")

            member_id = add_membership(session, invite.challenge_id, user_id)
            used_count = session.execute(
                select(invite_codes.c.used_count).where(invite_codes.c.code == normalized)
            ).scalar_one()
    except IntegrityError:
        raise ConflictError("User is already a member of this challenge")

    log_event(
        "info",
        "invite.redeemed",
        challenge_id=invite.challenge_id,
        member_id=member_id,
        event_type="invite.redeemed",
        extra={"used_count": used_count, "max_uses": invite.max_uses},
    )
    return RedemptionResult(
        challenge_id=invite.challenge_id,
        membership_id=member_id,
        used_count=used_count,
        max_uses=invite.max_uses,
    )
