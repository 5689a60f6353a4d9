"""
Penalty ledger.

Append-only record of penalties charged to memberships. The membership row
carries total_penalties as a cached sum; append_penalty keeps both in the
caller's transaction and reconcile_penalty_totals reports (or fixes) drift.
"""
from __future__ import annotations

from datetime import date
from typing import Any, Dict, List

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from codeduel.core.database import challenge_members, get_db_session, penalty_ledger
from codeduel.core.errors import ValidationError
from codeduel.core.logging import log_event


def append_penalty(session: Session, member_id: str, amount: int, reason: str, on_date: date) -> int:
    """
    Insert a ledger row and bump the member's cached total. Does not commit.

    Returns the ledger entry id.
    """
    if amount <= 0:
        raise ValidationError("Penalty amount must be positive")

    result = session.execute(
        penalty_ledger.insert().values(
            member_id=member_id,
            amount=amount,
            reason=reason,
            date=on_date,
        )
    )
    session.execute(
        update(challenge_members)
        .where(challenge_members.c.id == member_id)
        .values(total_penalties=challenge_members.c.total_penalties + amount)
    )
    return result.inserted_primary_key[0]


def list_penalties(member_id: str) -> List[Dict[str, Any]]:
    with get_db_session() as session:
        rows = session.execute(
            select(penalty_ledger)
            .where(penalty_ledger.c.member_id == member_id)
            .order_by(penalty_ledger.c.date.asc(), penalty_ledger.c.id.asc())
        ).mappings().all()
    return [
        {
            "id": row["id"],
            "member_id": row["member_id"],
            "amount": row["amount"],
            "reason": row["reason"],
            "date": row["date"].isoformat(),
        }
        for row in rows
    ]


def ledger_total(member_id: str) -> int:
    with get_db_session() as session:
        total = session.execute(
            select(func.coalesce(func.sum(penalty_ledger.c.amount), 0))
            .where(penalty_ledger.c.member_id == member_id)
        ).scalar()
    return int(total or 0)


def reconcile_penalty_totals(fix: bool = False) -> Dict[str, Any]:
    """Compare each membership's cached total with its ledger sum."""
    issues = []
    corrections = 0

    with get_db_session() as session:
        sums = dict(
            session.execute(
                select(penalty_ledger.c.member_id, func.sum(penalty_ledger.c.amount))
                .group_by(penalty_ledger.c.member_id)
            ).all()
        )
        members = session.execute(
            select(challenge_members.c.id, challenge_members.c.total_penalties)
        ).all()

        for member_id, cached_total in members:
            expected = int(sums.get(member_id) or 0)
            if int(cached_total or 0) == expected:
                continue
            issues.append({
                "type": "penalty_total_drift",
                "member_id": member_id,
                "cached_total": int(cached_total or 0),
                "ledger_total": expected,
            })
            if fix:
                session.execute(
                    update(challenge_members)
                    .where(challenge_members.c.id == member_id)
                    .values(total_penalties=expected)
                )
                corrections += 1

    if issues:
        log_event(
            "warning",
            "penalties.reconcile_drift",
            event_type="penalties.reconcile",
            extra={"issues": len(issues), "corrections": corrections},
        )
    return {
        "issues_found": len(issues),
        "corrections_applied": corrections,
        "issues": issues,
    }
