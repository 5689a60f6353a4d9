"""Read-only aggregates over daily results for the admin dashboard."""
from __future__ import annotations

from datetime import date
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, case, desc, func, select

from codeduel.core.database import challenges, daily_results, get_db_session
from codeduel.models.evaluation import DailyResult

TOP_FAIL_RATE_LIMIT = 5


def get_submission_analytics(since: Optional[date] = None, until: Optional[date] = None) -> Dict[str, Any]:
    """
    Submissions per day, pass/fail per challenge, and the challenges with the
    highest fail rate. Pending results count toward totals but neither pass nor fail.
    """
    filters = []
    if since is not None:
        filters.append(daily_results.c.date >= since)
    if until is not None:
        filters.append(daily_results.c.date <= until)
    where = and_(*filters) if filters else None

    passed_expr = func.sum(case((daily_results.c.completed.is_(True), 1), else_=0))
    failed_expr = func.sum(case((daily_results.c.completed.is_(False), 1), else_=0))
    pending_expr = func.sum(case((daily_results.c.completed.is_(None), 1), else_=0))

    per_day_q = (
        select(
            daily_results.c.date,
            func.coalesce(func.sum(daily_results.c.submissions_count), 0).label("submissions"),
            func.count().label("results"),
        )
        .group_by(daily_results.c.date)
        .order_by(daily_results.c.date)
    )
    per_challenge_q = (
        select(
            daily_results.c.challenge_id,
            challenges.c.name,
            passed_expr.label("passed"),
            failed_expr.label("failed"),
            pending_expr.label("pending"),
            func.count().label("total"),
        )
        .select_from(daily_results.join(challenges, challenges.c.id == daily_results.c.challenge_id))
        .group_by(daily_results.c.challenge_id, challenges.c.name)
        .order_by(desc("total"))
    )
    if where is not None:
        per_day_q = per_day_q.where(where)
        per_challenge_q = per_challenge_q.where(where)

    with get_db_session() as session:
        per_day_rows = session.execute(per_day_q).all()
        per_challenge_rows = session.execute(per_challenge_q).all()

    submissions_per_day = [
        {"date": row.date.isoformat(), "submissions": int(row.submissions or 0), "results": int(row.results)}
        for row in per_day_rows
    ]

    pass_fail: List[Dict[str, Any]] = []
    for row in per_challenge_rows:
        passed = int(row.passed or 0)
        failed = int(row.failed or 0)
        resolved = passed + failed
        pass_fail.append({
            "challenge_id": row.challenge_id,
            "name": row.name,
            "passed": passed,
            "failed": failed,
            "pending": int(row.pending or 0),
            "total": int(row.total),
            "fail_rate": round(failed / resolved, 4) if resolved else 0.0,
        })

    highest_fail = sorted(
        (entry for entry in pass_fail if entry["passed"] + entry["failed"] > 0),
        key=lambda entry: (-entry["fail_rate"], -entry["total"], entry["challenge_id"]),
    )[:TOP_FAIL_RATE_LIMIT]

    return {
        "submissions_per_day": submissions_per_day,
        "pass_fail_by_challenge": pass_fail,
        "highest_fail_challenges": [
            {
                "challenge_id": entry["challenge_id"],
                "name": entry["name"],
                "fail_rate": entry["fail_rate"],
                "total": entry["total"],
            }
            for entry in highest_fail
        ],
    }


def get_member_results(member_id: str, limit: int = 30) -> List[Dict[str, Any]]:
    """Most recent daily results for a membership, newest first."""
    with get_db_session() as session:
        rows = session.execute(
            select(daily_results)
            .where(daily_results.c.member_id == member_id)
            .order_by(daily_results.c.date.desc())
            .limit(limit)
        ).mappings().all()
    return [DailyResult.from_row(row).to_dict() for row in rows]
