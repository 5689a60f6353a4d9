"""
Evaluation job handlers.

run_daily_evaluation        scheduler trigger: enumerate ACTIVE in-window challenges
process_challenge_evaluation  fan-out: one member job per active membership
process_member_evaluation     leaf: run the engine for one member-day

Handlers are plain functions so RQ can import them by dotted path. Inside an
RQ worker the current job id becomes the log correlation id.
"""
from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, select, update

from codeduel.core.config import settings
from codeduel.core.database import challenge_members, challenges, daily_results, evaluation_runs, get_db_session
from codeduel.core.errors import NotFoundError
from codeduel.core.logging import bind_request_id, get_request_id, log_event
from codeduel.core.metrics import last_evaluation_run_challenges
from codeduel.features.evaluation.dispatch import JobDispatcher, get_dispatcher
from codeduel.features.evaluation.engine import get_engine
from codeduel.models.challenge import Challenge, ChallengeStatus, Membership

logger = logging.getLogger("codeduel")


def _today() -> date:
    return datetime.now(timezone.utc).date()


def _job_correlation_id() -> Optional[str]:
    existing = get_request_id()
    if existing:
        return existing
    from rq import get_current_job

    job = get_current_job()
    return job.id if job is not None else None


def load_challenge(challenge_id: str) -> Challenge:
    with get_db_session() as session:
        row = session.execute(select(challenges).where(challenges.c.id == challenge_id)).mappings().first()
    if row is None:
        raise NotFoundError(f"Challenge {challenge_id} not found")
    return Challenge.from_row(row)


def load_membership(member_id: str) -> Membership:
    with get_db_session() as session:
        row = session.execute(select(challenge_members).where(challenge_members.c.id == member_id)).mappings().first()
    if row is None:
        raise NotFoundError(f"Membership {member_id} not found")
    return Membership.from_row(row)


def list_active_challenges(on_date: date) -> List[Challenge]:
    with get_db_session() as session:
        rows = session.execute(
            select(challenges).where(
                and_(
                    challenges.c.status == ChallengeStatus.ACTIVE.value,
                    challenges.c.start_date <= on_date,
                    challenges.c.end_date >= on_date,
                )
            ).order_by(challenges.c.id)
        ).mappings().all()
    return [Challenge.from_row(row) for row in rows]


def list_active_memberships(challenge_id: str) -> List[Membership]:
    with get_db_session() as session:
        rows = session.execute(
            select(challenge_members).where(
                and_(
                    challenge_members.c.challenge_id == challenge_id,
                    challenge_members.c.is_active.is_(True),
                )
            ).order_by(challenge_members.c.id)
        ).mappings().all()
    return [Membership.from_row(row) for row in rows]


def process_challenge_evaluation(challenge_id: str, date_iso: str, dispatcher: Optional[JobDispatcher] = None) -> Dict[str, Any]:
    on_date = date.fromisoformat(date_iso)
    with bind_request_id(_job_correlation_id()):
        challenge = load_challenge(challenge_id)
        if not challenge.is_evaluable(on_date):
            log_event(
                "info",
                "evaluation.challenge_skipped",
                challenge_id=challenge_id,
                event_type="evaluation.fanout",
                extra={"date": date_iso, "status": challenge.status.value},
            )
            return {"challenge_id": challenge_id, "date": date_iso, "members_queued": 0, "skipped": True}

        dispatcher = dispatcher or get_dispatcher()
        members = list_active_memberships(challenge_id)
        queued = 0
        for member in members:
            if dispatcher.enqueue_member(member.id, challenge_id, on_date) is not None:
                queued += 1

        log_event(
            "info",
            "evaluation.challenge_fanout",
            challenge_id=challenge_id,
            event_type="evaluation.fanout",
            extra={"date": date_iso, "members": len(members), "queued": queued},
        )
        return {"challenge_id": challenge_id, "date": date_iso, "members_queued": queued, "skipped": False}


def process_member_evaluation(member_id: str, challenge_id: str, date_iso: str, dispatcher: Optional[JobDispatcher] = None) -> Dict[str, Any]:
    """Evaluate one member-day. Upstream errors propagate so the job is retried."""
    on_date = date.fromisoformat(date_iso)
    with bind_request_id(_job_correlation_id()):
        challenge = load_challenge(challenge_id)
        member = load_membership(member_id)
        if member.challenge_id != challenge_id:
            raise NotFoundError(f"Membership {member_id} does not belong to challenge {challenge_id}")
        if not member.is_active or not challenge.is_evaluable(on_date):
            log_event(
                "info",
                "evaluation.member_skipped",
                challenge_id=challenge_id,
                member_id=member_id,
                event_type="evaluation.member",
                extra={"date": date_iso},
            )
            return {"member_id": member_id, "date": date_iso, "skipped": True}

        result = get_engine().evaluate(challenge, member, on_date)
        return result.to_dict()


def _purge_old_runs(session, now: datetime) -> int:
    cutoff = now - timedelta(days=settings.EVALUATION_RUN_RETENTION_DAYS)
    result = session.execute(evaluation_runs.delete().where(evaluation_runs.c.started_at < cutoff))
    return result.rowcount or 0


def run_daily_evaluation(
    on_date: Optional[date] = None,
    trigger: str = "cron",
    dispatcher: Optional[JobDispatcher] = None,
    force: bool = False,
) -> Dict[str, Any]:
    """
    Scheduler entry point: enqueue one challenge job per ACTIVE challenge whose
    window covers on_date (default: today, UTC). Returns run stats.
    """
    on_date = on_date or _today()
    dispatcher = dispatcher or get_dispatcher()
    started_at = datetime.now(timezone.utc)

    with get_db_session() as session:
        run_id = session.execute(
            evaluation_runs.insert().values(
                run_date=on_date,
                trigger=trigger,
                status="running",
                challenges_queued=0,
                started_at=started_at,
            )
        ).inserted_primary_key[0]

    active = list_active_challenges(on_date)
    queued = 0
    suppressed = 0
    errors = 0
    for challenge in active:
        try:
            if dispatcher.enqueue_challenge(challenge.id, on_date, force=force) is not None:
                queued += 1
            else:
                suppressed += 1
        except Exception:
            # One challenge failing to enqueue must not stop the rest
            errors += 1
            logger.error(
                "evaluation.enqueue_failed",
                exc_info=True,
                extra={"challenge_id": challenge.id, "event_type": "evaluation.trigger"},
            )

    status = "partial" if errors else "success"
    stats = {"active_challenges": len(active), "queued": queued, "suppressed": suppressed, "errors": errors}
    with get_db_session() as session:
        session.execute(
            update(evaluation_runs)
            .where(evaluation_runs.c.id == run_id)
            .values(
                status=status,
                challenges_queued=queued,
                stats=stats,
                finished_at=datetime.now(timezone.utc),
            )
        )
    last_evaluation_run_challenges.set(queued)

    log_event(
        "info",
        "evaluation.run_triggered",
        event_type="evaluation.trigger",
        extra={"date": on_date.isoformat(), "trigger": trigger, **stats},
    )
    return {"run_id": run_id, "date": on_date.isoformat(), "trigger": trigger, "status": status, **stats}


def enqueue_pending_retries(since: date, until: Optional[date] = None, dispatcher: Optional[JobDispatcher] = None) -> Dict[str, Any]:
    """
    Manual recovery: re-enqueue member jobs for every pending day in [since, until].

    Pending days are never revisited automatically; an operator calls this.
    """
    until = until or _today()
    dispatcher = dispatcher or get_dispatcher()
    with get_db_session() as session:
        rows = session.execute(
            select(daily_results.c.member_id, daily_results.c.challenge_id, daily_results.c.date)
            .where(
                and_(
                    daily_results.c.completed.is_(None),
                    daily_results.c.date >= since,
                    daily_results.c.date <= until,
                )
            )
            .order_by(daily_results.c.date, daily_results.c.member_id)
        ).all()

    requeued = 0
    for member_id, challenge_id, on_date in rows:
        if dispatcher.enqueue_member(member_id, challenge_id, on_date, force=True) is not None:
            requeued += 1

    with get_db_session() as session:
        session.execute(
            evaluation_runs.insert().values(
                run_date=until,
                trigger="pending_retry",
                status="success",
                challenges_queued=0,
                stats={"pending": len(rows), "requeued": requeued, "since": since.isoformat()},
                started_at=datetime.now(timezone.utc),
                finished_at=datetime.now(timezone.utc),
            )
        )

    log_event(
        "info",
        "evaluation.pending_requeued",
        event_type="evaluation.pending_retry",
        extra={"since": since.isoformat(), "until": until.isoformat(), "pending": len(rows), "requeued": requeued},
    )
    return {"since": since.isoformat(), "until": until.isoformat(), "pending": len(rows), "requeued": requeued}


def purge_evaluation_runs(now: Optional[datetime] = None) -> int:
    """Drop run audit rows past EVALUATION_RUN_RETENTION_DAYS."""
    now = now or datetime.now(timezone.utc)
    with get_db_session() as session:
        removed = _purge_old_runs(session, now)
    if removed:
        log_event("info", "evaluation.runs_purged", event_type="evaluation.retention", extra={"removed": removed})
    return removed
