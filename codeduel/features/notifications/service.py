"""
Streak notifications.

The evaluation engine only talks to the Notifier protocol, and only after its
transaction commits. Delivery is fire-and-forget: QueueNotifier hands the
email to the RQ "notifications" queue, LoggingNotifier just logs (email
disabled). dispatch_safely guarantees a notifier failure never reaches the
caller. The daily reminder and weekly summary sweeps run from the scheduler.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol

from sqlalchemy import and_, select

from codeduel.core.config import settings
from codeduel.core.database import challenge_members, challenges, daily_results, get_db_session, users
from codeduel.core.emailer import send_email
from codeduel.core.logging import log_event
from codeduel.core.metrics import notifications_total
from codeduel.features.notifications import templates
from codeduel.models.challenge import ChallengeStatus, User

logger = logging.getLogger("codeduel")


class Notifier(Protocol):
    def notify_streak_broken(self, user: User, prior_streak: int, challenge_name: str) -> None: ...

    def notify_streak_reminder(self, user: User, current_streak: int, challenge_name: str) -> None: ...

    def notify_weekly_summary(self, user: User, stats: Dict[str, Any]) -> None: ...


def send_notification_email(template: str, to_email: str, username: str, streak: int, challenge_name: str) -> bool:
    """RQ job: render and send one notification email."""
    rendered = templates.render(template, username, streak, challenge_name)
    sent = send_email(to_email, rendered.subject, rendered.html, rendered.text)
    notifications_total.inc(labels={"status": "sent" if sent else "skipped"})
    return sent


def send_weekly_summary_email(to_email: str, username: str, stats: Dict[str, Any]) -> bool:
    """RQ job: render and send one weekly summary."""
    rendered = templates.weekly_summary(username, stats)
    sent = send_email(to_email, rendered.subject, rendered.html, rendered.text)
    notifications_total.inc(labels={"status": "sent" if sent else "skipped"})
    return sent


class QueueNotifier:
    def __init__(self, queue=None):
        self._queue = queue

    @property
    def queue(self):
        if self._queue is None:
            from codeduel.queue_client import NOTIFICATION_QUEUE, get_queue

            self._queue = get_queue(NOTIFICATION_QUEUE)
        return self._queue

    def _reachable(self, event: str, user: User) -> bool:
        if user.email:
            return True
        log_event("info", "notification.no_email", event_type=event, extra={"user_id": user.user_id})
        notifications_total.inc(labels={"status": "skipped"})
        return False

    def _enqueue(self, template: str, user: User, streak: int, challenge_name: str) -> None:
        if not self._reachable(template, user):
            return
        self.queue.enqueue(
            send_notification_email,
            template,
            user.email,
            user.username,
            streak,
            challenge_name,
            result_ttl=3600,
            failure_ttl=settings.EVALUATION_FAILURE_TTL_SECONDS,
        )
        notifications_total.inc(labels={"status": "queued"})

    def notify_streak_broken(self, user: User, prior_streak: int, challenge_name: str) -> None:
        self._enqueue("streak_broken", user, prior_streak, challenge_name)

    def notify_streak_reminder(self, user: User, current_streak: int, challenge_name: str) -> None:
        self._enqueue("streak_reminder", user, current_streak, challenge_name)

    def notify_weekly_summary(self, user: User, stats: Dict[str, Any]) -> None:
        if not self._reachable("weekly_summary", user):
            return
        self.queue.enqueue(
            send_weekly_summary_email,
            user.email,
            user.username,
            stats,
            result_ttl=3600,
            failure_ttl=settings.EVALUATION_FAILURE_TTL_SECONDS,
        )
        notifications_total.inc(labels={"status": "queued"})


class LoggingNotifier:
    def notify_streak_broken(self, user: User, prior_streak: int, challenge_name: str) -> None:
        log_event(
            "info",
            "notification.streak_broken",
            event_type="streak_broken",
            extra={"user_id": user.user_id, "prior_streak": prior_streak, "challenge": challenge_name},
        )
        notifications_total.inc(labels={"status": "logged"})

    def notify_streak_reminder(self, user: User, current_streak: int, challenge_name: str) -> None:
        log_event(
            "info",
            "notification.streak_reminder",
            event_type="streak_reminder",
            extra={"user_id": user.user_id, "current_streak": current_streak, "challenge": challenge_name},
        )
        notifications_total.inc(labels={"status": "logged"})

    def notify_weekly_summary(self, user: User, stats: Dict[str, Any]) -> None:
        log_event(
            "info",
            "notification.weekly_summary",
            event_type="weekly_summary",
            extra={"user_id": user.user_id, "days_completed": stats.get("days_completed"), "problems_solved": stats.get("problems_solved")},
        )
        notifications_total.inc(labels={"status": "logged"})


def dispatch_safely(fn: Callable[..., None], *args, **kwargs) -> bool:
    """Run a notifier call; log and swallow any failure. Returns True on success."""
    try:
        fn(*args, **kwargs)
        return True
    except Exception as exc:
        notifications_total.inc(labels={"status": "failed"})
        logger.error(
            "notification.dispatch_failed",
            exc_info=True,
            extra={"event_type": getattr(fn, "__name__", "notify"), "error_code": type(exc).__name__},
        )
        return False


def get_notifier() -> Notifier:
    if settings.EMAIL_ENABLED:
        return QueueNotifier()
    return LoggingNotifier()


def send_daily_reminders(on_date: Optional[date] = None, notifier: Optional[Notifier] = None) -> Dict[str, int]:
    """
    Remind members who have not completed today's goal.

    Candidates are active memberships in ACTIVE, in-window challenges with no
    completed result for the date. One reminder per user, naming the challenge
    where their current streak is highest.
    """
    on_date = on_date or datetime.now(timezone.utc).date()
    notifier = notifier or get_notifier()

    completed_today = (
        select(daily_results.c.member_id)
        .where(and_(daily_results.c.date == on_date, daily_results.c.completed.is_(True)))
    )

    with get_db_session() as session:
        rows = session.execute(
            select(
                challenge_members.c.id.label("member_id"),
                challenge_members.c.current_streak,
                challenges.c.name.label("challenge_name"),
                users.c.user_id,
                users.c.username,
                users.c.email,
                users.c.leetcode_username,
            )
            .select_from(
                challenge_members
                .join(challenges, challenges.c.id == challenge_members.c.challenge_id)
                .join(users, users.c.user_id == challenge_members.c.user_id)
            )
            .where(
                and_(
                    challenge_members.c.is_active.is_(True),
                    challenges.c.status == ChallengeStatus.ACTIVE.value,
                    challenges.c.start_date <= on_date,
                    challenges.c.end_date >= on_date,
                    challenge_members.c.id.not_in(completed_today),
                )
            )
        ).mappings().all()

    per_user: Dict[str, List[dict]] = defaultdict(list)
    for row in rows:
        per_user[row["user_id"]].append(dict(row))

    sent = 0
    failed = 0
    for user_id, entries in per_user.items():
        best = max(entries, key=lambda e: e["current_streak"])
        user = User(
            user_id=user_id,
            username=best["username"],
            email=best["email"],
            leetcode_username=best["leetcode_username"],
        )
        if dispatch_safely(notifier.notify_streak_reminder, user, int(best["current_streak"]), best["challenge_name"]):
            sent += 1
        else:
            failed += 1

    log_event(
        "info",
        "notification.reminders_sent",
        event_type="daily_reminders",
        extra={"date": on_date.isoformat(), "users": len(per_user), "sent": sent, "failed": failed},
    )
    return {"users": len(per_user), "sent": sent, "failed": failed}


def _standings(memberships: List[dict]) -> Dict[str, int]:
    """Rank of every active membership within its challenge: longest, then current streak, then fewest penalties."""
    by_challenge: Dict[str, List[dict]] = defaultdict(list)
    for row in memberships:
        by_challenge[row["challenge_id"]].append(row)
    ranks: Dict[str, int] = {}
    for rows in by_challenge.values():
        ordered = sorted(
            rows,
            key=lambda r: (-r["longest_streak"], -r["current_streak"], r["total_penalties"], r["member_id"]),
        )
        for position, row in enumerate(ordered, start=1):
            ranks[row["member_id"]] = position
    return ranks


def build_weekly_stats(week_end: date) -> Dict[str, Dict[str, Any]]:
    """Per-user rollup of the seven days ending on week_end, keyed by user_id."""
    week_start = week_end - timedelta(days=6)

    with get_db_session() as session:
        memberships = session.execute(
            select(
                challenge_members.c.id.label("member_id"),
                challenge_members.c.challenge_id,
                challenge_members.c.current_streak,
                challenge_members.c.longest_streak,
                challenge_members.c.total_penalties,
                challenges.c.name.label("challenge_name"),
                challenges.c.status,
                users.c.user_id,
                users.c.username,
                users.c.email,
                users.c.leetcode_username,
            )
            .select_from(
                challenge_members
                .join(challenges, challenges.c.id == challenge_members.c.challenge_id)
                .join(users, users.c.user_id == challenge_members.c.user_id)
            )
            .where(challenge_members.c.is_active.is_(True))
            .order_by(users.c.user_id, challenges.c.name)
        ).mappings().all()
        completed = session.execute(
            select(daily_results.c.member_id, daily_results.c.date, daily_results.c.submissions_count)
            .where(
                and_(
                    daily_results.c.completed.is_(True),
                    daily_results.c.date >= week_start,
                    daily_results.c.date <= week_end,
                )
            )
        ).all()

    memberships = [dict(row) for row in memberships]
    ranks = _standings(memberships)
    completed_by_member: Dict[str, List[tuple]] = defaultdict(list)
    for member_id, on_date, submissions in completed:
        completed_by_member[member_id].append((on_date, submissions))

    stats: Dict[str, Dict[str, Any]] = {}
    for row in memberships:
        entry = stats.setdefault(
            row["user_id"],
            {
                "user": User(
                    user_id=row["user_id"],
                    username=row["username"],
                    email=row["email"],
                    leetcode_username=row["leetcode_username"],
                ),
                "week_start": week_start.isoformat(),
                "week_end": week_end.isoformat(),
                "problems_solved": 0,
                "completed_dates": set(),
                "current_streak": 0,
                "longest_streak": 0,
                "active_challenges": [],
            },
        )
        entry["current_streak"] = max(entry["current_streak"], row["current_streak"])
        entry["longest_streak"] = max(entry["longest_streak"], row["longest_streak"])
        days = completed_by_member.get(row["member_id"], [])
        for on_date, submissions in days:
            entry["completed_dates"].add(on_date)
            entry["problems_solved"] += int(submissions or 0)
        if row["status"] == ChallengeStatus.ACTIVE.value:
            entry["active_challenges"].append({
                "name": row["challenge_name"],
                "rank": ranks[row["member_id"]],
                "streak": row["current_streak"],
                "completion_rate": round(len(days) / 7 * 100),
            })

    for entry in stats.values():
        entry["days_completed"] = len(entry.pop("completed_dates"))
    return stats


def send_weekly_summaries(week_end: Optional[date] = None, notifier: Optional[Notifier] = None) -> Dict[str, int]:
    """One summary per user with at least one active membership."""
    week_end = week_end or datetime.now(timezone.utc).date()
    notifier = notifier or get_notifier()

    per_user = build_weekly_stats(week_end)
    sent = 0
    failed = 0
    for entry in per_user.values():
        user = entry.pop("user")
        if dispatch_safely(notifier.notify_weekly_summary, user, entry):
            sent += 1
        else:
            failed += 1

    log_event(
        "info",
        "notification.weekly_summaries_sent",
        event_type="weekly_summary",
        extra={"week_end": week_end.isoformat(), "users": len(per_user), "sent": sent, "failed": failed},
    )
    return {"users": len(per_user), "sent": sent, "failed": failed}
