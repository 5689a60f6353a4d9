"""
Evaluation engine: decides one (challenge, member, date) and folds the outcome
into streak, penalty and notification state.

Exactly-once effect per key comes from four layers that each hold on their own:
deterministic job ids, the resolved-result short-circuit below, the unique
constraint on daily_results, and the pending -> resolved compare-and-set.
"""
from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Callable, Optional, Tuple

from sqlalchemy import and_, select, update
from sqlalchemy.exc import IntegrityError

from codeduel.core.database import daily_results, get_db_session, users
from codeduel.core.errors import NotFoundError, UpstreamAuthExpiredError, UpstreamError, UpstreamRateLimitedError
from codeduel.core.logging import log_event
from codeduel.core.metrics import evaluations_total
from codeduel.features.evaluation.rules import apply_challenge_rules
from codeduel.features.notifications.service import Notifier, dispatch_safely, get_notifier
from codeduel.features.penalties.ledger import append_penalty
from codeduel.features.problems.cache import ProblemMetadataCache
from codeduel.features.sessions.service import get_user_session, invalidate_user_session
from codeduel.features.streaks.service import apply_streak_outcome
from codeduel.models.challenge import Challenge, Membership, User
from codeduel.models.evaluation import DailyResult, RuleResult
from codeduel.models.streak import StreakUpdate

logger = logging.getLogger("codeduel")

NO_IDENTITY_REASON = "No LeetCode username configured"
UPSTREAM_FAILURE_REASON = "Failed to fetch submissions from LeetCode"
UNKNOWN_IDENTITY_REASON = "LeetCode user not found"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _key_clause(challenge_id: str, member_id: str, on_date: date):
    return and_(
        daily_results.c.challenge_id == challenge_id,
        daily_results.c.member_id == member_id,
        daily_results.c.date == on_date,
    )


def load_result(challenge_id: str, member_id: str, on_date: date) -> Optional[DailyResult]:
    with get_db_session() as session:
        row = session.execute(
            select(daily_results).where(_key_clause(challenge_id, member_id, on_date))
        ).mappings().first()
    return DailyResult.from_row(row) if row else None


def load_user(user_id: str) -> User:
    with get_db_session() as session:
        row = session.execute(select(users).where(users.c.user_id == user_id)).mappings().first()
    if row is None:
        raise NotFoundError(f"User {user_id} not found")
    return User.from_row(row)


def _submission_details(items) -> list:
    return [
        {
            "title": item.title,
            "title_slug": item.title_slug,
            "difficulty": item.difficulty,
            "timestamp": item.timestamp,
            "language": item.language,
        }
        for item in items
    ]


class EvaluationEngine:
    def __init__(
        self,
        *,
        client=None,
        cache: Optional[ProblemMetadataCache] = None,
        notifier: Optional[Notifier] = None,
        rate_limiter=None,
        session_provider: Callable[[str], object] = get_user_session,
        session_invalidator: Callable[[str], object] = invalidate_user_session,
        now_fn: Callable[[], datetime] = _now,
    ):
        self._client = client
        self._cache = cache
        self._notifier = notifier
        self._rate_limiter = rate_limiter
        self.session_provider = session_provider
        self.session_invalidator = session_invalidator
        self.now_fn = now_fn

    @property
    def client(self):
        if self._client is None:
            from codeduel.services.leetcode_client import get_leetcode_client

            self._client = get_leetcode_client()
        return self._client

    @property
    def cache(self) -> ProblemMetadataCache:
        if self._cache is None:
            self._cache = ProblemMetadataCache(client=self.client)
        return self._cache

    @property
    def notifier(self) -> Notifier:
        if self._notifier is None:
            self._notifier = get_notifier()
        return self._notifier

    @property
    def rate_limiter(self):
        if self._rate_limiter is None:
            from codeduel.core.ratelimit import get_rate_limiter

            self._rate_limiter = get_rate_limiter()
        return self._rate_limiter

    def evaluate(self, challenge: Challenge, member: Membership, on_date: date, user: Optional[User] = None) -> DailyResult:
        existing = load_result(challenge.id, member.id, on_date)
        if existing is not None and not existing.is_pending:
            evaluations_total.inc(labels={"outcome": "skipped"})
            return existing

        user = user or load_user(member.user_id)

        if not user.leetcode_username:
            rule = RuleResult(completed=False, submissions_count=0, problems_solved=[])
            return self._resolve(
                challenge, member, user, on_date, rule,
                metadata={"reason": NO_IDENTITY_REASON},
                penalty_reason=NO_IDENTITY_REASON,
            )

        credentials = self.session_provider(user.user_id)
        try:
            items = self.client.fetch_activity(user.leetcode_username, on_date, session=credentials)
        except UpstreamError as exc:
            if not exc.retryable:
                return self._resolve_unfetchable(challenge, member, user, on_date, exc)
            if isinstance(exc, UpstreamAuthExpiredError) and credentials is not None:
                # Retries go out unauthenticated once the stored session is dropped
                self.session_invalidator(user.user_id)
            self._record_pending(challenge, member, on_date, exc)
            if isinstance(exc, UpstreamRateLimitedError):
                self.rate_limiter.cool_down()
            raise

        enriched = self.cache.enrich(items, session=credentials)
        rule = apply_challenge_rules(challenge, enriched)
        return self._resolve(
            challenge, member, user, on_date, rule,
            metadata={"submissions": _submission_details(rule.qualifying_items)},
            penalty_reason=f"Failed to meet daily requirement: {rule.submissions_count}/{challenge.min_submissions_per_day} submissions",
        )

    def _resolve_unfetchable(self, challenge: Challenge, member: Membership, user: User, on_date: date, exc: UpstreamError) -> DailyResult:
        """A permanent upstream answer (unknown user) is a configuration failure: failed, penalized, not retried."""
        log_event(
            "warning",
            "evaluation.identity_rejected",
            challenge_id=challenge.id,
            member_id=member.id,
            event_type="evaluation.identity_rejected",
            error_code=exc.code,
            extra={"date": on_date.isoformat(), "leetcode_username": user.leetcode_username},
        )
        rule = RuleResult(completed=False, submissions_count=0, problems_solved=[])
        return self._resolve(
            challenge, member, user, on_date, rule,
            metadata={"reason": UNKNOWN_IDENTITY_REASON, "error": exc.message, "error_kind": exc.kind},
            penalty_reason=UNKNOWN_IDENTITY_REASON,
        )

    def _record_pending(self, challenge: Challenge, member: Membership, on_date: date, exc: UpstreamError) -> None:
        """Insert (or refresh) a pending row. Never touches streaks or penalties."""
        metadata = {
            "reason": UPSTREAM_FAILURE_REASON,
            "error": exc.message,
            "error_kind": exc.kind,
        }
        try:
            with get_db_session() as session:
                row = session.execute(
                    select(daily_results.c.id, daily_results.c.completed, daily_results.c["metadata"].label("details"))
                    .where(_key_clause(challenge.id, member.id, on_date))
                ).first()
                if row is None:
                    session.execute(
                        daily_results.insert().values(
                            challenge_id=challenge.id,
                            member_id=member.id,
                            date=on_date,
                            completed=None,
                            submissions_count=0,
                            problems_solved=[],
                            evaluated_at=None,
                            metadata={**metadata, "attempts": 1},
                        )
                    )
                elif row.completed is None:
                    attempts = int((row.details or {}).get("attempts", 1)) + 1
                    session.execute(
                        update(daily_results)
                        .where(and_(daily_results.c.id == row.id, daily_results.c.completed.is_(None)))
                        .values(metadata={**metadata, "attempts": attempts})
                    )
        except IntegrityError:
            # Another worker created the row first; its state wins
            pass

        evaluations_total.inc(labels={"outcome": "pending"})
        log_event(
            "warning",
            "evaluation.pending",
            challenge_id=challenge.id,
            member_id=member.id,
            event_type="evaluation.pending",
            error_code=exc.code,
            extra={"date": on_date.isoformat(), "error_kind": exc.kind},
        )

    def _resolve(
        self,
        challenge: Challenge,
        member: Membership,
        user: User,
        on_date: date,
        rule: RuleResult,
        *,
        metadata: dict,
        penalty_reason: str,
    ) -> DailyResult:
        evaluated_at = self.now_fn()
        values = {
            "completed": rule.completed,
            "submissions_count": rule.submissions_count,
            "problems_solved": list(rule.problems_solved),
            "evaluated_at": evaluated_at,
            "metadata": metadata,
        }

        streak: Optional[StreakUpdate] = None
        try:
            with get_db_session() as session:
                won, streak = self._write_outcome(session, challenge, member, on_date, values, rule, penalty_reason)
                if not won:
                    streak = None
        except IntegrityError:
            # Lost the create race on the unique key: the winner's row stands
            streak = None
            won = False

        result = load_result(challenge.id, member.id, on_date)
        if not won:
            evaluations_total.inc(labels={"outcome": "skipped"})
            log_event(
                "info",
                "evaluation.already_resolved",
                challenge_id=challenge.id,
                member_id=member.id,
                event_type="evaluation.noop",
                extra={"date": on_date.isoformat()},
            )
            return result

        outcome = "completed" if rule.completed else "failed"
        evaluations_total.inc(labels={"outcome": outcome})
        log_event(
            "info",
            "evaluation.resolved",
            challenge_id=challenge.id,
            member_id=member.id,
            event_type="evaluation.resolved",
            extra={
                "date": on_date.isoformat(),
                "outcome": outcome,
                "count": f"{rule.submissions_count}/{challenge.min_submissions_per_day}",
            },
        )

        if streak is not None and streak.broken:
            dispatch_safely(self.notifier.notify_streak_broken, user, streak.previous_current, challenge.name)
        return result

    def _write_outcome(self, session, challenge, member, on_date, values, rule, penalty_reason) -> Tuple[bool, Optional[StreakUpdate]]:
        """Result row, streak and penalty in the caller's transaction. Returns (won, streak)."""
        row = session.execute(
            select(daily_results.c.id, daily_results.c.completed)
            .where(_key_clause(challenge.id, member.id, on_date))
            .with_for_update()
        ).first()

        if row is None:
            session.execute(
                daily_results.insert().values(
                    challenge_id=challenge.id,
                    member_id=member.id,
                    date=on_date,
                    **values,
                )
            )
        elif row.completed is None:
            swapped = session.execute(
                update(daily_results)
                .where(and_(daily_results.c.id == row.id, daily_results.c.completed.is_(None)))
                .values(**values)
            )
            if not swapped.rowcount:
                return False, None
        else:
            return False, None

        streak = apply_streak_outcome(session, member.id, rule.completed)
        if not rule.completed and challenge.penalty_amount > 0:
            append_penalty(session, member.id, challenge.penalty_amount, penalty_reason, on_date)
        return True, streak


_engine: Optional[EvaluationEngine] = None


def get_engine() -> EvaluationEngine:
    global _engine
    if _engine is None:
        _engine = EvaluationEngine()
    return _engine


def set_engine(engine: Optional[EvaluationEngine]) -> None:
    global _engine
    _engine = engine
