# codeduel/conftest.py
import os
from datetime import date, datetime, timezone
from types import SimpleNamespace
from typing import Dict, List, Optional

import pytest

# Must be set before codeduel modules read the environment
os.environ.setdefault("TEST_DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("ENCRYPTION_KEY", "0f" * 32)
os.environ.setdefault("ENV", "test")

from codeduel.core import database, idempotency  # noqa: E402
from codeduel.core.metrics import METRICS  # noqa: E402
from codeduel.core.ratelimit import InMemoryRateLimiter, RateLimitConfig, set_rate_limiter  # noqa: E402
from codeduel.features.evaluation.dispatch import InlineDispatcher, set_dispatcher  # noqa: E402
from codeduel.features.evaluation.engine import EvaluationEngine, set_engine  # noqa: E402
from codeduel.features.problems.cache import ProblemMetadataCache  # noqa: E402
from codeduel.models.challenge import Challenge, Membership  # noqa: E402
from codeduel.models.evaluation import ActivityItem, ProblemMetadata  # noqa: E402

EVAL_DATE = date(2024, 1, 15)
EVAL_DAY_START = 1705276800  # 2024-01-15T00:00:00Z


@pytest.fixture(scope="function", autouse=True)
def fresh_database():
    """
    Fresh schema per test.

    With the default in-memory SQLite URL disposing the engine throws the whole
    database away; against a real TEST_DATABASE_URL the tables are dropped.
    """
    database.dispose_engine()
    database.init_engine()
    database.create_all_tables()
    yield
    database.drop_all_tables()
    database.dispose_engine()


@pytest.fixture(scope="function", autouse=True)
def reset_process_state():
    """Clear module-level singletons so tests never leak into each other."""
    METRICS.reset()
    idempotency._in_memory_keys.clear()
    set_rate_limiter(InMemoryRateLimiter(RateLimitConfig(per_second=1000, burst=1000)))
    set_dispatcher(None)
    set_engine(None)
    yield
    set_rate_limiter(None)
    set_dispatcher(None)
    set_engine(None)


class FakeLeetCodeClient:
    """
    Stand-in for LeetCodeClient.

    activity maps username -> items; errors is a list consumed one per
    fetch_activity call (None entries mean "succeed this time").
    """

    def __init__(self, activity=None, problems=None, errors=None, profile_error=None):
        self.activity: Dict[str, List[ActivityItem]] = activity or {}
        self.problems: Dict[str, ProblemMetadata] = problems or {}
        self.errors: list = list(errors or [])
        self.profile_error = profile_error
        self.activity_calls: list = []
        self.problem_calls: list = []
        self.problem_sessions: list = []
        self.profile_calls: list = []

    def fetch_activity(self, username, on_date, session=None):
        self.activity_calls.append((username, on_date, session))
        if self.errors:
            error = self.errors.pop(0)
            if error is not None:
                raise error
        return [
            ActivityItem(
                id=item.id,
                title=item.title,
                title_slug=item.title_slug,
                timestamp=item.timestamp,
                language=item.language,
            )
            for item in self.activity.get(username, [])
        ]

    def fetch_problem(self, title_slug, session=None):
        self.problem_calls.append(title_slug)
        self.problem_sessions.append(session)
        meta = self.problems.get(title_slug)
        if meta is None:
            return None
        return ProblemMetadata(
            title_slug=meta.title_slug,
            title=meta.title,
            difficulty=meta.difficulty,
            topic_tags=list(meta.topic_tags),
            last_fetched_at=datetime.now(timezone.utc),
        )

    def fetch_user_profile(self, username, session=None):
        self.profile_calls.append((username, session))
        if self.profile_error is not None:
            raise self.profile_error
        return {"username": username, "streak": 0, "total_active_days": 0, "active_years": [], "submission_calendar": {}}


class RecordingNotifier:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.broken: list = []
        self.reminders: list = []
        self.summaries: list = []

    def notify_streak_broken(self, user, prior_streak, challenge_name):
        if self.fail:
            raise RuntimeError("smtp down")
        self.broken.append((user.user_id, prior_streak, challenge_name))

    def notify_streak_reminder(self, user, current_streak, challenge_name):
        if self.fail:
            raise RuntimeError("smtp down")
        self.reminders.append((user.user_id, current_streak, challenge_name))

    def notify_weekly_summary(self, user, stats):
        if self.fail:
            raise RuntimeError("smtp down")
        self.summaries.append((user.user_id, stats))


class FakeJob:
    def __init__(self, queue, job_id, func, args, kwargs):
        self.queue = queue
        self.id = job_id
        self.func = func
        self.args = args
        self.kwargs = kwargs
        self.status = "queued"
        self.requeued = 0

    def get_status(self, refresh=True):
        return self.status

    def requeue(self):
        self.status = "queued"
        self.requeued += 1

    def delete(self):
        self.queue.jobs.pop(self.id, None)


class FakeQueue:
    """Records enqueue calls the way an RQ Queue would receive them."""

    def __init__(self, name="evaluation"):
        self.name = name
        self.jobs: Dict[str, FakeJob] = {}
        self.enqueued: List[FakeJob] = []

    def fetch_job(self, job_id):
        return self.jobs.get(job_id)

    def enqueue(self, func, *args, job_id=None, **kwargs):
        job_id = job_id or f"job-{len(self.enqueued) + 1}"
        job = FakeJob(self, job_id, func, args, kwargs)
        self.jobs[job_id] = job
        self.enqueued.append(job)
        return job


class Seed:
    """Insert rows directly; users first since the other tables point at them."""

    def user(self, user_id: str = "u1", *, username: Optional[str] = None, email: Optional[str] = None, leetcode_username: Optional[str] = None) -> str:
        with database.get_db_session() as session:
            session.execute(
                database.users.insert().values(
                    user_id=user_id,
                    username=username or user_id,
                    email=email,
                    leetcode_username=leetcode_username,
                )
            )
        return user_id

    def challenge(
        self,
        challenge_id: str = "c1",
        owner_id: str = "u1",
        *,
        name: str = "January Grind",
        start_date: date = date(2024, 1, 1),
        end_date: date = date(2024, 1, 31),
        min_submissions_per_day: int = 1,
        difficulty_filter=None,
        unique_problem_constraint: bool = True,
        penalty_amount: int = 0,
        status: str = "ACTIVE",
        visibility: str = "PUBLIC",
    ) -> Challenge:
        values = dict(
            id=challenge_id,
            owner_id=owner_id,
            name=name,
            start_date=start_date,
            end_date=end_date,
            min_submissions_per_day=min_submissions_per_day,
            difficulty_filter=list(difficulty_filter or []),
            unique_problem_constraint=unique_problem_constraint,
            penalty_amount=penalty_amount,
            status=status,
            visibility=visibility,
        )
        with database.get_db_session() as session:
            session.execute(database.challenges.insert().values(**values))
        return Challenge.from_row(values)

    def member(
        self,
        member_id: str = "m1",
        challenge_id: str = "c1",
        user_id: str = "u1",
        *,
        current_streak: int = 0,
        longest_streak: int = 0,
        total_penalties: int = 0,
        is_active: bool = True,
    ) -> Membership:
        values = dict(
            id=member_id,
            challenge_id=challenge_id,
            user_id=user_id,
            current_streak=current_streak,
            longest_streak=max(longest_streak, current_streak),
            total_penalties=total_penalties,
            is_active=is_active,
        )
        with database.get_db_session() as session:
            session.execute(database.challenge_members.insert().values(**values))
        return Membership.from_row(values)

    def membership_row(self, member_id: str):
        with database.get_db_session() as session:
            return session.execute(
                database.challenge_members.select().where(database.challenge_members.c.id == member_id)
            ).mappings().first()

    def ledger_rows(self, member_id: str):
        with database.get_db_session() as session:
            return session.execute(
                database.penalty_ledger.select().where(database.penalty_ledger.c.member_id == member_id)
            ).mappings().all()

    def result_rows(self):
        with database.get_db_session() as session:
            return session.execute(database.daily_results.select()).mappings().all()


def make_item(slug: str, offset_seconds: int = 3600, title: Optional[str] = None, item_id: Optional[str] = None) -> ActivityItem:
    return ActivityItem(
        id=item_id or f"{slug}-{offset_seconds}",
        title=title or slug.replace("-", " ").title(),
        title_slug=slug,
        timestamp=EVAL_DAY_START + offset_seconds,
        language="python3",
    )


def make_problem(slug: str, difficulty: str, tags=None) -> ProblemMetadata:
    return ProblemMetadata(title_slug=slug, title=slug.replace("-", " ").title(), difficulty=difficulty, topic_tags=list(tags or []))


@pytest.fixture
def seed():
    return Seed()


@pytest.fixture
def fake_client():
    return FakeLeetCodeClient()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def fake_queue():
    return FakeQueue()


@pytest.fixture
def factories():
    return SimpleNamespace(item=make_item, problem=make_problem, eval_date=EVAL_DATE, day_start=EVAL_DAY_START)


@pytest.fixture
def engine(fake_client, notifier):
    """Evaluation engine wired to fakes and installed as the process engine."""
    limiter = InMemoryRateLimiter(RateLimitConfig(per_second=1000, burst=1000))
    built = EvaluationEngine(
        client=fake_client,
        cache=ProblemMetadataCache(client=fake_client),
        notifier=notifier,
        rate_limiter=limiter,
        session_provider=lambda user_id: None,
    )
    set_engine(built)
    return built


@pytest.fixture
def inline_dispatcher():
    dispatcher = InlineDispatcher(attempts=3, backoff_base_seconds=5, sleep_fn=lambda seconds: None)
    set_dispatcher(dispatcher)
    return dispatcher


@pytest.fixture
def failing_notifier():
    return RecordingNotifier(fail=True)
