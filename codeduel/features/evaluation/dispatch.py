"""
Job dispatch for the evaluation fan-out.

Two interchangeable dispatchers:
- RQDispatcher: durable Redis-backed queue used in production.
- InlineDispatcher: runs handlers in-process (tests, manual runs without Redis).

Both derive job identity from (entity, date) so a repeated trigger for the
same day is suppressed instead of duplicated, and both apply the same
exponential retry policy.
"""
from __future__ import annotations

import logging
import time
from datetime import date
from typing import Callable, Dict, List, Optional, Protocol

from codeduel.core.config import settings
from codeduel.core.idempotency import check_and_set, release_key
from codeduel.core.logging import bind_request_id, log_event
from codeduel.core.metrics import jobs_enqueued_total, jobs_skipped_total

logger = logging.getLogger("codeduel")

CHALLENGE_HANDLER = "codeduel.features.evaluation.jobs.process_challenge_evaluation"
MEMBER_HANDLER = "codeduel.features.evaluation.jobs.process_member_evaluation"

# Jobs in these states are still alive; never enqueue a twin
_LIVE_STATUSES = {"queued", "started", "deferred", "scheduled"}


def challenge_job_id(challenge_id: str, on_date: date) -> str:
    return f"challenge-{challenge_id}-{on_date.isoformat()}"


def member_job_id(member_id: str, on_date: date) -> str:
    return f"member-{member_id}-{on_date.isoformat()}"


def backoff_intervals(attempts: int, base_seconds: int) -> List[int]:
    """Delays between attempts: base, 2*base, 4*base, ... (attempts - 1 entries)."""
    return [int(base_seconds) * (2 ** i) for i in range(max(0, attempts - 1))]


class JobDispatcher(Protocol):
    def enqueue_challenge(self, challenge_id: str, on_date: date, force: bool = False) -> Optional[str]: ...

    def enqueue_member(self, member_id: str, challenge_id: str, on_date: date, force: bool = False) -> Optional[str]: ...


class RQDispatcher:
    """Enqueue onto the RQ "evaluation" queue. Returns the job id, or None when suppressed."""

    def __init__(
        self,
        queue=None,
        *,
        attempts: Optional[int] = None,
        backoff_base_seconds: Optional[int] = None,
        result_ttl: Optional[int] = None,
        failure_ttl: Optional[int] = None,
        job_timeout: Optional[str] = None,
    ):
        self._queue = queue
        self.attempts = attempts or settings.EVALUATION_JOB_ATTEMPTS
        self.backoff_base_seconds = backoff_base_seconds or settings.EVALUATION_BACKOFF_BASE_SECONDS
        self.result_ttl = result_ttl or settings.EVALUATION_RESULT_TTL_SECONDS
        self.failure_ttl = failure_ttl or settings.EVALUATION_FAILURE_TTL_SECONDS
        self.job_timeout = job_timeout or settings.EVALUATION_JOB_TIMEOUT

    @property
    def queue(self):
        if self._queue is None:
            from codeduel.queue_client import EVALUATION_QUEUE, get_queue

            self._queue = get_queue(EVALUATION_QUEUE)
        return self._queue

    def _retry(self):
        from rq import Retry

        intervals = backoff_intervals(self.attempts, self.backoff_base_seconds)
        if not intervals:
            return None
        return Retry(max=len(intervals), interval=intervals)

    def _enqueue(self, kind: str, job_id: str, handler: str, args: tuple, force: bool) -> Optional[str]:
        existing = self.queue.fetch_job(job_id)
        if existing is not None:
            status = existing.get_status(refresh=True)
            status = getattr(status, "value", status)
            if not force or status in _LIVE_STATUSES:
                jobs_skipped_total.inc(labels={"kind": kind})
                log_event("info", "job.duplicate_suppressed", event_type=f"job.{kind}", extra={"job_id": job_id, "status": status})
                return None
            if status == "failed":
                existing.requeue()
                jobs_enqueued_total.inc(labels={"kind": kind})
                log_event("info", "job.requeued", event_type=f"job.{kind}", extra={"job_id": job_id})
                return job_id
            existing.delete()

        self.queue.enqueue(
            handler,
            *args,
            job_id=job_id,
            retry=self._retry(),
            result_ttl=self.result_ttl,
            failure_ttl=self.failure_ttl,
            job_timeout=self.job_timeout,
        )
        jobs_enqueued_total.inc(labels={"kind": kind})
        return job_id

    def enqueue_challenge(self, challenge_id: str, on_date: date, force: bool = False) -> Optional[str]:
        return self._enqueue(
            "challenge",
            challenge_job_id(challenge_id, on_date),
            CHALLENGE_HANDLER,
            (challenge_id, on_date.isoformat()),
            force,
        )

    def enqueue_member(self, member_id: str, challenge_id: str, on_date: date, force: bool = False) -> Optional[str]:
        return self._enqueue(
            "member",
            member_job_id(member_id, on_date),
            MEMBER_HANDLER,
            (member_id, challenge_id, on_date.isoformat()),
            force,
        )


class InlineDispatcher:
    """
    Run handlers synchronously in the calling process.

    Duplicate job ids are suppressed through the idempotency_keys table. A job
    that keeps failing is recorded in `failed` and never propagates, so one
    member cannot break its siblings or the parent fan-out.
    """

    def __init__(
        self,
        *,
        attempts: Optional[int] = None,
        backoff_base_seconds: Optional[int] = None,
        sleep_fn: Callable[[float], None] = time.sleep,
    ):
        self.attempts = attempts or settings.EVALUATION_JOB_ATTEMPTS
        self.backoff_base_seconds = backoff_base_seconds if backoff_base_seconds is not None else settings.EVALUATION_BACKOFF_BASE_SECONDS
        self.sleep_fn = sleep_fn
        self.completed: Dict[str, object] = {}
        self.failed: Dict[str, str] = {}
        self.attempts_made: Dict[str, int] = {}

    def _run(self, kind: str, job_id: str, fn: Callable, args: tuple, force: bool) -> Optional[str]:
        if force:
            release_key(job_id)
        if check_and_set(job_id, operation=f"job.{kind}"):
            jobs_skipped_total.inc(labels={"kind": kind})
            log_event("info", "job.duplicate_suppressed", event_type=f"job.{kind}", extra={"job_id": job_id})
            return None

        jobs_enqueued_total.inc(labels={"kind": kind})
        delays = backoff_intervals(self.attempts, self.backoff_base_seconds)
        for attempt in range(1, self.attempts + 1):
            self.attempts_made[job_id] = attempt
            try:
                with bind_request_id(job_id):
                    self.completed[job_id] = fn(*args, dispatcher=self)
                self.failed.pop(job_id, None)
                return job_id
            except Exception as exc:
                if attempt < self.attempts:
                    log_event(
                        "warning",
                        "job.retrying",
                        event_type=f"job.{kind}",
                        error_code=getattr(exc, "code", type(exc).__name__),
                        extra={"job_id": job_id, "attempt": attempt},
                    )
                    self.sleep_fn(delays[attempt - 1])
                    continue
                self.failed[job_id] = str(exc)
                logger.error(
                    "job.failed",
                    exc_info=True,
                    extra={"event_type": f"job.{kind}", "error_code": getattr(exc, "code", type(exc).__name__)},
                )
        return job_id

    def enqueue_challenge(self, challenge_id: str, on_date: date, force: bool = False) -> Optional[str]:
        from codeduel.features.evaluation import jobs

        return self._run(
            "challenge",
            challenge_job_id(challenge_id, on_date),
            jobs.process_challenge_evaluation,
            (challenge_id, on_date.isoformat()),
            force,
        )

    def enqueue_member(self, member_id: str, challenge_id: str, on_date: date, force: bool = False) -> Optional[str]:
        from codeduel.features.evaluation import jobs

        return self._run(
            "member",
            member_job_id(member_id, on_date),
            jobs.process_member_evaluation,
            (member_id, challenge_id, on_date.isoformat()),
            force,
        )


_dispatcher: Optional[JobDispatcher] = None


def get_dispatcher() -> JobDispatcher:
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = RQDispatcher()
    return _dispatcher


def set_dispatcher(dispatcher: Optional[JobDispatcher]) -> None:
    global _dispatcher
    _dispatcher = dispatcher
