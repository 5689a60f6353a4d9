"""Job identity, duplicate suppression and retry policy for both dispatchers."""

from datetime import date

from codeduel.core.metrics import jobs_enqueued_total, jobs_skipped_total
from codeduel.features.evaluation import jobs
from codeduel.features.evaluation.dispatch import (
    CHALLENGE_HANDLER,
    MEMBER_HANDLER,
    InlineDispatcher,
    RQDispatcher,
    backoff_intervals,
    challenge_job_id,
    member_job_id,
)

DAY = date(2024, 1, 15)


def test_job_ids_are_derived_from_entity_and_date():
    assert challenge_job_id("c1", DAY) == "challenge-c1-2024-01-15"
    assert member_job_id("m9", DAY) == "member-m9-2024-01-15"


def test_backoff_doubles_from_base():
    assert backoff_intervals(3, 5) == [5, 10]
    assert backoff_intervals(4, 5) == [5, 10, 20]
    assert backoff_intervals(1, 5) == []


def _rq(fake_queue):
    return RQDispatcher(queue=fake_queue, attempts=3, backoff_base_seconds=5, result_ttl=86400, failure_ttl=604800, job_timeout="5m")


def test_rq_enqueue_uses_dotted_handler_and_retention(fake_queue):
    dispatcher = _rq(fake_queue)

    job_id = dispatcher.enqueue_challenge("c1", DAY)

    assert job_id == "challenge-c1-2024-01-15"
    job = fake_queue.jobs[job_id]
    assert job.func == CHALLENGE_HANDLER
    assert job.args == ("c1", "2024-01-15")
    assert job.kwargs["result_ttl"] == 86400
    assert job.kwargs["failure_ttl"] == 604800
    assert job.kwargs["job_timeout"] == "5m"
    retry = job.kwargs["retry"]
    assert retry.max == 2
    assert list(retry.intervals) == [5, 10]


def test_rq_member_job_arguments(fake_queue):
    dispatcher = _rq(fake_queue)

    dispatcher.enqueue_member("m1", "c1", DAY)

    job = fake_queue.jobs["member-m1-2024-01-15"]
    assert job.func == MEMBER_HANDLER
    assert job.args == ("m1", "c1", "2024-01-15")


def test_rq_suppresses_existing_job_in_any_state(fake_queue):
    dispatcher = _rq(fake_queue)
    dispatcher.enqueue_member("m1", "c1", DAY)

    for status in ("queued", "started", "finished", "failed"):
        fake_queue.jobs["member-m1-2024-01-15"].status = status
        assert dispatcher.enqueue_member("m1", "c1", DAY) is None

    assert len(fake_queue.enqueued) == 1
    assert jobs_skipped_total.value({"kind": "member"}) == 4
    assert jobs_enqueued_total.value({"kind": "member"}) == 1


def test_rq_force_requeues_failed_job(fake_queue):
    dispatcher = _rq(fake_queue)
    dispatcher.enqueue_challenge("c1", DAY)
    job = fake_queue.jobs["challenge-c1-2024-01-15"]
    job.status = "failed"

    assert dispatcher.enqueue_challenge("c1", DAY, force=True) == "challenge-c1-2024-01-15"

    assert job.requeued == 1
    assert len(fake_queue.enqueued) == 1


def test_rq_force_replaces_finished_job(fake_queue):
    dispatcher = _rq(fake_queue)
    dispatcher.enqueue_challenge("c1", DAY)
    fake_queue.jobs["challenge-c1-2024-01-15"].status = "finished"

    assert dispatcher.enqueue_challenge("c1", DAY, force=True) == "challenge-c1-2024-01-15"

    assert len(fake_queue.enqueued) == 2
    assert fake_queue.jobs["challenge-c1-2024-01-15"] is fake_queue.enqueued[-1]


def test_rq_force_never_duplicates_a_live_job(fake_queue):
    dispatcher = _rq(fake_queue)
    dispatcher.enqueue_challenge("c1", DAY)
    fake_queue.jobs["challenge-c1-2024-01-15"].status = "started"

    assert dispatcher.enqueue_challenge("c1", DAY, force=True) is None
    assert len(fake_queue.enqueued) == 1


def test_inline_suppresses_duplicate_job_ids(monkeypatch):
    calls = []
    monkeypatch.setattr(jobs, "process_member_evaluation", lambda *args, dispatcher=None: calls.append(args) or {})
    dispatcher = InlineDispatcher(attempts=3, backoff_base_seconds=5, sleep_fn=lambda s: None)

    assert dispatcher.enqueue_member("m1", "c1", DAY) == "member-m1-2024-01-15"
    assert dispatcher.enqueue_member("m1", "c1", DAY) is None

    assert calls == [("m1", "c1", "2024-01-15")]


def test_inline_retries_with_backoff_then_succeeds(monkeypatch):
    sleeps = []
    outcomes = [RuntimeError("boom"), RuntimeError("boom again"), {"ok": True}]

    def flaky(*args, dispatcher=None):
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    monkeypatch.setattr(jobs, "process_member_evaluation", flaky)
    dispatcher = InlineDispatcher(attempts=3, backoff_base_seconds=5, sleep_fn=sleeps.append)

    job_id = dispatcher.enqueue_member("m1", "c1", DAY)

    assert sleeps == [5, 10]
    assert dispatcher.attempts_made[job_id] == 3
    assert dispatcher.completed[job_id] == {"ok": True}
    assert job_id not in dispatcher.failed


def test_inline_failure_is_isolated_per_job(monkeypatch):
    def handler(member_id, challenge_id, date_iso, dispatcher=None):
        if member_id == "bad":
            raise RuntimeError("always fails")
        return {"member_id": member_id}

    monkeypatch.setattr(jobs, "process_member_evaluation", handler)
    dispatcher = InlineDispatcher(attempts=2, backoff_base_seconds=1, sleep_fn=lambda s: None)

    bad = dispatcher.enqueue_member("bad", "c1", DAY)
    good = dispatcher.enqueue_member("good", "c1", DAY)

    assert dispatcher.failed[bad] == "always fails"
    assert dispatcher.attempts_made[bad] == 2
    assert dispatcher.completed[good] == {"member_id": "good"}


def test_inline_force_runs_the_job_again(monkeypatch):
    calls = []
    monkeypatch.setattr(jobs, "process_challenge_evaluation", lambda *args, dispatcher=None: calls.append(args) or {})
    dispatcher = InlineDispatcher(attempts=1, sleep_fn=lambda s: None)

    dispatcher.enqueue_challenge("c1", DAY)
    dispatcher.enqueue_challenge("c1", DAY, force=True)

    assert len(calls) == 2
