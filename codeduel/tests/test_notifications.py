"""Templates, notifier implementations and the reminder and weekly summary sweeps."""

from datetime import date

import pytest

from codeduel.core import emailer
from codeduel.core.config import settings
from codeduel.core.database import daily_results, get_db_session
from codeduel.core.metrics import notifications_total
from codeduel.features.notifications import service
from codeduel.features.notifications.service import (
    LoggingNotifier,
    QueueNotifier,
    dispatch_safely,
    get_notifier,
    send_daily_reminders,
    send_notification_email,
    send_weekly_summaries,
    send_weekly_summary_email,
)
from codeduel.features.notifications.templates import render, weekly_summary
from codeduel.models.challenge import User

ALICE = User(user_id="u1", username="alice", email="alice@example.com", leetcode_username="alice_lc")


def test_streak_broken_template_mentions_lost_streak():
    email = render("streak_broken", "alice", 7, "Winter Arc")

    assert "7-day streak" in email.subject
    assert "Winter Arc" in email.html
    assert "Winter Arc" in email.text


def test_reminder_template_escapes_html():
    email = render("streak_reminder", "<b>eve</b>", 3, "A & B")

    assert "&lt;b&gt;eve&lt;/b&gt;" in email.html
    assert "A &amp; B" in email.html
    assert "3-day streak" in email.subject


def test_unknown_template_is_rejected():
    with pytest.raises(ValueError):
        render("weekly_digest", "alice", 1, "x")


def test_queue_notifier_enqueues_email_job(fake_queue):
    notifier = QueueNotifier(queue=fake_queue)

    notifier.notify_streak_broken(ALICE, 4, "Winter Arc")

    job = fake_queue.enqueued[0]
    assert job.func is send_notification_email
    assert job.args == ("streak_broken", "alice@example.com", "alice", 4, "Winter Arc")
    assert notifications_total.value({"status": "queued"}) == 1


def test_queue_notifier_skips_users_without_email(fake_queue):
    notifier = QueueNotifier(queue=fake_queue)

    notifier.notify_streak_reminder(User(user_id="u2", username="bob"), 2, "Winter Arc")

    assert fake_queue.enqueued == []
    assert notifications_total.value({"status": "skipped"}) == 1


def test_logging_notifier_is_used_when_email_disabled(monkeypatch):
    monkeypatch.setattr(settings, "EMAIL_ENABLED", False)
    assert isinstance(get_notifier(), LoggingNotifier)

    monkeypatch.setattr(settings, "EMAIL_ENABLED", True)
    assert isinstance(get_notifier(), QueueNotifier)


def test_dispatch_safely_swallows_failures(failing_notifier):
    assert dispatch_safely(failing_notifier.notify_streak_broken, ALICE, 3, "x") is False
    assert notifications_total.value({"status": "failed"}) == 1


def test_send_notification_email_renders_and_sends(monkeypatch):
    sent = []
    monkeypatch.setattr(service, "send_email", lambda to, subject, html, text: sent.append((to, subject)) or True)

    assert send_notification_email("streak_reminder", "alice@example.com", "alice", 5, "Winter Arc") is True
    assert sent[0][0] == "alice@example.com"
    assert notifications_total.value({"status": "sent"}) == 1


def test_emailer_skips_when_smtp_unconfigured(monkeypatch):
    monkeypatch.setattr(settings, "SMTP_HOST", None)
    assert emailer.send_email("alice@example.com", "hi", "<p>hi</p>") is False


def test_emailer_uses_starttls(monkeypatch):
    events = []

    class FakeSMTP:
        def __init__(self, host, port, timeout=None):
            events.append(("connect", host, port))

        def __enter__(self):
            return self

        def __exit__(self, *exc):
            return False

        def starttls(self, context=None):
            events.append(("starttls",))

        def login(self, user, password):
            events.append(("login", user))

        def send_message(self, msg):
            events.append(("send", msg["To"], msg["Subject"]))

    monkeypatch.setattr(settings, "SMTP_HOST", "smtp.example.com")
    monkeypatch.setattr(settings, "SMTP_USER", "mailer")
    monkeypatch.setattr(settings, "SMTP_PASS", "secret")
    monkeypatch.setattr(emailer.smtplib, "SMTP", FakeSMTP)

    assert emailer.send_email("alice@example.com", "Subject", "<p>body</p>", "body") is True
    assert events == [
        ("connect", "smtp.example.com", 587),
        ("starttls",),
        ("login", "mailer"),
        ("send", "alice@example.com", "Subject"),
    ]


def test_daily_reminders_target_incomplete_members_once_per_user(seed, notifier, factories):
    seed.user("u1", username="alice", email="a@example.com")
    seed.user("u2", username="bob", email="b@example.com")
    seed.user("u3", username="carol", email="c@example.com")
    seed.challenge("c1", "u1", name="Arrays")
    seed.challenge("c2", "u1", name="Graphs")
    seed.challenge("c3", "u1", name="Paused", status="PENDING")
    # alice is behind in both active challenges; the Graphs streak is higher
    seed.member("m1", "c1", "u1", current_streak=2)
    seed.member("m2", "c2", "u1", current_streak=9)
    # bob already finished today
    seed.member("m3", "c1", "u2", current_streak=4)
    # carol only belongs to a challenge that is not running
    seed.member("m4", "c3", "u3", current_streak=1)
    with get_db_session() as session:
        session.execute(
            daily_results.insert().values(
                challenge_id="c1",
                member_id="m3",
                date=factories.eval_date,
                completed=True,
                submissions_count=1,
                problems_solved=["two-sum"],
            )
        )

    stats = send_daily_reminders(on_date=factories.eval_date, notifier=notifier)

    assert stats == {"users": 1, "sent": 1, "failed": 0}
    assert notifier.reminders == [("u1", 9, "Graphs")]


def test_daily_reminders_count_failures(seed, failing_notifier, factories):
    seed.user("u1", username="alice", email="a@example.com")
    seed.challenge("c1", "u1")
    seed.member("m1", "c1", "u1")

    stats = send_daily_reminders(on_date=factories.eval_date, notifier=failing_notifier)

    assert stats == {"users": 1, "sent": 0, "failed": 1}


WEEK = dict(
    week_start="2024-01-15",
    week_end="2024-01-21",
    problems_solved=4,
    days_completed=3,
    current_streak=2,
    longest_streak=6,
    active_challenges=[{"name": "A & B", "rank": 1, "streak": 2, "completion_rate": 43}],
)


def test_weekly_summary_template_lists_challenges():
    email = weekly_summary("<b>eve</b>", WEEK)

    assert email.subject == "Your Weekly Code Duel Summary"
    assert "&lt;b&gt;eve&lt;/b&gt;" in email.html
    assert "A &amp; B" in email.html
    assert "3/7" in email.html
    assert "A & B: rank #1, 2-day streak, 43% complete" in email.text


def test_weekly_summary_template_without_active_challenges():
    email = weekly_summary("alice", dict(WEEK, active_challenges=[]))

    assert "Your Active Challenges" not in email.html
    assert "Problems solved: 4" in email.text


def test_queue_notifier_enqueues_weekly_summary(fake_queue):
    notifier = QueueNotifier(queue=fake_queue)

    notifier.notify_weekly_summary(ALICE, WEEK)
    notifier.notify_weekly_summary(User(user_id="u2", username="bob"), WEEK)

    assert len(fake_queue.enqueued) == 1
    job = fake_queue.enqueued[0]
    assert job.func is send_weekly_summary_email
    assert job.args == ("alice@example.com", "alice", WEEK)


def test_send_weekly_summary_email_renders_and_sends(monkeypatch):
    sent = []
    monkeypatch.setattr(service, "send_email", lambda to, subject, html, text: sent.append((to, subject)) or True)

    assert send_weekly_summary_email("alice@example.com", "alice", WEEK) is True
    assert sent == [("alice@example.com", "Your Weekly Code Duel Summary")]


def _result(member_id, challenge_id, on_date, completed, submissions):
    with get_db_session() as session:
        session.execute(
            daily_results.insert().values(
                challenge_id=challenge_id,
                member_id=member_id,
                date=on_date,
                completed=completed,
                submissions_count=submissions,
                problems_solved=[],
            )
        )


def test_weekly_summaries_roll_up_the_last_seven_days(seed, notifier):
    seed.user("u1", username="alice", email="a@example.com")
    seed.user("u2", username="bob", email="b@example.com")
    seed.user("u3", username="carol", email="c@example.com")
    seed.challenge("c1", "u1", name="Arrays")
    seed.challenge("c2", "u1", name="Done", status="COMPLETED")
    seed.member("m1", "c1", "u1", current_streak=3, longest_streak=5)
    seed.member("m2", "c2", "u1", current_streak=0, longest_streak=8)
    seed.member("m3", "c1", "u2", current_streak=6)
    # carol left her only challenge
    seed.member("m4", "c1", "u3", current_streak=1, is_active=False)
    _result("m1", "c1", date(2024, 1, 15), True, 2)
    _result("m1", "c1", date(2024, 1, 16), True, 1)
    _result("m1", "c1", date(2024, 1, 17), False, 0)
    # outside the window
    _result("m1", "c1", date(2024, 1, 10), True, 5)
    # same day as an Arrays completion, counted once in days_completed
    _result("m2", "c2", date(2024, 1, 16), True, 3)

    stats = send_weekly_summaries(week_end=date(2024, 1, 21), notifier=notifier)

    assert stats == {"users": 2, "sent": 2, "failed": 0}
    summaries = dict(notifier.summaries)
    assert set(summaries) == {"u1", "u2"}
    assert summaries["u1"] == {
        "week_start": "2024-01-15",
        "week_end": "2024-01-21",
        "problems_solved": 6,
        "days_completed": 2,
        "current_streak": 3,
        "longest_streak": 8,
        "active_challenges": [{"name": "Arrays", "rank": 2, "streak": 3, "completion_rate": 29}],
    }
    assert summaries["u2"]["days_completed"] == 0
    assert summaries["u2"]["active_challenges"] == [{"name": "Arrays", "rank": 1, "streak": 6, "completion_rate": 0}]


def test_weekly_summaries_count_failures(seed, failing_notifier):
    seed.user("u1", username="alice", email="a@example.com")
    seed.challenge("c1", "u1")
    seed.member("m1", "c1", "u1")

    stats = send_weekly_summaries(week_end=date(2024, 1, 21), notifier=failing_notifier)

    assert stats == {"users": 1, "sent": 0, "failed": 1}
