"""Daily evaluation scheduler.

Usage:
    python -m codeduel.scheduler                      # run cron triggers (UTC)
    python -m codeduel.scheduler --run-now            # fire today's fan-out once and exit
    python -m codeduel.scheduler --run-now --date 2024-01-15 --inline
    python -m codeduel.scheduler --remind-now
    python -m codeduel.scheduler --summary-now --date 2024-01-21

Cron expressions come from DAILY_EVALUATION_CRON, DAILY_REMINDER_CRON and
WEEKLY_SUMMARY_CRON. The email triggers are only registered when EMAIL_ENABLED
is set.
"""
from __future__ import annotations

import argparse
import logging
import os
from datetime import date
from typing import Optional

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger
from dotenv import load_dotenv

from codeduel.core.config import settings, validate_config
from codeduel.core.database import create_all_tables
from codeduel.core.logging import configure_logging
from codeduel.features.evaluation.dispatch import InlineDispatcher, JobDispatcher
from codeduel.features.evaluation.jobs import purge_evaluation_runs, run_daily_evaluation
from codeduel.features.notifications.service import send_daily_reminders, send_weekly_summaries

logger = logging.getLogger("codeduel")

RETENTION_CRON = "30 2 * * *"


def _daily_evaluation_job() -> None:
    logger.info("scheduler.daily_evaluation.start")
    try:
        stats = run_daily_evaluation(trigger="cron")
        logger.info("scheduler.daily_evaluation.done queued=%s", stats["queued"])
    except Exception:
        logger.exception("scheduler.daily_evaluation.failed")


def _daily_reminder_job() -> None:
    logger.info("scheduler.daily_reminders.start")
    try:
        send_daily_reminders()
    except Exception:
        logger.exception("scheduler.daily_reminders.failed")


def _weekly_summary_job() -> None:
    logger.info("scheduler.weekly_summaries.start")
    try:
        send_weekly_summaries()
    except Exception:
        logger.exception("scheduler.weekly_summaries.failed")


def _retention_job() -> None:
    try:
        purge_evaluation_runs()
    except Exception:
        logger.exception("scheduler.retention.failed")


def build_scheduler(scheduler: Optional[BlockingScheduler] = None) -> BlockingScheduler:
    scheduler = scheduler or BlockingScheduler(timezone="UTC")
    scheduler.add_job(
        _daily_evaluation_job,
        CronTrigger.from_crontab(settings.DAILY_EVALUATION_CRON, timezone="UTC"),
        id="daily_evaluation",
        replace_existing=True,
        coalesce=True,
        max_instances=1,
    )
    scheduler.add_job(
        _retention_job,
        CronTrigger.from_crontab(RETENTION_CRON, timezone="UTC"),
        id="evaluation_run_retention",
        replace_existing=True,
    )
    if settings.EMAIL_ENABLED:
        scheduler.add_job(
            _daily_reminder_job,
            CronTrigger.from_crontab(settings.DAILY_REMINDER_CRON, timezone="UTC"),
            id="daily_reminders",
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        scheduler.add_job(
            _weekly_summary_job,
            CronTrigger.from_crontab(settings.WEEKLY_SUMMARY_CRON, timezone="UTC"),
            id="weekly_summaries",
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
    return scheduler


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description="Code Duel daily evaluation scheduler")
    parser.add_argument("--run-now", action="store_true", help="Trigger the evaluation fan-out once and exit")
    parser.add_argument("--remind-now", action="store_true", help="Send today's reminders once and exit")
    parser.add_argument("--summary-now", action="store_true", help="Send the weekly summaries once and exit (--date is the last day of the week)")
    parser.add_argument("--date", type=date.fromisoformat, default=None, help="Evaluation date (YYYY-MM-DD, default today UTC)")
    parser.add_argument("--force", action="store_true", help="Requeue failed jobs for the date")
    parser.add_argument("--inline", action="store_true", help="Run jobs in-process instead of enqueueing to Redis")
    args = parser.parse_args(argv)

    if "PYTEST_CURRENT_TEST" not in os.environ:
        load_dotenv()
    configure_logging(settings.ENV)
    validate_config()
    create_all_tables()

    if args.run_now or args.remind_now or args.summary_now:
        if args.run_now:
            dispatcher: Optional[JobDispatcher] = InlineDispatcher() if args.inline else None
            stats = run_daily_evaluation(on_date=args.date, trigger="manual", dispatcher=dispatcher, force=args.force)
            print(f"[scheduler] evaluation run {stats['run_id']} for {stats['date']}: queued={stats['queued']} suppressed={stats['suppressed']}")
        if args.remind_now:
            stats = send_daily_reminders(on_date=args.date)
            print(f"[scheduler] reminders: users={stats['users']} sent={stats['sent']} failed={stats['failed']}")
        if args.summary_now:
            stats = send_weekly_summaries(week_end=args.date)
            print(f"[scheduler] weekly summaries: users={stats['users']} sent={stats['sent']} failed={stats['failed']}")
        return

    if not settings.CRON_ENABLED:
        print("[scheduler] Cron disabled (CRON_ENABLED=false). Exiting.")
        return

    scheduler = build_scheduler()
    logger.info(
        "scheduler.started evaluation=%r reminders=%r summaries=%r",
        settings.DAILY_EVALUATION_CRON,
        settings.DAILY_REMINDER_CRON if settings.EMAIL_ENABLED else None,
        settings.WEEKLY_SUMMARY_CRON if settings.EMAIL_ENABLED else None,
    )
    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("scheduler.stopped")


if __name__ == "__main__":
    main()
