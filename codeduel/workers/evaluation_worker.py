"""Evaluation worker pool.

Usage:
    python -m codeduel.workers.evaluation_worker
    python -m codeduel.workers.evaluation_worker --workers 4 --burst

Runs EVALUATION_CONCURRENCY RQ worker processes over the "evaluation" and
"notifications" queues. This pool size is the global bound on concurrent
member evaluations; outbound LeetCode calls are further capped by the shared
rate limiter.
"""
from __future__ import annotations

import argparse
import logging
import os

from dotenv import load_dotenv

from codeduel.core.config import settings, validate_config
from codeduel.core.database import create_all_tables
from codeduel.core.logging import configure_logging
from codeduel.queue_client import EVALUATION_QUEUE, NOTIFICATION_QUEUE, get_redis

logger = logging.getLogger("codeduel")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Code Duel evaluation worker pool")
    parser.add_argument(
        "--workers",
        type=int,
        default=settings.EVALUATION_CONCURRENCY,
        help="Number of worker processes (default: EVALUATION_CONCURRENCY)",
    )
    parser.add_argument("--burst", action="store_true", help="Drain the queues and exit")
    parser.add_argument(
        "--queues",
        nargs="+",
        default=[EVALUATION_QUEUE, NOTIFICATION_QUEUE],
        help="Queues to listen on",
    )
    return parser


def main(argv=None) -> None:
    if "PYTEST_CURRENT_TEST" not in os.environ:
        load_dotenv()
    configure_logging(settings.ENV)
    validate_config()

    args = build_parser().parse_args(argv)
    workers = max(1, args.workers)
    create_all_tables()

    from rq.worker_pool import WorkerPool

    logger.info(
        "[evaluation-worker] starting %s workers on %s (burst=%s)",
        workers,
        ",".join(args.queues),
        args.burst,
    )
    pool = WorkerPool(args.queues, connection=get_redis(), num_workers=workers)
    pool.start(burst=args.burst)


if __name__ == "__main__":
    main()
