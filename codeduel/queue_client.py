# codeduel/queue_client.py
"""
Shared Redis connection and RQ queues.

Queues:
- evaluation: challenge fan-out and per-member evaluation jobs
- notifications: fire-and-forget email delivery
"""
from typing import Dict, Optional

from redis import Redis
from rq import Queue

from codeduel.core.config import settings

EVALUATION_QUEUE = "evaluation"
NOTIFICATION_QUEUE = "notifications"

_redis_conn: Optional[Redis] = None
_queues: Dict[str, Queue] = {}


def get_redis() -> Redis:
    global _redis_conn
    if _redis_conn is None:
        _redis_conn = Redis.from_url(settings.REDIS_URL)
    return _redis_conn


def get_queue(name: str = EVALUATION_QUEUE) -> Queue:
    if name not in _queues:
        _queues[name] = Queue(name, connection=get_redis())
    return _queues[name]


def reset_connections() -> None:
    """Forget cached connections (tests swap in fakeredis or nothing at all)."""
    global _redis_conn
    _redis_conn = None
    _queues.clear()
