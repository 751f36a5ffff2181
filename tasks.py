"""Outbox dispatch backend: an RQ queue when Redis answers, inline otherwise.

Handlers never depend on which backend ran them; a row that fails either way
stays in the outbox for the scheduled retry.
"""

from __future__ import annotations

import logging

import redis
from rq import Queue

logger = logging.getLogger(__name__)

QUEUE_NAME = "bienestar"
RESULT_TTL = 600       # seconds a finished job is kept in Redis
FAILURE_TTL = 86400

_queue: Queue | None = None


def init_tasks(app) -> None:
    """Bind the module queue for this app. Safe to call again (tests do)."""
    global _queue
    _queue = None

    redis_url = app.config.get("REDIS_URL", "")
    if not redis_url:
        app.logger.info("Outbox dispatch: inline (REDIS_URL unset)")
        return

    try:
        conn = redis.Redis.from_url(redis_url, socket_connect_timeout=2)
        conn.ping()
    except redis.RedisError as e:
        app.logger.warning("Outbox dispatch: inline (Redis unreachable: %s)", e)
        return
    _queue = Queue(QUEUE_NAME, connection=conn, default_timeout=60)
    app.logger.info("Outbox dispatch: RQ queue %r", QUEUE_NAME)


def enqueue(func, *args, job_key: str | None = None):
    """Hand ``func(*args)`` to a worker, or run it here if there is no queue.

    ``job_key`` becomes the RQ job id, so dispatching the same outbox row
    twice replaces the earlier job instead of duplicating it. Returns the
    Job when queued, otherwise the function's own return value.
    """
    if _queue is not None:
        try:
            job = _queue.enqueue(
                func, *args,
                job_id=job_key,
                description=f"{func.__name__}{args!r}",
                result_ttl=RESULT_TTL,
                failure_ttl=FAILURE_TTL,
            )
        except redis.RedisError as e:
            logger.warning("Queue unavailable for %s, running inline: %s", func.__name__, e)
        else:
            logger.debug("Queued %s as job %s", func.__name__, job.id)
            return job

    return func(*args)


def is_async_available() -> bool:
    return _queue is not None


def queue_length() -> int:
    """Jobs waiting for a worker; 0 when dispatch is inline or Redis is down."""
    if _queue is None:
        return 0
    try:
        return len(_queue)
    except redis.RedisError:
        logger.warning("Could not read queue length", exc_info=True)
        return 0
