"""RQ queue configuration, single-flight locking and failure handling."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, Optional

from redis import Redis
from redis.exceptions import LockError
from rq import Queue, Retry, get_current_job
from rq.job import Job

from incidents.config import settings

logger = logging.getLogger(__name__)

QUEUE_NAME = "incidents"
RETRY_INTERVALS = [30, 120, 300]

redis_conn = Redis.from_url(settings.redis_url)
queue = Queue(QUEUE_NAME, connection=redis_conn, default_timeout=600)


class SingleFlightBusy(RuntimeError):
    """Another job of the same task type holds the lock; rq will retry this one."""


@contextmanager
def single_flight(
    name: str,
    *,
    connection: Optional[Redis] = None,
    ttl_seconds: Optional[int] = None,
) -> Iterator[None]:
    """Hold a system-wide, non-blocking Redis lock keyed by task type.

    The TTL bounds how long a crashed worker can keep the lock.
    """
    conn = connection if connection is not None else redis_conn
    ttl = ttl_seconds if ttl_seconds is not None else settings.single_flight_ttl_seconds
    lock = conn.lock(f"single-flight:{name}", timeout=ttl)
    if not lock.acquire(blocking=False):
        raise SingleFlightBusy(f"A '{name}' job is already running")
    try:
        yield
    finally:
        try:
            lock.release()
        except LockError:
            logger.warning("single-flight lock %s expired before release", name)


def handle_job_failure(job, connection, type, value, traceback):
    """RQ failure callback: log and record the error on the job metadata."""
    try:
        error_msg = f"{type.__name__}: {str(value)}" if type else "Job failed"
        logger.error(f"RQ failure callback: job_id={job.id}, func={job.func_name}, error={error_msg}")
        job.meta["error"] = error_msg
        job.meta["failed_at"] = datetime.now(timezone.utc).isoformat()
        job.save_meta()
    except Exception as e:
        logger.error(f"Failed to record job failure in failure callback: {e}")


def retry_policy() -> Retry:
    return Retry(max=settings.job_max_retries, interval=RETRY_INTERVALS[: settings.job_max_retries])


def enqueue(func: Callable[..., Any], *args: Any, source: str = "system", **kwargs: Any) -> Job:
    """Enqueue a task with the standard retry policy and failure callback."""
    return queue.enqueue(
        func,
        *args,
        retry=retry_policy(),
        on_failure=handle_job_failure,
        meta={"source": source, "requested_at": datetime.now(timezone.utc).isoformat()},
        **kwargs,
    )


def save_job_meta(metadata: Dict[str, Any]) -> None:
    """Merge run metadata into the current rq job, if running under a worker."""
    job = get_current_job()
    if job is None:
        return
    job.meta.update(metadata)
    job.meta["completed_at"] = datetime.now(timezone.utc).isoformat()
    job.save_meta()
