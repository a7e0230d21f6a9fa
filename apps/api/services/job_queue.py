"""Durable reconciliation job queue helpers (Redis/RQ)."""

from __future__ import annotations

from typing import Optional

from redis import Redis
from rq import Queue, Retry
from rq.job import Job

from config import settings


RECONCILIATION_QUEUE_NAME = "reconciliation_jobs"


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL, socket_connect_timeout=2)


def get_reconciliation_queue() -> Queue:
    """Return the configured reconciliation queue."""
    return Queue(
        name=RECONCILIATION_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=300,
    )


def enqueue_retry_drain(reference: Optional[str] = None) -> Job:
    """Enqueue a retry-queue drain, optionally scoped to one order reference."""
    queue = get_reconciliation_queue()
    return queue.enqueue(
        "services.retry_queue.drain_retry_queue_job",
        reference,
        job_id=f"retry-drain-{reference}" if reference else None,
        retry=Retry(max=3, interval=[10, 60, 300]),
        job_timeout=300,
        result_ttl=86400,
        failure_ttl=86400,
    )
