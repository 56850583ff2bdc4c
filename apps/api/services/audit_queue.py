"""Durable audit run queue helpers (Redis/RQ)."""

from __future__ import annotations

import logging

from redis import Redis
from rq import Queue, Retry
from rq.job import Job

from config import settings

logger = logging.getLogger(__name__)

AUDIT_QUEUE_NAME = "audit_runs"


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_audit_queue() -> Queue:
    """Return the configured audit run queue."""
    return Queue(
        name=AUDIT_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=int(settings.RUN_TIMEOUT_SECONDS) + 60,
    )


def enqueue_audit_run(run_id: str, claimed: bool = False) -> Job:
    """Enqueue an audit run with retry/timeouts for durability."""
    queue = get_audit_queue()
    job = queue.enqueue(
        "services.audit_worker.process_audit_run_job",
        run_id,
        claimed,
        job_id=f"audit-run:{run_id}",
        retry=Retry(max=3, interval=[15, 60, 180]),
        job_timeout=int(settings.RUN_TIMEOUT_SECONDS) + 60,
        result_ttl=86400,
        failure_ttl=86400,
    )
    logger.info("Enqueued audit run %s as job %s", run_id, job.id)
    return job
