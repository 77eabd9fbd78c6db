"""Durable background job queue helpers (Redis/RQ)."""

from __future__ import annotations

import hashlib
from typing import Optional

from redis import Redis
from rq import Queue, Retry
from rq.job import Job

from config import settings


ADDRESS_QUEUE_NAME = "address_jobs"
ADDRESS_JOB_FUNCTION = "services.address_resolver.process_address_resolution_job"


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_address_queue() -> Queue:
    """Return the configured address resolution queue."""
    return Queue(
        name=ADDRESS_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=300,
    )


def address_job_id(checkin_id: str) -> str:
    """RQ job ids allow only letters, digits, underscores and dashes; record keys may carry more."""
    digest = hashlib.sha1(checkin_id.encode("utf-8")).hexdigest()
    return f"address-{digest}"


def enqueue_address_resolution_job(checkin_id: str, ref_uri: str, ref_cid: Optional[str] = None) -> Job:
    """Enqueue address resolution with retries; the job id dedupes repeat deliveries."""
    queue = get_address_queue()
    return queue.enqueue(
        ADDRESS_JOB_FUNCTION,
        checkin_id,
        ref_uri,
        ref_cid,
        job_id=address_job_id(checkin_id),
        retry=Retry(max=3, interval=[10, 60, 300]),
        job_timeout=300,
        result_ttl=3600,
        failure_ttl=86400,
    )
