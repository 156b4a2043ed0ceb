"""Durable reconciliation job queue helpers (Redis/RQ)."""

from __future__ import annotations

import logging
from typing import Optional

from redis import Redis
from rq import Queue, Retry
from rq.job import Job

from config import settings

logger = logging.getLogger(__name__)

RECONCILIATION_QUEUE_NAME = "order_reconciliation"


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_reconciliation_queue() -> Queue:
    """Return the configured reconciliation queue."""
    return Queue(
        name=RECONCILIATION_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=300,
    )


def enqueue_order_reconciliation(confirmation_id: str) -> Optional[Job]:
    """Enqueue a reconciliation job for one order.

    Returns None when Redis is unreachable; the periodic sweep still picks the
    order up through its ``needs_reconciliation`` flag.
    """
    if not settings.RECONCILIATION_ENABLED:
        return None
    try:
        queue = get_reconciliation_queue()
        return queue.enqueue(
            "services.reconciliation.reconcile_order_job",
            confirmation_id,
            job_id=f"reconcile:{confirmation_id}",
            retry=Retry(max=3, interval=[15, 60, 180]),
            job_timeout=300,
            result_ttl=86400,
            failure_ttl=604800,
        )
    except Exception as exc:
        logger.warning("Could not enqueue reconciliation for %s: %s", confirmation_id, exc)
        return None
