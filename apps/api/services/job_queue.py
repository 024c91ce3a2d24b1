"""Durable scheduled ledger jobs (Redis/RQ)."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict

from redis import Redis
from rq import Queue, Retry
from rq.job import Job

from config import settings
from services.entitlements import get_entitlement_provider
from services.monthly_grants import run_monthly_grants
from services.subscriptions import reconcile_subscriptions


logger = logging.getLogger(__name__)

LEDGER_QUEUE_NAME = "ledger_jobs"


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_ledger_queue() -> Queue:
    """Return the configured ledger job queue."""
    return Queue(
        name=LEDGER_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=1800,
    )


def _enqueue(func_path: str, job_id: str) -> Job:
    queue = get_ledger_queue()
    # RQ overwrites a job that reuses an id, so look for a live one first.
    existing = queue.fetch_job(job_id)
    if existing is not None and not existing.is_failed:
        logger.info("Ledger job %s already queued or finished; not enqueueing again", job_id)
        return existing
    return queue.enqueue(
        func_path,
        job_id=job_id,
        retry=Retry(max=3, interval=[60, 300, 900]),
        job_timeout=1800,
        result_ttl=86400,
        failure_ttl=86400,
    )


def enqueue_monthly_grant_job(run_key: str) -> Job:
    """Enqueue the monthly grant job once per ``run_key`` unless the earlier run failed."""
    return _enqueue("services.job_queue.process_monthly_grant_job", f"monthly_grants:{run_key}")


def enqueue_subscription_reconcile_job(run_key: str) -> Job:
    return _enqueue("services.job_queue.process_subscription_reconcile_job", f"reconcile_subscriptions:{run_key}")


def process_monthly_grant_job() -> Dict[str, Any]:
    """RQ worker entrypoint for the monthly grant job."""
    summary = asyncio.run(run_monthly_grants())
    return summary.to_dict()


def process_subscription_reconcile_job() -> Dict[str, Any]:
    """RQ worker entrypoint for subscription reconciliation."""
    summary = asyncio.run(reconcile_subscriptions(get_entitlement_provider()))
    if summary.errors:
        logger.warning("Subscription reconciliation left %d account(s) for the next run", summary.errors)
    return summary.to_dict()
