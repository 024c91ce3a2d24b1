"""Operator endpoints: run scheduled jobs on demand and repair generation slots."""

import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import async_sessionmaker

from database import get_session_factory
from routers.auth_scope import require_admin
from services.clock import utc_now
from services.entitlements import EntitlementProvider, get_entitlement_provider
from services.job_queue import enqueue_monthly_grant_job, enqueue_subscription_reconcile_job
from services.monthly_grants import run_monthly_grants
from services.rate_governor import reset_in_flight
from services.subscriptions import reconcile_subscriptions

router = APIRouter(dependencies=[Depends(require_admin)])
logger = logging.getLogger(__name__)


@router.post("/jobs/monthly-grants")
async def trigger_monthly_grants(
    enqueue: bool = Query(default=False),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    if enqueue:
        job = enqueue_monthly_grant_job(utc_now().strftime("%Y%m%d"))
        return {"queued": True, "job_id": job.id}

    summary = await run_monthly_grants(session_factory=session_factory)
    return summary.to_dict()


@router.post("/jobs/reconcile-subscriptions")
async def trigger_reconcile_subscriptions(
    enqueue: bool = Query(default=False),
    provider: EntitlementProvider = Depends(get_entitlement_provider),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    if enqueue:
        job = enqueue_subscription_reconcile_job(utc_now().strftime("%Y%m%d"))
        return {"queued": True, "job_id": job.id}

    summary = await reconcile_subscriptions(provider, session_factory=session_factory)
    return summary.to_dict()


@router.post("/accounts/{account_id}/reset-in-flight")
async def reset_account_in_flight(
    account_id: str,
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    previous = await reset_in_flight(account_id, session_factory=session_factory)
    return {"account_id": account_id, "previous_in_flight_count": previous, "in_flight_count": 0}
