"""Billing router: credit consumption, plans, top-ups and subscriptions."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import async_sessionmaker

from config import settings
from database import get_session_factory
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.clock import utc_now
from services.entitlements import EntitlementProvider, get_entitlement_provider
from services.errors import InvalidPlan
from services.ledger import set_plan
from services.plans import Plan, parse_plan, plan_policies
from services.purchases import apply_top_up
from services.rate_governor import acquire_generation_slot, release_generation_slot
from services.subscriptions import activate_subscription, restore_subscription, verify_active_entitlement

router = APIRouter()
logger = logging.getLogger(__name__)


class ConsumeRequest(BaseModel):
    amount: int = 1


class PlanRequest(BaseModel):
    plan: str


class TopUpRequest(BaseModel):
    product_id: str = Field(min_length=1, max_length=200)
    transaction_id: str = Field(min_length=1, max_length=200)


class SubscriptionRequest(BaseModel):
    product_id: str = Field(min_length=1, max_length=200)


@router.get("/products")
async def product_catalog():
    policies = plan_policies()
    return {
        "plans": {
            plan.value: {"monthly_credits": policy.monthly_credits, "max_credits": policy.max_credits}
            for plan, policy in policies.items()
        },
        "subscriptions": dict(settings.SUBSCRIPTION_PRODUCTS),
        "topups": dict(settings.TOPUP_PRODUCTS),
    }


@router.post("/consume")
async def consume(
    request: ConsumeRequest,
    auth: AuthContext = Depends(get_auth_context),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """Deduct credits and reserve a generation slot; call /release when the generation ends."""
    try:
        slot = await acquire_generation_slot(auth.account_id, request.amount, session_factory=session_factory)
    except HTTPException:
        raise
    except Exception:
        logger.exception("Failed to consume credits for account %s", auth.account_id)
        raise HTTPException(status_code=500, detail="Failed to consume credits.")
    return {
        "success": True,
        "credits_consumed": slot.credits_consumed,
        "remaining_credits": slot.remaining_credits,
        "in_flight_count": slot.in_flight_count,
    }


@router.post("/release")
async def release(
    auth: AuthContext = Depends(get_auth_context),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    in_flight = await release_generation_slot(auth.account_id, session_factory=session_factory)
    return {"success": in_flight is not None, "in_flight_count": in_flight}


@router.post("/plan")
async def update_plan(
    request: PlanRequest,
    auth: AuthContext = Depends(get_auth_context),
    provider: EntitlementProvider = Depends(get_entitlement_provider),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    plan = parse_plan(request.plan)
    if plan is None:
        raise InvalidPlan(f"Invalid plan. Must be one of: {', '.join(p.value for p in Plan)}")
    if plan != Plan.FREE:
        # Paid plans are only granted against a live entitlement.
        await verify_active_entitlement(auth.account_id, provider, utc_now())
    snapshot = await set_plan(auth.account_id, plan.value, session_factory=session_factory)
    return {"success": True, **snapshot.to_dict()}


@router.post("/topup")
async def topup(
    request: TopUpRequest,
    _rate_limit: None = Depends(rate_limit("billing_topup", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    provider: EntitlementProvider = Depends(get_entitlement_provider),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    try:
        result = await apply_top_up(
            auth.account_id,
            request.product_id,
            request.transaction_id,
            provider,
            session_factory=session_factory,
        )
    except HTTPException:
        raise
    except Exception:
        logger.exception("Failed to apply top-up %s for account %s", request.transaction_id, auth.account_id)
        raise HTTPException(status_code=500, detail="Failed to apply credit top-up.")
    return result.to_dict()


@router.post("/subscription/purchase")
async def subscription_purchase(
    request: SubscriptionRequest,
    _rate_limit: None = Depends(rate_limit("billing_subscription", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    provider: EntitlementProvider = Depends(get_entitlement_provider),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    try:
        result = await activate_subscription(
            auth.account_id,
            request.product_id,
            provider,
            session_factory=session_factory,
        )
    except HTTPException:
        raise
    except Exception:
        logger.exception("Failed to activate subscription for account %s", auth.account_id)
        raise HTTPException(status_code=500, detail="Failed to activate subscription.")
    return result.to_dict()


@router.post("/subscription/restore")
async def subscription_restore(
    request: SubscriptionRequest,
    _rate_limit: None = Depends(rate_limit("billing_subscription", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    provider: EntitlementProvider = Depends(get_entitlement_provider),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    try:
        result = await restore_subscription(
            auth.account_id,
            request.product_id,
            provider,
            session_factory=session_factory,
        )
    except HTTPException:
        raise
    except Exception:
        logger.exception("Failed to restore subscription for account %s", auth.account_id)
        raise HTTPException(status_code=500, detail="Failed to restore subscription.")
    return result.to_dict()
