"""Subscription purchase, restore and daily reconciliation.

Flow:
    1. The client completes a store purchase and calls activate_subscription;
       the provider must report an active entitlement before anything changes.
    2. reconcile_subscriptions runs daily over records whose expires_date has
       passed and asks the provider what happened:
         - renewed (new expires_date in the future): grant the pro monthly
           credits (capped), move expires_date forward
         - no active entitlement: mark expired and drop the plan to free,
           leaving the balance untouched
    3. restore_subscription re-syncs plan and record but never grants.

Provider calls always happen before the ledger transaction is opened.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from database import async_session_maker
from models.subscription_record import SubscriptionRecord
from services.clock import as_utc, isoformat, utc_now
from services.entitlements import Entitlement, EntitlementProvider, EntitlementProviderError
from services.errors import EntitlementProviderUnavailable, InvalidProduct, PurchaseValidationFailed
from services.ledger import apply_grant, apply_set_plan
from services.plans import Plan, SubscriptionStatus, get_plan_policy, subscription_plan_for_product
from services.store import load_account, require_account, run_ledger_transaction


logger = logging.getLogger(__name__)

RENEWED = "renewed"
EXPIRED = "expired"
UNCHANGED = "unchanged"


@dataclass
class SubscriptionResult:
    plan: str
    product_id: str
    expires_date: datetime
    credits_granted: int
    new_balance: int
    max_credits: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "plan": self.plan,
            "product_id": self.product_id,
            "expires_date": isoformat(self.expires_date),
            "credits_granted": self.credits_granted,
            "new_balance": self.new_balance,
            "max_credits": self.max_credits,
        }


@dataclass
class ReconcileSummary:
    processed: int = 0
    renewed: int = 0
    expired: int = 0
    unchanged: int = 0
    errors: int = 0
    error_details: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "renewed": self.renewed,
            "expired": self.expired,
            "unchanged": self.unchanged,
            "errors": self.errors,
            "error_details": self.error_details[:20],
        }


async def _get_record(session: AsyncSession, account_id: str) -> Optional[SubscriptionRecord]:
    result = await session.execute(
        select(SubscriptionRecord).where(SubscriptionRecord.account_id == account_id).with_for_update()
    )
    return result.scalar_one_or_none()


async def verify_active_entitlement(
    account_id: str,
    provider: EntitlementProvider,
    now: datetime,
) -> Entitlement:
    try:
        entitlement = await provider.query_entitlement(account_id, now=now)
    except EntitlementProviderError as exc:
        logger.error("Entitlement lookup failed for account %s: %s", account_id, exc)
        raise EntitlementProviderUnavailable() from exc

    expires_date = as_utc(entitlement.expires_date)
    if not entitlement.active or expires_date is None:
        logger.warning("No active subscription found for account %s", account_id)
        raise PurchaseValidationFailed("no_active_subscription")
    if expires_date <= now:
        logger.warning("Subscription expired for account %s: %s", account_id, expires_date)
        raise PurchaseValidationFailed("subscription_expired")
    return entitlement


def _resolve_plan(product_id: str) -> Plan:
    plan = subscription_plan_for_product(product_id)
    if plan is None:
        raise InvalidProduct(f"Invalid subscription product ID: {product_id}")
    return plan


def _upsert_record(
    session: AsyncSession,
    record: Optional[SubscriptionRecord],
    account_id: str,
    product_id: str,
    plan: Plan,
    entitlement: Entitlement,
) -> SubscriptionRecord:
    if record is None:
        record = SubscriptionRecord(account_id=account_id)
        session.add(record)
    record.product_id = product_id
    record.plan = plan.value
    record.purchase_date = as_utc(entitlement.purchase_date) or record.purchase_date
    record.expires_date = as_utc(entitlement.expires_date)
    record.original_transaction_id = entitlement.original_transaction_id or record.original_transaction_id or product_id
    record.status = SubscriptionStatus.ACTIVE.value
    return record


async def activate_subscription(
    account_id: str,
    product_id: str,
    provider: EntitlementProvider,
    *,
    now: Optional[datetime] = None,
    session_factory: Optional[async_sessionmaker] = None,
) -> SubscriptionResult:
    """Validate a subscription purchase, switch the plan and grant the first cycle.

    A second call for a period that was already credited only re-syncs state.
    """
    plan = _resolve_plan(product_id)
    current = as_utc(now) or utc_now()
    entitlement = await verify_active_entitlement(account_id, provider, current)
    policy = get_plan_policy(plan.value)

    async def _work(session: AsyncSession) -> SubscriptionResult:
        account = await require_account(session, account_id)
        record = await _get_record(session, account_id)
        already_credited = (
            record is not None
            and record.status == SubscriptionStatus.ACTIVE.value
            and record.last_credit_grant is not None
            and as_utc(record.expires_date) == as_utc(entitlement.expires_date)
        )
        apply_set_plan(account, plan)
        granted = 0
        record = _upsert_record(session, record, account_id, product_id, plan, entitlement)
        if not already_credited:
            grant = apply_grant(account, policy.monthly_credits, cap_to_max=True, now=current)
            granted = grant.credits_added
            record.last_credit_grant = current
        return SubscriptionResult(
            plan=plan.value,
            product_id=product_id,
            expires_date=as_utc(entitlement.expires_date),
            credits_granted=granted,
            new_balance=int(account.credits or 0),
            max_credits=int(account.max_credits or 0),
        )

    result = await run_ledger_transaction(_work, session_factory=session_factory, label="subscription_purchase")
    logger.info(
        "Purchase validated for %s: %s, granted %d credits, expires %s",
        account_id,
        result.plan,
        result.credits_granted,
        result.expires_date,
    )
    return result


async def restore_subscription(
    account_id: str,
    product_id: str,
    provider: EntitlementProvider,
    *,
    now: Optional[datetime] = None,
    session_factory: Optional[async_sessionmaker] = None,
) -> SubscriptionResult:
    """Sync plan and subscription record from the provider without granting credits."""
    plan = _resolve_plan(product_id)
    current = as_utc(now) or utc_now()
    entitlement = await verify_active_entitlement(account_id, provider, current)

    async def _work(session: AsyncSession) -> SubscriptionResult:
        account = await require_account(session, account_id)
        record = await _get_record(session, account_id)
        apply_set_plan(account, plan)
        # last_credit_grant is left as-is so a later renewal is not double-counted.
        _upsert_record(session, record, account_id, product_id, plan, entitlement)
        return SubscriptionResult(
            plan=plan.value,
            product_id=product_id,
            expires_date=as_utc(entitlement.expires_date),
            credits_granted=0,
            new_balance=int(account.credits or 0),
            max_credits=int(account.max_credits or 0),
        )

    result = await run_ledger_transaction(_work, session_factory=session_factory, label="subscription_restore")
    logger.info("Restore validated for %s: %s, credits unchanged, expires %s", account_id, result.plan, result.expires_date)
    return result


async def _renew(session: AsyncSession, account_id: str, new_expires: datetime, now: datetime) -> str:
    record = await _get_record(session, account_id)
    if record is None or record.status != SubscriptionStatus.ACTIVE.value or as_utc(record.expires_date) > now:
        return UNCHANGED
    account = await require_account(session, account_id)
    plan = _plan_or_pro(record.plan)
    apply_set_plan(account, plan)
    apply_grant(account, get_plan_policy(plan.value).monthly_credits, cap_to_max=True, now=now)
    record.expires_date = new_expires
    record.last_credit_grant = now
    return RENEWED


async def _expire(session: AsyncSession, account_id: str, now: datetime) -> str:
    record = await _get_record(session, account_id)
    if record is None or record.status != SubscriptionStatus.ACTIVE.value or as_utc(record.expires_date) > now:
        return UNCHANGED
    record.status = SubscriptionStatus.EXPIRED.value
    account = await load_account(session, account_id)
    if account is not None and account.is_initialized:
        apply_set_plan(account, Plan.FREE)
    return EXPIRED


def _plan_or_pro(value: Optional[str]) -> Plan:
    try:
        return Plan(value)
    except ValueError:
        return Plan.PRO


async def _due_account_ids(factory: async_sessionmaker, now: datetime) -> List[str]:
    async with factory() as session:
        result = await session.execute(
            select(SubscriptionRecord.account_id)
            .where(
                SubscriptionRecord.status == SubscriptionStatus.ACTIVE.value,
                SubscriptionRecord.expires_date <= now,
            )
            .order_by(SubscriptionRecord.account_id)
        )
        return [row[0] for row in result.all()]


async def reconcile_subscriptions(
    provider: EntitlementProvider,
    *,
    now: Optional[datetime] = None,
    session_factory: Optional[async_sessionmaker] = None,
) -> ReconcileSummary:
    """Renew or expire every active subscription whose period has ended.

    A failure for one account is logged and counted; its record stays due and
    is picked up again on the next run.
    """
    current = as_utc(now) or utc_now()
    factory = session_factory or async_session_maker
    summary = ReconcileSummary()
    logger.info("Starting subscription renewal processing")

    account_ids = await _due_account_ids(factory, current)
    logger.info("Found %d subscriptions to check", len(account_ids))

    for account_id in account_ids:
        summary.processed += 1
        try:
            entitlement = await provider.query_entitlement(account_id, now=current)
            new_expires = as_utc(entitlement.expires_date)
            if entitlement.active and new_expires is not None and new_expires > current:

                async def _work(session: AsyncSession) -> str:
                    return await _renew(session, account_id, new_expires, current)

            else:

                async def _work(session: AsyncSession) -> str:
                    return await _expire(session, account_id, current)

            outcome = await run_ledger_transaction(_work, session_factory=factory, label="reconcile")
        except Exception as exc:
            summary.errors += 1
            summary.error_details.append(f"{account_id}:{exc}")
            logger.error("Error reconciling subscription for account %s: %s", account_id, exc)
            continue

        if outcome == RENEWED:
            summary.renewed += 1
            logger.info("Renewal processed for %s, expires %s", account_id, new_expires)
        elif outcome == EXPIRED:
            summary.expired += 1
            logger.info("Subscription expired for %s, downgraded to free plan", account_id)
        else:
            summary.unchanged += 1

    logger.info(
        "Subscription renewal processing complete. Processed: %d, Renewed: %d, Expired: %d, Errors: %d",
        summary.processed,
        summary.renewed,
        summary.expired,
        summary.errors,
    )
    return summary
