"""Daily job topping up free-tier balances once per 30-day cycle."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from models.account import Account
from services.clock import as_utc, utc_now
from services.ledger import apply_grant, apply_initialize
from services.plans import Plan, get_plan_policy
from services.store import load_account, run_ledger_transaction


logger = logging.getLogger(__name__)

PAGE_SIZE = 500

GRANTED = "granted"
INITIALIZED = "initialized"
SKIPPED_PRO = "skipped_pro"
NOT_DUE = "not_due"
MISSING = "missing"


@dataclass
class MonthlyGrantSummary:
    processed: int = 0
    granted: int = 0
    initialized: int = 0
    skipped: int = 0
    errors: int = 0
    error_details: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "granted": self.granted,
            "initialized": self.initialized,
            "skipped": self.skipped,
            "errors": self.errors,
            "error_details": self.error_details[:20],
        }


def is_grant_due(last_grant: Optional[datetime], now: datetime) -> bool:
    if last_grant is None:
        return True
    interval = timedelta(days=max(int(settings.MONTHLY_GRANT_INTERVAL_DAYS), 1))
    return now - as_utc(last_grant) >= interval


async def _grant_for_account(session: AsyncSession, account_id: str, now: datetime) -> str:
    account = await load_account(session, account_id)
    if account is None:
        return MISSING
    if not account.is_initialized:
        apply_initialize(session, account, account_id, now)
        return INITIALIZED
    # Pro balances are topped up only by subscription renewals.
    if account.plan != Plan.FREE.value:
        return SKIPPED_PRO
    if not is_grant_due(account.last_monthly_grant, now):
        return NOT_DUE
    policy = get_plan_policy(account.plan)
    apply_grant(account, policy.monthly_credits, cap_to_max=True, now=now)
    return GRANTED


async def _iter_account_ids(factory: async_sessionmaker):
    last_id: Optional[str] = None
    while True:
        async with factory() as session:
            query = select(Account.id).order_by(Account.id).limit(PAGE_SIZE)
            if last_id is not None:
                query = query.where(Account.id > last_id)
            result = await session.execute(query)
            ids = [row[0] for row in result.all()]
        if not ids:
            return
        for account_id in ids:
            yield account_id
        last_id = ids[-1]


async def run_monthly_grants(
    *,
    now: Optional[datetime] = None,
    session_factory: Optional[async_sessionmaker] = None,
) -> MonthlyGrantSummary:
    """Grant the free monthly allowance to every due free account.

    Each account is its own transaction, and plan and due date are re-read
    inside it, so the job can overlap client calls and the reconciler.
    """
    current = as_utc(now) or utc_now()
    factory = session_factory or async_session_maker
    summary = MonthlyGrantSummary()
    logger.info("Starting monthly credit grant job")

    async for account_id in _iter_account_ids(factory):
        summary.processed += 1

        async def _work(session: AsyncSession, account_id: str = account_id) -> str:
            return await _grant_for_account(session, account_id, current)

        try:
            outcome = await run_ledger_transaction(_work, session_factory=factory, label="monthly_grant")
        except Exception as exc:
            summary.errors += 1
            summary.error_details.append(f"{account_id}:{exc}")
            logger.error("Monthly grant failed for account %s: %s", account_id, exc)
            continue

        if outcome == GRANTED:
            summary.granted += 1
        elif outcome == INITIALIZED:
            summary.initialized += 1
        else:
            summary.skipped += 1

    logger.info(
        "Monthly credit grant complete. Processed: %d, Granted: %d, Initialized: %d, Skipped: %d, Errors: %d",
        summary.processed,
        summary.granted,
        summary.initialized,
        summary.skipped,
        summary.errors,
    )
    return summary
