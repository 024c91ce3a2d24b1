"""One-time free generation granted during onboarding (no credit consumption)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from services.clock import as_utc, utc_now
from services.errors import AccountNotFound, AlreadyUsed
from services.ledger import apply_initialize
from services.store import load_account, run_ledger_transaction


logger = logging.getLogger(__name__)


@dataclass
class FreeGenerationPermit:
    account_id: str
    remaining_credits: int
    free_generation: bool = True


async def try_free_generation(
    account_id: str,
    *,
    now: Optional[datetime] = None,
    session_factory: Optional[async_sessionmaker] = None,
) -> FreeGenerationPermit:
    """Mark the onboarding allowance used; raises ``AlreadyUsed`` on a second call.

    A profile-only account (row present, credits never set up) gets its
    free-plan defaults in the same transaction.
    """
    current = as_utc(now) or utc_now()

    async def _work(session: AsyncSession) -> FreeGenerationPermit:
        account = await load_account(session, account_id)
        if account is None:
            raise AccountNotFound()
        if not account.is_initialized:
            account, _ = apply_initialize(session, account, account_id, current)
        if account.used_onboarding_free_generation:
            raise AlreadyUsed()
        account.used_onboarding_free_generation = True
        return FreeGenerationPermit(account_id=account_id, remaining_credits=int(account.credits or 0))

    try:
        permit = await run_ledger_transaction(_work, session_factory=session_factory, label="onboarding")
    except AlreadyUsed:
        logger.info("Account %s already used the free onboarding generation", account_id)
        raise
    logger.info("Account %s using free onboarding generation (no credits consumed)", account_id)
    return permit
