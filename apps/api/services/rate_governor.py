"""Per-account generation rate governor.

Balance, cooldown and concurrency checks run in the same transaction as the
credit deduction, so a request rejected by one check never reserves anything
from the other. The balance is checked first: a caller with no credits left
is told so rather than asked to wait for a retry that cannot succeed. State
lives on the account row (``last_request_at``, ``in_flight_count``) so the
limits hold across server instances.

Callers must release the slot when the downstream call ends; use
``generation_slot`` or ``run_generation`` to get that guaranteed. Both refund
the consumed credits when the generation does not complete. A slot leaked by
a crashed caller is treated as released once the account's last accepted
request is older than the staleness window.
"""

from __future__ import annotations

import asyncio
import logging
import math
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import AsyncIterator, Awaitable, Callable, Optional, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import generation_slot_stale_seconds, settings
from models.account import Account
from services.clock import as_utc, utc_now
from services.errors import ConcurrencyLimitExceeded, CooldownActive
from services.ledger import apply_consume, apply_grant, check_balance, validate_consume_amount
from services.store import load_account, require_account, run_ledger_transaction


logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class GenerationSlot:
    account_id: str
    credits_consumed: int
    remaining_credits: int
    in_flight_count: int
    acquired_at: datetime


def _effective_in_flight(account: Account, now: datetime) -> int:
    in_flight = int(account.in_flight_count or 0)
    last_request_at = as_utc(account.last_request_at)
    if in_flight and last_request_at is not None:
        if now - last_request_at >= timedelta(seconds=generation_slot_stale_seconds()):
            return 0
    return in_flight


def check_and_acquire(account: Account, amount: int, now: datetime) -> GenerationSlot:
    """Run every admission check, then mutate; raises before any write on rejection."""
    cooldown = max(int(settings.GENERATION_COOLDOWN_SECONDS), 0)
    max_concurrent = max(int(settings.MAX_CONCURRENT_GENERATIONS), 1)

    check_balance(account, amount)

    in_flight = _effective_in_flight(account, now)
    if in_flight != int(account.in_flight_count or 0):
        logger.warning(
            "Account %s had %s stale in-flight generation(s); treating them as released",
            account.id,
            account.in_flight_count,
        )

    last_request_at = as_utc(account.last_request_at)
    if last_request_at is not None:
        elapsed = (now - last_request_at).total_seconds()
        if elapsed < cooldown:
            retry_after = max(int(math.ceil(cooldown - elapsed)), 1)
            raise CooldownActive(retry_after_seconds=retry_after)

    if in_flight >= max_concurrent:
        raise ConcurrencyLimitExceeded(max_concurrent=max_concurrent)

    remaining = apply_consume(account, amount)
    account.in_flight_count = in_flight + 1
    account.last_request_at = now
    return GenerationSlot(
        account_id=account.id,
        credits_consumed=amount,
        remaining_credits=remaining,
        in_flight_count=account.in_flight_count,
        acquired_at=now,
    )


async def acquire_generation_slot(
    account_id: str,
    amount: int = 1,
    *,
    now: Optional[datetime] = None,
    session_factory: Optional[async_sessionmaker] = None,
) -> GenerationSlot:
    debit = validate_consume_amount(amount)
    current = as_utc(now) or utc_now()

    async def _work(session: AsyncSession) -> GenerationSlot:
        account = await require_account(session, account_id)
        return check_and_acquire(account, debit, current)

    slot = await run_ledger_transaction(_work, session_factory=session_factory, label="acquire_slot")
    logger.info(
        "Account %s acquired generation slot (%d/%d active), consumed %d credit(s), remaining %d",
        account_id,
        slot.in_flight_count,
        settings.MAX_CONCURRENT_GENERATIONS,
        slot.credits_consumed,
        slot.remaining_credits,
    )
    return slot


async def release_generation_slot(
    account_id: str,
    *,
    refund_credits: int = 0,
    session_factory: Optional[async_sessionmaker] = None,
) -> Optional[int]:
    """Decrement the in-flight counter; never raises so it cannot mask the caller's error.

    ``refund_credits`` returns credits consumed by a generation that did not
    complete, in the same transaction as the release. Refunds are uncapped
    and leave ``last_monthly_grant`` alone.
    """
    refund = max(int(refund_credits or 0), 0)

    async def _work(session: AsyncSession) -> Optional[int]:
        account = await load_account(session, account_id)
        if account is None:
            return None
        account.in_flight_count = max(int(account.in_flight_count or 0) - 1, 0)
        if refund:
            apply_grant(account, refund, False, utc_now())
        return account.in_flight_count

    try:
        in_flight = await run_ledger_transaction(_work, session_factory=session_factory, label="release_slot")
    except Exception:
        logger.exception("Failed to release generation slot for account %s", account_id)
        return None
    if in_flight is None:
        logger.warning("Account %s not found when releasing generation slot", account_id)
    elif refund:
        logger.info("Generation failed for account %s; refunded %d credit(s)", account_id, refund)
    return in_flight


async def reset_in_flight(
    account_id: str,
    *,
    session_factory: Optional[async_sessionmaker] = None,
) -> int:
    """Admin repair for a counter left behind by a caller that never released."""

    async def _work(session: AsyncSession) -> int:
        account = await require_account(session, account_id)
        previous = int(account.in_flight_count or 0)
        account.in_flight_count = 0
        return previous

    previous = await run_ledger_transaction(_work, session_factory=session_factory, label="reset_in_flight")
    logger.warning("Admin reset in-flight generations for account %s (was %d)", account_id, previous)
    return previous


@asynccontextmanager
async def generation_slot(
    account_id: str,
    amount: int = 1,
    *,
    session_factory: Optional[async_sessionmaker] = None,
) -> AsyncIterator[GenerationSlot]:
    slot = await acquire_generation_slot(account_id, amount, session_factory=session_factory)
    completed = False
    try:
        yield slot
        completed = True
    finally:
        refund = 0 if completed else slot.credits_consumed
        # Shielded so a cancelled request still frees its slot.
        await asyncio.shield(
            release_generation_slot(account_id, refund_credits=refund, session_factory=session_factory)
        )


async def run_generation(
    account_id: str,
    generate: Callable[[], Awaitable[T]],
    *,
    amount: int = 1,
    timeout: Optional[float] = None,
    session_factory: Optional[async_sessionmaker] = None,
) -> T:
    """Consume credits, run the downstream generation with a timeout, always release.

    The credits are refunded when ``generate`` raises, times out or is cancelled.
    """
    limit = float(timeout if timeout is not None else settings.GENERATION_TIMEOUT_SECONDS)
    async with generation_slot(account_id, amount, session_factory=session_factory):
        return await asyncio.wait_for(generate(), timeout=limit)
