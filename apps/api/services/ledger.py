"""Credit ledger: balance, plan and grant bookkeeping per account.

Operations:
    - initialize_account(account_id) -> (AccountSnapshot, already_initialized)
    - consume_credits(account_id, amount) -> remaining balance
    - grant_credits(account_id, amount, cap_to_max) -> GrantResult
    - set_plan(account_id, plan) -> AccountSnapshot
    - get_account_snapshot(account_id, db) -> AccountSnapshot

Rules:
    1. credits never go below zero
    2. max_credits caps periodic grants only; top-ups are never clamped
    3. a capped grant on a balance already above the cap leaves it untouched
    4. set_plan never alters the balance

The ``apply_*`` helpers mutate an already-loaded account inside an open
ledger transaction so other components can compose them atomically.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from config import settings
from models.account import Account
from services.clock import as_utc, isoformat, utc_now
from services.errors import AccountNotFound, InsufficientCredits, InvalidAmount, InvalidPlan
from services.plans import Plan, get_plan_policy, parse_plan
from services.store import load_account, require_account, run_ledger_transaction


logger = logging.getLogger(__name__)


@dataclass
class AccountSnapshot:
    account_id: str
    plan: str
    credits: int
    max_credits: int
    last_monthly_grant: Optional[datetime]
    used_onboarding_free_generation: bool
    created_at: Optional[datetime]
    in_flight_count: int
    last_request_at: Optional[datetime]

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        for key in ("last_monthly_grant", "created_at", "last_request_at"):
            payload[key] = isoformat(payload[key])
        return payload


@dataclass
class GrantResult:
    previous_balance: int
    new_balance: int
    capped: bool

    @property
    def credits_added(self) -> int:
        return self.new_balance - self.previous_balance


def snapshot_of(account: Account) -> AccountSnapshot:
    policy = get_plan_policy(account.plan)
    return AccountSnapshot(
        account_id=account.id,
        plan=account.plan or Plan.FREE.value,
        credits=int(account.credits or 0),
        max_credits=int(account.max_credits if account.max_credits is not None else policy.max_credits),
        last_monthly_grant=as_utc(account.last_monthly_grant),
        used_onboarding_free_generation=bool(account.used_onboarding_free_generation),
        created_at=as_utc(account.created_at),
        in_flight_count=int(account.in_flight_count or 0),
        last_request_at=as_utc(account.last_request_at),
    )


def validate_consume_amount(amount: Any) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmount("Amount must be a positive integer.")
    limit = max(int(settings.MAX_CONSUME_PER_REQUEST), 1)
    if amount > limit:
        raise InvalidAmount(f"Cannot consume more than {limit} credits at once.")
    return amount


def apply_initialize(
    session: AsyncSession,
    account: Optional[Account],
    account_id: str,
    now: datetime,
) -> Tuple[Account, bool]:
    """Fill free-plan defaults when the account or its required fields are missing."""
    if account is not None and account.is_initialized:
        return account, True

    policy = get_plan_policy(Plan.FREE.value)
    if account is None:
        account = Account(id=account_id)
        session.add(account)

    account.plan = Plan.FREE.value
    account.credits = policy.monthly_credits
    account.max_credits = policy.max_credits
    account.last_monthly_grant = now
    account.created_at = account.created_at or now
    if account.used_onboarding_free_generation is None:
        account.used_onboarding_free_generation = False
    if account.in_flight_count is None:
        account.in_flight_count = 0
    return account, False


def check_balance(account: Account, amount: int) -> int:
    current = int(account.credits or 0)
    if current < amount:
        raise InsufficientCredits(current=current, required=amount)
    return current


def apply_consume(account: Account, amount: int) -> int:
    current = check_balance(account, amount)
    account.credits = current - amount
    return account.credits


def apply_grant(account: Account, amount: int, cap_to_max: bool, now: datetime) -> GrantResult:
    if amount < 0:
        raise InvalidAmount("Grant amount must not be negative.")
    previous = int(account.credits or 0)
    if cap_to_max:
        cap = int(account.max_credits if account.max_credits is not None else get_plan_policy(account.plan).max_credits)
        # Surplus from purchases is kept as-is; only the grant clock moves.
        new_balance = min(previous + amount, cap) if previous <= cap else previous
        account.last_monthly_grant = now
    else:
        new_balance = previous + amount
    account.credits = new_balance
    return GrantResult(previous_balance=previous, new_balance=new_balance, capped=cap_to_max)


def apply_set_plan(account: Account, plan: Plan) -> None:
    account.plan = plan.value
    account.max_credits = get_plan_policy(plan.value).max_credits


async def initialize_account(
    account_id: str,
    *,
    now: Optional[datetime] = None,
    session_factory: Optional[async_sessionmaker] = None,
) -> Tuple[AccountSnapshot, bool]:
    current = as_utc(now) or utc_now()

    async def _work(session: AsyncSession) -> Tuple[AccountSnapshot, bool]:
        account = await load_account(session, account_id)
        account, already_initialized = apply_initialize(session, account, account_id, current)
        return snapshot_of(account), already_initialized

    snapshot, already_initialized = await run_ledger_transaction(
        _work, session_factory=session_factory, label="initialize"
    )
    if already_initialized:
        logger.debug("Credits already initialized for account %s", account_id)
    else:
        logger.info("Credits initialized for account %s", account_id)
    return snapshot, already_initialized


async def consume_credits(
    account_id: str,
    amount: int,
    *,
    session_factory: Optional[async_sessionmaker] = None,
) -> int:
    """Deduct ``amount`` credits without touching rate-governor state.

    Generation callers go through ``rate_governor.acquire_generation_slot``,
    which runs this same check inside its own transaction.
    """
    debit = validate_consume_amount(amount)

    async def _work(session: AsyncSession) -> int:
        account = await require_account(session, account_id)
        return apply_consume(account, debit)

    remaining = await run_ledger_transaction(_work, session_factory=session_factory, label="consume")
    logger.info("Account %s consumed %d credit(s). Remaining: %d", account_id, debit, remaining)
    return remaining


async def grant_credits(
    account_id: str,
    amount: int,
    cap_to_max: bool,
    *,
    now: Optional[datetime] = None,
    session_factory: Optional[async_sessionmaker] = None,
) -> GrantResult:
    current = as_utc(now) or utc_now()

    async def _work(session: AsyncSession) -> GrantResult:
        account = await require_account(session, account_id)
        return apply_grant(account, int(amount), cap_to_max, current)

    result = await run_ledger_transaction(_work, session_factory=session_factory, label="grant")
    logger.info(
        "Granted %d credit(s) to account %s (capped=%s). Balance: %d -> %d",
        result.credits_added,
        account_id,
        cap_to_max,
        result.previous_balance,
        result.new_balance,
    )
    return result


async def set_plan(
    account_id: str,
    plan: str,
    *,
    session_factory: Optional[async_sessionmaker] = None,
) -> AccountSnapshot:
    resolved = parse_plan(plan)
    if resolved is None:
        raise InvalidPlan(f"Invalid plan. Must be one of: {', '.join(p.value for p in Plan)}")

    async def _work(session: AsyncSession) -> AccountSnapshot:
        account = await require_account(session, account_id)
        apply_set_plan(account, resolved)
        return snapshot_of(account)

    snapshot = await run_ledger_transaction(_work, session_factory=session_factory, label="set_plan")
    logger.info("Account %s plan updated to %s (max_credits=%d)", account_id, snapshot.plan, snapshot.max_credits)
    return snapshot


async def get_account_snapshot(account_id: str, db: AsyncSession) -> AccountSnapshot:
    result = await db.execute(select(Account).where(Account.id == account_id))
    account = result.scalar_one_or_none()
    if account is None or not account.is_initialized:
        raise AccountNotFound()
    return snapshot_of(account)
