"""Account store transaction primitive and protected-field access control.

Every ledger mutation runs through ``run_ledger_transaction``: a fresh
session per attempt, flagged as a ledger writer, committed as one unit and
retried when the account's version counter moved underneath it. Sessions
without the flag cannot flush changes to protected fields.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from sqlalchemy import event, inspect
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from config import settings
from database import async_session_maker
from models.account import PROTECTED_ACCOUNT_FIELDS, Account
from models.processed_transaction import ProcessedTransaction
from models.subscription_record import SubscriptionRecord
from services.errors import AccountNotFound, LedgerConflict


logger = logging.getLogger(__name__)

LEDGER_WRITER_FLAG = "ledger_writer"
LEDGER_OWNED_MODELS = (SubscriptionRecord, ProcessedTransaction)

T = TypeVar("T")


class ProtectedFieldError(PermissionError):
    """Raised when a non-ledger session tries to write ledger-owned state."""


@event.listens_for(Session, "before_flush")
def _reject_unprivileged_ledger_writes(session: Session, flush_context, instances) -> None:
    if session.info.get(LEDGER_WRITER_FLAG):
        return

    for obj in session.new:
        if isinstance(obj, LEDGER_OWNED_MODELS):
            raise ProtectedFieldError(f"{type(obj).__name__} rows can only be created by the ledger.")
        if isinstance(obj, Account):
            populated = [name for name in PROTECTED_ACCOUNT_FIELDS if getattr(obj, name) is not None]
            if populated:
                raise ProtectedFieldError(f"Protected account fields cannot be set: {', '.join(populated)}")

    for obj in session.dirty:
        if isinstance(obj, LEDGER_OWNED_MODELS) and session.is_modified(obj):
            raise ProtectedFieldError(f"{type(obj).__name__} rows can only be modified by the ledger.")
        if isinstance(obj, Account):
            state = inspect(obj)
            changed = [name for name in PROTECTED_ACCOUNT_FIELDS if state.attrs[name].history.has_changes()]
            if changed:
                raise ProtectedFieldError(f"Protected account fields cannot be modified: {', '.join(changed)}")

    for obj in session.deleted:
        if isinstance(obj, (Account,) + LEDGER_OWNED_MODELS):
            raise ProtectedFieldError(f"{type(obj).__name__} rows can only be deleted by the ledger.")


async def load_account(
    session: AsyncSession,
    account_id: str,
    *,
    for_update: bool = True,
) -> Optional[Account]:
    """Load an account inside a ledger transaction (row-locked where supported)."""
    query = select(Account).where(Account.id == account_id)
    if for_update:
        query = query.with_for_update()
    result = await session.execute(query)
    return result.scalar_one_or_none()


async def require_account(session: AsyncSession, account_id: str) -> Account:
    account = await load_account(session, account_id)
    if account is None or not account.is_initialized:
        raise AccountNotFound()
    return account


async def run_ledger_transaction(
    work: Callable[[AsyncSession], Awaitable[T]],
    *,
    session_factory: Optional[async_sessionmaker] = None,
    label: str = "ledger",
) -> T:
    """Run ``work`` atomically, retrying on optimistic-concurrency conflicts.

    ``work`` receives a fresh ledger-writer session on each attempt and must
    re-read everything it decides on. Domain errors raised by ``work`` roll
    back and propagate unchanged.
    """
    factory = session_factory or async_session_maker
    attempts = max(int(settings.LEDGER_TRANSACTION_RETRIES), 1)
    backoff = max(float(settings.LEDGER_RETRY_BACKOFF_SECONDS), 0.0)

    for attempt in range(1, attempts + 1):
        async with factory() as session:
            session.info[LEDGER_WRITER_FLAG] = True
            try:
                result = await work(session)
                await session.commit()
                return result
            except (StaleDataError, IntegrityError) as exc:
                await session.rollback()
                if attempt >= attempts:
                    logger.error("%s transaction gave up after %d attempts: %s", label, attempt, exc)
                    raise LedgerConflict() from exc
                logger.info("%s transaction conflict (attempt %d/%d): %s", label, attempt, attempts, exc)
        await asyncio.sleep(backoff * attempt)

    raise LedgerConflict()
