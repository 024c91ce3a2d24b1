"""One-time credit top-ups, applied exactly once per store transaction."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from database import async_session_maker
from models.processed_transaction import ProcessedTransaction
from services.clock import as_utc, utc_now
from services.entitlements import EntitlementProvider, EntitlementProviderError
from services.errors import EntitlementProviderUnavailable, InvalidProduct, PurchaseValidationFailed
from services.ledger import apply_grant
from services.plans import topup_credits_for_product
from services.store import require_account, run_ledger_transaction


logger = logging.getLogger(__name__)


@dataclass
class TopUpResult:
    transaction_id: str
    product_id: str
    credits_added: int
    new_balance: int
    replayed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "transaction_id": self.transaction_id,
            "product_id": self.product_id,
            "credits_added": self.credits_added,
            "new_balance": self.new_balance,
            "replayed": self.replayed,
            "message": f"Added {self.credits_added} credits successfully",
        }


async def _find_processed(session: AsyncSession, transaction_id: str) -> Optional[ProcessedTransaction]:
    result = await session.execute(
        select(ProcessedTransaction).where(ProcessedTransaction.transaction_id == transaction_id)
    )
    return result.scalar_one_or_none()


async def _replay_result(
    session: AsyncSession,
    record: ProcessedTransaction,
    account_id: str,
) -> TopUpResult:
    if record.account_id != account_id:
        logger.error(
            "Transaction %s already applied to account %s; rejecting claim by %s",
            record.transaction_id,
            record.account_id,
            account_id,
        )
        raise PurchaseValidationFailed("transaction_belongs_to_another_account")
    account = await require_account(session, account_id)
    return TopUpResult(
        transaction_id=record.transaction_id,
        product_id=record.product_id,
        credits_added=int(record.credits_granted),
        new_balance=int(account.credits or 0),
        replayed=True,
    )


async def apply_top_up(
    account_id: str,
    product_id: str,
    transaction_id: str,
    provider: EntitlementProvider,
    *,
    now: Optional[datetime] = None,
    session_factory: Optional[async_sessionmaker] = None,
) -> TopUpResult:
    """Validate a consumable purchase and credit it once.

    A replayed or retried confirmation returns the original result without
    touching the balance.
    """
    credits_amount = topup_credits_for_product(product_id)
    if credits_amount is None:
        raise InvalidProduct("Invalid credit top-up product ID.")
    transaction_id = (transaction_id or "").strip()
    if not transaction_id:
        raise InvalidProduct("Transaction ID is required for purchase verification.")

    factory = session_factory or async_session_maker
    async with factory() as session:
        existing = await _find_processed(session, transaction_id)
        if existing is not None:
            logger.info("Transaction %s already processed; returning original result", transaction_id)
            return await _replay_result(session, existing, account_id)

    try:
        validation = await provider.validate_purchase(account_id, transaction_id, product_id)
    except EntitlementProviderError as exc:
        logger.error("Purchase validation unavailable for transaction %s: %s", transaction_id, exc)
        raise EntitlementProviderUnavailable() from exc

    if not validation.valid:
        logger.warning(
            "Purchase verification failed for transaction %s (account %s): %s",
            transaction_id,
            account_id,
            validation.reason,
        )
        raise PurchaseValidationFailed(validation.reason or "invalid_purchase")
    if validation.product_id and validation.product_id != product_id:
        raise PurchaseValidationFailed("product_mismatch")

    current = as_utc(now) or utc_now()

    async def _work(session: AsyncSession) -> TopUpResult:
        # Re-checked inside the transaction: a concurrent confirmation may have won.
        existing_record = await _find_processed(session, transaction_id)
        if existing_record is not None:
            return await _replay_result(session, existing_record, account_id)

        account = await require_account(session, account_id)
        grant = apply_grant(account, credits_amount, cap_to_max=False, now=current)
        session.add(
            ProcessedTransaction(
                transaction_id=transaction_id,
                product_id=product_id,
                account_id=account_id,
                credits_granted=credits_amount,
                processed_at=current,
            )
        )
        return TopUpResult(
            transaction_id=transaction_id,
            product_id=product_id,
            credits_added=grant.credits_added,
            new_balance=grant.new_balance,
        )

    result = await run_ledger_transaction(_work, session_factory=factory, label="top_up")
    if result.replayed:
        logger.info("Transaction %s was applied concurrently; no additional credits", transaction_id)
    else:
        logger.info(
            "Account %s top-up %s applied: +%d credits, balance %d (amount paid %s)",
            account_id,
            product_id,
            result.credits_added,
            result.new_balance,
            validation.amount_paid,
        )
    return result
