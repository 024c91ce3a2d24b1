"""Entitlement provider contract and the RevenueCat implementation.

The provider is the system of record for subscription validity and for
one-time purchases. Its answers are treated as untrusted input: the ledger
only mutates balances after a validation call returns, and never calls the
provider from inside an open ledger transaction.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx

from config import settings
from services.clock import as_utc, utc_now


logger = logging.getLogger(__name__)


class EntitlementProviderError(RuntimeError):
    """Provider unreachable or answered with an unusable response."""


@dataclass
class Entitlement:
    active: bool
    product_id: Optional[str] = None
    expires_date: Optional[datetime] = None
    purchase_date: Optional[datetime] = None
    original_transaction_id: Optional[str] = None


@dataclass
class PurchaseValidation:
    valid: bool
    product_id: Optional[str] = None
    amount_paid: Optional[float] = None
    reason: Optional[str] = None


class EntitlementProvider(ABC):
    @abstractmethod
    async def query_entitlement(self, account_id: str, *, now: Optional[datetime] = None) -> Entitlement:
        """Return the account's current subscription entitlement."""

    @abstractmethod
    async def validate_purchase(self, account_id: str, transaction_id: str, product_id: str) -> PurchaseValidation:
        """Confirm a one-time purchase occurred and belongs to the account."""


def _parse_datetime(value: Any) -> Optional[datetime]:
    if not value or not isinstance(value, str):
        return None
    try:
        return as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        return None


def _parse_amount(value: Any) -> Optional[float]:
    if isinstance(value, dict):
        value = value.get("amount")
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


class RevenueCatEntitlementProvider(EntitlementProvider):
    """RevenueCat V1 subscriber endpoint client."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        base_url: Optional[str] = None,
        entitlement_id: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = api_key if api_key is not None else settings.REVENUECAT_API_KEY
        self.base_url = (base_url or settings.REVENUECAT_BASE_URL).rstrip("/")
        self.entitlement_id = entitlement_id or settings.REVENUECAT_ENTITLEMENT_ID
        self.timeout = float(timeout if timeout is not None else settings.ENTITLEMENT_TIMEOUT_SECONDS)
        self._transport = transport

    def _get_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def get_subscriber(self, account_id: str) -> Dict[str, Any]:
        if not self.api_key:
            raise EntitlementProviderError("REVENUECAT_API_KEY is not configured")

        url = f"{self.base_url}/subscribers/{quote(account_id, safe='')}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(url, headers=self._get_headers())
        except httpx.TimeoutException as exc:
            logger.error("RevenueCat API timeout for subscriber %s", account_id)
            raise EntitlementProviderError("RevenueCat API timeout") from exc
        except httpx.HTTPError as exc:
            logger.error("RevenueCat API error for subscriber %s: %s", account_id, exc)
            raise EntitlementProviderError(f"RevenueCat API error: {exc}") from exc

        if response.status_code != 200:
            logger.error(
                "RevenueCat API returned status %d for subscriber %s: %s",
                response.status_code,
                account_id,
                response.text[:200],
            )
            raise EntitlementProviderError(f"RevenueCat API error: {response.status_code}")

        try:
            payload = response.json()
        except ValueError as exc:
            raise EntitlementProviderError("RevenueCat API returned invalid JSON") from exc
        subscriber = payload.get("subscriber") if isinstance(payload, dict) else None
        return subscriber if isinstance(subscriber, dict) else {}

    async def query_entitlement(self, account_id: str, *, now: Optional[datetime] = None) -> Entitlement:
        subscriber = await self.get_subscriber(account_id)
        entitlement = (subscriber.get("entitlements") or {}).get(self.entitlement_id) or {}
        expires_date = _parse_datetime(entitlement.get("expires_date"))
        if expires_date is None:
            return Entitlement(active=False)

        product_id = entitlement.get("product_identifier")
        subscription = (subscriber.get("subscriptions") or {}).get(product_id or "") or {}
        purchase_date = _parse_datetime(entitlement.get("purchase_date")) or _parse_datetime(
            subscription.get("original_purchase_date")
        )
        original_transaction_id = (
            subscription.get("original_transaction_id")
            or subscription.get("store_transaction_id")
            or subscription.get("original_purchase_date")
            or product_id
        )
        current = as_utc(now) or utc_now()
        return Entitlement(
            active=expires_date > current,
            product_id=product_id,
            expires_date=expires_date,
            purchase_date=purchase_date,
            original_transaction_id=original_transaction_id,
        )

    async def validate_purchase(self, account_id: str, transaction_id: str, product_id: str) -> PurchaseValidation:
        subscriber = await self.get_subscriber(account_id)
        purchases = (subscriber.get("non_subscriptions") or {}).get(product_id) or []
        if not purchases:
            logger.warning("No purchase found for product %s (account %s)", product_id, account_id)
            return PurchaseValidation(valid=False, product_id=product_id, reason="product_not_purchased")

        for purchase in purchases:
            if not isinstance(purchase, dict):
                continue
            if transaction_id in (purchase.get("id"), purchase.get("store_transaction_id")):
                return PurchaseValidation(
                    valid=True,
                    product_id=product_id,
                    amount_paid=_parse_amount(purchase.get("price")),
                )

        logger.warning("Transaction %s not found for product %s (account %s)", transaction_id, product_id, account_id)
        return PurchaseValidation(valid=False, product_id=product_id, reason="transaction_not_found")


def get_entitlement_provider() -> EntitlementProvider:
    """FastAPI dependency; tests override it with a fake provider."""
    return RevenueCatEntitlementProvider()
