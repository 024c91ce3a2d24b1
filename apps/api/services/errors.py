"""Typed ledger failures.

Each failure is an ``HTTPException`` so routers can let it propagate; the
``detail`` payload is a dict with a stable ``code`` the client branches on.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import HTTPException


class LedgerError(HTTPException):
    status_code = 400
    code = "ledger_error"
    message = "Ledger operation failed."

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        headers: Optional[Dict[str, str]] = None,
        **extra: Any,
    ) -> None:
        self.extra = extra
        detail: Dict[str, Any] = {"code": self.code, "message": message or self.message}
        detail.update(extra)
        super().__init__(status_code=self.status_code, detail=detail, headers=headers)


class InsufficientCredits(LedgerError):
    status_code = 402
    code = "insufficient_credits"

    def __init__(self, current: int, required: int) -> None:
        self.current = current
        self.required = required
        super().__init__(
            f"Insufficient credits. You have {current} credits but need {required}.",
            current=current,
            required=required,
        )


class CooldownActive(LedgerError):
    status_code = 429
    code = "cooldown"

    def __init__(self, retry_after_seconds: int) -> None:
        self.retry_after_seconds = retry_after_seconds
        super().__init__(
            "Please wait a moment before generating again.",
            headers={"Retry-After": str(retry_after_seconds)},
            retry_after_seconds=retry_after_seconds,
        )


class ConcurrencyLimitExceeded(LedgerError):
    status_code = 429
    code = "concurrent_limit"
    message = "Too many requests in progress."

    def __init__(self, max_concurrent: int) -> None:
        super().__init__(max_concurrent=max_concurrent)


class AlreadyUsed(LedgerError):
    status_code = 409
    code = "already_used"
    message = "Free onboarding generation already used. Please use regular generation."


class PurchaseValidationFailed(LedgerError):
    status_code = 402
    code = "purchase_validation_failed"

    def __init__(self, reason: str) -> None:
        super().__init__(
            "Purchase verification failed. Please try again or contact support.",
            reason=reason,
        )


class InvalidAmount(LedgerError):
    status_code = 422
    code = "invalid_amount"


class InvalidProduct(LedgerError):
    status_code = 422
    code = "invalid_product"


class InvalidPlan(LedgerError):
    status_code = 422
    code = "invalid_plan"


class AccountNotFound(LedgerError):
    status_code = 404
    code = "account_not_found"
    message = "Account not found. Initialize the account first."


class LedgerConflict(LedgerError):
    status_code = 409
    code = "ledger_conflict"
    message = "The account was modified concurrently. Please retry."


class EntitlementProviderUnavailable(LedgerError):
    status_code = 503
    code = "entitlement_provider_unavailable"
    message = "Purchase provider is unavailable. Please try again later."
