"""Signed session tokens identifying the account a ledger call acts for.

The token subject is the account id; it is the only identity the ledger
trusts; request bodies never name the account they mutate.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from config import settings


SESSION_TOKEN_TYPE = "ledger_session"
SESSION_AUDIENCE = "credit-ledger"


class SessionTokenError(ValueError):
    """Token is malformed, expired, or not a ledger session token."""


@dataclass(frozen=True)
class SessionClaims:
    account_id: str
    email: Optional[str]
    expires_at: datetime


def create_session_token(
    account_id: str,
    email: Optional[str] = None,
    expires_hours: Optional[int] = None,
) -> Dict[str, Any]:
    if not account_id or not account_id.strip():
        raise SessionTokenError("Session tokens need an account id.")

    issued_at = datetime.now(timezone.utc)
    lifetime = timedelta(hours=max(int(expires_hours or settings.JWT_EXPIRATION_HOURS or 24), 1))
    claims: Dict[str, Any] = {
        "sub": account_id.strip(),
        "aud": SESSION_AUDIENCE,
        "type": SESSION_TOKEN_TYPE,
        "iat": int(issued_at.timestamp()),
        "exp": int((issued_at + lifetime).timestamp()),
    }
    if email:
        claims["email"] = email

    return {
        "token": jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM),
        "expires_at": claims["exp"],
    }


def decode_session_token(token: str) -> SessionClaims:
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            audience=SESSION_AUDIENCE,
        )
    except JWTError as exc:
        raise SessionTokenError("Invalid or expired session token.") from exc

    if payload.get("type") != SESSION_TOKEN_TYPE:
        raise SessionTokenError("Invalid session token type.")
    account_id = str(payload.get("sub") or "").strip()
    if not account_id:
        raise SessionTokenError("Session token missing subject.")

    return SessionClaims(
        account_id=account_id,
        email=payload.get("email") or None,
        expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
    )
