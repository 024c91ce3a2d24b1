"""Authentication dependencies for account scoping."""

import hmac
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from config import settings
from services.session_token import SessionTokenError, decode_session_token


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    account_id: str
    email: Optional[str] = None


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve the calling account from its Bearer session token."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")

    try:
        claims = decode_session_token(credentials.credentials)
    except SessionTokenError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    return AuthContext(account_id=claims.account_id, email=claims.email)


async def require_admin(x_admin_key: Optional[str] = Header(default=None)) -> None:
    """Guard for operator endpoints; disabled entirely when no key is configured."""
    configured = (settings.ADMIN_API_KEY or "").strip()
    if not configured:
        raise HTTPException(status_code=503, detail="Admin API is disabled. Configure ADMIN_API_KEY.")
    if not x_admin_key or not hmac.compare_digest(x_admin_key, configured):
        raise HTTPException(status_code=403, detail="Invalid admin key.")
