"""Account lifecycle router: initialization, snapshot, profile and onboarding."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from database import get_db, get_session_factory
from models.account import Account
from routers.auth_scope import AuthContext, get_auth_context
from services.ledger import get_account_snapshot, initialize_account, snapshot_of
from services.onboarding import try_free_generation

router = APIRouter()
logger = logging.getLogger(__name__)


class ProfileUpdateRequest(BaseModel):
    display_name: Optional[str] = Field(default=None, max_length=120)
    email: Optional[str] = Field(default=None, max_length=320)


@router.post("/initialize")
async def initialize(
    auth: AuthContext = Depends(get_auth_context),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    snapshot, already_initialized = await initialize_account(auth.account_id, session_factory=session_factory)
    return {
        "success": True,
        "already_initialized": already_initialized,
        **snapshot.to_dict(),
    }


@router.get("/me")
async def account_snapshot(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    snapshot = await get_account_snapshot(auth.account_id, db)
    return snapshot.to_dict()


@router.patch("/me/profile")
async def update_profile(
    request: ProfileUpdateRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(select(Account).where(Account.id == auth.account_id))
    account = result.scalar_one_or_none()
    if account is None:
        account = Account(id=auth.account_id, email=auth.email)
        db.add(account)

    if request.display_name is not None:
        account.display_name = request.display_name.strip()
    if request.email is not None:
        account.email = request.email.strip()
    await db.commit()

    return {
        "account_id": account.id,
        "display_name": account.display_name,
        "email": account.email,
        "initialized": account.is_initialized,
        "credits": snapshot_of(account).credits if account.is_initialized else None,
    }


@router.post("/onboarding/free-generation")
async def onboarding_free_generation(
    auth: AuthContext = Depends(get_auth_context),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    permit = await try_free_generation(auth.account_id, session_factory=session_factory)
    return {
        "success": True,
        "free_generation": permit.free_generation,
        "remaining_credits": permit.remaining_credits,
    }
