from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.future import select

from config import settings
from database import Base, get_db, get_session_factory
from main import app
from models.account import Account
from routers import rate_limit
from services.entitlements import (
    Entitlement,
    EntitlementProvider,
    EntitlementProviderError,
    PurchaseValidation,
    get_entitlement_provider,
)
from services.session_token import create_session_token


T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def auth_header(account_id: str, email: Optional[str] = None) -> Dict[str, str]:
    return {"Authorization": f"Bearer {create_session_token(account_id, email)['token']}"}


class FakeEntitlementProvider(EntitlementProvider):
    """In-memory stand-in for RevenueCat."""

    def __init__(self):
        self.entitlements: Dict[str, Entitlement] = {}
        self.purchases: Dict[Tuple[str, str], str] = {}
        self.failing_accounts: set = set()
        self.fail_all = False
        self.entitlement_calls: List[str] = []
        self.validation_calls: List[Tuple[str, str, str]] = []

    def grant_subscription(self, account_id: str, expires_date: datetime, product_id: str = "outfiti_premium_monthly"):
        self.entitlements[account_id] = Entitlement(
            active=True,
            product_id=product_id,
            expires_date=expires_date,
            purchase_date=expires_date - timedelta(days=30),
            original_transaction_id=f"orig-{account_id}",
        )

    def revoke_subscription(self, account_id: str):
        self.entitlements[account_id] = Entitlement(active=False)

    def record_purchase(self, account_id: str, transaction_id: str, product_id: str):
        self.purchases[(account_id, transaction_id)] = product_id

    def _maybe_fail(self, account_id: str):
        if self.fail_all or account_id in self.failing_accounts:
            raise EntitlementProviderError("provider unavailable")

    async def query_entitlement(self, account_id, *, now=None):
        self.entitlement_calls.append(account_id)
        self._maybe_fail(account_id)
        return self.entitlements.get(account_id, Entitlement(active=False))

    async def validate_purchase(self, account_id, transaction_id, product_id):
        self.validation_calls.append((account_id, transaction_id, product_id))
        self._maybe_fail(account_id)
        purchased = self.purchases.get((account_id, transaction_id))
        if purchased is None:
            return PurchaseValidation(valid=False, product_id=product_id, reason="transaction_not_found")
        return PurchaseValidation(valid=True, product_id=purchased, amount_paid=4.99)


async def load_account_row(session_maker, account_id: str) -> Optional[Account]:
    async with session_maker() as session:
        result = await session.execute(select(Account).where(Account.id == account_id))
        return result.scalar_one_or_none()


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest.fixture(autouse=True)
def fast_ledger_retries(monkeypatch):
    monkeypatch.setattr(settings, "LEDGER_RETRY_BACKOFF_SECONDS", 0.0)


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "ledger.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield maker
    await engine.dispose()


@pytest.fixture
def fake_provider():
    return FakeEntitlementProvider()


@pytest_asyncio.fixture
async def integration_client(session_maker, fake_provider):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_maker
    app.dependency_overrides[get_entitlement_provider] = lambda: fake_provider
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client, session_maker, fake_provider

    app.dependency_overrides.pop(get_db, None)
    app.dependency_overrides.pop(get_session_factory, None)
    app.dependency_overrides.pop(get_entitlement_provider, None)
