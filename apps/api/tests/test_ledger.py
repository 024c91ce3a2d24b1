import asyncio
from datetime import timedelta

import pytest

from conftest import T0, load_account_row
from models.account import Account
from services.errors import AccountNotFound, InsufficientCredits, InvalidAmount, InvalidPlan
from services.ledger import (
    apply_grant,
    consume_credits,
    get_account_snapshot,
    grant_credits,
    initialize_account,
    set_plan,
)


@pytest.mark.asyncio
async def test_initialize_sets_free_defaults(session_maker):
    snapshot, already = await initialize_account("acct-1", now=T0, session_factory=session_maker)

    assert already is False
    assert snapshot.plan == "free"
    assert snapshot.credits == 2
    assert snapshot.max_credits == 2
    assert snapshot.last_monthly_grant == T0
    assert snapshot.created_at == T0
    assert snapshot.used_onboarding_free_generation is False
    assert snapshot.in_flight_count == 0


@pytest.mark.asyncio
async def test_initialize_is_idempotent(session_maker):
    first, _ = await initialize_account("acct-1", now=T0, session_factory=session_maker)
    await consume_credits("acct-1", 1, session_factory=session_maker)

    for offset in range(3):
        snapshot, already = await initialize_account(
            "acct-1", now=T0 + timedelta(days=offset + 1), session_factory=session_maker
        )
        assert already is True
        assert snapshot.credits == 1
        assert snapshot.created_at == first.created_at
        assert snapshot.last_monthly_grant == first.last_monthly_grant


@pytest.mark.asyncio
async def test_initialize_fills_profile_only_row(session_maker):
    async with session_maker() as session:
        session.add(Account(id="acct-1", email="someone@example.com", display_name="Someone"))
        await session.commit()

    snapshot, already = await initialize_account("acct-1", now=T0, session_factory=session_maker)

    assert already is False
    assert snapshot.credits == 2
    row = await load_account_row(session_maker, "acct-1")
    assert row.display_name == "Someone"
    assert row.email == "someone@example.com"


@pytest.mark.asyncio
async def test_consume_deducts_and_reports_remaining(session_maker):
    await initialize_account("acct-1", now=T0, session_factory=session_maker)

    remaining = await consume_credits("acct-1", 2, session_factory=session_maker)

    assert remaining == 0
    row = await load_account_row(session_maker, "acct-1")
    assert row.credits == 0


@pytest.mark.asyncio
async def test_over_consume_leaves_balance_unchanged(session_maker):
    await initialize_account("acct-1", now=T0, session_factory=session_maker)

    with pytest.raises(InsufficientCredits) as exc_info:
        await consume_credits("acct-1", 3, session_factory=session_maker)

    assert exc_info.value.current == 2
    assert exc_info.value.required == 3
    assert exc_info.value.status_code == 402
    assert exc_info.value.detail["code"] == "insufficient_credits"
    row = await load_account_row(session_maker, "acct-1")
    assert row.credits == 2


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [0, -1, 11, True, 1.5])
async def test_consume_rejects_invalid_amounts(session_maker, amount):
    await initialize_account("acct-1", now=T0, session_factory=session_maker)

    with pytest.raises(InvalidAmount):
        await consume_credits("acct-1", amount, session_factory=session_maker)


@pytest.mark.asyncio
async def test_consume_on_missing_account(session_maker):
    with pytest.raises(AccountNotFound):
        await consume_credits("ghost", 1, session_factory=session_maker)


@pytest.mark.asyncio
async def test_concurrent_consume_on_last_credit_admits_one(session_maker):
    await initialize_account("acct-1", now=T0, session_factory=session_maker)
    await consume_credits("acct-1", 1, session_factory=session_maker)

    results = await asyncio.gather(
        consume_credits("acct-1", 1, session_factory=session_maker),
        consume_credits("acct-1", 1, session_factory=session_maker),
        return_exceptions=True,
    )

    successes = [r for r in results if not isinstance(r, Exception)]
    failures = [r for r in results if isinstance(r, InsufficientCredits)]
    assert successes == [0]
    assert len(failures) == 1
    row = await load_account_row(session_maker, "acct-1")
    assert row.credits == 0


@pytest.mark.asyncio
async def test_capped_grant_refills_partially(session_maker):
    await initialize_account("acct-1", now=T0, session_factory=session_maker)
    await consume_credits("acct-1", 1, session_factory=session_maker)

    later = T0 + timedelta(days=30)
    result = await grant_credits("acct-1", 2, True, now=later, session_factory=session_maker)

    assert result.previous_balance == 1
    assert result.new_balance == 2
    assert result.credits_added == 1
    row = await load_account_row(session_maker, "acct-1")
    assert row.credits == 2


@pytest.mark.asyncio
async def test_capped_grant_keeps_surplus_and_moves_grant_clock(session_maker):
    await initialize_account("acct-1", now=T0, session_factory=session_maker)
    await grant_credits("acct-1", 3, False, now=T0, session_factory=session_maker)

    later = T0 + timedelta(days=31)
    result = await grant_credits("acct-1", 2, True, now=later, session_factory=session_maker)

    assert result.new_balance == 5
    assert result.credits_added == 0
    async with session_maker() as session:
        snapshot = await get_account_snapshot("acct-1", session)
    assert snapshot.credits == 5
    assert snapshot.last_monthly_grant == later


@pytest.mark.asyncio
async def test_uncapped_grant_ignores_max_and_grant_clock(session_maker):
    await initialize_account("acct-1", now=T0, session_factory=session_maker)

    result = await grant_credits("acct-1", 15, False, now=T0 + timedelta(days=3), session_factory=session_maker)

    assert result.new_balance == 17
    async with session_maker() as session:
        snapshot = await get_account_snapshot("acct-1", session)
    assert snapshot.last_monthly_grant == T0


def test_apply_grant_caps_at_plan_maximum():
    account = Account(id="acct", plan="pro", credits=80, max_credits=100)

    result = apply_grant(account, 50, cap_to_max=True, now=T0)

    assert result.new_balance == 100
    assert account.credits == 100
    assert account.last_monthly_grant == T0


def test_apply_grant_rejects_negative_amount():
    account = Account(id="acct", plan="free", credits=1, max_credits=2)

    with pytest.raises(InvalidAmount):
        apply_grant(account, -1, cap_to_max=False, now=T0)


@pytest.mark.asyncio
async def test_set_plan_updates_cap_without_touching_balance(session_maker):
    await initialize_account("acct-1", now=T0, session_factory=session_maker)
    await grant_credits("acct-1", 73, False, now=T0, session_factory=session_maker)

    pro = await set_plan("acct-1", "pro", session_factory=session_maker)
    assert pro.plan == "pro"
    assert pro.max_credits == 100
    assert pro.credits == 75

    free = await set_plan("acct-1", "free", session_factory=session_maker)
    assert free.plan == "free"
    assert free.max_credits == 2
    assert free.credits == 75


@pytest.mark.asyncio
async def test_set_plan_rejects_unknown_plan(session_maker):
    await initialize_account("acct-1", now=T0, session_factory=session_maker)

    with pytest.raises(InvalidPlan):
        await set_plan("acct-1", "enterprise", session_factory=session_maker)


@pytest.mark.asyncio
async def test_snapshot_of_uninitialized_account_is_not_found(session_maker):
    async with session_maker() as session:
        session.add(Account(id="acct-1", display_name="Profile only"))
        await session.commit()

        with pytest.raises(AccountNotFound):
            await get_account_snapshot("acct-1", session)
