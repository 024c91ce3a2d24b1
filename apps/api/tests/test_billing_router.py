import asyncio
from datetime import timedelta

import pytest

from config import settings
from conftest import auth_header, load_account_row
from services.clock import utc_now
from services.ledger import consume_credits

ADMIN_KEY = "admin-key-for-tests-0123456789"


@pytest.mark.asyncio
async def test_requests_without_token_are_rejected(integration_client):
    client, _, _ = integration_client

    response = await client.post("/accounts/initialize")

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_account_lifecycle_flow(integration_client):
    client, session_maker, _ = integration_client
    headers = auth_header("acct-flow", "flow@example.com")

    missing = await client.get("/accounts/me", headers=headers)
    assert missing.status_code == 404
    assert missing.json()["detail"]["code"] == "account_not_found"

    init = await client.post("/accounts/initialize", headers=headers)
    assert init.status_code == 200
    assert init.json()["already_initialized"] is False
    assert init.json()["credits"] == 2
    assert init.json()["plan"] == "free"

    again = await client.post("/accounts/initialize", headers=headers)
    assert again.json()["already_initialized"] is True

    profile = await client.patch("/accounts/me/profile", json={"display_name": "Flow"}, headers=headers)
    assert profile.status_code == 200
    assert profile.json()["display_name"] == "Flow"

    free = await client.post("/accounts/onboarding/free-generation", headers=headers)
    assert free.status_code == 200
    assert free.json()["free_generation"] is True
    assert free.json()["remaining_credits"] == 2

    used = await client.post("/accounts/onboarding/free-generation", headers=headers)
    assert used.status_code == 409
    assert used.json()["detail"]["code"] == "already_used"

    me = await client.get("/accounts/me", headers=headers)
    assert me.status_code == 200
    assert me.json()["used_onboarding_free_generation"] is True
    assert me.json()["credits"] == 2

    row = await load_account_row(session_maker, "acct-flow")
    assert row.display_name == "Flow"


@pytest.mark.asyncio
async def test_profile_update_before_initialize_creates_profile_only_row(integration_client):
    client, session_maker, _ = integration_client
    headers = auth_header("acct-profile", "profile@example.com")

    response = await client.patch("/accounts/me/profile", json={"display_name": "Early"}, headers=headers)

    assert response.status_code == 200
    assert response.json()["initialized"] is False
    assert response.json()["email"] == "profile@example.com"
    row = await load_account_row(session_maker, "acct-profile")
    assert row.credits is None

    init = await client.post("/accounts/initialize", headers=headers)
    assert init.json()["already_initialized"] is False
    assert init.json()["credits"] == 2


@pytest.mark.asyncio
async def test_consume_cooldown_and_release(integration_client):
    client, _, _ = integration_client
    headers = auth_header("acct-consume")
    await client.post("/accounts/initialize", headers=headers)

    first = await client.post("/billing/consume", json={"amount": 1}, headers=headers)
    assert first.status_code == 200
    assert first.json()["remaining_credits"] == 1
    assert first.json()["in_flight_count"] == 1

    second = await client.post("/billing/consume", json={"amount": 1}, headers=headers)
    assert second.status_code == 429
    assert second.json()["detail"]["code"] == "cooldown"
    assert int(second.headers["retry-after"]) >= 1

    released = await client.post("/billing/release", headers=headers)
    assert released.status_code == 200
    assert released.json()["in_flight_count"] == 0

    me = await client.get("/accounts/me", headers=headers)
    assert me.json()["credits"] == 1


@pytest.mark.asyncio
async def test_consume_insufficient_and_invalid_amounts(integration_client):
    client, _, _ = integration_client
    headers = auth_header("acct-poor")
    await client.post("/accounts/initialize", headers=headers)

    too_many = await client.post("/billing/consume", json={"amount": 3}, headers=headers)
    assert too_many.status_code == 402
    assert too_many.json()["detail"]["current"] == 2
    assert too_many.json()["detail"]["required"] == 3

    zero = await client.post("/billing/consume", json={"amount": 0}, headers=headers)
    assert zero.status_code == 422
    assert zero.json()["detail"]["code"] == "invalid_amount"


@pytest.mark.asyncio
async def test_concurrent_consume_of_last_credit_over_http(integration_client):
    client, session_maker, _ = integration_client
    headers = auth_header("acct-race")
    await client.post("/accounts/initialize", headers=headers)
    await consume_credits("acct-race", 1, session_factory=session_maker)

    responses = await asyncio.gather(
        client.post("/billing/consume", json={"amount": 1}, headers=headers),
        client.post("/billing/consume", json={"amount": 1}, headers=headers),
    )

    by_status = {response.status_code: response.json() for response in responses}
    assert sorted(by_status) == [200, 402]
    assert by_status[200]["remaining_credits"] == 0
    assert by_status[402]["detail"]["code"] == "insufficient_credits"
    row = await load_account_row(session_maker, "acct-race")
    assert row.credits == 0
    assert row.in_flight_count == 1

@pytest.mark.asyncio
async def test_topup_and_replay(integration_client):
    client, _, provider = integration_client
    headers = auth_header("acct-topup")
    await client.post("/accounts/initialize", headers=headers)
    provider.record_purchase("acct-topup", "txn-1", "stylecredits_15pack")
    payload = {"product_id": "stylecredits_15pack", "transaction_id": "txn-1"}

    first = await client.post("/billing/topup", json=payload, headers=headers)
    replay = await client.post("/billing/topup", json=payload, headers=headers)

    assert first.status_code == 200
    assert first.json()["credits_added"] == 15
    assert first.json()["new_balance"] == 17
    assert first.json()["replayed"] is False
    assert replay.status_code == 200
    assert replay.json()["replayed"] is True
    assert replay.json()["new_balance"] == 17

    unknown = await client.post(
        "/billing/topup",
        json={"product_id": "stylecredits_15pack", "transaction_id": "txn-forged"},
        headers=headers,
    )
    assert unknown.status_code == 402
    assert unknown.json()["detail"]["code"] == "purchase_validation_failed"

    bad_product = await client.post(
        "/billing/topup",
        json={"product_id": "free_money", "transaction_id": "txn-2"},
        headers=headers,
    )
    assert bad_product.status_code == 422


@pytest.mark.asyncio
async def test_subscription_purchase_restore_and_plan(integration_client):
    client, _, provider = integration_client
    headers = auth_header("acct-pro")
    await client.post("/accounts/initialize", headers=headers)

    denied = await client.post("/billing/plan", json={"plan": "pro"}, headers=headers)
    assert denied.status_code == 402
    assert denied.json()["detail"]["reason"] == "no_active_subscription"

    provider.grant_subscription("acct-pro", utc_now() + timedelta(days=30))
    purchase = await client.post(
        "/billing/subscription/purchase", json={"product_id": "outfiti_premium_monthly"}, headers=headers
    )
    assert purchase.status_code == 200
    assert purchase.json()["plan"] == "pro"
    assert purchase.json()["credits_granted"] == 50
    assert purchase.json()["new_balance"] == 52

    restore = await client.post(
        "/billing/subscription/restore", json={"product_id": "outfiti_premium_monthly"}, headers=headers
    )
    assert restore.status_code == 200
    assert restore.json()["credits_granted"] == 0
    assert restore.json()["new_balance"] == 52

    downgrade = await client.post("/billing/plan", json={"plan": "free"}, headers=headers)
    assert downgrade.status_code == 200
    assert downgrade.json()["max_credits"] == 2
    assert downgrade.json()["credits"] == 52

    upgrade = await client.post("/billing/plan", json={"plan": "pro"}, headers=headers)
    assert upgrade.status_code == 200
    assert upgrade.json()["max_credits"] == 100

    invalid = await client.post("/billing/plan", json={"plan": "platinum"}, headers=headers)
    assert invalid.status_code == 422


@pytest.mark.asyncio
async def test_provider_outage_returns_503(integration_client):
    client, _, provider = integration_client
    headers = auth_header("acct-outage")
    await client.post("/accounts/initialize", headers=headers)
    provider.fail_all = True

    response = await client.post(
        "/billing/subscription/purchase", json={"product_id": "outfiti_premium_monthly"}, headers=headers
    )

    assert response.status_code == 503
    assert response.json()["detail"]["code"] == "entitlement_provider_unavailable"


@pytest.mark.asyncio
async def test_product_catalog(integration_client):
    client, _, _ = integration_client

    response = await client.get("/billing/products")

    assert response.status_code == 200
    body = response.json()
    assert body["plans"]["free"] == {"monthly_credits": 2, "max_credits": 2}
    assert body["plans"]["pro"] == {"monthly_credits": 50, "max_credits": 100}
    assert body["topups"]["stylecredits_5pack"] == 5
    assert body["subscriptions"]["outfiti_premium_monthly"] == "pro"


@pytest.mark.asyncio
async def test_admin_routes_require_configured_key(integration_client, monkeypatch):
    client, _, _ = integration_client

    monkeypatch.setattr(settings, "ADMIN_API_KEY", "")
    disabled = await client.post("/admin/jobs/monthly-grants")
    assert disabled.status_code == 503

    monkeypatch.setattr(settings, "ADMIN_API_KEY", ADMIN_KEY)
    wrong = await client.post("/admin/jobs/monthly-grants", headers={"X-Admin-Key": "nope"})
    assert wrong.status_code == 403


@pytest.mark.asyncio
async def test_admin_job_triggers_and_slot_reset(integration_client, monkeypatch):
    client, session_maker, provider = integration_client
    monkeypatch.setattr(settings, "ADMIN_API_KEY", ADMIN_KEY)
    admin_headers = {"X-Admin-Key": ADMIN_KEY}
    headers = auth_header("acct-admin")
    await client.post("/accounts/initialize", headers=headers)
    await client.post("/billing/consume", json={"amount": 1}, headers=headers)

    grants = await client.post("/admin/jobs/monthly-grants", headers=admin_headers)
    assert grants.status_code == 200
    assert grants.json()["processed"] == 1
    assert grants.json()["skipped"] == 1

    reconcile = await client.post("/admin/jobs/reconcile-subscriptions", headers=admin_headers)
    assert reconcile.status_code == 200
    assert reconcile.json()["processed"] == 0

    reset = await client.post("/admin/accounts/acct-admin/reset-in-flight", headers=admin_headers)
    assert reset.status_code == 200
    assert reset.json()["previous_in_flight_count"] == 1
    row = await load_account_row(session_maker, "acct-admin")
    assert row.in_flight_count == 0


@pytest.mark.asyncio
async def test_liveness_check(integration_client):
    client, _, _ = integration_client

    response = await client.get("/health/live")

    assert response.json() == {"alive": True}
