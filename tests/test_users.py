"""Tests for the current-user profile and payout account onboarding."""

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from app.services import repository as repo
from tests.conftest import DOER_ID, FakeGateway, api, make_user, send_webhook, stripe_event


@pytest.mark.asyncio
async def test_payout_onboarding_creates_account(
    client: AsyncClient, db_session: AsyncSession
) -> None:
    await make_user(db_session, DOER_ID)
    resp = await api(client, "POST", "/users/me/payout-account", DOER_ID)
    assert resp.status_code == 200, resp.text
    data = resp.json()["data"]
    assert data["account_id"] == f"acct_{DOER_ID}"
    assert data["onboarding_url"].endswith(f"/setup/acct_{DOER_ID}")
    assert data["user"]["payout_account_id"] == f"acct_{DOER_ID}"
    assert data["user"]["payouts_enabled"] is False


@pytest.mark.asyncio
async def test_payout_onboarding_resumes_existing_account(
    client: AsyncClient, db_session: AsyncSession, gateway: FakeGateway
) -> None:
    await make_user(db_session, DOER_ID, payable=True)
    # Any create call would fail; an existing account must be reused
    gateway.fail_next("create_payout_account")
    resp = await api(client, "POST", "/users/me/payout-account", DOER_ID)
    assert resp.status_code == 200
    assert resp.json()["data"]["user"]["payouts_enabled"] is True


@pytest.mark.asyncio
async def test_payout_onboarding_provider_failure(
    client: AsyncClient, db_session: AsyncSession, gateway: FakeGateway
) -> None:
    await make_user(db_session, DOER_ID)
    gateway.fail_next("create_payout_account", retryable=True)
    resp = await api(client, "POST", "/users/me/payout-account", DOER_ID)
    assert resp.status_code == 503
    assert resp.json()["detail"]["kind"] == "provider_error"
    assert resp.json()["detail"]["retryable"] is True

    user = await repo.get_user(db_session, DOER_ID)
    assert user.payout_account_id is None


@pytest.mark.asyncio
async def test_verified_account_becomes_payable(client: AsyncClient, db_session: AsyncSession) -> None:
    await make_user(db_session, DOER_ID)
    await api(client, "POST", "/users/me/payout-account", DOER_ID)

    resp = await send_webhook(client, stripe_event(
        "account.updated",
        {"id": f"acct_{DOER_ID}", "payouts_enabled": True, "charges_enabled": True},
    ))
    assert resp.status_code == 200

    resp = await api(client, "GET", "/users/me", DOER_ID)
    assert resp.json()["payouts_enabled"] is True
