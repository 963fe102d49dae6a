"""Tests for checkout session creation and creator payout accounts."""

from __future__ import annotations

import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest

from creator_vault.api.dependencies import get_stripe_connect
from creator_vault.config import settings
from creator_vault.errors import ConflictError, ExternalProviderError, NotFound
from creator_vault.main import app
from creator_vault.services.auth_service import Identity
from creator_vault.services.checkout_service import (
    create_bundle_checkout,
    create_membership_checkout,
)
from creator_vault.services.connected_account_service import (
    onboard_creator,
    refresh_connected_account,
)
from creator_vault.services.membership_service import current_period_start


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

BOX_ID = uuid.UUID("00000000-0000-0000-0000-000000000b01")
ALICE = Identity(uid="alice", email="alice@example.com", email_verified=True)


def _row(*values):
    return values


def _result(row=None):
    result = MagicMock()
    result.fetchone.return_value = row
    return result


def _box_row(creator="carol", price=2999, active=True):
    return _row(BOX_ID, creator, "Lo-fi sample pack", None, price, "usd", active, None)


def _account_row(creator="carol", charges=True, details=True):
    return _row(creator, "acct_carol", charges, True, details, None, None)


def _membership_row(uid, plan="free", status="inactive", customer_id=None):
    return _row(
        uid, f"{uid}@example.com", plan, status, customer_id, None, None, None, False, 0, 0,
        current_period_start(),
    )


def _connect():
    connect = AsyncMock()
    connect.create_bundle_checkout.return_value = {
        "session_id": "cs_123",
        "url": "https://checkout.stripe.com/c/cs_123",
    }
    connect.create_subscription_checkout.return_value = {
        "session_id": "cs_sub",
        "url": "https://checkout.stripe.com/c/cs_sub",
    }
    return connect


# ---------------------------------------------------------------------------
# Bundle checkout
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_bundle_checkout_uses_free_creator_fee():
    mock_db = AsyncMock()
    mock_db.execute.side_effect = [
        _result(_box_row()),
        _result(None),
        _result(_account_row()),
        _result(_membership_row("carol")),
    ]
    connect = _connect()

    response = await create_bundle_checkout(mock_db, connect, ALICE, BOX_ID)

    assert response.session_id == "cs_123"
    kwargs = connect.create_bundle_checkout.call_args.kwargs
    assert kwargs["buyer_uid"] == "alice"
    assert kwargs["creator_id"] == "carol"
    assert kwargs["destination_account_id"] == "acct_carol"
    assert kwargs["price_cents"] == 2999
    assert kwargs["fee_percent"] == settings.FREE_PLATFORM_FEE_PERCENT
    # A checkout session never writes a purchase.
    for call in mock_db.execute.call_args_list:
        assert "INSERT" not in str(call[0][0])


@pytest.mark.asyncio
async def test_bundle_checkout_uses_pro_creator_fee():
    mock_db = AsyncMock()
    mock_db.execute.side_effect = [
        _result(_box_row()),
        _result(None),
        _result(_account_row()),
        _result(_membership_row("carol", plan="creator_pro", status="active")),
    ]
    connect = _connect()

    await create_bundle_checkout(mock_db, connect, ALICE, BOX_ID)

    assert connect.create_bundle_checkout.call_args.kwargs["fee_percent"] == settings.PRO_PLATFORM_FEE_PERCENT


@pytest.mark.asyncio
async def test_cannot_buy_own_bundle():
    mock_db = AsyncMock()
    mock_db.execute.return_value = _result(_box_row(creator="alice"))

    with pytest.raises(ConflictError):
        await create_bundle_checkout(mock_db, _connect(), ALICE, BOX_ID)


@pytest.mark.asyncio
async def test_free_bundle_needs_no_checkout():
    mock_db = AsyncMock()
    mock_db.execute.return_value = _result(_box_row(price=0))

    with pytest.raises(ConflictError):
        await create_bundle_checkout(mock_db, _connect(), ALICE, BOX_ID)


@pytest.mark.asyncio
async def test_already_owned_bundle_is_conflict():
    mock_db = AsyncMock()
    mock_db.execute.side_effect = [_result(_box_row()), _result(_row(True))]
    connect = _connect()

    with pytest.raises(ConflictError):
        await create_bundle_checkout(mock_db, connect, ALICE, BOX_ID)

    connect.create_bundle_checkout.assert_not_awaited()


@pytest.mark.asyncio
async def test_creator_without_payouts_cannot_sell():
    mock_db = AsyncMock()
    mock_db.execute.side_effect = [
        _result(_box_row()),
        _result(None),
        _result(_account_row(charges=False)),
    ]

    with pytest.raises(ConflictError):
        await create_bundle_checkout(mock_db, _connect(), ALICE, BOX_ID)


@pytest.mark.asyncio
async def test_inactive_bundle_cannot_be_bought():
    mock_db = AsyncMock()
    mock_db.execute.return_value = _result(_box_row(active=False))

    with pytest.raises(NotFound):
        await create_bundle_checkout(mock_db, _connect(), ALICE, BOX_ID)


# ---------------------------------------------------------------------------
# Membership checkout
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_membership_checkout_passes_existing_customer(monkeypatch):
    monkeypatch.setattr(settings, "STRIPE_CREATOR_PRO_PRICE_ID", "price_pro")
    mock_db = AsyncMock()
    mock_db.execute.side_effect = [MagicMock(), _result(_membership_row("alice", customer_id="cus_alice"))]
    connect = _connect()

    response = await create_membership_checkout(mock_db, connect, ALICE)

    assert response.session_id == "cs_sub"
    connect.create_subscription_checkout.assert_awaited_once_with(
        uid="alice", email="alice@example.com", customer_id="cus_alice", price_id="price_pro"
    )


@pytest.mark.asyncio
async def test_membership_checkout_when_already_pro(monkeypatch):
    monkeypatch.setattr(settings, "STRIPE_CREATOR_PRO_PRICE_ID", "price_pro")
    mock_db = AsyncMock()
    mock_db.execute.side_effect = [
        MagicMock(),
        _result(_membership_row("alice", plan="creator_pro", status="active")),
    ]

    with pytest.raises(ConflictError):
        await create_membership_checkout(mock_db, _connect(), ALICE)


@pytest.mark.asyncio
async def test_membership_checkout_without_price_configured(monkeypatch):
    monkeypatch.setattr(settings, "STRIPE_CREATOR_PRO_PRICE_ID", "")

    with pytest.raises(ExternalProviderError):
        await create_membership_checkout(AsyncMock(), _connect(), ALICE)


# ---------------------------------------------------------------------------
# Connected accounts
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_onboard_new_creator_creates_account():
    mock_db = AsyncMock()
    mock_db.execute.side_effect = [
        _result(None),
        _result(_account_row(creator="carol", charges=False, details=False)),
    ]
    connect = AsyncMock()
    connect.create_connect_account.return_value = {
        "account_id": "acct_carol",
        "onboarding_url": "https://connect.stripe.com/setup/acct_carol",
    }

    result = await onboard_creator(mock_db, connect, "carol", "carol@example.com")

    assert result.onboarding_url == "https://connect.stripe.com/setup/acct_carol"
    assert result.account.stripe_account_id == "acct_carol"
    connect.create_connect_account.assert_awaited_once_with(creator_id="carol", email="carol@example.com")


@pytest.mark.asyncio
async def test_onboard_resumes_unfinished_account():
    mock_db = AsyncMock()
    mock_db.execute.return_value = _result(_account_row(charges=False, details=False))
    connect = AsyncMock()
    connect.create_account_link.return_value = "https://connect.stripe.com/setup/again"

    result = await onboard_creator(mock_db, connect, "carol", None)

    assert result.onboarding_url == "https://connect.stripe.com/setup/again"
    connect.create_connect_account.assert_not_awaited()


@pytest.mark.asyncio
async def test_refresh_overwrites_cached_flags():
    mock_db = AsyncMock()
    mock_db.execute.side_effect = [
        _result(_account_row(charges=False, details=False)),
        _result(_account_row(charges=True, details=True)),
    ]
    connect = AsyncMock()
    connect.get_account_status.return_value = {
        "account_id": "acct_carol",
        "charges_enabled": True,
        "payouts_enabled": True,
        "details_submitted": True,
    }

    account = await refresh_connected_account(mock_db, connect, "carol")

    assert account.can_accept_payments
    upsert_params = mock_db.execute.call_args_list[1][0][1]
    assert upsert_params["charges"] is True


@pytest.mark.asyncio
async def test_refresh_without_account_is_404():
    mock_db = AsyncMock()
    mock_db.execute.return_value = _result(None)

    with pytest.raises(NotFound):
        await refresh_connected_account(mock_db, AsyncMock(), "carol")


# ---------------------------------------------------------------------------
# API
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_checkout_endpoint_returns_session(client, mock_db):
    mock_db.execute.side_effect = [
        _result(_box_row()),
        _result(None),
        _result(_account_row()),
        _result(None),
    ]
    app.dependency_overrides[get_stripe_connect] = _connect

    response = await client.post(
        "/api/v1/purchases/checkout", json={"product_box_id": str(BOX_ID)}
    )

    assert response.status_code == 200
    assert response.json() == {"session_id": "cs_123", "url": "https://checkout.stripe.com/c/cs_123"}


@pytest.mark.asyncio
async def test_checkout_endpoint_rejects_bad_uuid(client):
    app.dependency_overrides[get_stripe_connect] = _connect

    response = await client.post("/api/v1/purchases/checkout", json={"product_box_id": "nope"})

    assert response.status_code == 422
