"""Tests for the membership store, feature computation, and membership API.

All database interactions are mocked -- no real DB required.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import ASGITransport, AsyncClient

from creator_vault.api.dependencies import get_current_identity
from creator_vault.config import settings
from creator_vault.errors import MembershipNotFound
from creator_vault.main import app
from creator_vault.services.membership_service import (
    MembershipPlan,
    MembershipStatus,
    MembershipStore,
    UsageCounter,
    _row_to_membership,
    compute_features,
    current_period_start,
    summarize,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _row(*values):
    """Create a lightweight tuple-like object returned by fetchone/fetchall."""
    return values


def _membership_row(
    uid="alice",
    plan="free",
    status="inactive",
    customer_id=None,
    subscription_id=None,
    price_id=None,
    period_end=None,
    cancel_at_period_end=False,
    downloads=0,
    bundles=0,
    period_start=None,
):
    return _row(
        uid,
        f"{uid}@example.com",
        plan,
        status,
        customer_id,
        subscription_id,
        price_id,
        period_end,
        cancel_at_period_end,
        downloads,
        bundles,
        period_start or current_period_start(),
    )


def _result(row):
    result = MagicMock()
    result.fetchone.return_value = row
    return result


def _sql(mock_db, call_index):
    return str(mock_db.execute.call_args_list[call_index][0][0])


def _params(mock_db, call_index):
    return mock_db.execute.call_args_list[call_index][0][1]


# ---------------------------------------------------------------------------
# ensure
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_ensure_creates_default_free_record():
    mock_db = AsyncMock()
    mock_db.execute.side_effect = [MagicMock(), _result(_membership_row())]

    membership = await MembershipStore(mock_db).ensure("alice", "alice@example.com")

    assert membership.plan == MembershipPlan.FREE
    assert membership.status == MembershipStatus.INACTIVE
    assert membership.downloads_this_period == 0
    assert membership.bundles_created == 0
    assert membership.stripe_subscription_id is None
    assert mock_db.execute.call_count == 2
    assert "ON CONFLICT (uid) DO NOTHING" in _sql(mock_db, 0)
    assert _params(mock_db, 0)["uid"] == "alice"


@pytest.mark.asyncio
async def test_ensure_returns_existing_record_untouched():
    """A second ensure never overwrites: the insert is a no-op on conflict."""
    mock_db = AsyncMock()
    existing = _membership_row(
        plan="creator_pro", status="active", customer_id="cus_1", subscription_id="sub_1"
    )
    mock_db.execute.side_effect = [MagicMock(), _result(existing)]

    membership = await MembershipStore(mock_db).ensure("alice")

    assert membership.plan == MembershipPlan.CREATOR_PRO
    assert membership.stripe_subscription_id == "sub_1"
    assert "DO UPDATE" not in _sql(mock_db, 0)


# ---------------------------------------------------------------------------
# increment_usage
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_increment_usage_returns_new_value():
    mock_db = AsyncMock()
    mock_db.execute.return_value = _result(_row(3))

    value = await MembershipStore(mock_db).increment_usage("alice", UsageCounter.BUNDLES, 1)

    assert value == 3
    assert "bundles_created = bundles_created + :amount" in _sql(mock_db, 0)


@pytest.mark.asyncio
async def test_increment_usage_missing_record_raises_not_found():
    mock_db = AsyncMock()
    mock_db.execute.return_value = _result(None)

    with pytest.raises(MembershipNotFound) as exc_info:
        await MembershipStore(mock_db).increment_usage("ghost", UsageCounter.DOWNLOADS)

    assert exc_info.value.status_code == 404
    assert exc_info.value.uid == "ghost"


# ---------------------------------------------------------------------------
# downgrade_to_free
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_downgrade_clears_subscription_linkage():
    mock_db = AsyncMock()
    downgraded = _membership_row(plan="free", status="canceled", customer_id="cus_1")
    mock_db.execute.return_value = _result(downgraded)

    membership = await MembershipStore(mock_db).downgrade_to_free("alice", MembershipStatus.CANCELED)

    assert membership.plan == MembershipPlan.FREE
    assert membership.status == MembershipStatus.CANCELED
    assert membership.stripe_subscription_id is None
    # The customer id survives so a later re-subscription reuses it.
    assert membership.stripe_customer_id == "cus_1"
    assert _params(mock_db, 0)["status"] == "canceled"
    assert "stripe_subscription_id = NULL" in _sql(mock_db, 0)


@pytest.mark.asyncio
async def test_downgrade_already_free_is_noop():
    mock_db = AsyncMock()
    current = _membership_row(plan="free", status="canceled")
    mock_db.execute.side_effect = [_result(None), _result(current)]

    membership = await MembershipStore(mock_db).downgrade_to_free("alice", MembershipStatus.CANCELED)

    assert membership.plan == MembershipPlan.FREE
    assert mock_db.execute.call_count == 2
    assert _sql(mock_db, 1).startswith("SELECT")


@pytest.mark.asyncio
async def test_downgrade_twice_leaves_identical_record():
    after_first = _membership_row(plan="free", status="canceled", customer_id="cus_1")
    mock_db = AsyncMock()
    # First call updates the row; the second matches nothing and reads it back.
    mock_db.execute.side_effect = [
        _result(after_first),
        _result(None),
        _result(after_first),
    ]
    store = MembershipStore(mock_db)

    first = await store.downgrade_to_free("alice", MembershipStatus.CANCELED)
    second = await store.downgrade_to_free("alice", MembershipStatus.CANCELED)

    assert first.model_dump() == second.model_dump()


@pytest.mark.asyncio
async def test_downgrade_missing_record_raises_not_found():
    mock_db = AsyncMock()
    mock_db.execute.side_effect = [_result(None), _result(None)]

    with pytest.raises(MembershipNotFound):
        await MembershipStore(mock_db).downgrade_to_free("ghost")


@pytest.mark.asyncio
async def test_downgrade_rejects_active_status():
    with pytest.raises(ValueError):
        await MembershipStore(AsyncMock()).downgrade_to_free("alice", MembershipStatus.ACTIVE)


# ---------------------------------------------------------------------------
# upgrade_to_creator_pro
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_upgrade_upserts_full_billing_state():
    period_end = datetime(2026, 11, 19, tzinfo=timezone.utc)
    row = _membership_row(
        plan="creator_pro",
        status="active",
        customer_id="cus_1",
        subscription_id="sub_1",
        price_id="price_pro",
        period_end=period_end,
    )
    mock_db = AsyncMock()
    mock_db.execute.return_value = _result(row)
    store = MembershipStore(mock_db)

    kwargs = dict(
        stripe_customer_id="cus_1",
        subscription_id="sub_1",
        status=MembershipStatus.ACTIVE,
        price_id="price_pro",
        current_period_end=period_end,
    )
    first = await store.upgrade_to_creator_pro("alice", **kwargs)
    second = await store.upgrade_to_creator_pro("alice", **kwargs)

    assert first.plan == MembershipPlan.CREATOR_PRO
    assert first.is_pro_active
    assert first.model_dump() == second.model_dump()
    assert "ON CONFLICT (uid) DO UPDATE" in _sql(mock_db, 0)
    assert _params(mock_db, 0)["subscription_id"] == "sub_1"


@pytest.mark.asyncio
async def test_upgrade_rejects_canceled_status():
    with pytest.raises(ValueError):
        await MembershipStore(AsyncMock()).upgrade_to_creator_pro(
            "alice", "cus_1", "sub_1", status=MembershipStatus.CANCELED
        )


# ---------------------------------------------------------------------------
# Features and limits
# ---------------------------------------------------------------------------

def test_pro_features_require_active_status():
    active = compute_features(MembershipPlan.CREATOR_PRO, MembershipStatus.ACTIVE)
    past_due = compute_features(MembershipPlan.CREATOR_PRO, MembershipStatus.PAST_DUE)

    assert active.unlimited_downloads is True
    assert active.max_bundles is None
    assert active.platform_fee_percent == settings.PRO_PLATFORM_FEE_PERCENT
    assert past_due.unlimited_downloads is False
    assert past_due.platform_fee_percent == settings.FREE_PLATFORM_FEE_PERCENT


def test_free_features_carry_limits():
    features = compute_features(MembershipPlan.FREE, MembershipStatus.INACTIVE)

    assert features.max_items_per_bundle == settings.FREE_MAX_ITEMS_PER_BUNDLE
    assert features.max_bundles == settings.FREE_MAX_BUNDLES
    assert features.no_watermark is False


def test_summarize_flags_reached_limits():
    store_row = _membership_row(
        downloads=settings.FREE_DOWNLOADS_PER_PERIOD, bundles=settings.FREE_MAX_BUNDLES
    )

    summary = summarize(_row_to_membership(store_row))

    assert summary.limits.downloads_limit == settings.FREE_DOWNLOADS_PER_PERIOD
    assert summary.limits.reached_download_limit is True
    assert summary.limits.reached_bundle_limit is True
    assert summary.limits.days_until_reset >= 1


def test_summarize_ignores_counter_from_previous_month():

    stale = _membership_row(downloads=12, period_start=date(2000, 1, 1))
    summary = summarize(_row_to_membership(stale))

    assert summary.limits.downloads_used == 0
    assert summary.limits.reached_download_limit is False


def test_current_period_start_is_first_of_month():
    assert current_period_start(datetime(2026, 10, 19, 15, 0, tzinfo=timezone.utc)) == date(2026, 10, 1)


# ---------------------------------------------------------------------------
# API
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_read_membership_endpoint_ensures_record(client, mock_db):
    mock_db.execute.side_effect = [MagicMock(), _result(_membership_row())]

    response = await client.get("/api/v1/membership")

    assert response.status_code == 200
    body = response.json()
    assert body["membership"]["uid"] == "alice"
    assert body["membership"]["plan"] == "free"
    assert body["features"]["unlimited_downloads"] is False
    assert body["limits"]["downloads_limit"] == settings.FREE_DOWNLOADS_PER_PERIOD
    assert response.headers["Cache-Control"] == "no-store"
    mock_db.commit.assert_awaited_once()


# ---------------------------------------------------------------------------
# Session commit through the real get_db
# ---------------------------------------------------------------------------

def _session_factory(session):
    factory = MagicMock()
    factory.return_value.__aenter__.return_value = session
    factory.return_value.__aexit__.return_value = False
    return factory


@pytest.fixture
async def session_client(identity, monkeypatch):
    """Client that goes through get_db with a mocked session factory."""
    session = AsyncMock()
    session.execute.side_effect = [MagicMock(), _result(_membership_row())]
    monkeypatch.setattr(app.state, "session_factory", _session_factory(session), raising=False)
    app.dependency_overrides[get_current_identity] = lambda: identity

    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac, session

    app.dependency_overrides.clear()


@pytest.mark.asyncio
async def test_membership_write_is_committed_before_response(session_client):
    client, session = session_client

    response = await client.get("/api/v1/membership")

    assert response.status_code == 200
    session.commit.assert_awaited_once()


@pytest.mark.asyncio
async def test_failed_commit_is_a_server_error(session_client):
    client, session = session_client
    session.commit.side_effect = RuntimeError("commit failed")

    response = await client.get("/api/v1/membership")

    assert response.status_code == 500
