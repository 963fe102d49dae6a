"""Tests for operator diagnostics: traces, integrity checks, backfill, refunds."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from creator_vault.api.dependencies import get_current_identity
from creator_vault.config import settings
from creator_vault.errors import ConflictError, NotFound
from creator_vault.main import app
from creator_vault.services.auth_service import Identity
from creator_vault.services.diagnostics_service import (
    check_bundle_integrity,
    refund_purchase,
    severity_for,
    trace_purchase,
)

BOX_ID = uuid.UUID("00000000-0000-0000-0000-000000000b01")
PURCHASED_AT = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _row(*values):
    return values


def _result(row=None, rows=None):
    result = MagicMock()
    result.fetchone.return_value = row
    result.fetchall.return_value = rows or []
    return result


def _purchase_row(status="completed", payment_intent_id="pi_123"):
    return _row(
        "cs_123", "bob", "carol", BOX_ID, 2999, "usd", status, payment_intent_id, PURCHASED_AT, None
    )


def _box_row():
    return _row(BOX_ID, "carol", "Lo-fi sample pack", None, 2999, "usd", True, None)


# ---------------------------------------------------------------------------
# Severity
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    "affected, total, expected",
    [
        (0, 0, "low"),
        (1, 20, "low"),
        (2, 20, "medium"),
        (4, 20, "medium"),
        (5, 20, "high"),
    ],
)
def test_severity_thresholds(affected, total, expected):
    assert severity_for(affected, total) == expected


# ---------------------------------------------------------------------------
# Purchase trace
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_trace_collects_purchase_grant_and_event():
    mock_db = AsyncMock()
    mock_db.execute.side_effect = [
        _result(_purchase_row()),
        _result(_row("bob", BOX_ID, "cs_123", True, PURCHASED_AT)),
        _result(_row("evt_1")),
        _result(rows=[_row("evt_1", "checkout.session.completed", "recorded", 1, None, PURCHASED_AT, PURCHASED_AT)]),
    ]

    trace = await trace_purchase(mock_db, "cs_123")

    assert trace.errors == []
    assert trace.purchase.buyer_uid == "bob"
    assert trace.grant["granted"] is True
    assert trace.webhook_events[0]["status"] == "recorded"


@pytest.mark.asyncio
async def test_trace_degrades_when_grant_lookup_fails():
    mock_db = AsyncMock()
    mock_db.execute.side_effect = [
        _result(_purchase_row()),
        OperationalError("SELECT", {}, Exception("timeout")),
        _result(None),
    ]

    trace = await trace_purchase(mock_db, "cs_123")

    assert trace.purchase is not None
    assert trace.grant is None
    assert trace.errors == ["grant lookup failed: OperationalError"]


@pytest.mark.asyncio
async def test_trace_unknown_purchase():
    mock_db = AsyncMock()
    mock_db.execute.return_value = _result(None)

    trace = await trace_purchase(mock_db, "cs_missing")

    assert trace.errors == ["purchase not found"]


# ---------------------------------------------------------------------------
# Bundle integrity
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_integrity_flags_missing_files_and_grants():
    items = [_row(uuid.uuid4(), f"Item {i}", f"key/{i}", "audio/wav") for i in range(9)]
    items.append(_row(uuid.uuid4(), "Broken", None, "audio/wav"))
    mock_db = AsyncMock()
    mock_db.execute.side_effect = [
        _result(_box_row()),
        _result(rows=items),
        _result(rows=[_row("cs_1", True), _row("cs_2", False)]),
    ]

    report = await check_bundle_integrity(mock_db, BOX_ID)

    assert report.healthy is False
    assert report.content_items == 10
    by_kind = {issue.kind: issue for issue in report.issues}
    assert by_kind["missing_object_key"].affected == 1
    assert by_kind["missing_object_key"].severity == "medium"
    assert by_kind["purchase_without_grant"].ids == ["cs_2"]
    assert by_kind["purchase_without_grant"].severity == "high"


@pytest.mark.asyncio
async def test_integrity_healthy_bundle():
    mock_db = AsyncMock()
    mock_db.execute.side_effect = [
        _result(_box_row()),
        _result(rows=[_row(uuid.uuid4(), "Item", "key/1", "audio/wav")]),
        _result(rows=[_row("cs_1", True)]),
    ]

    report = await check_bundle_integrity(mock_db, BOX_ID)

    assert report.healthy is True
    assert report.issues == []


# ---------------------------------------------------------------------------
# Refunds
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_refund_purchase_calls_stripe_without_local_write():
    mock_db = AsyncMock()
    mock_db.execute.return_value = _result(_purchase_row())
    connect = AsyncMock()
    connect.create_refund.return_value = {"refund_id": "re_1", "status": "pending"}

    result = await refund_purchase(mock_db, connect, "cs_123")

    assert result.refund_id == "re_1"
    connect.create_refund.assert_awaited_once_with("pi_123", reason="requested_by_customer")
    assert mock_db.execute.call_count == 1


@pytest.mark.asyncio
async def test_refund_of_refunded_purchase_is_conflict():
    mock_db = AsyncMock()
    mock_db.execute.return_value = _result(_purchase_row(status="refunded"))

    with pytest.raises(ConflictError):
        await refund_purchase(mock_db, AsyncMock(), "cs_123")


@pytest.mark.asyncio
async def test_refund_of_unknown_purchase_is_404():
    mock_db = AsyncMock()
    mock_db.execute.return_value = _result(None)

    with pytest.raises(NotFound):
        await refund_purchase(mock_db, AsyncMock(), "cs_missing")


# ---------------------------------------------------------------------------
# API
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_backfill_endpoint_defaults_to_dry_run(client, mock_db, monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_EMAILS", ["ops@example.com"])
    app.dependency_overrides[get_current_identity] = lambda: Identity(
        uid="ops", email="ops@example.com", email_verified=True
    )
    mock_db.execute.return_value = _result(rows=[_row("cs_1", "bob", BOX_ID)])

    response = await client.post("/api/v1/diagnostics/grants/backfill")

    assert response.status_code == 200
    assert response.json() == {"scanned": 1, "granted": 0, "purchase_ids": ["cs_1"]}
    assert mock_db.execute.call_count == 1


@pytest.mark.asyncio
async def test_diagnostics_forbidden_for_regular_user(client, monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_EMAILS", ["ops@example.com"])

    response = await client.get("/api/v1/diagnostics/purchases/cs_123/trace")

    assert response.status_code == 403
