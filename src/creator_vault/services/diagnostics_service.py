"""Operator diagnostics -- purchase traces, bundle integrity, grant backfill.

Read paths degrade to partial data plus an ``errors`` list instead of
failing; they never affect paid access.
"""

from __future__ import annotations

import uuid
from typing import Any, Optional

import structlog
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from creator_vault.errors import ConflictError, NotFound
from creator_vault.integrations.stripe_connect import StripeConnectService
from creator_vault.services.entitlement_service import (
    BackfillReport,
    EntitlementRecorder,
    PurchaseResponse,
)
from creator_vault.services.product_box_service import get_product_box
from creator_vault.services.webhook_reconciler import WebhookEventLog

log = structlog.get_logger()


class PurchaseTrace(BaseModel):
    purchase_id: str
    purchase: Optional[PurchaseResponse] = None
    grant: Optional[dict[str, Any]] = None
    webhook_events: list[dict[str, Any]] = []
    errors: list[str] = []


class IntegrityIssue(BaseModel):
    kind: str
    severity: str
    affected: int
    total: int
    ids: list[str]


class IntegrityReport(BaseModel):
    product_box_id: str
    content_items: int
    completed_purchases: int
    issues: list[IntegrityIssue]
    healthy: bool


class RefundResponse(BaseModel):
    purchase_id: str
    refund_id: str
    status: str


def severity_for(affected: int, total: int) -> str:
    """high above 20% of items affected, medium above 5%, else low."""
    share = affected / total if total else 0.0
    if share > 0.20:
        return "high"
    if share > 0.05:
        return "medium"
    return "low"


# ---------------------------------------------------------------------------
# Purchase trace
# ---------------------------------------------------------------------------

async def trace_purchase(db: AsyncSession, purchase_id: str) -> PurchaseTrace:
    trace = PurchaseTrace(purchase_id=purchase_id)
    entitlements = EntitlementRecorder(db)

    try:
        trace.purchase = await entitlements.get_purchase(purchase_id)
    except SQLAlchemyError as exc:
        log.warning("trace_purchase_read_failed", purchase_id=purchase_id, error=str(exc))
        trace.errors.append(f"purchase lookup failed: {exc.__class__.__name__}")
        return trace

    if trace.purchase is None:
        trace.errors.append("purchase not found")
        return trace

    try:
        result = await db.execute(
            text(
                "SELECT buyer_uid, product_box_id, purchase_id, granted, granted_at "
                "FROM access_grants "
                "WHERE buyer_uid = :buyer_uid AND product_box_id = :product_box_id"
            ),
            {
                "buyer_uid": trace.purchase.buyer_uid,
                "product_box_id": trace.purchase.product_box_id,
            },
        )
        row = result.fetchone()
        if row is None:
            trace.errors.append("no access grant for purchase")
        else:
            trace.grant = {
                "buyer_uid": row[0],
                "product_box_id": str(row[1]),
                "purchase_id": row[2],
                "granted": row[3],
                "granted_at": row[4],
            }
    except SQLAlchemyError as exc:
        log.warning("trace_grant_read_failed", purchase_id=purchase_id, error=str(exc))
        trace.errors.append(f"grant lookup failed: {exc.__class__.__name__}")

    try:
        result = await db.execute(
            text("SELECT source_event_id FROM purchases WHERE purchase_id = :purchase_id"),
            {"purchase_id": purchase_id},
        )
        source = result.fetchone()
        if source is not None:
            trace.webhook_events = await WebhookEventLog(db).list_events([source[0]])
    except SQLAlchemyError as exc:
        log.warning("trace_events_read_failed", purchase_id=purchase_id, error=str(exc))
        trace.errors.append(f"webhook event lookup failed: {exc.__class__.__name__}")

    return trace


# ---------------------------------------------------------------------------
# Bundle integrity
# ---------------------------------------------------------------------------

async def check_bundle_integrity(
    db: AsyncSession,
    product_box_id: str | uuid.UUID,
) -> IntegrityReport:
    box = await get_product_box(db, product_box_id)

    contents = await db.execute(
        text(
            "SELECT content_id, title, object_key, mime_type FROM product_box_contents "
            "WHERE product_box_id = :product_box_id"
        ),
        {"product_box_id": box.product_box_id},
    )
    items = contents.fetchall()

    ungranted = await db.execute(
        text(
            "SELECT p.purchase_id, "
            "(g.buyer_uid IS NOT NULL AND g.granted) AS has_grant "
            "FROM purchases p LEFT JOIN access_grants g "
            "ON g.buyer_uid = p.buyer_uid AND g.product_box_id = p.product_box_id "
            "WHERE p.product_box_id = :product_box_id AND p.status = 'completed'"
        ),
        {"product_box_id": box.product_box_id},
    )
    purchases = ungranted.fetchall()

    issues: list[IntegrityIssue] = []
    checks = (
        ("missing_object_key", 2),
        ("missing_title", 1),
        ("missing_mime_type", 3),
    )
    for kind, index in checks:
        ids = [str(item[0]) for item in items if not item[index]]
        if ids:
            issues.append(
                IntegrityIssue(
                    kind=kind,
                    severity=severity_for(len(ids), len(items)),
                    affected=len(ids),
                    total=len(items),
                    ids=ids,
                )
            )

    missing_grants = [row[0] for row in purchases if not row[1]]
    if missing_grants:
        issues.append(
            IntegrityIssue(
                kind="purchase_without_grant",
                severity=severity_for(len(missing_grants), len(purchases)),
                affected=len(missing_grants),
                total=len(purchases),
                ids=missing_grants,
            )
        )

    return IntegrityReport(
        product_box_id=box.product_box_id,
        content_items=len(items),
        completed_purchases=len(purchases),
        issues=issues,
        healthy=not issues,
    )


# ---------------------------------------------------------------------------
# Repairs
# ---------------------------------------------------------------------------

async def backfill_grants(db: AsyncSession, dry_run: bool = False) -> BackfillReport:
    report = await EntitlementRecorder(db).backfill_missing_grants(dry_run=dry_run)
    log.info(
        "grant_backfill_requested",
        dry_run=dry_run,
        scanned=report.scanned,
        granted=report.granted,
    )
    return report


async def refund_purchase(
    db: AsyncSession,
    connect: StripeConnectService,
    purchase_id: str,
) -> RefundResponse:
    """Ask Stripe to refund a purchase.

    Local state changes when the ``charge.refunded`` webhook arrives.
    """
    purchase = await EntitlementRecorder(db).get_purchase(purchase_id)
    if purchase is None:
        raise NotFound("Purchase not found")
    if purchase.status != "completed":
        raise ConflictError(f"Purchase is {purchase.status}")
    if not purchase.payment_intent_id:
        raise ConflictError("Purchase has no payment intent to refund")

    refund = await connect.create_refund(purchase.payment_intent_id, reason="requested_by_customer")
    log.info("refund_requested", purchase_id=purchase_id, refund_id=refund["refund_id"])
    return RefundResponse(purchase_id=purchase_id, refund_id=refund["refund_id"], status=refund["status"])
