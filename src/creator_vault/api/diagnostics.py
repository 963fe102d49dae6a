"""Operator-only diagnostics and repair endpoints."""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from creator_vault.api.dependencies import get_stripe_connect, require_admin
from creator_vault.database import get_db
from creator_vault.integrations.stripe_connect import StripeConnectService
from creator_vault.services.auth_service import Identity
from creator_vault.services.diagnostics_service import (
    IntegrityReport,
    PurchaseTrace,
    RefundResponse,
    backfill_grants,
    check_bundle_integrity,
    refund_purchase,
    trace_purchase,
)
from creator_vault.services.entitlement_service import BackfillReport

router = APIRouter(prefix="/api/v1/diagnostics", tags=["diagnostics"])


@router.get("/purchases/{purchase_id}/trace", response_model=PurchaseTrace)
async def read_purchase_trace(
    purchase_id: str,
    _: Identity = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Purchase row, grant row, and the webhook event that recorded it."""
    return await trace_purchase(db, purchase_id)


@router.get("/product-boxes/{product_box_id}/integrity", response_model=IntegrityReport)
async def read_bundle_integrity(
    product_box_id: uuid.UUID,
    _: Identity = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await check_bundle_integrity(db, product_box_id)


@router.post("/grants/backfill", response_model=BackfillReport)
async def run_grant_backfill(
    dry_run: bool = Query(default=True),
    _: Identity = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Derive missing grants from completed purchases. Defaults to a dry run."""
    report = await backfill_grants(db, dry_run=dry_run)
    if not dry_run:
        await db.commit()
    return report


@router.post("/purchases/{purchase_id}/refund", response_model=RefundResponse)
async def request_refund(
    purchase_id: str,
    _: Identity = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    connect: StripeConnectService = Depends(get_stripe_connect),
):
    """Issue a Stripe refund; the purchase flips when charge.refunded arrives."""
    return await refund_purchase(db, connect, purchase_id)
