"""Purchase read API and bundle checkout.

Nothing here creates a purchase; only the Stripe webhook records one.
"""

from __future__ import annotations

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from creator_vault.api.dependencies import get_current_identity, get_stripe_connect
from creator_vault.database import get_db
from creator_vault.errors import NotFound
from creator_vault.integrations.stripe_connect import StripeConnectService
from creator_vault.services.auth_service import Identity
from creator_vault.services.checkout_service import (
    BundleCheckoutRequest,
    CheckoutResponse,
    create_bundle_checkout,
)
from creator_vault.services.entitlement_service import EntitlementRecorder, PurchaseResponse

log = structlog.get_logger()

router = APIRouter(prefix="/api/v1/purchases", tags=["purchases"])

VERIFY_FAILED_MESSAGE = "Purchase could not be verified. Please contact support."


class PurchaseVerification(BaseModel):
    verified: bool
    purchase: Optional[PurchaseResponse] = None
    message: Optional[str] = None


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post("/checkout", response_model=CheckoutResponse)
async def start_bundle_checkout(
    body: BundleCheckoutRequest,
    identity: Identity = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
    connect: StripeConnectService = Depends(get_stripe_connect),
):
    """Create a Stripe Checkout Session for one bundle."""
    return await create_bundle_checkout(db, connect, identity, body.product_box_id)


@router.get("", response_model=list[PurchaseResponse])
async def list_my_purchases(
    limit: int = Query(default=50, ge=1, le=200),
    identity: Identity = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
):
    """Return the caller's purchases, newest first."""
    return await EntitlementRecorder(db).list_purchases(identity.uid, limit=limit)


@router.get("/verify", response_model=PurchaseVerification)
async def verify_purchase(
    session_id: str = Query(..., min_length=1, max_length=255),
    identity: Identity = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
):
    """Report whether the webhook has recorded the caller's checkout."""
    try:
        purchase = await EntitlementRecorder(db).get_purchase(session_id)
    except SQLAlchemyError as exc:
        log.error("purchase_verify_failed", session_id=session_id, error=str(exc))
        return PurchaseVerification(verified=False, message=VERIFY_FAILED_MESSAGE)

    if purchase is None or purchase.buyer_uid != identity.uid or purchase.status != "completed":
        return PurchaseVerification(verified=False, message=VERIFY_FAILED_MESSAGE)
    return PurchaseVerification(verified=True, purchase=purchase)


@router.get("/{purchase_id}", response_model=PurchaseResponse)
async def read_purchase(
    purchase_id: str,
    identity: Identity = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
):
    purchase = await EntitlementRecorder(db).get_purchase(purchase_id)
    if purchase is None or purchase.buyer_uid != identity.uid:
        raise NotFound("Purchase not found")
    return purchase
