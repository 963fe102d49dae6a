"""Membership, features, and usage API endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from creator_vault.api.dependencies import get_current_identity, get_stripe_connect
from creator_vault.database import get_db
from creator_vault.integrations.stripe_connect import StripeConnectService
from creator_vault.services.auth_service import Identity
from creator_vault.services.checkout_service import CheckoutResponse, create_membership_checkout
from creator_vault.services.membership_service import (
    MembershipStore,
    MembershipSummary,
    summarize,
)

router = APIRouter(prefix="/api/v1/membership", tags=["membership"])


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.get("", response_model=MembershipSummary)
async def read_membership(
    identity: Identity = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
):
    """Return the caller's membership, creating the free record on first access."""
    membership = await MembershipStore(db).ensure(identity.uid, identity.email)
    await db.commit()
    return summarize(membership)


@router.post("/checkout", response_model=CheckoutResponse)
async def start_membership_checkout(
    identity: Identity = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
    connect: StripeConnectService = Depends(get_stripe_connect),
):
    """Create a Stripe Checkout Session for Creator Pro."""
    session = await create_membership_checkout(db, connect, identity)
    await db.commit()
    return session
