"""Stripe Connect onboarding endpoints for creators."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from creator_vault.api.dependencies import get_current_identity, get_stripe_connect
from creator_vault.database import get_db
from creator_vault.integrations.stripe_connect import StripeConnectService
from creator_vault.services.auth_service import Identity
from creator_vault.services.connected_account_service import (
    ConnectedAccountResponse,
    OnboardingResponse,
    get_connected_account,
    onboard_creator,
    refresh_connected_account,
)

router = APIRouter(prefix="/api/v1/connect", tags=["connect"])


@router.post("/onboard", response_model=OnboardingResponse)
async def onboard(
    identity: Identity = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
    connect: StripeConnectService = Depends(get_stripe_connect),
):
    """Create or resume Express onboarding and return the onboarding link."""
    onboarding = await onboard_creator(db, connect, identity.uid, identity.email)
    await db.commit()
    return onboarding


@router.get("/status", response_model=ConnectedAccountResponse)
async def read_status(
    identity: Identity = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
):
    """Return the cached onboarding flags."""
    return await get_connected_account(db, identity.uid)


@router.post("/refresh", response_model=ConnectedAccountResponse)
async def refresh_status(
    identity: Identity = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
    connect: StripeConnectService = Depends(get_stripe_connect),
):
    """Re-query Stripe and overwrite the cached flags."""
    account = await refresh_connected_account(db, connect, identity.uid)
    await db.commit()
    return account
