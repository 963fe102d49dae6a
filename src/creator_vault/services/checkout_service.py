"""Checkout Session creation for bundle purchases and Creator Pro.

Creating a session never writes a purchase. The purchase and its access
grant are recorded by the webhook reconciler once Stripe confirms payment.
"""

from __future__ import annotations

import uuid

import structlog
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from creator_vault.config import settings
from creator_vault.errors import ConflictError, ExternalProviderError, NotFound
from creator_vault.integrations.stripe_connect import StripeConnectService
from creator_vault.services.auth_service import Identity
from creator_vault.services.connected_account_service import ConnectedAccountStore
from creator_vault.services.entitlement_service import EntitlementRecorder
from creator_vault.services.membership_service import (
    MembershipPlan,
    MembershipStatus,
    MembershipStore,
    compute_features,
)
from creator_vault.services.product_box_service import get_product_box

log = structlog.get_logger()


class BundleCheckoutRequest(BaseModel):
    product_box_id: uuid.UUID


class CheckoutResponse(BaseModel):
    session_id: str
    url: str


async def create_bundle_checkout(
    db: AsyncSession,
    connect: StripeConnectService,
    identity: Identity,
    product_box_id: str | uuid.UUID,
) -> CheckoutResponse:
    """Start a destination-charge checkout for one bundle.

    The platform fee follows the creator's plan at the time of checkout.
    """
    box = await get_product_box(db, product_box_id)
    if not box.active:
        raise NotFound("Bundle not found")
    if box.creator_id == identity.uid:
        raise ConflictError("You cannot purchase your own bundle")
    if box.is_free:
        raise ConflictError("This bundle is free and does not need a checkout")
    if await EntitlementRecorder(db).has_access(identity.uid, box.product_box_id):
        raise ConflictError("You already own this bundle")

    account = await ConnectedAccountStore(db).get(box.creator_id)
    if account is None or not account.can_accept_payments:
        raise ConflictError("This creator cannot accept payments yet")

    creator = await MembershipStore(db).get(box.creator_id)
    features = compute_features(
        creator.plan if creator else MembershipPlan.FREE,
        creator.status if creator else MembershipStatus.INACTIVE,
    )

    session = await connect.create_bundle_checkout(
        buyer_uid=identity.uid,
        buyer_email=identity.email,
        product_box_id=box.product_box_id,
        creator_id=box.creator_id,
        title=box.title,
        price_cents=box.price_cents,
        currency=box.currency,
        destination_account_id=account.stripe_account_id,
        fee_percent=features.platform_fee_percent,
    )
    log.info(
        "bundle_checkout_created",
        session_id=session["session_id"],
        buyer_uid=identity.uid,
        product_box_id=box.product_box_id,
        fee_percent=features.platform_fee_percent,
    )
    return CheckoutResponse(session_id=session["session_id"], url=session["url"])


async def create_membership_checkout(
    db: AsyncSession,
    connect: StripeConnectService,
    identity: Identity,
) -> CheckoutResponse:
    """Start a Creator Pro subscription checkout."""
    if not settings.STRIPE_CREATOR_PRO_PRICE_ID:
        raise ExternalProviderError("stripe", "Creator Pro is not available right now")

    membership = await MembershipStore(db).ensure(identity.uid, identity.email)
    if membership.is_pro_active:
        raise ConflictError("You already have an active Creator Pro membership")

    session = await connect.create_subscription_checkout(
        uid=identity.uid,
        email=identity.email,
        customer_id=membership.stripe_customer_id,
        price_id=settings.STRIPE_CREATOR_PRO_PRICE_ID,
    )
    log.info("membership_checkout_created", session_id=session["session_id"], uid=identity.uid)
    return CheckoutResponse(session_id=session["session_id"], url=session["url"])
