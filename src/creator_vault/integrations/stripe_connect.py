"""Stripe integration for creator payouts, checkout, and refunds.

Handles creator onboarding via Stripe Connect Express accounts, builds
Checkout Sessions for bundle sales (destination charges with a platform
fee) and Creator Pro subscriptions, and issues refunds.

The API key is passed on every call; nothing is assigned to the global
``stripe.api_key``.

Usage:
    from creator_vault.integrations.stripe_connect import StripeConnectService

    service = StripeConnectService(api_key=settings.STRIPE_SECRET_KEY)
    result = await service.create_connect_account(creator_id="u_123", email="creator@example.com")
"""

from __future__ import annotations

import stripe
import structlog

from creator_vault.config import settings
from creator_vault.errors import ExternalProviderError

log = structlog.get_logger()


class StripeConnectService:
    """Thin wrapper over the Stripe resources the platform uses."""

    def __init__(self, api_key: str | None = None) -> None:
        self._api_key = api_key if api_key is not None else settings.STRIPE_SECRET_KEY

    def _fail(self, operation: str, exc: stripe.StripeError) -> ExternalProviderError:
        log.error(
            "stripe_call_failed",
            operation=operation,
            error=str(exc),
            code=getattr(exc, "code", None),
        )
        return ExternalProviderError("stripe")

    # ------------------------------------------------------------------
    # Account lifecycle
    # ------------------------------------------------------------------

    async def create_connect_account(
        self,
        creator_id: str,
        email: str | None,
    ) -> dict:
        """Create a Stripe Connect Express account for a creator.

        Returns dict with account_id and onboarding_url.
        """
        try:
            account = stripe.Account.create(
                type="express",
                email=email,
                metadata={"creatorId": creator_id},
                api_key=self._api_key,
            )
        except stripe.StripeError as exc:
            raise self._fail("account_create", exc) from exc

        onboarding_url = await self.create_account_link(account.id)
        return {
            "account_id": account.id,
            "onboarding_url": onboarding_url,
        }

    async def create_account_link(self, account_id: str) -> str:
        """Return a fresh onboarding URL for an existing account."""
        try:
            link = stripe.AccountLink.create(
                account=account_id,
                refresh_url=settings.CONNECT_REFRESH_URL,
                return_url=settings.CONNECT_RETURN_URL,
                type="account_onboarding",
                api_key=self._api_key,
            )
        except stripe.StripeError as exc:
            raise self._fail("account_link_create", exc) from exc
        return link.url

    async def get_account_status(self, account_id: str) -> dict:
        """Check if a Connect account is fully onboarded."""
        try:
            account = stripe.Account.retrieve(account_id, api_key=self._api_key)
        except stripe.StripeError as exc:
            raise self._fail("account_retrieve", exc) from exc
        return {
            "account_id": account.id,
            "charges_enabled": bool(account.charges_enabled),
            "payouts_enabled": bool(account.payouts_enabled),
            "details_submitted": bool(account.details_submitted),
        }

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    async def create_bundle_checkout(
        self,
        *,
        buyer_uid: str,
        buyer_email: str | None,
        product_box_id: str,
        creator_id: str,
        title: str,
        price_cents: int,
        currency: str,
        destination_account_id: str,
        fee_percent: int,
    ) -> dict:
        """Create a payment-mode Checkout Session for a bundle.

        Only builds the session; the purchase itself is recorded when the
        ``checkout.session.completed`` webhook arrives.
        """
        _, platform_fee = self.calculate_platform_fee(price_cents, fee_percent)
        metadata = {
            "buyerUid": buyer_uid,
            "productBoxId": product_box_id,
            "creatorId": creator_id,
        }
        try:
            session = stripe.checkout.Session.create(
                mode="payment",
                line_items=[
                    {
                        "price_data": {
                            "currency": currency,
                            "unit_amount": price_cents,
                            "product_data": {"name": title},
                        },
                        "quantity": 1,
                    }
                ],
                payment_intent_data={
                    "application_fee_amount": platform_fee,
                    "transfer_data": {"destination": destination_account_id},
                    "metadata": metadata,
                },
                metadata=metadata,
                client_reference_id=buyer_uid,
                customer_email=buyer_email,
                success_url=settings.CHECKOUT_SUCCESS_URL,
                cancel_url=settings.CHECKOUT_CANCEL_URL,
                api_key=self._api_key,
            )
        except stripe.StripeError as exc:
            raise self._fail("checkout_create", exc) from exc

        return {"session_id": session.id, "url": session.url}

    async def create_subscription_checkout(
        self,
        *,
        uid: str,
        email: str | None,
        customer_id: str | None,
        price_id: str,
    ) -> dict:
        """Create a subscription-mode Checkout Session for Creator Pro."""
        params: dict = {
            "mode": "subscription",
            "line_items": [{"price": price_id, "quantity": 1}],
            "metadata": {"buyerUid": uid},
            "subscription_data": {"metadata": {"buyerUid": uid}},
            "client_reference_id": uid,
            "success_url": settings.CHECKOUT_SUCCESS_URL,
            "cancel_url": settings.CHECKOUT_CANCEL_URL,
        }
        if customer_id:
            params["customer"] = customer_id
        elif email:
            params["customer_email"] = email

        try:
            session = stripe.checkout.Session.create(api_key=self._api_key, **params)
        except stripe.StripeError as exc:
            raise self._fail("subscription_checkout_create", exc) from exc

        return {"session_id": session.id, "url": session.url}

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------

    async def create_refund(self, payment_intent_id: str, reason: str | None = None) -> dict:
        """Refund a bundle sale, pulling the transfer and fee back as well.

        The purchase row changes only when ``charge.refunded`` arrives.
        """
        params: dict = {
            "payment_intent": payment_intent_id,
            "reverse_transfer": True,
            "refund_application_fee": True,
        }
        if reason:
            params["reason"] = reason
        try:
            refund = stripe.Refund.create(api_key=self._api_key, **params)
        except stripe.StripeError as exc:
            raise self._fail("refund_create", exc) from exc
        return {"refund_id": refund.id, "status": refund.status}

    # ------------------------------------------------------------------
    # Fee calculation
    # ------------------------------------------------------------------

    def calculate_platform_fee(
        self,
        sale_price_cents: int,
        fee_percent: int,
    ) -> tuple[int, int]:
        """Split a sale into (creator_amount, platform_fee).

        The fee rounds down to whole cents.
        """
        platform_fee = sale_price_cents * fee_percent // 100
        creator_amount = sale_price_cents - platform_fee
        return creator_amount, platform_fee
