"""Verified Stripe webhook events as a closed set of variants.

``verify_event`` checks the ``Stripe-Signature`` header and then parses
the JSON envelope into one of the dataclasses below. Event types we do
not handle become ``UnknownEvent`` so they are acknowledged, never
retried.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

import stripe
import structlog

from creator_vault.errors import InvalidPayload, InvalidSignature, WebhookNotConfigured

log = structlog.get_logger()


class SubscriptionAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


# ---------------------------------------------------------------------------
# Variants
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CheckoutCompleted:
    """``checkout.session.completed``.

    Payment-mode sessions carrying bundle metadata become purchases;
    subscription-mode sessions upgrade the buyer to Creator Pro.
    """

    event_id: str
    session_id: str
    mode: str
    payment_status: Optional[str]
    buyer_uid: Optional[str]
    client_reference_id: Optional[str]
    customer_email: Optional[str]
    customer_id: Optional[str]
    subscription_id: Optional[str]
    product_box_id: Optional[str]
    creator_id: Optional[str]
    amount_total: int
    currency: str
    payment_intent_id: Optional[str]

    event_type = "checkout.session.completed"

    @property
    def is_paid(self) -> bool:
        return self.payment_status in ("paid", "no_payment_required")

    @property
    def is_bundle_purchase(self) -> bool:
        return self.mode == "payment" and self.product_box_id is not None


@dataclass(frozen=True)
class SubscriptionChanged:
    """``customer.subscription.created`` / ``updated`` / ``deleted``."""

    event_id: str
    action: SubscriptionAction
    subscription_id: str
    customer_id: Optional[str]
    status: str
    buyer_uid: Optional[str]
    price_id: Optional[str]
    current_period_end: Optional[datetime]
    cancel_at_period_end: bool

    @property
    def event_type(self) -> str:
        return f"customer.subscription.{self.action.value}"


@dataclass(frozen=True)
class ChargeRefunded:
    event_id: str
    charge_id: str
    payment_intent_id: Optional[str]
    amount_refunded: int
    fully_refunded: bool

    event_type = "charge.refunded"


@dataclass(frozen=True)
class AccountUpdated:
    """Connect ``account.updated`` for a creator's Express account."""

    event_id: str
    account_id: str
    creator_id: Optional[str]
    charges_enabled: bool
    payouts_enabled: bool
    details_submitted: bool

    event_type = "account.updated"


@dataclass(frozen=True)
class UnknownEvent:
    event_id: str
    event_type: str


StripeEvent = Union[
    CheckoutCompleted, SubscriptionChanged, ChargeRefunded, AccountUpdated, UnknownEvent
]


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def _expandable_id(value: Any) -> Optional[str]:
    """Stripe fields may hold an id string or an expanded object."""
    if value is None:
        return None
    if isinstance(value, dict):
        return value.get("id")
    return str(value)


def _timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _subscription_price_id(obj: dict) -> Optional[str]:
    items = (obj.get("items") or {}).get("data") or []
    if not items:
        return None
    price = items[0].get("price") or {}
    return price.get("id")


def _subscription_period_end(obj: dict) -> Optional[datetime]:
    # Newer API versions moved the period onto subscription items.
    if obj.get("current_period_end") is not None:
        return _timestamp(obj["current_period_end"])
    items = (obj.get("items") or {}).get("data") or []
    if items and items[0].get("current_period_end") is not None:
        return _timestamp(items[0]["current_period_end"])
    return None


def _parse_checkout(event_id: str, obj: dict) -> CheckoutCompleted:
    metadata = obj.get("metadata") or {}
    details = obj.get("customer_details") or {}
    return CheckoutCompleted(
        event_id=event_id,
        session_id=obj["id"],
        mode=obj.get("mode") or "payment",
        payment_status=obj.get("payment_status"),
        buyer_uid=metadata.get("buyerUid") or None,
        client_reference_id=obj.get("client_reference_id") or None,
        customer_email=details.get("email") or obj.get("customer_email"),
        customer_id=_expandable_id(obj.get("customer")),
        subscription_id=_expandable_id(obj.get("subscription")),
        product_box_id=metadata.get("productBoxId") or None,
        creator_id=metadata.get("creatorId") or None,
        amount_total=int(obj.get("amount_total") or 0),
        currency=(obj.get("currency") or "usd").lower(),
        payment_intent_id=_expandable_id(obj.get("payment_intent")),
    )


def _parse_subscription(event_id: str, action: SubscriptionAction, obj: dict) -> SubscriptionChanged:
    metadata = obj.get("metadata") or {}
    return SubscriptionChanged(
        event_id=event_id,
        action=action,
        subscription_id=obj["id"],
        customer_id=_expandable_id(obj.get("customer")),
        status=obj.get("status") or "canceled",
        buyer_uid=metadata.get("buyerUid") or None,
        price_id=_subscription_price_id(obj),
        current_period_end=_subscription_period_end(obj),
        cancel_at_period_end=bool(obj.get("cancel_at_period_end", False)),
    )


def _parse_refund(event_id: str, obj: dict) -> ChargeRefunded:
    return ChargeRefunded(
        event_id=event_id,
        charge_id=obj["id"],
        payment_intent_id=_expandable_id(obj.get("payment_intent")),
        amount_refunded=int(obj.get("amount_refunded") or 0),
        fully_refunded=bool(obj.get("refunded", False)),
    )


def _parse_account(event_id: str, obj: dict) -> AccountUpdated:
    metadata = obj.get("metadata") or {}
    return AccountUpdated(
        event_id=event_id,
        account_id=obj["id"],
        creator_id=metadata.get("creatorId") or None,
        charges_enabled=bool(obj.get("charges_enabled", False)),
        payouts_enabled=bool(obj.get("payouts_enabled", False)),
        details_submitted=bool(obj.get("details_submitted", False)),
    )


_SUBSCRIPTION_ACTIONS = {
    "customer.subscription.created": SubscriptionAction.CREATED,
    "customer.subscription.updated": SubscriptionAction.UPDATED,
    "customer.subscription.deleted": SubscriptionAction.DELETED,
}


def parse_event(envelope: Any) -> StripeEvent:
    """Turn a decoded event envelope into its variant.

    Raises InvalidPayload when the envelope or a known event's object is
    malformed.
    """
    if not isinstance(envelope, dict):
        raise InvalidPayload()
    event_id = envelope.get("id")
    event_type = envelope.get("type")
    if not isinstance(event_id, str) or not isinstance(event_type, str):
        raise InvalidPayload()

    obj = (envelope.get("data") or {}).get("object")
    if not isinstance(obj, dict):
        raise InvalidPayload()

    try:
        if event_type == "checkout.session.completed":
            return _parse_checkout(event_id, obj)
        if event_type in _SUBSCRIPTION_ACTIONS:
            return _parse_subscription(event_id, _SUBSCRIPTION_ACTIONS[event_type], obj)
        if event_type == "charge.refunded":
            return _parse_refund(event_id, obj)
        if event_type == "account.updated":
            return _parse_account(event_id, obj)
    except (KeyError, TypeError, ValueError):
        raise InvalidPayload()

    return UnknownEvent(event_id=event_id, event_type=event_type)


def verify_event(
    payload: bytes,
    sig_header: str | None,
    secret: str,
    tolerance: int = 300,
) -> StripeEvent:
    """Verify the webhook signature, then parse the payload.

    Nothing in the body is looked at before the signature checks out.
    """
    if not secret:
        log.error("stripe_webhook_secret_missing")
        raise WebhookNotConfigured()
    try:
        body = payload.decode("utf-8")
    except UnicodeDecodeError:
        raise InvalidPayload()

    try:
        stripe.WebhookSignature.verify_header(body, sig_header or "", secret, tolerance)
    except stripe.SignatureVerificationError:
        raise InvalidSignature()

    try:
        envelope = json.loads(body)
    except ValueError:
        raise InvalidPayload()
    return parse_event(envelope)
