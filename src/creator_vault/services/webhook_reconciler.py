"""Webhook reconciler -- state machine for Stripe event deliveries.

State per event id: unseen -> processing -> recorded | failed

Responsibilities:
1. Verify the Stripe-Signature header before reading the body (400 on failure)
2. Claim the event in ``webhook_events``; a recorded event is a replay
   and short-circuits with success, a failed one is reclaimed
3. Dispatch on the event variant:
   - checkout.session.completed (payment) -> purchase + access grant
   - checkout.session.completed (subscription) -> Creator Pro upgrade
   - customer.subscription.* -> full-state membership overwrite
   - charge.refunded -> purchase refunded, grant re-derived
   - account.updated -> connected account flags refreshed
   - anything else -> acknowledged, no action
4. Mark the event recorded and commit everything in one transaction
5. On any failure or timeout: roll back, record the event as failed in a
   fresh transaction, and answer 5xx so Stripe redelivers
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Optional

import structlog
from fastapi import HTTPException
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from creator_vault.config import settings
from creator_vault.errors import InvalidPayload, InvalidSignature, StorageError
from creator_vault.services.audit_logger import AuditLogger
from creator_vault.services.auth_service import IdentityVerifier
from creator_vault.services.connected_account_service import ConnectedAccountStore
from creator_vault.services.entitlement_service import EntitlementRecorder
from creator_vault.services.membership_service import (
    MembershipPlan,
    MembershipStatus,
    MembershipStore,
)
from creator_vault.services.stripe_events import (
    AccountUpdated,
    ChargeRefunded,
    CheckoutCompleted,
    StripeEvent,
    SubscriptionAction,
    SubscriptionChanged,
    UnknownEvent,
    verify_event,
)

log = structlog.get_logger()
_audit = AuditLogger()

# Stripe subscription status -> membership status. None means downgrade.
SUBSCRIPTION_STATUS_MAP: dict[str, Optional[MembershipStatus]] = {
    "active": MembershipStatus.ACTIVE,
    "trialing": MembershipStatus.ACTIVE,
    "past_due": MembershipStatus.PAST_DUE,
    "unpaid": MembershipStatus.PAST_DUE,
    "incomplete": MembershipStatus.INACTIVE,
    "paused": MembershipStatus.INACTIVE,
    "canceled": None,
    "incomplete_expired": None,
}


class WebhookOutcome(BaseModel):
    event_id: str
    event_type: str
    # processed | replayed | ignored | skipped
    status: str
    detail: Optional[str] = None


# ---------------------------------------------------------------------------
# Event log
# ---------------------------------------------------------------------------

class WebhookEventLog:
    """Persistence for the per-event state machine."""

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def claim(self, event_id: str, event_type: str) -> bool:
        """Move an unseen or failed event to ``processing``.

        Returns False when the event is already recorded. A concurrent
        delivery blocks on the primary key until the first one commits.
        """
        result = await self._db.execute(
            text(
                "INSERT INTO webhook_events "
                "(event_id, event_type, status, attempts, received_at) "
                "VALUES (:event_id, :event_type, 'processing', 1, :now) "
                "ON CONFLICT (event_id) DO UPDATE SET "
                "status = 'processing', attempts = webhook_events.attempts + 1, "
                "last_error = NULL "
                "WHERE webhook_events.status = 'failed' "
                "RETURNING event_id"
            ),
            {"event_id": event_id, "event_type": event_type, "now": datetime.now(timezone.utc)},
        )
        return result.fetchone() is not None

    async def mark_recorded(self, event_id: str) -> None:
        await self._db.execute(
            text(
                "UPDATE webhook_events SET status = 'recorded', processed_at = :now "
                "WHERE event_id = :event_id AND status = 'processing'"
            ),
            {"event_id": event_id, "now": datetime.now(timezone.utc)},
        )

    async def mark_failed(self, event_id: str, event_type: str, error: str) -> None:
        await self._db.execute(
            text(
                "INSERT INTO webhook_events "
                "(event_id, event_type, status, attempts, last_error, received_at) "
                "VALUES (:event_id, :event_type, 'failed', 1, :error, :now) "
                "ON CONFLICT (event_id) DO UPDATE SET "
                "status = 'failed', last_error = EXCLUDED.last_error "
                "WHERE webhook_events.status <> 'recorded'"
            ),
            {
                "event_id": event_id,
                "event_type": event_type,
                "error": error[:2000],
                "now": datetime.now(timezone.utc),
            },
        )

    async def list_events(self, event_ids: list[str]) -> list[dict]:
        if not event_ids:
            return []
        result = await self._db.execute(
            text(
                "SELECT event_id, event_type, status, attempts, last_error, "
                "received_at, processed_at FROM webhook_events "
                "WHERE event_id = ANY(:event_ids) ORDER BY received_at"
            ),
            {"event_ids": event_ids},
        )
        return [
            {
                "event_id": row[0],
                "event_type": row[1],
                "status": row[2],
                "attempts": row[3],
                "last_error": row[4],
                "received_at": row[5],
                "processed_at": row[6],
            }
            for row in result.fetchall()
        ]


# ---------------------------------------------------------------------------
# Reconciler
# ---------------------------------------------------------------------------

class WebhookReconciler:
    """Translates verified Stripe events into membership and entitlement writes."""

    def __init__(
        self,
        db: AsyncSession,
        webhook_secret: str | None = None,
        *,
        memberships: MembershipStore | None = None,
        entitlements: EntitlementRecorder | None = None,
        accounts: ConnectedAccountStore | None = None,
        event_log: WebhookEventLog | None = None,
        identity: IdentityVerifier | None = None,
        timeout: float | None = None,
        tolerance: int | None = None,
    ) -> None:
        self._db = db
        self._secret = settings.STRIPE_WEBHOOK_SECRET if webhook_secret is None else webhook_secret
        self._memberships = memberships or MembershipStore(db)
        self._entitlements = entitlements or EntitlementRecorder(db)
        self._accounts = accounts or ConnectedAccountStore(db)
        self._event_log = event_log or WebhookEventLog(db)
        self._identity = identity
        self._timeout = settings.WEBHOOK_PROCESSING_TIMEOUT_SECONDS if timeout is None else timeout
        self._tolerance = (
            settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS if tolerance is None else tolerance
        )

    async def handle(self, payload: bytes, sig_header: str | None) -> WebhookOutcome:
        """Verify, process, and commit one delivery.

        Raises InvalidSignature / InvalidPayload (4xx, permanent) or
        StorageError (5xx, redelivered). Returns only after the commit.
        """
        try:
            event = verify_event(payload, sig_header, self._secret, self._tolerance)
        except InvalidSignature:
            _audit.log_webhook_rejected("invalid_signature", signature_present=bool(sig_header))
            raise
        except InvalidPayload:
            _audit.log_webhook_rejected("invalid_payload", signature_present=bool(sig_header))
            raise

        structlog.contextvars.bind_contextvars(
            stripe_event_id=event.event_id, stripe_event_type=event.event_type
        )
        try:
            outcome = await asyncio.wait_for(self._process(event), timeout=self._timeout)
            await self._db.commit()
        except Exception as exc:
            await self._record_failure(event, exc)
            if isinstance(exc, HTTPException) and exc.status_code >= 500:
                raise
            if isinstance(exc, (SQLAlchemyError, asyncio.TimeoutError)):
                raise StorageError() from exc
            raise
        finally:
            structlog.contextvars.unbind_contextvars("stripe_event_id", "stripe_event_type")

        log.info(
            "webhook_handled",
            event_id=outcome.event_id,
            event_type=outcome.event_type,
            outcome=outcome.status,
            detail=outcome.detail,
        )
        return outcome

    async def _record_failure(self, event: StripeEvent, exc: Exception) -> None:
        """Roll back partial work and persist the failed state on its own."""
        log.error(
            "webhook_processing_failed",
            event_id=event.event_id,
            event_type=event.event_type,
            error=repr(exc),
        )
        try:
            await self._db.rollback()
            await self._event_log.mark_failed(event.event_id, event.event_type, repr(exc))
            await self._db.commit()
        except SQLAlchemyError as record_exc:
            log.error(
                "webhook_failure_not_recorded",
                event_id=event.event_id,
                error=str(record_exc),
            )
            await self._db.rollback()

    async def _process(self, event: StripeEvent) -> WebhookOutcome:
        if not await self._event_log.claim(event.event_id, event.event_type):
            return self._outcome(event, "replayed", "event already recorded")

        if isinstance(event, CheckoutCompleted):
            outcome = await self._on_checkout_completed(event)
        elif isinstance(event, SubscriptionChanged):
            outcome = await self._on_subscription_changed(event)
        elif isinstance(event, ChargeRefunded):
            outcome = await self._on_charge_refunded(event)
        elif isinstance(event, AccountUpdated):
            outcome = await self._on_account_updated(event)
        else:
            outcome = self._outcome(event, "ignored", "unhandled event type")

        await self._event_log.mark_recorded(event.event_id)
        return outcome

    @staticmethod
    def _outcome(event: StripeEvent, status: str, detail: str | None = None) -> WebhookOutcome:
        return WebhookOutcome(
            event_id=event.event_id,
            event_type=event.event_type,
            status=status,
            detail=detail,
        )

    # ------------------------------------------------------------------
    # Buyer resolution
    # ------------------------------------------------------------------

    async def _resolve_checkout_uid(self, event: CheckoutCompleted) -> str | None:
        """metadata.buyerUid, then client_reference_id, then email lookup.

        The Firebase lookup is a blocking call, so it runs in a worker thread
        and stays inside the processing timeout.
        """
        if event.buyer_uid:
            return event.buyer_uid
        if event.client_reference_id:
            return event.client_reference_id
        if event.customer_email and self._identity is not None:
            return await asyncio.to_thread(
                self._identity.lookup_uid_by_email, event.customer_email
            )
        return None

    async def _resolve_subscription_uid(self, event: SubscriptionChanged) -> str | None:
        if event.buyer_uid:
            return event.buyer_uid
        if event.customer_id:
            return await self._memberships.find_uid_by_customer(event.customer_id)
        return None

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _on_checkout_completed(self, event: CheckoutCompleted) -> WebhookOutcome:
        uid = await self._resolve_checkout_uid(event)
        if uid is None:
            log.warning("checkout_buyer_unresolved", session_id=event.session_id)
            return self._outcome(event, "skipped", "buyer could not be resolved")

        if event.mode == "subscription":
            return await self._on_subscription_checkout(event, uid)

        if not event.is_bundle_purchase or not event.creator_id:
            return self._outcome(event, "ignored", "checkout without bundle metadata")
        if not event.is_paid:
            return self._outcome(event, "skipped", f"payment_status={event.payment_status}")

        existing = await self._entitlements.get_purchase(event.session_id)
        if existing is not None:
            return self._outcome(event, "replayed", "purchase already recorded")

        result = await self._entitlements.grant_access(event, uid)
        log.info(
            "purchase_recorded",
            purchase_id=result.purchase.purchase_id,
            buyer_uid=uid,
            product_box_id=result.purchase.product_box_id,
            amount=result.purchase.amount,
        )
        return self._outcome(event, "processed", "purchase recorded")

    async def _on_subscription_checkout(self, event: CheckoutCompleted, uid: str) -> WebhookOutcome:
        if not event.subscription_id:
            return self._outcome(event, "ignored", "subscription checkout without subscription")

        current = await self._memberships.get(uid)
        if current is not None and current.stripe_subscription_id == event.subscription_id:
            # Subscription events already own this record's billing state.
            return self._outcome(event, "replayed", "subscription already linked")

        membership = await self._memberships.upgrade_to_creator_pro(
            uid,
            stripe_customer_id=event.customer_id,
            subscription_id=event.subscription_id,
            status=MembershipStatus.ACTIVE,
            email=event.customer_email,
        )
        _audit.log_membership_change(
            uid,
            membership.plan.value,
            membership.status.value,
            reason="checkout_completed",
            subscription_id=event.subscription_id,
        )
        return self._outcome(event, "processed", "upgraded to creator_pro")

    async def _on_subscription_changed(self, event: SubscriptionChanged) -> WebhookOutcome:
        uid = await self._resolve_subscription_uid(event)
        if uid is None:
            log.warning(
                "subscription_owner_unresolved",
                subscription_id=event.subscription_id,
                customer_id=event.customer_id,
            )
            return self._outcome(event, "skipped", "subscription owner could not be resolved")

        current = await self._memberships.get(uid)
        mapped = SUBSCRIPTION_STATUS_MAP.get(event.status, MembershipStatus.INACTIVE)

        if event.action == SubscriptionAction.DELETED or mapped is None:
            if current is None:
                await self._memberships.ensure(uid)
            elif (
                current.stripe_subscription_id is not None
                and current.stripe_subscription_id != event.subscription_id
            ):
                return self._outcome(event, "ignored", "stale subscription")

            membership = await self._memberships.downgrade_to_free(uid, MembershipStatus.CANCELED)
            _audit.log_membership_change(
                uid,
                MembershipPlan.FREE.value,
                membership.status.value,
                reason=f"subscription_{event.action.value}",
                subscription_id=event.subscription_id,
            )
            return self._outcome(event, "processed", "downgraded to free")

        membership = await self._memberships.upgrade_to_creator_pro(
            uid,
            stripe_customer_id=event.customer_id,
            subscription_id=event.subscription_id,
            status=mapped,
            price_id=event.price_id,
            current_period_end=event.current_period_end,
            cancel_at_period_end=event.cancel_at_period_end,
        )
        _audit.log_membership_change(
            uid,
            membership.plan.value,
            membership.status.value,
            reason=f"subscription_{event.action.value}",
            subscription_id=event.subscription_id,
        )
        return self._outcome(event, "processed", f"membership {mapped.value}")

    async def _on_charge_refunded(self, event: ChargeRefunded) -> WebhookOutcome:
        if not event.fully_refunded:
            return self._outcome(event, "ignored", "partial refund")
        if not event.payment_intent_id:
            return self._outcome(event, "skipped", "refund without payment intent")

        purchase = await self._entitlements.mark_refunded(event.payment_intent_id)
        if purchase is None:
            return self._outcome(event, "skipped", "no purchase for payment intent")
        return self._outcome(event, "processed", "purchase refunded")

    async def _on_account_updated(self, event: AccountUpdated) -> WebhookOutcome:
        account = await self._accounts.update_flags_by_account(
            event.account_id,
            charges_enabled=event.charges_enabled,
            payouts_enabled=event.payouts_enabled,
            details_submitted=event.details_submitted,
        )
        if account is None:
            return self._outcome(event, "skipped", "unknown connected account")
        return self._outcome(event, "processed", "connected account refreshed")
