"""Structured JSON audit logger for purchase, membership, and usage events.

Emits structured log entries via structlog.  Every entry carries an
``audit: true`` flag so production log pipelines can filter on it easily.
"""

from __future__ import annotations

from datetime import datetime, timezone

import structlog


log = structlog.get_logger()


class AuditLogger:
    """Structured audit logger for entitlement and billing events.

    All methods are synchronous -- they only emit log lines and perform
    no I/O beyond writing to the configured structlog sink.
    """

    # ------------------------------------------------------------------
    # Purchases
    # ------------------------------------------------------------------

    def log_purchase_recorded(self, purchase: dict, created: bool) -> None:
        """Log a purchase write coming from a verified checkout event.

        *created* is False for idempotent replays that found the purchase
        already present.
        """
        log.info(
            "audit_event",
            event_type="purchase_recorded",
            timestamp=datetime.now(timezone.utc).isoformat(),
            purchase_id=purchase.get("purchase_id"),
            buyer_uid=purchase.get("buyer_uid"),
            creator_id=purchase.get("creator_id"),
            product_box_id=str(purchase.get("product_box_id")),
            amount=purchase.get("amount"),
            currency=purchase.get("currency"),
            created=created,
            audit=True,
        )

    def log_purchase_refunded(self, purchase_id: str, payment_intent_id: str | None) -> None:
        log.info(
            "audit_event",
            event_type="purchase_refunded",
            timestamp=datetime.now(timezone.utc).isoformat(),
            purchase_id=purchase_id,
            payment_intent_id=payment_intent_id,
            audit=True,
        )

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    def log_membership_change(
        self,
        uid: str,
        plan: str,
        status: str,
        reason: str,
        subscription_id: str | None = None,
    ) -> None:
        """Record a plan/status transition (upgrade, downgrade, status sync)."""
        log.info(
            "audit_event",
            event_type="membership_change",
            timestamp=datetime.now(timezone.utc).isoformat(),
            uid=uid,
            plan=plan,
            status=status,
            reason=reason,
            subscription_id=subscription_id,
            audit=True,
        )

    # ------------------------------------------------------------------
    # Usage
    # ------------------------------------------------------------------

    def log_usage(
        self,
        uid: str,
        counter: str,
        allowed: bool,
        remaining: int | None,
    ) -> None:
        log.info(
            "audit_event",
            event_type="usage_consumed" if allowed else "usage_denied",
            timestamp=datetime.now(timezone.utc).isoformat(),
            uid=uid,
            counter=counter,
            remaining=remaining,
            audit=True,
        )

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def log_webhook_rejected(self, reason: str, signature_present: bool) -> None:
        """Log a webhook delivery that failed authenticity checks."""
        log.warning(
            "audit_event",
            event_type="webhook_rejected",
            timestamp=datetime.now(timezone.utc).isoformat(),
            reason=reason,
            signature_present=signature_present,
            audit=True,
        )
