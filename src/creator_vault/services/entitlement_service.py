"""Entitlement recorder -- purchases and the access grants derived from them.

Purchases are written only from a verified ``CheckoutCompleted`` event.
The purchase row and its grant are written in the caller's transaction;
the webhook reconciler commits both together or neither.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

import structlog
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from creator_vault.errors import StorageError
from creator_vault.services.audit_logger import AuditLogger
from creator_vault.services.stripe_events import CheckoutCompleted

log = structlog.get_logger()
_audit = AuditLogger()


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------

class PurchaseResponse(BaseModel):
    purchase_id: str
    buyer_uid: str
    creator_id: str
    product_box_id: str
    amount: int
    currency: str
    status: str
    payment_intent_id: Optional[str] = None
    purchased_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None


class GrantOutcome(BaseModel):
    purchase: PurchaseResponse
    # False when the purchase already existed (replayed delivery).
    created: bool


class BackfillReport(BaseModel):
    scanned: int
    granted: int
    purchase_ids: list[str]


_PURCHASE_COLUMNS = (
    "purchase_id, buyer_uid, creator_id, product_box_id, amount, currency, "
    "status, payment_intent_id, purchased_at, refunded_at"
)


def _row_to_purchase(row) -> PurchaseResponse:
    return PurchaseResponse(
        purchase_id=row[0],
        buyer_uid=row[1],
        creator_id=row[2],
        product_box_id=str(row[3]),
        amount=row[4],
        currency=row[5],
        status=row[6],
        payment_intent_id=row[7],
        purchased_at=row[8],
        refunded_at=row[9],
    )


# ---------------------------------------------------------------------------
# Recorder
# ---------------------------------------------------------------------------

class EntitlementRecorder:
    """Reads and writes purchases and access grants."""

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def grant_access(self, checkout: CheckoutCompleted, buyer_uid: str) -> GrantOutcome:
        """Record the purchase for *checkout* and grant the buyer access.

        Both inserts are conditional, so a replayed event adds nothing.
        An existing grant counts as success. Store failures surface as
        StorageError so the event is redelivered.
        """
        if not isinstance(checkout, CheckoutCompleted):
            raise TypeError("grant_access only accepts a verified CheckoutCompleted event")
        if not checkout.is_bundle_purchase or not checkout.creator_id:
            raise ValueError("Checkout session does not reference a bundle")

        now = datetime.now(timezone.utc)
        try:
            inserted = await self._db.execute(
                text(
                    "INSERT INTO purchases "
                    "(purchase_id, buyer_uid, creator_id, product_box_id, amount, currency, "
                    "status, payment_intent_id, source_event_id, purchased_at) "
                    "VALUES (:purchase_id, :buyer_uid, :creator_id, :product_box_id, :amount, "
                    ":currency, 'completed', :payment_intent_id, :source_event_id, :now) "
                    "ON CONFLICT (purchase_id) DO NOTHING "
                    "RETURNING purchase_id"
                ),
                {
                    "purchase_id": checkout.session_id,
                    "buyer_uid": buyer_uid,
                    "creator_id": checkout.creator_id,
                    "product_box_id": checkout.product_box_id,
                    "amount": checkout.amount_total,
                    "currency": checkout.currency,
                    "payment_intent_id": checkout.payment_intent_id,
                    "source_event_id": checkout.event_id,
                    "now": now,
                },
            )
            created = inserted.fetchone() is not None

            await self._db.execute(
                text(
                    "INSERT INTO access_grants "
                    "(buyer_uid, product_box_id, purchase_id, granted, granted_at) "
                    "VALUES (:buyer_uid, :product_box_id, :purchase_id, TRUE, :now) "
                    "ON CONFLICT (buyer_uid, product_box_id) DO UPDATE SET "
                    "granted = TRUE, purchase_id = EXCLUDED.purchase_id, "
                    "granted_at = EXCLUDED.granted_at "
                    "WHERE access_grants.granted = FALSE"
                ),
                {
                    "buyer_uid": buyer_uid,
                    "product_box_id": checkout.product_box_id,
                    "purchase_id": checkout.session_id,
                    "now": now,
                },
            )

            purchase = await self.get_purchase(checkout.session_id)
        except SQLAlchemyError as exc:
            log.error(
                "grant_access_failed",
                purchase_id=checkout.session_id,
                error=str(exc),
            )
            raise StorageError() from exc

        if purchase is None:
            raise StorageError("Purchase write was not visible after insert")

        _audit.log_purchase_recorded(purchase.model_dump(), created=created)
        return GrantOutcome(purchase=purchase, created=created)

    async def has_access(self, buyer_uid: str, product_box_id: str | uuid.UUID) -> bool:
        result = await self._db.execute(
            text(
                "SELECT granted FROM access_grants "
                "WHERE buyer_uid = :buyer_uid AND product_box_id = :product_box_id"
            ),
            {"buyer_uid": buyer_uid, "product_box_id": str(product_box_id)},
        )
        row = result.fetchone()
        return bool(row and row[0])

    async def get_purchase(self, purchase_id: str) -> PurchaseResponse | None:
        result = await self._db.execute(
            text(f"SELECT {_PURCHASE_COLUMNS} FROM purchases WHERE purchase_id = :purchase_id"),
            {"purchase_id": purchase_id},
        )
        row = result.fetchone()
        if row is None:
            return None
        return _row_to_purchase(row)

    async def list_purchases(self, buyer_uid: str, limit: int = 50) -> list[PurchaseResponse]:
        result = await self._db.execute(
            text(
                f"SELECT {_PURCHASE_COLUMNS} FROM purchases "
                "WHERE buyer_uid = :buyer_uid "
                "ORDER BY purchased_at DESC LIMIT :limit"
            ),
            {"buyer_uid": buyer_uid, "limit": limit},
        )
        return [_row_to_purchase(row) for row in result.fetchall()]

    async def mark_refunded(self, payment_intent_id: str) -> PurchaseResponse | None:
        """Flip the purchase to ``refunded`` and re-derive its grant.

        The grant stays only if the buyer still holds another completed
        purchase of the same bundle. Returns None when no purchase
        matches the payment intent.
        """
        now = datetime.now(timezone.utc)
        result = await self._db.execute(
            text(
                "UPDATE purchases SET status = 'refunded', refunded_at = :now "
                "WHERE payment_intent_id = :payment_intent_id AND status = 'completed' "
                f"RETURNING {_PURCHASE_COLUMNS}"
            ),
            {"payment_intent_id": payment_intent_id, "now": now},
        )
        row = result.fetchone()
        if row is None:
            # Unknown or already refunded.
            existing = await self._db.execute(
                text(
                    f"SELECT {_PURCHASE_COLUMNS} FROM purchases "
                    "WHERE payment_intent_id = :payment_intent_id"
                ),
                {"payment_intent_id": payment_intent_id},
            )
            found = existing.fetchone()
            return _row_to_purchase(found) if found is not None else None

        purchase = _row_to_purchase(row)
        await self._db.execute(
            text(
                "UPDATE access_grants SET granted = EXISTS ("
                "SELECT 1 FROM purchases p WHERE p.buyer_uid = :buyer_uid "
                "AND p.product_box_id = :product_box_id AND p.status = 'completed') "
                "WHERE buyer_uid = :buyer_uid AND product_box_id = :product_box_id"
            ),
            {"buyer_uid": purchase.buyer_uid, "product_box_id": purchase.product_box_id},
        )
        _audit.log_purchase_refunded(purchase.purchase_id, payment_intent_id)
        return purchase

    async def backfill_missing_grants(self, dry_run: bool = False) -> BackfillReport:
        """Derive grants for completed purchases that lack one.

        Only ever derives from existing purchase rows, so it cannot
        create access that a verified webhook did not pay for.
        """
        result = await self._db.execute(
            text(
                "SELECT p.purchase_id, p.buyer_uid, p.product_box_id "
                "FROM purchases p "
                "LEFT JOIN access_grants g "
                "ON g.buyer_uid = p.buyer_uid AND g.product_box_id = p.product_box_id "
                "WHERE p.status = 'completed' AND (g.buyer_uid IS NULL OR g.granted = FALSE) "
                "ORDER BY p.purchased_at"
            )
        )
        missing = result.fetchall()
        granted_ids: list[str] = []
        if not dry_run:
            now = datetime.now(timezone.utc)
            for purchase_id, buyer_uid, product_box_id in missing:
                await self._db.execute(
                    text(
                        "INSERT INTO access_grants "
                        "(buyer_uid, product_box_id, purchase_id, granted, granted_at) "
                        "VALUES (:buyer_uid, :product_box_id, :purchase_id, TRUE, :now) "
                        "ON CONFLICT (buyer_uid, product_box_id) DO UPDATE SET "
                        "granted = TRUE, purchase_id = EXCLUDED.purchase_id "
                        "WHERE access_grants.granted = FALSE"
                    ),
                    {
                        "buyer_uid": buyer_uid,
                        "product_box_id": str(product_box_id),
                        "purchase_id": purchase_id,
                        "now": now,
                    },
                )
                granted_ids.append(purchase_id)
            log.info("grant_backfill_complete", granted=len(granted_ids))

        return BackfillReport(
            scanned=len(missing),
            granted=len(granted_ids),
            purchase_ids=granted_ids if not dry_run else [row[0] for row in missing],
        )
