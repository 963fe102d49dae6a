"""Tier/membership store -- lazy creation, usage counters, and plan changes.

All writes are single statements (``INSERT ... ON CONFLICT`` or
``UPDATE ... RETURNING``) so concurrent requests for the same uid never
lose updates or produce conflicting rows.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from creator_vault.config import settings
from creator_vault.errors import MembershipNotFound


class MembershipPlan(str, Enum):
    FREE = "free"
    CREATOR_PRO = "creator_pro"


class MembershipStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    CANCELED = "canceled"
    PAST_DUE = "past_due"


class UsageCounter(str, Enum):
    DOWNLOADS = "downloads"
    BUNDLES = "bundles"


# Whitelisted column per counter -- never interpolate caller input into SQL.
COUNTER_COLUMNS = {
    UsageCounter.DOWNLOADS: "downloads_this_period",
    UsageCounter.BUNDLES: "bundles_created",
}


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------

class MembershipResponse(BaseModel):
    uid: str
    email: Optional[str] = None
    plan: MembershipPlan
    status: MembershipStatus
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    price_id: Optional[str] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    downloads_this_period: int = 0
    bundles_created: int = 0
    period_start: date

    @property
    def is_pro_active(self) -> bool:
        return (
            self.plan == MembershipPlan.CREATOR_PRO
            and self.status == MembershipStatus.ACTIVE
        )


class MembershipFeatures(BaseModel):
    unlimited_downloads: bool
    premium_content: bool
    no_watermark: bool
    priority_support: bool
    platform_fee_percent: int
    max_items_per_bundle: Optional[int] = None
    max_bundles: Optional[int] = None


class UsageLimits(BaseModel):
    downloads_used: int
    downloads_limit: Optional[int] = None
    bundles_created: int
    bundles_limit: Optional[int] = None
    reached_download_limit: bool
    reached_bundle_limit: bool
    days_until_reset: int


class MembershipSummary(BaseModel):
    membership: MembershipResponse
    features: MembershipFeatures
    limits: UsageLimits


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def compute_features(plan: MembershipPlan, status: MembershipStatus) -> MembershipFeatures:
    """Return the entitlement set. Pro features need plan AND active status."""
    if plan == MembershipPlan.CREATOR_PRO and status == MembershipStatus.ACTIVE:
        return MembershipFeatures(
            unlimited_downloads=True,
            premium_content=True,
            no_watermark=True,
            priority_support=True,
            platform_fee_percent=settings.PRO_PLATFORM_FEE_PERCENT,
            max_items_per_bundle=None,
            max_bundles=None,
        )
    return MembershipFeatures(
        unlimited_downloads=False,
        premium_content=False,
        no_watermark=False,
        priority_support=False,
        platform_fee_percent=settings.FREE_PLATFORM_FEE_PERCENT,
        max_items_per_bundle=settings.FREE_MAX_ITEMS_PER_BUNDLE,
        max_bundles=settings.FREE_MAX_BUNDLES,
    )


def current_period_start(now: datetime | None = None) -> date:
    """First day of the current UTC calendar month."""
    now = now or datetime.now(timezone.utc)
    return date(now.year, now.month, 1)


def days_until_reset(now: datetime | None = None) -> int:
    now = now or datetime.now(timezone.utc)
    if now.month == 12:
        next_start = date(now.year + 1, 1, 1)
    else:
        next_start = date(now.year, now.month + 1, 1)
    return (next_start - now.date()).days


def summarize(membership: MembershipResponse) -> MembershipSummary:
    """Build the features + limits view shown on the dashboard."""
    features = compute_features(membership.plan, membership.status)
    downloads_limit = None if features.unlimited_downloads else settings.FREE_DOWNLOADS_PER_PERIOD
    downloads_used = membership.downloads_this_period
    if membership.period_start < current_period_start():
        # The stored counter belongs to an earlier month and resets on next use.
        downloads_used = 0
    limits = UsageLimits(
        downloads_used=downloads_used,
        downloads_limit=downloads_limit,
        bundles_created=membership.bundles_created,
        bundles_limit=features.max_bundles,
        reached_download_limit=(
            downloads_limit is not None and downloads_used >= downloads_limit
        ),
        reached_bundle_limit=(
            features.max_bundles is not None
            and membership.bundles_created >= features.max_bundles
        ),
        days_until_reset=days_until_reset(),
    )
    return MembershipSummary(membership=membership, features=features, limits=limits)


_MEMBERSHIP_COLUMNS = (
    "uid, email, plan, status, stripe_customer_id, stripe_subscription_id, "
    "price_id, current_period_end, cancel_at_period_end, "
    "downloads_this_period, bundles_created, period_start"
)


def _row_to_membership(row) -> MembershipResponse:
    """Map a memberships row (in ``_MEMBERSHIP_COLUMNS`` order) to a response."""
    return MembershipResponse(
        uid=row[0],
        email=row[1],
        plan=row[2],
        status=row[3],
        stripe_customer_id=row[4],
        stripe_subscription_id=row[5],
        price_id=row[6],
        current_period_end=row[7],
        cancel_at_period_end=row[8],
        downloads_this_period=row[9],
        bundles_created=row[10],
        period_start=row[11],
    )


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class MembershipStore:
    """Encapsulates database operations on the ``memberships`` table."""

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def get(self, uid: str) -> MembershipResponse | None:
        result = await self._db.execute(
            text(f"SELECT {_MEMBERSHIP_COLUMNS} FROM memberships WHERE uid = :uid"),
            {"uid": uid},
        )
        row = result.fetchone()
        if row is None:
            return None
        return _row_to_membership(row)

    async def ensure(self, uid: str, email: str | None = None) -> MembershipResponse:
        """Get-or-create the membership with free-tier defaults.

        The insert is conditional, so two racing first requests both end
        up reading the single row that won.
        """
        now = datetime.now(timezone.utc)
        await self._db.execute(
            text(
                "INSERT INTO memberships "
                "(uid, email, plan, status, downloads_this_period, bundles_created, "
                "period_start, created_at, updated_at) "
                "VALUES (:uid, :email, 'free', 'inactive', 0, 0, :period_start, :now, :now) "
                "ON CONFLICT (uid) DO NOTHING"
            ),
            {
                "uid": uid,
                "email": email,
                "period_start": current_period_start(now),
                "now": now,
            },
        )
        membership = await self.get(uid)
        if membership is None:
            raise MembershipNotFound(uid)
        return membership

    async def find_uid_by_customer(self, stripe_customer_id: str) -> str | None:
        result = await self._db.execute(
            text("SELECT uid FROM memberships WHERE stripe_customer_id = :customer_id"),
            {"customer_id": stripe_customer_id},
        )
        row = result.fetchone()
        return row[0] if row is not None else None

    async def increment_usage(
        self,
        uid: str,
        counter: UsageCounter,
        amount: int = 1,
    ) -> int:
        """Atomically add *amount* to a counter and return the new value.

        Raises MembershipNotFound when no record exists.
        """
        column = COUNTER_COLUMNS[UsageCounter(counter)]
        result = await self._db.execute(
            text(
                f"UPDATE memberships SET {column} = {column} + :amount, updated_at = :now "
                f"WHERE uid = :uid RETURNING {column}"
            ),
            {"uid": uid, "amount": amount, "now": datetime.now(timezone.utc)},
        )
        row = result.fetchone()
        if row is None:
            raise MembershipNotFound(uid)
        return row[0]

    async def downgrade_to_free(
        self,
        uid: str,
        status: MembershipStatus = MembershipStatus.INACTIVE,
    ) -> MembershipResponse:
        """Clear subscription linkage and set ``plan = free``.

        Only touches the row when something would actually change, so a
        repeated downgrade leaves the record byte-for-byte identical.
        The Stripe customer id is kept for future re-subscriptions.
        """
        status = MembershipStatus(status)
        if status == MembershipStatus.ACTIVE:
            raise ValueError("A free membership cannot be active")

        result = await self._db.execute(
            text(
                "UPDATE memberships "
                "SET plan = 'free', status = :status, stripe_subscription_id = NULL, "
                "price_id = NULL, current_period_end = NULL, "
                "cancel_at_period_end = FALSE, updated_at = :now "
                "WHERE uid = :uid AND (plan <> 'free' OR status <> :status "
                "OR stripe_subscription_id IS NOT NULL OR price_id IS NOT NULL "
                "OR current_period_end IS NOT NULL OR cancel_at_period_end) "
                f"RETURNING {_MEMBERSHIP_COLUMNS}"
            ),
            {"uid": uid, "status": status.value, "now": datetime.now(timezone.utc)},
        )
        row = result.fetchone()
        if row is not None:
            return _row_to_membership(row)

        existing = await self.get(uid)
        if existing is None:
            raise MembershipNotFound(uid)
        return existing

    async def upgrade_to_creator_pro(
        self,
        uid: str,
        stripe_customer_id: str | None,
        subscription_id: str | None,
        status: MembershipStatus = MembershipStatus.ACTIVE,
        price_id: str | None = None,
        current_period_end: datetime | None = None,
        cancel_at_period_end: bool = False,
        email: str | None = None,
    ) -> MembershipResponse:
        """Upsert a Creator Pro membership with full billing state.

        A full-state overwrite, so replaying it with the same arguments
        yields the same record.
        """
        status = MembershipStatus(status)
        if status == MembershipStatus.CANCELED:
            raise ValueError("Canceled subscriptions must be downgraded to free")

        now = datetime.now(timezone.utc)
        result = await self._db.execute(
            text(
                "INSERT INTO memberships "
                "(uid, email, plan, status, stripe_customer_id, stripe_subscription_id, "
                "price_id, current_period_end, cancel_at_period_end, "
                "downloads_this_period, bundles_created, period_start, created_at, updated_at) "
                "VALUES (:uid, :email, 'creator_pro', :status, :customer_id, :subscription_id, "
                ":price_id, :period_end, :cancel_at_period_end, 0, 0, :period_start, :now, :now) "
                "ON CONFLICT (uid) DO UPDATE SET "
                "plan = 'creator_pro', status = EXCLUDED.status, "
                "stripe_customer_id = COALESCE(EXCLUDED.stripe_customer_id, "
                "memberships.stripe_customer_id), "
                "stripe_subscription_id = EXCLUDED.stripe_subscription_id, "
                "price_id = EXCLUDED.price_id, "
                "current_period_end = EXCLUDED.current_period_end, "
                "cancel_at_period_end = EXCLUDED.cancel_at_period_end, "
                "email = COALESCE(memberships.email, EXCLUDED.email), "
                "updated_at = EXCLUDED.updated_at "
                f"RETURNING {_MEMBERSHIP_COLUMNS}"
            ),
            {
                "uid": uid,
                "email": email,
                "status": status.value,
                "customer_id": stripe_customer_id,
                "subscription_id": subscription_id,
                "price_id": price_id,
                "period_end": current_period_end,
                "cancel_at_period_end": cancel_at_period_end,
                "period_start": current_period_start(now),
                "now": now,
            },
        )
        return _row_to_membership(result.fetchone())
