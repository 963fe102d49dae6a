"""Creator payout accounts -- a cache of Stripe Connect onboarding state."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

import structlog
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from creator_vault.errors import NotFound
from creator_vault.integrations.stripe_connect import StripeConnectService

log = structlog.get_logger()


class ConnectedAccountResponse(BaseModel):
    creator_id: str
    stripe_account_id: str
    charges_enabled: bool = False
    payouts_enabled: bool = False
    details_submitted: bool = False
    connected_at: Optional[datetime] = None
    refreshed_at: Optional[datetime] = None

    @property
    def can_accept_payments(self) -> bool:
        return self.charges_enabled and self.details_submitted


class OnboardingResponse(BaseModel):
    account: ConnectedAccountResponse
    onboarding_url: Optional[str] = None


_ACCOUNT_COLUMNS = (
    "creator_id, stripe_account_id, charges_enabled, payouts_enabled, "
    "details_submitted, connected_at, refreshed_at"
)


def _row_to_account(row) -> ConnectedAccountResponse:
    return ConnectedAccountResponse(
        creator_id=row[0],
        stripe_account_id=row[1],
        charges_enabled=row[2],
        payouts_enabled=row[3],
        details_submitted=row[4],
        connected_at=row[5],
        refreshed_at=row[6],
    )


class ConnectedAccountStore:
    """Database operations on ``connected_accounts``."""

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def get(self, creator_id: str) -> ConnectedAccountResponse | None:
        result = await self._db.execute(
            text(f"SELECT {_ACCOUNT_COLUMNS} FROM connected_accounts WHERE creator_id = :creator_id"),
            {"creator_id": creator_id},
        )
        row = result.fetchone()
        return _row_to_account(row) if row is not None else None

    async def upsert(
        self,
        creator_id: str,
        stripe_account_id: str,
        charges_enabled: bool,
        payouts_enabled: bool,
        details_submitted: bool,
    ) -> ConnectedAccountResponse:
        now = datetime.now(timezone.utc)
        result = await self._db.execute(
            text(
                "INSERT INTO connected_accounts "
                "(creator_id, stripe_account_id, charges_enabled, payouts_enabled, "
                "details_submitted, connected_at, refreshed_at) "
                "VALUES (:creator_id, :account_id, :charges, :payouts, :details, :now, :now) "
                "ON CONFLICT (creator_id) DO UPDATE SET "
                "stripe_account_id = EXCLUDED.stripe_account_id, "
                "charges_enabled = EXCLUDED.charges_enabled, "
                "payouts_enabled = EXCLUDED.payouts_enabled, "
                "details_submitted = EXCLUDED.details_submitted, "
                "refreshed_at = EXCLUDED.refreshed_at "
                f"RETURNING {_ACCOUNT_COLUMNS}"
            ),
            {
                "creator_id": creator_id,
                "account_id": stripe_account_id,
                "charges": charges_enabled,
                "payouts": payouts_enabled,
                "details": details_submitted,
                "now": now,
            },
        )
        return _row_to_account(result.fetchone())

    async def update_flags_by_account(
        self,
        stripe_account_id: str,
        charges_enabled: bool,
        payouts_enabled: bool,
        details_submitted: bool,
    ) -> ConnectedAccountResponse | None:
        """Overwrite cached flags for a known account; None if unknown."""
        result = await self._db.execute(
            text(
                "UPDATE connected_accounts SET charges_enabled = :charges, "
                "payouts_enabled = :payouts, details_submitted = :details, "
                "refreshed_at = :now "
                "WHERE stripe_account_id = :account_id "
                f"RETURNING {_ACCOUNT_COLUMNS}"
            ),
            {
                "account_id": stripe_account_id,
                "charges": charges_enabled,
                "payouts": payouts_enabled,
                "details": details_submitted,
                "now": datetime.now(timezone.utc),
            },
        )
        row = result.fetchone()
        return _row_to_account(row) if row is not None else None


# ---------------------------------------------------------------------------
# Creator-facing operations
# ---------------------------------------------------------------------------

async def onboard_creator(
    db: AsyncSession,
    connect: StripeConnectService,
    creator_id: str,
    email: str | None,
) -> OnboardingResponse:
    """Create (or resume) Express onboarding for a creator."""
    store = ConnectedAccountStore(db)
    existing = await store.get(creator_id)
    if existing is not None:
        if existing.details_submitted:
            return OnboardingResponse(account=existing, onboarding_url=None)
        url = await connect.create_account_link(existing.stripe_account_id)
        return OnboardingResponse(account=existing, onboarding_url=url)

    created = await connect.create_connect_account(creator_id=creator_id, email=email)
    account = await store.upsert(
        creator_id,
        created["account_id"],
        charges_enabled=False,
        payouts_enabled=False,
        details_submitted=False,
    )
    log.info("connect_account_created", creator_id=creator_id, account_id=account.stripe_account_id)
    return OnboardingResponse(account=account, onboarding_url=created["onboarding_url"])


async def get_connected_account(db: AsyncSession, creator_id: str) -> ConnectedAccountResponse:
    account = await ConnectedAccountStore(db).get(creator_id)
    if account is None:
        raise NotFound("No connected account")
    return account


async def refresh_connected_account(
    db: AsyncSession,
    connect: StripeConnectService,
    creator_id: str,
) -> ConnectedAccountResponse:
    """Re-query Stripe and overwrite the cached onboarding flags."""
    store = ConnectedAccountStore(db)
    cached = await store.get(creator_id)
    if cached is None:
        raise NotFound("No connected account")

    status = await connect.get_account_status(cached.stripe_account_id)
    account = await store.upsert(
        creator_id,
        cached.stripe_account_id,
        charges_enabled=status["charges_enabled"],
        payouts_enabled=status["payouts_enabled"],
        details_submitted=status["details_submitted"],
    )
    log.info(
        "connect_account_refreshed",
        creator_id=creator_id,
        charges_enabled=account.charges_enabled,
        payouts_enabled=account.payouts_enabled,
    )
    return account
