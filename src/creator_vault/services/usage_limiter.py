"""Free-tier quota enforcement over the membership counters.

One conditional ``UPDATE ... RETURNING`` both checks the cap and consumes
a unit, so concurrent requests from the same user can never push a
counter past its limit.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Mapping, Optional

from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from creator_vault.config import settings
from creator_vault.errors import MembershipNotFound, QuotaExceeded
from creator_vault.services.audit_logger import AuditLogger
from creator_vault.services.membership_service import (
    COUNTER_COLUMNS,
    UsageCounter,
    current_period_start,
)

_audit = AuditLogger()

DEFAULT_LIMITS: dict[UsageCounter, int] = {
    UsageCounter.DOWNLOADS: settings.FREE_DOWNLOADS_PER_PERIOD,
    UsageCounter.BUNDLES: settings.FREE_MAX_BUNDLES,
}

_PRO_ACTIVE = "(plan = 'creator_pro' AND status = 'active')"


class UsageDecision(BaseModel):
    allowed: bool
    # None means unbounded (active Creator Pro).
    remaining: Optional[int] = None


class UsageLimiter:
    """Check-and-consume over the per-user usage counters."""

    def __init__(
        self,
        db: AsyncSession,
        limits: Mapping[UsageCounter, int] | None = None,
    ) -> None:
        self._db = db
        self._limits = dict(DEFAULT_LIMITS)
        if limits:
            self._limits.update({UsageCounter(k): v for k, v in limits.items()})

    def limit_for(self, counter: UsageCounter) -> int:
        return self._limits[UsageCounter(counter)]

    async def _rollover_period(self, uid: str, now: datetime) -> None:
        """Zero the monthly download counter once a new month starts."""
        await self._db.execute(
            text(
                "UPDATE memberships "
                "SET downloads_this_period = 0, period_start = :month_start "
                "WHERE uid = :uid AND period_start < :month_start"
            ),
            {"uid": uid, "month_start": current_period_start(now)},
        )

    async def check_and_consume(self, uid: str, counter: UsageCounter) -> UsageDecision:
        """Consume one unit of *counter* if the user is under quota.

        Returns ``allowed=False, remaining=0`` at the cap without
        touching the counter. Raises MembershipNotFound when the user has
        no membership record.
        """
        counter = UsageCounter(counter)
        column = COUNTER_COLUMNS[counter]
        limit = self.limit_for(counter)
        now = datetime.now(timezone.utc)

        if counter == UsageCounter.DOWNLOADS:
            await self._rollover_period(uid, now)

        result = await self._db.execute(
            text(
                f"UPDATE memberships SET {column} = {column} + 1, updated_at = :now "
                f"WHERE uid = :uid AND ({_PRO_ACTIVE} OR {column} < :limit) "
                f"RETURNING plan, status, {column}"
            ),
            {"uid": uid, "limit": limit, "now": now},
        )
        row = result.fetchone()

        if row is not None:
            if row[0] == "creator_pro" and row[1] == "active":
                decision = UsageDecision(allowed=True, remaining=None)
            else:
                decision = UsageDecision(allowed=True, remaining=max(0, limit - row[2]))
            _audit.log_usage(uid, counter.value, True, decision.remaining)
            return decision

        # Nothing updated: either the record is missing or the cap is hit.
        existing = await self._db.execute(
            text(f"SELECT {column} FROM memberships WHERE uid = :uid"),
            {"uid": uid},
        )
        current = existing.fetchone()
        if current is None:
            raise MembershipNotFound(uid)

        decision = UsageDecision(allowed=False, remaining=max(0, limit - current[0]))
        _audit.log_usage(uid, counter.value, False, decision.remaining)
        return decision

    async def require(self, uid: str, counter: UsageCounter) -> UsageDecision:
        """check_and_consume for mutating routes: a denial becomes a 429."""
        decision = await self.check_and_consume(uid, counter)
        if not decision.allowed:
            counter = UsageCounter(counter)
            if counter == UsageCounter.DOWNLOADS:
                raise QuotaExceeded(
                    "Monthly download limit reached. Upgrade to Creator Pro for unlimited downloads."
                )
            raise QuotaExceeded(
                "Bundle limit reached. Upgrade to Creator Pro to create more bundles."
            )
        return decision


def check_items_per_bundle(current_items: int, is_pro_active: bool) -> None:
    """Raise QuotaExceeded when a free-tier bundle is already full."""
    if is_pro_active:
        return
    if current_items >= settings.FREE_MAX_ITEMS_PER_BUNDLE:
        raise QuotaExceeded(
            f"Free-tier bundles hold at most {settings.FREE_MAX_ITEMS_PER_BUNDLE} items."
        )
