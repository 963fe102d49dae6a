"""Creator sales statistics over completed purchases."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from creator_vault.services.membership_service import current_period_start

RECENT_SALES_LIMIT = 10


class BestSeller(BaseModel):
    product_box_id: str
    title: str
    sales: int
    revenue: int


class RecentSale(BaseModel):
    purchase_id: str
    product_box_id: str
    title: Optional[str] = None
    buyer_uid: str
    amount: int
    currency: str
    purchased_at: datetime


class SalesStats(BaseModel):
    total_sales: int
    total_revenue: int
    this_month_sales: int
    this_month_revenue: int
    last_30_days_sales: int
    last_30_days_revenue: int
    best_seller: Optional[BestSeller] = None
    recent_sales: list[RecentSale]


async def get_sales_stats(
    db: AsyncSession,
    creator_id: str,
    now: datetime | None = None,
) -> SalesStats:
    """Totals, this month, last 30 days, best seller, and recent sales."""
    now = now or datetime.now(timezone.utc)
    month_start = datetime.combine(current_period_start(now), datetime.min.time(), tzinfo=timezone.utc)
    since_30d = now - timedelta(days=30)

    totals = await db.execute(
        text(
            "SELECT COUNT(*), COALESCE(SUM(amount), 0), "
            "COUNT(*) FILTER (WHERE purchased_at >= :month_start), "
            "COALESCE(SUM(amount) FILTER (WHERE purchased_at >= :month_start), 0), "
            "COUNT(*) FILTER (WHERE purchased_at >= :since_30d), "
            "COALESCE(SUM(amount) FILTER (WHERE purchased_at >= :since_30d), 0) "
            "FROM purchases WHERE creator_id = :creator_id AND status = 'completed'"
        ),
        {"creator_id": creator_id, "month_start": month_start, "since_30d": since_30d},
    )
    t = totals.fetchone()

    best = await db.execute(
        text(
            "SELECT p.product_box_id, b.title, COUNT(*) AS sales, SUM(p.amount) AS revenue "
            "FROM purchases p JOIN product_boxes b ON b.product_box_id = p.product_box_id "
            "WHERE p.creator_id = :creator_id AND p.status = 'completed' "
            "GROUP BY p.product_box_id, b.title "
            "ORDER BY sales DESC, revenue DESC LIMIT 1"
        ),
        {"creator_id": creator_id},
    )
    best_row = best.fetchone()

    recent = await db.execute(
        text(
            "SELECT p.purchase_id, p.product_box_id, b.title, p.buyer_uid, p.amount, "
            "p.currency, p.purchased_at "
            "FROM purchases p LEFT JOIN product_boxes b ON b.product_box_id = p.product_box_id "
            "WHERE p.creator_id = :creator_id AND p.status = 'completed' "
            "ORDER BY p.purchased_at DESC LIMIT :limit"
        ),
        {"creator_id": creator_id, "limit": RECENT_SALES_LIMIT},
    )

    return SalesStats(
        total_sales=t[0],
        total_revenue=t[1],
        this_month_sales=t[2],
        this_month_revenue=t[3],
        last_30_days_sales=t[4],
        last_30_days_revenue=t[5],
        best_seller=(
            BestSeller(
                product_box_id=str(best_row[0]),
                title=best_row[1],
                sales=best_row[2],
                revenue=best_row[3],
            )
            if best_row is not None
            else None
        ),
        recent_sales=[
            RecentSale(
                purchase_id=row[0],
                product_box_id=str(row[1]),
                title=row[2],
                buyer_uid=row[3],
                amount=row[4],
                currency=row[5],
                purchased_at=row[6],
            )
            for row in recent.fetchall()
        ],
    )
