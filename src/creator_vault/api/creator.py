"""Creator dashboard endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from creator_vault.api.dependencies import get_current_identity
from creator_vault.database import get_db
from creator_vault.services.auth_service import Identity
from creator_vault.services.sales_service import SalesStats, get_sales_stats

router = APIRouter(prefix="/api/v1/creator", tags=["creator"])


@router.get("/sales", response_model=SalesStats)
async def read_sales(
    identity: Identity = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
):
    """Sales totals, recent activity, and the best-selling bundle."""
    return await get_sales_stats(db, identity.uid)
