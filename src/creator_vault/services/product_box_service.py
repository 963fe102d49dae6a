"""Bundles (product boxes), their content, and entitlement-gated downloads."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

import structlog
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from creator_vault.errors import Forbidden, NotFound
from creator_vault.integrations.media_storage import MediaStorage, build_object_key
from creator_vault.services.auth_service import Identity
from creator_vault.services.entitlement_service import EntitlementRecorder
from creator_vault.services.membership_service import MembershipStore, UsageCounter
from creator_vault.services.usage_limiter import UsageLimiter, check_items_per_bundle

log = structlog.get_logger()


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------

class ProductBoxCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=5000)
    price_cents: int = Field(..., ge=0, le=100_000_00)
    currency: str = Field(default="usd", min_length=3, max_length=3)


class ProductBoxResponse(BaseModel):
    product_box_id: str
    creator_id: str
    title: str
    description: Optional[str] = None
    price_cents: int
    currency: str
    active: bool
    created_at: Optional[datetime] = None

    @property
    def is_free(self) -> bool:
        return self.price_cents == 0


class ContentCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=300)
    filename: str = Field(..., min_length=1, max_length=255)
    mime_type: str = Field(..., min_length=1, max_length=100)
    file_size: Optional[int] = Field(default=None, ge=0)


class ContentResponse(BaseModel):
    content_id: str
    product_box_id: str
    title: Optional[str] = None
    object_key: Optional[str] = None
    mime_type: Optional[str] = None
    file_size: Optional[int] = None
    created_at: Optional[datetime] = None


class ContentUploadResponse(BaseModel):
    content: ContentResponse
    upload_url: str


class DownloadResponse(BaseModel):
    content_id: str
    download_url: str
    expires_in: int
    # Downloads left this month for free-tier users; None when not metered.
    downloads_remaining: Optional[int] = None


_BOX_COLUMNS = (
    "product_box_id, creator_id, title, description, price_cents, currency, active, created_at"
)
_CONTENT_COLUMNS = (
    "content_id, product_box_id, title, object_key, mime_type, file_size, created_at"
)


def _row_to_box(row) -> ProductBoxResponse:
    return ProductBoxResponse(
        product_box_id=str(row[0]),
        creator_id=row[1],
        title=row[2],
        description=row[3],
        price_cents=row[4],
        currency=row[5],
        active=row[6],
        created_at=row[7],
    )


def _row_to_content(row) -> ContentResponse:
    return ContentResponse(
        content_id=str(row[0]),
        product_box_id=str(row[1]),
        title=row[2],
        object_key=row[3],
        mime_type=row[4],
        file_size=row[5],
        created_at=row[6],
    )


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

async def get_product_box(
    db: AsyncSession,
    product_box_id: str | uuid.UUID,
    for_update: bool = False,
) -> ProductBoxResponse:
    sql = f"SELECT {_BOX_COLUMNS} FROM product_boxes WHERE product_box_id = :product_box_id"
    if for_update:
        sql += " FOR UPDATE"
    result = await db.execute(text(sql), {"product_box_id": str(product_box_id)})
    row = result.fetchone()
    if row is None:
        raise NotFound("Bundle not found")
    return _row_to_box(row)


async def list_creator_boxes(db: AsyncSession, creator_id: str) -> list[ProductBoxResponse]:
    result = await db.execute(
        text(
            f"SELECT {_BOX_COLUMNS} FROM product_boxes "
            "WHERE creator_id = :creator_id ORDER BY created_at DESC"
        ),
        {"creator_id": creator_id},
    )
    return [_row_to_box(row) for row in result.fetchall()]


async def _get_content(
    db: AsyncSession,
    product_box_id: str | uuid.UUID,
    content_id: str | uuid.UUID,
) -> ContentResponse:
    result = await db.execute(
        text(
            f"SELECT {_CONTENT_COLUMNS} FROM product_box_contents "
            "WHERE content_id = :content_id AND product_box_id = :product_box_id"
        ),
        {"content_id": str(content_id), "product_box_id": str(product_box_id)},
    )
    row = result.fetchone()
    if row is None:
        raise NotFound("Content not found")
    return _row_to_content(row)


async def _ensure_access(
    box: ProductBoxResponse,
    identity: Identity,
    entitlements: EntitlementRecorder,
) -> None:
    """Creators see their own bundles; free bundles are open; else a grant is required."""
    if box.creator_id == identity.uid or box.is_free:
        return
    if not box.active:
        raise NotFound("Bundle not found")
    if not await entitlements.has_access(identity.uid, box.product_box_id):
        raise Forbidden("Purchase required to access this bundle")


# ---------------------------------------------------------------------------
# Creator operations
# ---------------------------------------------------------------------------

async def create_product_box(
    db: AsyncSession,
    identity: Identity,
    req: ProductBoxCreate,
    limiter: UsageLimiter | None = None,
) -> ProductBoxResponse:
    """Create a bundle, consuming the creator's ``bundles`` quota first."""
    await MembershipStore(db).ensure(identity.uid, identity.email)
    limiter = limiter or UsageLimiter(db)
    await limiter.require(identity.uid, UsageCounter.BUNDLES)

    result = await db.execute(
        text(
            "INSERT INTO product_boxes "
            "(product_box_id, creator_id, title, description, price_cents, currency, "
            "active, created_at) "
            "VALUES (:product_box_id, :creator_id, :title, :description, :price_cents, "
            ":currency, TRUE, :now) "
            f"RETURNING {_BOX_COLUMNS}"
        ),
        {
            "product_box_id": str(uuid.uuid4()),
            "creator_id": identity.uid,
            "title": req.title,
            "description": req.description,
            "price_cents": req.price_cents,
            "currency": req.currency.lower(),
            "now": datetime.now(timezone.utc),
        },
    )
    box = _row_to_box(result.fetchone())
    log.info("product_box_created", product_box_id=box.product_box_id, creator_id=identity.uid)
    return box


async def add_content(
    db: AsyncSession,
    storage: MediaStorage,
    identity: Identity,
    product_box_id: str | uuid.UUID,
    req: ContentCreate,
) -> ContentUploadResponse:
    """Register a content item and hand back a presigned upload URL.

    The bundle row is locked so concurrent adds cannot overshoot the
    free-tier item cap.
    """
    box = await get_product_box(db, product_box_id, for_update=True)
    if box.creator_id != identity.uid:
        raise Forbidden("Only the bundle's creator can add content")

    membership = await MembershipStore(db).ensure(identity.uid, identity.email)
    count_result = await db.execute(
        text("SELECT COUNT(*) FROM product_box_contents WHERE product_box_id = :product_box_id"),
        {"product_box_id": box.product_box_id},
    )
    check_items_per_bundle(count_result.scalar() or 0, membership.is_pro_active)

    object_key = build_object_key(identity.uid, box.product_box_id, req.filename)
    result = await db.execute(
        text(
            "INSERT INTO product_box_contents "
            "(content_id, product_box_id, title, object_key, mime_type, file_size, created_at) "
            "VALUES (:content_id, :product_box_id, :title, :object_key, :mime_type, "
            ":file_size, :now) "
            f"RETURNING {_CONTENT_COLUMNS}"
        ),
        {
            "content_id": str(uuid.uuid4()),
            "product_box_id": box.product_box_id,
            "title": req.title,
            "object_key": object_key,
            "mime_type": req.mime_type,
            "file_size": req.file_size,
            "now": datetime.now(timezone.utc),
        },
    )
    content = _row_to_content(result.fetchone())
    upload_url = storage.presign_upload(object_key, req.mime_type)
    return ContentUploadResponse(content=content, upload_url=upload_url)


# ---------------------------------------------------------------------------
# Buyer operations
# ---------------------------------------------------------------------------

async def list_content(
    db: AsyncSession,
    identity: Identity,
    product_box_id: str | uuid.UUID,
    entitlements: EntitlementRecorder | None = None,
) -> list[ContentResponse]:
    box = await get_product_box(db, product_box_id)
    await _ensure_access(box, identity, entitlements or EntitlementRecorder(db))
    result = await db.execute(
        text(
            f"SELECT {_CONTENT_COLUMNS} FROM product_box_contents "
            "WHERE product_box_id = :product_box_id ORDER BY created_at"
        ),
        {"product_box_id": box.product_box_id},
    )
    return [_row_to_content(row) for row in result.fetchall()]


async def download_content(
    db: AsyncSession,
    storage: MediaStorage,
    identity: Identity,
    product_box_id: str | uuid.UUID,
    content_id: str | uuid.UUID,
    entitlements: EntitlementRecorder | None = None,
    limiter: UsageLimiter | None = None,
) -> DownloadResponse:
    """Issue a presigned download URL after the access gate.

    Free-tier users downloading from a free bundle consume their monthly
    ``downloads`` quota. Purchased bundles are not metered.
    """
    box = await get_product_box(db, product_box_id)
    await _ensure_access(box, identity, entitlements or EntitlementRecorder(db))
    content = await _get_content(db, box.product_box_id, content_id)
    if not content.object_key:
        raise NotFound("Content file is missing")

    remaining = None
    if box.is_free and box.creator_id != identity.uid:
        await MembershipStore(db).ensure(identity.uid, identity.email)
        limiter = limiter or UsageLimiter(db)
        decision = await limiter.require(identity.uid, UsageCounter.DOWNLOADS)
        remaining = decision.remaining

    url = storage.presign_download(content.object_key)
    log.info(
        "content_download_issued",
        uid=identity.uid,
        product_box_id=box.product_box_id,
        content_id=content.content_id,
    )
    return DownloadResponse(
        content_id=content.content_id,
        download_url=url,
        expires_in=storage.ttl_seconds,
        downloads_remaining=remaining,
    )
