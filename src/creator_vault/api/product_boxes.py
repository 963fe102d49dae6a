"""Bundle (product box) and content API endpoints."""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from creator_vault.api.dependencies import get_current_identity, get_media_storage
from creator_vault.database import get_db
from creator_vault.errors import NotFound
from creator_vault.integrations.media_storage import MediaStorage
from creator_vault.services.auth_service import Identity
from creator_vault.services.product_box_service import (
    ContentCreate,
    ContentResponse,
    ContentUploadResponse,
    DownloadResponse,
    ProductBoxCreate,
    ProductBoxResponse,
    add_content,
    create_product_box,
    download_content,
    get_product_box,
    list_content,
    list_creator_boxes,
)

router = APIRouter(prefix="/api/v1/product-boxes", tags=["product-boxes"])


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post("", response_model=ProductBoxResponse, status_code=status.HTTP_201_CREATED)
async def create_box(
    body: ProductBoxCreate,
    identity: Identity = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
):
    """Create a bundle. Free-tier creators are capped by the bundles quota (429)."""
    box = await create_product_box(db, identity, body)
    await db.commit()
    return box


@router.get("/mine", response_model=list[ProductBoxResponse])
async def list_my_boxes(
    identity: Identity = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
):
    return await list_creator_boxes(db, identity.uid)


@router.get("/{product_box_id}", response_model=ProductBoxResponse)
async def read_box(
    product_box_id: uuid.UUID,
    identity: Identity = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
):
    box = await get_product_box(db, product_box_id)
    if not box.active and box.creator_id != identity.uid:
        raise NotFound("Bundle not found")
    return box


@router.post(
    "/{product_box_id}/content",
    response_model=ContentUploadResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_box_content(
    product_box_id: uuid.UUID,
    body: ContentCreate,
    identity: Identity = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
    storage: MediaStorage = Depends(get_media_storage),
):
    """Register a content item and return a presigned upload URL."""
    upload = await add_content(db, storage, identity, product_box_id, body)
    await db.commit()
    return upload


@router.get("/{product_box_id}/content", response_model=list[ContentResponse])
async def list_box_content(
    product_box_id: uuid.UUID,
    identity: Identity = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
):
    """List content for the creator, grant holders, or anyone when the bundle is free."""
    return await list_content(db, identity, product_box_id)


@router.post(
    "/{product_box_id}/content/{content_id}/download",
    response_model=DownloadResponse,
)
async def download_box_content(
    product_box_id: uuid.UUID,
    content_id: uuid.UUID,
    identity: Identity = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
    storage: MediaStorage = Depends(get_media_storage),
):
    """Issue a presigned download URL after the access and quota checks."""
    download = await download_content(db, storage, identity, product_box_id, content_id)
    await db.commit()
    return download
