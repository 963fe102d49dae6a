"""Bundles, purchases, access grants, and the webhook event log."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from creator_vault.models.base import Base


class ProductBox(Base):
    __tablename__ = "product_boxes"

    product_box_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    creator_id: Mapped[str] = mapped_column(String(128), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="usd", nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint("price_cents >= 0", name="ck_product_box_price_nonneg"),
    )

    contents: Mapped[list[ProductBoxContent]] = relationship(
        back_populates="product_box", lazy="selectin"
    )


class ProductBoxContent(Base):
    __tablename__ = "product_box_contents"

    content_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    product_box_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("product_boxes.product_box_id"), nullable=False
    )
    title: Mapped[Optional[str]] = mapped_column(String(300), nullable=True)
    object_key: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    mime_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    file_size: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=datetime.utcnow, nullable=False
    )

    product_box: Mapped[ProductBox] = relationship(back_populates="contents")


class WebhookEvent(Base):
    """Per-event state: processing -> recorded | failed."""

    __tablename__ = "webhook_events"

    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=datetime.utcnow, nullable=False
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('processing', 'recorded', 'failed')",
            name="ck_webhook_event_status",
        ),
    )


class Purchase(Base):
    """Keyed by the Stripe checkout session id, which is the idempotency key."""

    __tablename__ = "purchases"

    purchase_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    buyer_uid: Mapped[str] = mapped_column(String(128), nullable=False)
    creator_id: Mapped[str] = mapped_column(String(128), nullable=False)
    product_box_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("product_boxes.product_box_id"), nullable=False
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    payment_intent_id: Mapped[Optional[str]] = mapped_column(
        String(255), unique=True, nullable=True
    )
    source_event_id: Mapped[str] = mapped_column(
        String(255), ForeignKey("webhook_events.event_id"), nullable=False
    )
    purchased_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=datetime.utcnow, nullable=False
    )
    refunded_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_purchase_amount_nonneg"),
        CheckConstraint(
            "status IN ('completed', 'failed', 'refunded')",
            name="ck_purchase_status",
        ),
    )


class AccessGrant(Base):
    __tablename__ = "access_grants"

    buyer_uid: Mapped[str] = mapped_column(String(128), primary_key=True)
    product_box_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("product_boxes.product_box_id"),
        primary_key=True,
    )
    purchase_id: Mapped[str] = mapped_column(
        String(255), ForeignKey("purchases.purchase_id"), nullable=False
    )
    granted: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    granted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=datetime.utcnow, nullable=False
    )
