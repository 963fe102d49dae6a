"""Membership (tier) and connected payment account models."""

from __future__ import annotations

from datetime import date, datetime
from typing import Optional

from sqlalchemy import Boolean, CheckConstraint, Date, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from creator_vault.models.base import Base


class Membership(Base):
    """One row per Firebase uid; created lazily, never deleted."""

    __tablename__ = "memberships"

    uid: Mapped[str] = mapped_column(String(128), primary_key=True)
    email: Mapped[Optional[str]] = mapped_column(String(320), nullable=True)
    plan: Mapped[str] = mapped_column(String(20), default="free", nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="inactive", nullable=False)
    stripe_customer_id: Mapped[Optional[str]] = mapped_column(
        String(255), unique=True, nullable=True
    )
    stripe_subscription_id: Mapped[Optional[str]] = mapped_column(
        String(255), unique=True, nullable=True
    )
    price_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    current_period_end: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    cancel_at_period_end: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    downloads_this_period: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False
    )
    bundles_created: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint("plan IN ('free', 'creator_pro')", name="ck_membership_plan"),
        CheckConstraint(
            "status IN ('active', 'inactive', 'canceled', 'past_due')",
            name="ck_membership_status",
        ),
        CheckConstraint(
            "status <> 'active' OR plan = 'creator_pro'",
            name="ck_membership_active_is_pro",
        ),
        CheckConstraint(
            "plan <> 'free' OR stripe_subscription_id IS NULL",
            name="ck_membership_free_has_no_subscription",
        ),
        CheckConstraint(
            "downloads_this_period >= 0 AND bundles_created >= 0",
            name="ck_membership_counters_nonneg",
        ),
    )


class ConnectedAccount(Base):
    """Cached Stripe Connect state for a creator. Stripe is the source of truth."""

    __tablename__ = "connected_accounts"

    creator_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    stripe_account_id: Mapped[str] = mapped_column(
        String(255), unique=True, nullable=False
    )
    charges_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    payouts_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    details_submitted: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    connected_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=datetime.utcnow, nullable=False
    )
    refreshed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=datetime.utcnow, nullable=False
    )
