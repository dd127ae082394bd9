"""Read-only coupon catalog table consumed by the redemption flow."""

from __future__ import annotations

from enum import Enum

from sqlalchemy import JSON, Column, Date, DateTime, Enum as SqlEnum, String, func

from atlalli_api.db.base import Base


class CouponTier(str, Enum):
    """Coupon classification captured on every redemption record."""

    STANDARD = "standard"
    PREMIUM = "premium"


class Coupon(Base):
    """Promotion offered at one or more venues until ``end_date`` (inclusive)."""

    __tablename__ = "coupons"

    id = Column(String, primary_key=True)
    title = Column(String, nullable=True)
    venue_ids = Column(JSON, nullable=False, default=list)
    end_date = Column(Date, nullable=False)
    tier = Column(
        SqlEnum(CouponTier, name="coupon_tier"),
        nullable=False,
        default=CouponTier.STANDARD,
        server_default=CouponTier.STANDARD.name,
    )
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
