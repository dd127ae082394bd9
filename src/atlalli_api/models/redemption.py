"""Redemption ledger tables."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Enum as SqlEnum,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID

from atlalli_api.db.base import Base
from atlalli_api.models.coupon import CouponTier


class RedemptionRecordRow(Base):
    """Append-only ledger entry written when staff confirm a redemption."""

    __tablename__ = "redemption_records"
    __table_args__ = (
        UniqueConstraint("dedup_key", name="uq_redemption_records_dedup_key"),
        CheckConstraint(
            "(member_id IS NULL) <> (guest_email IS NULL)",
            name="ck_redemption_records_single_identity",
        ),
    )

    id = Column(String, primary_key=True)
    dedup_key = Column(String, nullable=False)
    promotion_id = Column(String, nullable=False, index=True)
    venue_id = Column(String, nullable=False, index=True)
    member_id = Column(String, nullable=True, index=True)
    guest_email = Column(String, nullable=True, index=True)
    bill_reference = Column(String, nullable=False)
    staff_id = Column(String, nullable=False, index=True)
    tier = Column(SqlEnum(CouponTier, name="coupon_tier"), nullable=False)
    redeemed_at = Column(DateTime(timezone=True), nullable=False)


class GuestConversionStatus(str, Enum):
    """Lifecycle of the invitation sent to guests after their one redemption."""

    PENDING = "pending"
    CONVERTED = "converted"


class GuestConversionRow(Base):
    """Tracks guests who should be invited to become members."""

    __tablename__ = "guest_conversions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    guest_email = Column(String, nullable=False, index=True)
    staff_id = Column(String, nullable=False, index=True)
    venue_id = Column(String, nullable=False)
    status = Column(
        SqlEnum(GuestConversionStatus, name="guest_conversion_status"),
        nullable=False,
        default=GuestConversionStatus.PENDING,
        server_default=GuestConversionStatus.PENDING.name,
    )
    created_at = Column(DateTime(timezone=True), nullable=False)
    converted_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
