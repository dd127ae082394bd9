"""SQLAlchemy models package."""

from .coupon import Coupon, CouponTier  # noqa: F401
from .redemption import (  # noqa: F401
    GuestConversionRow,
    GuestConversionStatus,
    RedemptionRecordRow,
)
