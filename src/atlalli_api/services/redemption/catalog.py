"""Coupon lookups the redemption flow depends on but does not own."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Iterable, Mapping, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from atlalli_api.models.coupon import Coupon, CouponTier


@dataclass(frozen=True)
class CouponRef:
    """The two coupon facts the protocol needs, plus its venue set."""

    id: str
    end_date: date
    tier: CouponTier = CouponTier.STANDARD
    venue_ids: frozenset[str] = field(default_factory=frozenset)

    def has_ended(self, today: date) -> bool:
        # end_date is the last valid day
        return self.end_date < today


class CouponCatalog(Protocol):
    async def get(self, promotion_id: str) -> CouponRef | None:
        """Return the coupon or ``None`` when it is unknown."""


class InMemoryCouponCatalog(CouponCatalog):
    def __init__(self, coupons: Iterable[CouponRef] | Mapping[str, CouponRef] = ()) -> None:
        values = coupons.values() if isinstance(coupons, Mapping) else coupons
        self._coupons = {coupon.id: coupon for coupon in values}

    def add(self, coupon: CouponRef) -> None:
        self._coupons[coupon.id] = coupon

    async def get(self, promotion_id: str) -> CouponRef | None:
        return self._coupons.get(promotion_id)


class SqlCouponCatalog(CouponCatalog):
    """Reads coupons from the ``coupons`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, promotion_id: str) -> CouponRef | None:
        async with self._session_factory() as session:
            result = await session.execute(select(Coupon).where(Coupon.id == promotion_id))
            coupon = result.scalar_one_or_none()
        if coupon is None:
            return None
        return CouponRef(
            id=coupon.id,
            end_date=coupon.end_date,
            tier=CouponTier(coupon.tier),
            venue_ids=frozenset(coupon.venue_ids or []),
        )


__all__ = ["CouponCatalog", "CouponRef", "InMemoryCouponCatalog", "SqlCouponCatalog"]
