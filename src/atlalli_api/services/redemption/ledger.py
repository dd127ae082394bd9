"""Append-only redemption ledger and the eligibility queries built on it."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Protocol, Sequence

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from atlalli_api.models.coupon import CouponTier
from atlalli_api.models.redemption import (
    GuestConversionRow,
    GuestConversionStatus,
    RedemptionRecordRow,
)
from atlalli_api.services.redemption.errors import LedgerConflictError
from atlalli_api.services.redemption.subjects import guest_dedup_key, member_dedup_key


@dataclass(frozen=True)
class RedemptionRecord:
    """A committed redemption. Exactly one of ``member_id``/``guest_email`` is set."""

    id: str
    promotion_id: str
    venue_id: str
    bill_reference: str
    staff_id: str
    redeemed_at: datetime
    tier: CouponTier
    member_id: str | None = None
    guest_email: str | None = None

    def __post_init__(self) -> None:
        if (self.member_id is None) == (self.guest_email is None):
            raise ValueError("Redemption record needs exactly one of member_id or guest_email")

    @staticmethod
    def record_id_for(nonce: str, subject_id: str) -> str:
        return f"{nonce}:{subject_id}"

    @property
    def is_guest(self) -> bool:
        return self.guest_email is not None

    @property
    def dedup_key(self) -> str:
        if self.guest_email is not None:
            return guest_dedup_key(self.guest_email)
        return member_dedup_key(self.promotion_id, self.venue_id, self.member_id or "")


@dataclass(frozen=True)
class GuestConversion:
    guest_email: str
    staff_id: str
    venue_id: str
    created_at: datetime
    status: GuestConversionStatus = GuestConversionStatus.PENDING
    converted_at: datetime | None = None


@dataclass(frozen=True)
class StaffStats:
    redeemed: int
    pending_conversions: int
    successful_conversions: int


class RedemptionLedger(Protocol):
    """Repository contract; ``append`` must be an atomic check-and-insert."""

    async def has_member_redeemed(self, promotion_id: str, venue_id: str, member_id: str) -> bool:
        ...

    async def has_guest_ever_redeemed(self, guest_email: str) -> bool:
        ...

    async def append(
        self,
        record: RedemptionRecord,
        *,
        guest_conversion: GuestConversion | None = None,
    ) -> RedemptionRecord:
        ...

    async def list_records(self, *, venue_id: str | None = None) -> Sequence[RedemptionRecord]:
        ...

    async def list_guest_conversions(
        self, *, status: GuestConversionStatus | None = None
    ) -> Sequence[GuestConversion]:
        ...

    async def mark_guest_converted(self, guest_email: str) -> int:
        ...

    async def staff_stats(self, staff_id: str, *, since: datetime) -> StaffStats:
        ...


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class InMemoryRedemptionLedger(RedemptionLedger):
    """Single-process ledger guarded by an asyncio lock.

    Suitable for one event loop only; multi-device deployments use
    :class:`SqlRedemptionLedger`.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._records: dict[str, RedemptionRecord] = {}
        self._dedup_index: dict[str, str] = {}
        self._conversions: list[GuestConversion] = []

    async def has_member_redeemed(self, promotion_id: str, venue_id: str, member_id: str) -> bool:
        return member_dedup_key(promotion_id, venue_id, member_id) in self._dedup_index

    async def has_guest_ever_redeemed(self, guest_email: str) -> bool:
        return guest_dedup_key(guest_email) in self._dedup_index

    async def append(
        self,
        record: RedemptionRecord,
        *,
        guest_conversion: GuestConversion | None = None,
    ) -> RedemptionRecord:
        async with self._lock:
            dedup_key = record.dedup_key
            if record.id in self._records or dedup_key in self._dedup_index:
                raise LedgerConflictError(dedup_key, record_id=record.id)
            self._records[record.id] = record
            self._dedup_index[dedup_key] = record.id
            if guest_conversion is not None:
                self._conversions.append(guest_conversion)
        return record

    async def list_records(self, *, venue_id: str | None = None) -> Sequence[RedemptionRecord]:
        records = sorted(self._records.values(), key=lambda item: item.redeemed_at)
        if venue_id is None:
            return records
        return [record for record in records if record.venue_id == venue_id]

    async def list_guest_conversions(
        self, *, status: GuestConversionStatus | None = None
    ) -> Sequence[GuestConversion]:
        if status is None:
            return list(self._conversions)
        return [item for item in self._conversions if item.status == status]

    async def mark_guest_converted(self, guest_email: str) -> int:
        target = guest_email.strip().lower()
        now = datetime.now(timezone.utc)
        updated = 0
        async with self._lock:
            for index, item in enumerate(self._conversions):
                if item.guest_email.lower() == target and item.status == GuestConversionStatus.PENDING:
                    self._conversions[index] = replace(
                        item, status=GuestConversionStatus.CONVERTED, converted_at=now
                    )
                    updated += 1
        return updated

    async def staff_stats(self, staff_id: str, *, since: datetime) -> StaffStats:
        since = _as_utc(since)
        redeemed = sum(
            1
            for record in self._records.values()
            if record.staff_id == staff_id and _as_utc(record.redeemed_at) >= since
        )
        pending = sum(
            1
            for item in self._conversions
            if item.staff_id == staff_id and item.status == GuestConversionStatus.PENDING
        )
        converted = sum(
            1
            for item in self._conversions
            if item.staff_id == staff_id and item.status == GuestConversionStatus.CONVERTED
        )
        return StaffStats(redeemed=redeemed, pending_conversions=pending, successful_conversions=converted)


class SqlRedemptionLedger(RedemptionLedger):
    """Ledger backed by ``redemption_records``.

    Uniqueness of ``id`` and ``dedup_key`` is enforced by the database, so
    concurrent appends from several scanning devices cannot both commit.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def _dedup_key_exists(self, dedup_key: str) -> bool:
        async with self._session_factory() as session:
            stmt = select(RedemptionRecordRow.id).where(RedemptionRecordRow.dedup_key == dedup_key).limit(1)
            result = await session.execute(stmt)
            return result.scalar_one_or_none() is not None

    async def has_member_redeemed(self, promotion_id: str, venue_id: str, member_id: str) -> bool:
        return await self._dedup_key_exists(member_dedup_key(promotion_id, venue_id, member_id))

    async def has_guest_ever_redeemed(self, guest_email: str) -> bool:
        return await self._dedup_key_exists(guest_dedup_key(guest_email))

    async def append(
        self,
        record: RedemptionRecord,
        *,
        guest_conversion: GuestConversion | None = None,
    ) -> RedemptionRecord:
        async with self._session_factory() as session:
            session.add(
                RedemptionRecordRow(
                    id=record.id,
                    dedup_key=record.dedup_key,
                    promotion_id=record.promotion_id,
                    venue_id=record.venue_id,
                    member_id=record.member_id,
                    guest_email=record.guest_email,
                    bill_reference=record.bill_reference,
                    staff_id=record.staff_id,
                    tier=record.tier,
                    redeemed_at=record.redeemed_at,
                )
            )
            if guest_conversion is not None:
                session.add(
                    GuestConversionRow(
                        guest_email=guest_conversion.guest_email,
                        staff_id=guest_conversion.staff_id,
                        venue_id=guest_conversion.venue_id,
                        status=guest_conversion.status,
                        created_at=guest_conversion.created_at,
                    )
                )
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                logger.warning(
                    "Detected race when appending redemption record",
                    record_id=record.id,
                    venue_id=record.venue_id,
                )
                raise LedgerConflictError(record.dedup_key, record_id=record.id) from exc
        return record

    async def list_records(self, *, venue_id: str | None = None) -> Sequence[RedemptionRecord]:
        stmt = select(RedemptionRecordRow).order_by(RedemptionRecordRow.redeemed_at.asc())
        if venue_id is not None:
            stmt = stmt.where(RedemptionRecordRow.venue_id == venue_id)
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [
            RedemptionRecord(
                id=row.id,
                promotion_id=row.promotion_id,
                venue_id=row.venue_id,
                bill_reference=row.bill_reference,
                staff_id=row.staff_id,
                redeemed_at=_as_utc(row.redeemed_at),
                tier=CouponTier(row.tier),
                member_id=row.member_id,
                guest_email=row.guest_email,
            )
            for row in rows
        ]

    async def list_guest_conversions(
        self, *, status: GuestConversionStatus | None = None
    ) -> Sequence[GuestConversion]:
        stmt = select(GuestConversionRow).order_by(GuestConversionRow.created_at.asc())
        if status is not None:
            stmt = stmt.where(GuestConversionRow.status == status)
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [
            GuestConversion(
                guest_email=row.guest_email,
                staff_id=row.staff_id,
                venue_id=row.venue_id,
                created_at=_as_utc(row.created_at),
                status=GuestConversionStatus(row.status),
                converted_at=_as_utc(row.converted_at) if row.converted_at else None,
            )
            for row in rows
        ]

    async def mark_guest_converted(self, guest_email: str) -> int:
        stmt = (
            update(GuestConversionRow)
            .where(func.lower(GuestConversionRow.guest_email) == guest_email.strip().lower())
            .where(GuestConversionRow.status == GuestConversionStatus.PENDING)
            .values(status=GuestConversionStatus.CONVERTED, converted_at=datetime.now(timezone.utc))
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        return int(result.rowcount or 0)

    async def staff_stats(self, staff_id: str, *, since: datetime) -> StaffStats:
        redeemed_stmt = (
            select(func.count())
            .select_from(RedemptionRecordRow)
            .where(RedemptionRecordRow.staff_id == staff_id)
            .where(RedemptionRecordRow.redeemed_at >= _as_utc(since))
        )
        conversions_stmt = (
            select(GuestConversionRow.status, func.count())
            .where(GuestConversionRow.staff_id == staff_id)
            .group_by(GuestConversionRow.status)
        )
        async with self._session_factory() as session:
            redeemed = (await session.execute(redeemed_stmt)).scalar_one()
            by_status = {
                GuestConversionStatus(status): count
                for status, count in (await session.execute(conversions_stmt)).all()
            }
        return StaffStats(
            redeemed=int(redeemed),
            pending_conversions=int(by_status.get(GuestConversionStatus.PENDING, 0)),
            successful_conversions=int(by_status.get(GuestConversionStatus.CONVERTED, 0)),
        )


__all__ = [
    "GuestConversion",
    "InMemoryRedemptionLedger",
    "RedemptionLedger",
    "RedemptionRecord",
    "SqlRedemptionLedger",
    "StaffStats",
]
