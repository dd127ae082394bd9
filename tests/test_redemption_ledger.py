from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from atlalli_api.models.coupon import CouponTier
from atlalli_api.models.redemption import GuestConversionStatus
from atlalli_api.services.redemption import (
    GuestConversion,
    InMemoryRedemptionLedger,
    LedgerConflictError,
    RedemptionRecord,
    SqlRedemptionLedger,
)

NOW = datetime(2026, 9, 21, 12, 0, tzinfo=timezone.utc)


def _member_record(
    nonce: str = "n1",
    *,
    promotion_id: str = "p1",
    venue_id: str = "v1",
    member_id: str = "m1",
    staff_id: str = "staff-1",
    redeemed_at: datetime = NOW,
) -> RedemptionRecord:
    return RedemptionRecord(
        id=RedemptionRecord.record_id_for(nonce, member_id),
        promotion_id=promotion_id,
        venue_id=venue_id,
        bill_reference=f"bill-{nonce}",
        staff_id=staff_id,
        redeemed_at=redeemed_at,
        tier=CouponTier.STANDARD,
        member_id=member_id,
    )


def _guest_record(
    nonce: str = "g1",
    *,
    email: str = "Guest@Example.com",
    promotion_id: str = "p1",
    venue_id: str = "v1",
    staff_id: str = "staff-1",
) -> RedemptionRecord:
    return RedemptionRecord(
        id=RedemptionRecord.record_id_for(nonce, email),
        promotion_id=promotion_id,
        venue_id=venue_id,
        bill_reference=f"bill-{nonce}",
        staff_id=staff_id,
        redeemed_at=NOW,
        tier=CouponTier.PREMIUM,
        guest_email=email,
    )


def _conversion(record: RedemptionRecord) -> GuestConversion:
    assert record.guest_email is not None
    return GuestConversion(
        guest_email=record.guest_email,
        staff_id=record.staff_id,
        venue_id=record.venue_id,
        created_at=record.redeemed_at,
    )


@pytest.fixture(params=["memory", "sql"])
def any_ledger(request, session_factory):
    if request.param == "memory":
        return InMemoryRedemptionLedger()
    return SqlRedemptionLedger(session_factory)


def test_record_requires_exactly_one_identity() -> None:
    with pytest.raises(ValueError):
        RedemptionRecord(
            id="n:x",
            promotion_id="p1",
            venue_id="v1",
            bill_reference="b",
            staff_id="s",
            redeemed_at=NOW,
            tier=CouponTier.STANDARD,
        )
    with pytest.raises(ValueError):
        RedemptionRecord(
            id="n:x",
            promotion_id="p1",
            venue_id="v1",
            bill_reference="b",
            staff_id="s",
            redeemed_at=NOW,
            tier=CouponTier.STANDARD,
            member_id="m1",
            guest_email="a@b.c",
        )


def test_record_id_joins_nonce_and_subject() -> None:
    assert RedemptionRecord.record_id_for("abc", "m1") == "abc:m1"


@pytest.mark.asyncio
async def test_member_redemption_is_scoped_to_promotion_and_venue(any_ledger) -> None:
    await any_ledger.append(_member_record())

    assert await any_ledger.has_member_redeemed("p1", "v1", "m1")
    assert not await any_ledger.has_member_redeemed("p1", "v2", "m1")
    assert not await any_ledger.has_member_redeemed("p2", "v1", "m1")
    assert not await any_ledger.has_member_redeemed("p1", "v1", "m2")


@pytest.mark.asyncio
async def test_guest_redemption_is_global_and_case_insensitive(any_ledger) -> None:
    record = _guest_record()
    await any_ledger.append(record, guest_conversion=_conversion(record))

    assert await any_ledger.has_guest_ever_redeemed("guest@example.com")
    assert await any_ledger.has_guest_ever_redeemed("  GUEST@EXAMPLE.COM ")
    assert not await any_ledger.has_guest_ever_redeemed("other@example.com")

    with pytest.raises(LedgerConflictError):
        await any_ledger.append(_guest_record("g2", email="guest@example.com", promotion_id="p2", venue_id="v2"))


@pytest.mark.asyncio
async def test_duplicate_member_append_conflicts(any_ledger) -> None:
    await any_ledger.append(_member_record("n1"))

    with pytest.raises(LedgerConflictError) as exc_info:
        await any_ledger.append(_member_record("n2"))

    assert exc_info.value.dedup_key == "member:p1:v1:m1"
    assert len(await any_ledger.list_records()) == 1


@pytest.mark.asyncio
async def test_list_records_filters_by_venue(any_ledger) -> None:
    await any_ledger.append(_member_record("n1", venue_id="v1"))
    await any_ledger.append(_member_record("n2", venue_id="v2", redeemed_at=NOW + timedelta(minutes=1)))

    all_records = await any_ledger.list_records()
    v2_records = await any_ledger.list_records(venue_id="v2")

    assert [record.venue_id for record in all_records] == ["v1", "v2"]
    assert [record.id for record in v2_records] == ["n2:m1"]
    assert v2_records[0].redeemed_at == NOW + timedelta(minutes=1)
    assert v2_records[0].tier is CouponTier.STANDARD


@pytest.mark.asyncio
async def test_guest_conversion_lifecycle(any_ledger) -> None:
    record = _guest_record(staff_id="staff-7")
    await any_ledger.append(record, guest_conversion=_conversion(record))

    pending = await any_ledger.list_guest_conversions(status=GuestConversionStatus.PENDING)
    assert [item.guest_email for item in pending] == ["Guest@Example.com"]

    assert await any_ledger.mark_guest_converted("guest@example.com") == 1
    assert await any_ledger.mark_guest_converted("guest@example.com") == 0

    converted = await any_ledger.list_guest_conversions(status=GuestConversionStatus.CONVERTED)
    assert len(converted) == 1
    assert converted[0].converted_at is not None
    assert await any_ledger.list_guest_conversions(status=GuestConversionStatus.PENDING) == []


@pytest.mark.asyncio
async def test_staff_stats_counts_redemptions_and_conversions(any_ledger) -> None:
    await any_ledger.append(_member_record("n1", staff_id="staff-1", redeemed_at=NOW - timedelta(days=1)))
    await any_ledger.append(_member_record("n2", member_id="m2", staff_id="staff-1"))
    await any_ledger.append(_member_record("n3", member_id="m3", staff_id="staff-2"))
    first = _guest_record("g1", email="one@example.com", staff_id="staff-1")
    second = _guest_record("g2", email="two@example.com", staff_id="staff-1")
    await any_ledger.append(first, guest_conversion=_conversion(first))
    await any_ledger.append(second, guest_conversion=_conversion(second))
    await any_ledger.mark_guest_converted("two@example.com")

    stats = await any_ledger.staff_stats("staff-1", since=NOW - timedelta(hours=1))

    assert stats.redeemed == 3
    assert stats.pending_conversions == 1
    assert stats.successful_conversions == 1


@pytest.mark.asyncio
async def test_in_memory_concurrent_appends_commit_once() -> None:
    ledger = InMemoryRedemptionLedger()

    results = await asyncio.gather(
        ledger.append(_member_record("n1")),
        ledger.append(_member_record("n2")),
        return_exceptions=True,
    )

    assert sum(isinstance(item, RedemptionRecord) for item in results) == 1
    assert sum(isinstance(item, LedgerConflictError) for item in results) == 1


@pytest.mark.asyncio
async def test_sql_concurrent_appends_commit_once(file_session_factory) -> None:
    first = SqlRedemptionLedger(file_session_factory)
    second = SqlRedemptionLedger(file_session_factory)

    results = await asyncio.gather(
        first.append(_member_record("n1")),
        second.append(_member_record("n2")),
        return_exceptions=True,
    )

    assert sum(isinstance(item, RedemptionRecord) for item in results) == 1
    assert sum(isinstance(item, LedgerConflictError) for item in results) == 1
    assert len(await first.list_records()) == 1


@pytest.mark.asyncio
async def test_member_ids_containing_colons_do_not_collide(any_ledger) -> None:
    await any_ledger.append(_member_record("n1", promotion_id="a:b", venue_id="c", member_id="d"))

    assert await any_ledger.has_member_redeemed("a:b", "c", "d")
    assert not await any_ledger.has_member_redeemed("a", "b:c", "d")
    assert not await any_ledger.has_member_redeemed("a", "b", "c:d")

    record = await any_ledger.append(_member_record("n2", promotion_id="a", venue_id="b:c", member_id="d"))
    assert record.dedup_key != _member_record("n1", promotion_id="a:b", venue_id="c", member_id="d").dedup_key
    assert len(await any_ledger.list_records()) == 2
