"""API endpoints for token issuance, redeem links, and ledger reporting."""

from __future__ import annotations

from datetime import datetime, time, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from atlalli_api.api.dependencies.security import require_staff_api_key
from atlalli_api.api.dependencies.session import get_redemption_service
from atlalli_api.core.settings import settings
from atlalli_api.models.redemption import GuestConversionStatus
from atlalli_api.services.redemption import (
    RedemptionService,
    UnknownVenueError,
    build_redeem_link,
    encode_token,
)


router = APIRouter(prefix="/redemptions", tags=["redemptions"])


class TokenRequest(BaseModel):
    promotionId: str = Field(..., min_length=1, description="Promotion being redeemed")
    venueId: str = Field(..., min_length=1, description="Venue the token is bound to")
    subjectId: str = Field(..., min_length=1, description="Hashed member id or guest email")
    locale: Optional[str] = Field(None, description="Locale segment for the redeem link")


class TokenResponse(BaseModel):
    token: str
    link: str
    issuedAt: int
    refreshWindowSeconds: int


class LinkStatusResponse(BaseModel):
    valid: bool
    reason: Optional[str]
    promotionId: Optional[str]
    venueId: Optional[str]
    issuedAt: Optional[int]


class RedemptionRecordResponse(BaseModel):
    id: str
    promotionId: str
    venueId: str
    memberId: Optional[str]
    guestEmail: Optional[str]
    billReference: str
    staffId: str
    tier: str
    redeemedAt: datetime


class GuestConversionResponse(BaseModel):
    guestEmail: str
    staffId: str
    venueId: str
    status: str
    createdAt: datetime
    convertedAt: Optional[datetime]


class GuestConversionUpdateResponse(BaseModel):
    guestEmail: str
    updated: int


class StaffStatsResponse(BaseModel):
    staffId: str
    since: datetime
    redeemed: int
    pendingConversions: int
    successfulConversions: int


@router.post("/tokens", response_model=TokenResponse, status_code=status.HTTP_201_CREATED)
async def issue_redemption_token(
    request: TokenRequest,
    service: RedemptionService = Depends(get_redemption_service),
) -> TokenResponse:
    """Sign a fresh, short-lived token for an open redemption screen."""

    try:
        token = await service.issue_token(request.promotionId, request.venueId, request.subjectId)
    except UnknownVenueError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown venue") from exc

    return TokenResponse(
        token=encode_token(token),
        link=build_redeem_link(settings.public_base_url, request.locale or settings.default_locale, token),
        issuedAt=token.payload.issued_at,
        refreshWindowSeconds=service.refresh_window_seconds,
    )


@router.get("/links/{encoded}", response_model=LinkStatusResponse)
async def get_redeem_link_status(
    encoded: str,
    service: RedemptionService = Depends(get_redemption_service),
) -> LinkStatusResponse:
    """Check a redeem link against the fixed link age limit."""

    result = await service.check_static_link(encoded)
    payload = result.payload
    return LinkStatusResponse(
        valid=result.valid,
        reason=result.reason.value if result.reason else None,
        promotionId=payload.promotion_id if payload else None,
        venueId=payload.venue_id if payload else None,
        issuedAt=payload.issued_at if payload else None,
    )


@router.get(
    "/records",
    response_model=List[RedemptionRecordResponse],
    dependencies=[Depends(require_staff_api_key)],
)
async def list_redemption_records(
    venue_id: str | None = Query(None, alias="venueId"),
    service: RedemptionService = Depends(get_redemption_service),
) -> List[RedemptionRecordResponse]:
    records = await service.ledger.list_records(venue_id=venue_id)
    return [
        RedemptionRecordResponse(
            id=record.id,
            promotionId=record.promotion_id,
            venueId=record.venue_id,
            memberId=record.member_id,
            guestEmail=record.guest_email,
            billReference=record.bill_reference,
            staffId=record.staff_id,
            tier=record.tier.value,
            redeemedAt=record.redeemed_at,
        )
        for record in records
    ]


@router.get(
    "/guest-conversions",
    response_model=List[GuestConversionResponse],
    dependencies=[Depends(require_staff_api_key)],
)
async def list_guest_conversions(
    status_filter: str | None = Query(None, alias="status"),
    service: RedemptionService = Depends(get_redemption_service),
) -> List[GuestConversionResponse]:
    conversion_status: GuestConversionStatus | None = None
    if status_filter:
        try:
            conversion_status = GuestConversionStatus(status_filter)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=f"Unsupported status: {status_filter}") from exc

    conversions = await service.ledger.list_guest_conversions(status=conversion_status)
    return [
        GuestConversionResponse(
            guestEmail=item.guest_email,
            staffId=item.staff_id,
            venueId=item.venue_id,
            status=item.status.value,
            createdAt=item.created_at,
            convertedAt=item.converted_at,
        )
        for item in conversions
    ]


@router.post(
    "/guest-conversions/{guest_email}/convert",
    response_model=GuestConversionUpdateResponse,
    dependencies=[Depends(require_staff_api_key)],
)
async def convert_guest(
    guest_email: str,
    service: RedemptionService = Depends(get_redemption_service),
) -> GuestConversionUpdateResponse:
    """Mark a guest's pending conversion markers as converted."""

    updated = await service.ledger.mark_guest_converted(guest_email)
    if updated == 0:
        raise HTTPException(status_code=404, detail="No pending conversion for guest")
    return GuestConversionUpdateResponse(guestEmail=guest_email, updated=updated)


@router.get(
    "/staff/{staff_id}/stats",
    response_model=StaffStatsResponse,
    dependencies=[Depends(require_staff_api_key)],
)
async def get_staff_stats(
    staff_id: str,
    since: datetime | None = Query(None, description="Defaults to the start of the current UTC day"),
    service: RedemptionService = Depends(get_redemption_service),
) -> StaffStatsResponse:
    if since is None:
        today = datetime.fromtimestamp(service.now(), tz=timezone.utc).date()
        since = datetime.combine(today, time.min, tzinfo=timezone.utc)
    elif since.tzinfo is None:
        since = since.replace(tzinfo=timezone.utc)

    stats = await service.ledger.staff_stats(staff_id, since=since)
    return StaffStatsResponse(
        staffId=staff_id,
        since=since,
        redeemed=stats.redeemed,
        pendingConversions=stats.pending_conversions,
        successfulConversions=stats.successful_conversions,
    )
