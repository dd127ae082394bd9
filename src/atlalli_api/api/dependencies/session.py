"""Request-scoped dependencies for staff scanning devices."""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import Header, HTTPException, Request, status

from atlalli_api.services.redemption import RedemptionService, ScannerRegistry


@dataclass(frozen=True)
class StaffContext:
    staff_id: str
    venue_id: str


async def require_staff_context(
    staff_id: str | None = Header(None, alias="X-Staff-Id"),
    venue_id: str | None = Header(None, alias="X-Venue-Id"),
) -> StaffContext:
    """Resolve the operating staff member and the venue the device belongs to."""

    if not staff_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing staff context",
        )
    if not venue_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing scanning venue",
        )
    return StaffContext(staff_id=staff_id, venue_id=venue_id)


def get_redemption_service(request: Request) -> RedemptionService:
    return request.app.state.redemption_service


def get_scanner_registry(request: Request) -> ScannerRegistry:
    return request.app.state.scanner_registry
