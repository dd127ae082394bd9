"""Staff scanning device endpoints driving the per-device state machine."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from atlalli_api.api.dependencies.security import require_staff_api_key
from atlalli_api.api.dependencies.session import (
    StaffContext,
    get_scanner_registry,
    require_staff_context,
)
from atlalli_api.services.redemption import (
    InvalidScannerTransition,
    ScannerBusyError,
    ScannerRegistry,
    ScannerStateMachine,
)


router = APIRouter(
    prefix="/scanners",
    tags=["scanners"],
    dependencies=[Depends(require_staff_api_key)],
)


class ScanRequest(BaseModel):
    code: str = Field(..., description="Raw text read from the code or link")


class ConfirmRequest(BaseModel):
    billReference: str = Field(..., description="Bill or order reference typed by staff")


class ScannedClaimResponse(BaseModel):
    promotionId: str
    venueId: str
    subjectType: str
    guestEmail: Optional[str]
    tier: str


class ScannerStateResponse(BaseModel):
    deviceId: str
    venueId: str
    state: str
    errorReason: Optional[str]
    claim: Optional[ScannedClaimResponse]
    recordId: Optional[str]


def _to_response(machine: ScannerStateMachine) -> ScannerStateResponse:
    snapshot = machine.snapshot().as_dict()
    claim = snapshot["claim"]
    return ScannerStateResponse(
        deviceId=snapshot["device_id"],
        venueId=snapshot["venue_id"],
        state=snapshot["state"],
        errorReason=snapshot["error_reason"],
        claim=(
            ScannedClaimResponse(
                promotionId=claim["promotion_id"],
                venueId=claim["venue_id"],
                subjectType=claim["subject_type"],
                guestEmail=claim["guest_email"],
                tier=claim["tier"],
            )
            if claim
            else None
        ),
        recordId=snapshot["record_id"],
    )


def _attach(registry: ScannerRegistry, device_id: str, context: StaffContext) -> ScannerStateMachine:
    try:
        return registry.attach(device_id, venue_id=context.venue_id, staff_id=context.staff_id)
    except ScannerBusyError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc


@router.get("/{device_id}", response_model=ScannerStateResponse)
async def get_scanner_state(
    device_id: str,
    registry: ScannerRegistry = Depends(get_scanner_registry),
) -> ScannerStateResponse:
    machine = registry.get(device_id)
    if machine is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Scanner not found")
    return _to_response(machine)


@router.post("/{device_id}/scan", response_model=ScannerStateResponse)
async def scan_code(
    device_id: str,
    request: ScanRequest,
    context: StaffContext = Depends(require_staff_context),
    registry: ScannerRegistry = Depends(get_scanner_registry),
) -> ScannerStateResponse:
    """Validate a scanned code; the device moves to ``bill_form`` or ``error``."""

    machine = _attach(registry, device_id, context)
    try:
        await machine.scan(request.code)
    except ScannerBusyError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return _to_response(machine)


@router.post("/{device_id}/confirm", response_model=ScannerStateResponse)
async def confirm_redemption(
    device_id: str,
    request: ConfirmRequest,
    context: StaffContext = Depends(require_staff_context),
    registry: ScannerRegistry = Depends(get_scanner_registry),
) -> ScannerStateResponse:
    """Commit the scanned claim with the staff-supplied bill reference."""

    machine = registry.get(device_id)
    if machine is None or machine.venue_id != context.venue_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Scanner not found")
    try:
        await machine.confirm(request.billReference, staff_id=context.staff_id)
    except (InvalidScannerTransition, ScannerBusyError) as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return _to_response(machine)


@router.post("/{device_id}/reset", response_model=ScannerStateResponse)
async def reset_scanner(
    device_id: str,
    context: StaffContext = Depends(require_staff_context),
    registry: ScannerRegistry = Depends(get_scanner_registry),
) -> ScannerStateResponse:
    machine = _attach(registry, device_id, context)
    try:
        machine.reset()
    except ScannerBusyError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return _to_response(machine)
