"""Staff-facing scan workflow, one state machine per scanning device."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from loguru import logger

from atlalli_api.services.redemption.errors import (
    InvalidScannerTransition,
    LedgerConflictError,
    ScannerBusyError,
)
from atlalli_api.services.redemption.ledger import RedemptionRecord
from atlalli_api.services.redemption.service import (
    BillFormReady,
    RedemptionService,
    RejectionReason,
    VerifiedClaim,
    already_redeemed_reason,
    resolve_window,
)
from atlalli_api.services.redemption.subjects import GuestSubject


class ScannerState(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    BILL_FORM = "bill_form"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class ScannerSnapshot:
    device_id: str
    venue_id: str
    state: ScannerState
    error_reason: RejectionReason | None
    claim: VerifiedClaim | None
    record: RedemptionRecord | None

    def as_dict(self) -> dict[str, Any]:
        claim: dict[str, Any] | None = None
        if self.claim is not None:
            guest = isinstance(self.claim.subject, GuestSubject)
            claim = {
                "promotion_id": self.claim.payload.promotion_id,
                "venue_id": self.claim.payload.venue_id,
                "subject_type": "guest" if guest else "member",
                "guest_email": self.claim.subject.subject_id if guest else None,
                "tier": self.claim.coupon.tier.value,
            }
        return {
            "device_id": self.device_id,
            "venue_id": self.venue_id,
            "state": self.state.value,
            "error_reason": self.error_reason.value if self.error_reason else None,
            "claim": claim,
            "record_id": self.record.id if self.record else None,
        }


class ScannerStateMachine:
    """``idle -> validating -> {bill_form, error}; bill_form -> {success, error}``.

    Only one scan may be in flight per device. ``success`` and ``error`` are
    terminal until :meth:`reset` is called, and a reset is refused while a
    scan or commit is still running.
    """

    def __init__(
        self,
        service: RedemptionService,
        *,
        device_id: str,
        venue_id: str,
        staff_id: str,
        refresh_window_seconds: int | None = None,
    ) -> None:
        self._service = service
        self.device_id = device_id
        self.venue_id = venue_id
        self.staff_id = staff_id
        self.refresh_window_seconds = resolve_window(refresh_window_seconds, service.refresh_window_seconds)
        self._state = ScannerState.IDLE
        self._error_reason: RejectionReason | None = None
        self._claim: VerifiedClaim | None = None
        self._record: RedemptionRecord | None = None
        self._committing = False

    @property
    def state(self) -> ScannerState:
        return self._state

    @property
    def error_reason(self) -> RejectionReason | None:
        return self._error_reason

    @property
    def claim(self) -> VerifiedClaim | None:
        return self._claim

    @property
    def record(self) -> RedemptionRecord | None:
        return self._record

    @property
    def is_busy(self) -> bool:
        return self._state in (ScannerState.VALIDATING, ScannerState.BILL_FORM)

    def snapshot(self) -> ScannerSnapshot:
        return ScannerSnapshot(
            device_id=self.device_id,
            venue_id=self.venue_id,
            state=self._state,
            error_reason=self._error_reason,
            claim=self._claim,
            record=self._record,
        )

    async def scan(self, text: str, *, now: int | None = None) -> ScannerState:
        if self._state is not ScannerState.IDLE:
            raise ScannerBusyError(f"Scanner {self.device_id} is {self._state.value}")

        self._state = ScannerState.VALIDATING
        try:
            outcome = await self._service.scan(
                text,
                self.venue_id,
                now_seconds=now,
                refresh_window_seconds=self.refresh_window_seconds,
            )
        except Exception:
            self._state = ScannerState.IDLE
            logger.exception("Scan validation aborted", device_id=self.device_id)
            raise

        if isinstance(outcome, BillFormReady):
            self._claim = outcome.claim
            self._state = ScannerState.BILL_FORM
        else:
            self._fail(outcome.reason)
        return self._state

    async def confirm(self, bill_reference: str, *, staff_id: str | None = None) -> ScannerState:
        if self._state is not ScannerState.BILL_FORM or self._claim is None:
            raise InvalidScannerTransition(
                f"Cannot confirm from state {self._state.value}"
            )
        if self._committing:
            raise ScannerBusyError(f"Scanner {self.device_id} is already committing")
        if not bill_reference.strip():
            raise ValueError("Bill reference is required")

        self._committing = True
        try:
            self._record = await self._service.confirm_redemption(
                self._claim, bill_reference, staff_id or self.staff_id
            )
        except LedgerConflictError:
            self._fail(already_redeemed_reason(self._claim.subject))
        else:
            self._state = ScannerState.SUCCESS
        finally:
            self._committing = False
        return self._state

    def reset(self) -> None:
        if self._state is ScannerState.VALIDATING or self._committing:
            raise ScannerBusyError(f"Scanner {self.device_id} is busy")
        self._state = ScannerState.IDLE
        self._error_reason = None
        self._claim = None
        self._record = None

    def _fail(self, reason: RejectionReason) -> None:
        self._state = ScannerState.ERROR
        self._error_reason = reason


class ScannerRegistry:
    """Keeps one state machine per device id."""

    def __init__(self, service: RedemptionService) -> None:
        self._service = service
        self._machines: dict[str, ScannerStateMachine] = {}

    def get(self, device_id: str) -> ScannerStateMachine | None:
        return self._machines.get(device_id)

    def attach(self, device_id: str, *, venue_id: str, staff_id: str) -> ScannerStateMachine:
        """Return the device's machine, rebinding it when the venue changes."""

        machine = self._machines.get(device_id)
        if machine is not None and machine.venue_id != venue_id:
            if machine.is_busy:
                raise ScannerBusyError(f"Scanner {device_id} is {machine.state.value}")
            machine = None
        if machine is None:
            machine = ScannerStateMachine(
                self._service,
                device_id=device_id,
                venue_id=venue_id,
                staff_id=staff_id,
            )
            self._machines[device_id] = machine
            logger.info("Scanner attached", device_id=device_id, venue_id=venue_id)
        elif not machine.is_busy:
            machine.staff_id = staff_id
        return machine


__all__ = [
    "ScannerRegistry",
    "ScannerSnapshot",
    "ScannerState",
    "ScannerStateMachine",
]
