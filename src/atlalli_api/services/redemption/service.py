"""Issuance, scan validation and commit entry points of the redemption protocol."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Union

from loguru import logger

from atlalli_api.core.settings import settings
from atlalli_api.observability.redemption import RedemptionObservabilityStore, get_redemption_store
from atlalli_api.observability.tracing import get_tracer
from atlalli_api.services.redemption.catalog import CouponCatalog, CouponRef
from atlalli_api.services.redemption.codec import decode_token, encode_token, extract_scan_payload
from atlalli_api.services.redemption.errors import LedgerConflictError
from atlalli_api.services.redemption.ledger import GuestConversion, RedemptionLedger, RedemptionRecord
from atlalli_api.services.redemption.subjects import GuestSubject, MemberSubject, Subject, classify_subject
from atlalli_api.services.redemption.tokens import (
    Clock,
    RedemptionPayload,
    SignedToken,
    TokenSigner,
    TokenVerifier,
    VerificationFailure,
    unix_now,
)
from atlalli_api.services.secrets.venues import VenueKeyStore


class RejectionReason(str, Enum):
    """Reason codes surfaced to the staff UI.

    Signature and unknown-venue failures both collapse into ``NOT_RECOGNIZED``.
    """

    NOT_RECOGNIZED = "not_recognized"
    LOCATION_MISMATCH = "location_mismatch"
    PROMOTION_ENDED = "promotion_ended"
    STALE_SCREENSHOT = "stale_screenshot"
    ALREADY_REDEEMED_MEMBER = "already_redeemed_member"
    ALREADY_REDEEMED_GUEST = "already_redeemed_guest"


def already_redeemed_reason(subject: Subject) -> RejectionReason:
    if isinstance(subject, GuestSubject):
        return RejectionReason.ALREADY_REDEEMED_GUEST
    return RejectionReason.ALREADY_REDEEMED_MEMBER


def resolve_window(value: int | None, default: int) -> int:
    """Return ``value`` unless it is ``None``; windows must be positive."""

    window = default if value is None else value
    if window <= 0:
        raise ValueError(f"Window must be a positive number of seconds, got {window}")
    return window


def is_stale(issued_at: int, now: int, window_seconds: int) -> bool:
    """A token exactly ``window_seconds`` old is still live."""

    return now - issued_at > window_seconds


@dataclass(frozen=True)
class VerifiedClaim:
    payload: RedemptionPayload
    subject: Subject
    coupon: CouponRef

    @property
    def record_id(self) -> str:
        return RedemptionRecord.record_id_for(self.payload.nonce, self.payload.subject_id)


@dataclass(frozen=True)
class BillFormReady:
    claim: VerifiedClaim


@dataclass(frozen=True)
class Rejected:
    reason: RejectionReason


ScanOutcome = Union[BillFormReady, Rejected]


class LinkStatusReason(str, Enum):
    INVALID = "invalid"
    UNKNOWN_VENUE = "unknown_venue"
    BAD_SIGNATURE = "bad_signature"
    EXPIRED = "expired"


@dataclass(frozen=True)
class LinkStatus:
    valid: bool
    reason: LinkStatusReason | None = None
    payload: RedemptionPayload | None = None


class RedemptionService:
    """Coordinates the signer, verifier, ledger and coupon catalog."""

    def __init__(
        self,
        *,
        signer: TokenSigner,
        verifier: TokenVerifier,
        ledger: RedemptionLedger,
        catalog: CouponCatalog,
        clock: Clock | None = None,
        refresh_window_seconds: int | None = None,
        static_link_max_age_seconds: int | None = None,
        observability: RedemptionObservabilityStore | None = None,
    ) -> None:
        self._signer = signer
        self._verifier = verifier
        self._ledger = ledger
        self._catalog = catalog
        self._clock = clock or unix_now
        self.refresh_window_seconds = resolve_window(
            refresh_window_seconds, settings.redemption_refresh_window_seconds
        )
        self.static_link_max_age_seconds = resolve_window(
            static_link_max_age_seconds, settings.static_link_max_age_seconds
        )
        self._observability = observability or get_redemption_store()

    @classmethod
    def from_key_store(
        cls,
        key_store: VenueKeyStore,
        *,
        ledger: RedemptionLedger,
        catalog: CouponCatalog,
        clock: Clock | None = None,
        **kwargs,
    ) -> "RedemptionService":
        return cls(
            signer=TokenSigner(key_store, clock=clock),
            verifier=TokenVerifier(key_store),
            ledger=ledger,
            catalog=catalog,
            clock=clock,
            **kwargs,
        )

    @property
    def ledger(self) -> RedemptionLedger:
        return self._ledger

    @property
    def signer(self) -> TokenSigner:
        return self._signer

    def now(self) -> int:
        return self._clock()

    async def issue_token(self, promotion_id: str, venue_id: str, subject_id: str) -> SignedToken:
        """Sign a fresh token; raises ``UnknownVenueError`` for unconfigured venues."""

        token = await self._signer.sign(promotion_id, venue_id, subject_id)
        self._observability.record_token_issued(venue_id)
        return token

    async def request_token(self, promotion_id: str, venue_id: str, subject_id: str) -> str:
        token = await self.issue_token(promotion_id, venue_id, subject_id)
        return encode_token(token)

    async def scan(
        self,
        encoded: str,
        scanning_venue_id: str,
        now_seconds: int | None = None,
        refresh_window_seconds: int | None = None,
    ) -> ScanOutcome:
        """Run every eligibility check for a scanned code, in order."""

        now = self.now() if now_seconds is None else now_seconds
        window = resolve_window(refresh_window_seconds, self.refresh_window_seconds)
        with get_tracer().start_as_current_span("redemption.scan") as span:
            span.set_attribute("redemption.venue_id", scanning_venue_id)
            outcome = await self._evaluate_scan(encoded, scanning_venue_id, now, window)
            span.set_attribute(
                "redemption.outcome",
                outcome.reason.value if isinstance(outcome, Rejected) else "bill_form_ready",
            )

        if isinstance(outcome, Rejected):
            self._observability.record_scan(outcome.reason.value)
            logger.info(
                "Scan rejected",
                venue_id=scanning_venue_id,
                reason=outcome.reason.value,
            )
        else:
            self._observability.record_scan("bill_form_ready")
            logger.info(
                "Scan accepted",
                venue_id=scanning_venue_id,
                promotion_id=outcome.claim.payload.promotion_id,
                guest=isinstance(outcome.claim.subject, GuestSubject),
            )
        return outcome

    async def _evaluate_scan(
        self,
        encoded: str,
        scanning_venue_id: str,
        now: int,
        window: int,
    ) -> ScanOutcome:
        token = extract_scan_payload(encoded)
        if token is None:
            return Rejected(RejectionReason.NOT_RECOGNIZED)

        verification = await self._verifier.verify(token)
        if not verification.valid:
            logger.debug("Token verification failed", failure=verification.failure.value)
            return Rejected(RejectionReason.NOT_RECOGNIZED)

        payload = token.payload
        if payload.venue_id != scanning_venue_id:
            return Rejected(RejectionReason.LOCATION_MISMATCH)

        coupon = await self._catalog.get(payload.promotion_id)
        if coupon is None:
            return Rejected(RejectionReason.NOT_RECOGNIZED)
        today = datetime.fromtimestamp(now, tz=timezone.utc).date()
        if coupon.has_ended(today):
            return Rejected(RejectionReason.PROMOTION_ENDED)

        if is_stale(payload.issued_at, now, window):
            return Rejected(RejectionReason.STALE_SCREENSHOT)

        subject = classify_subject(payload.subject_id)
        if isinstance(subject, GuestSubject):
            redeemed = await self._ledger.has_guest_ever_redeemed(subject.email)
        else:
            redeemed = await self._ledger.has_member_redeemed(
                payload.promotion_id, payload.venue_id, subject.member_id
            )
        if redeemed:
            return Rejected(already_redeemed_reason(subject))

        return BillFormReady(VerifiedClaim(payload=payload, subject=subject, coupon=coupon))

    async def confirm_redemption(
        self,
        claim: VerifiedClaim,
        bill_reference: str,
        staff_id: str,
    ) -> RedemptionRecord:
        """Commit the redemption; raises ``LedgerConflictError`` if it already exists."""

        reference = bill_reference.strip()
        if not reference:
            raise ValueError("Bill reference is required")
        if not staff_id:
            raise ValueError("Staff id is required")

        # Tier is captured now so later catalog edits never rewrite history.
        coupon = await self._catalog.get(claim.payload.promotion_id) or claim.coupon
        committed_at = datetime.fromtimestamp(self.now(), tz=timezone.utc)
        subject = claim.subject
        record = RedemptionRecord(
            id=claim.record_id,
            promotion_id=claim.payload.promotion_id,
            venue_id=claim.payload.venue_id,
            bill_reference=reference,
            staff_id=staff_id,
            redeemed_at=committed_at,
            tier=coupon.tier,
            member_id=subject.member_id if isinstance(subject, MemberSubject) else None,
            guest_email=subject.email if isinstance(subject, GuestSubject) else None,
        )
        conversion = None
        if isinstance(subject, GuestSubject):
            conversion = GuestConversion(
                guest_email=subject.email,
                staff_id=staff_id,
                venue_id=claim.payload.venue_id,
                created_at=committed_at,
            )

        try:
            with get_tracer().start_as_current_span("redemption.commit") as span:
                span.set_attribute("redemption.venue_id", record.venue_id)
                span.set_attribute("redemption.guest", record.is_guest)
                await self._ledger.append(record, guest_conversion=conversion)
        except LedgerConflictError:
            self._observability.record_conflict()
            logger.warning(
                "Redemption conflict",
                record_id=record.id,
                venue_id=record.venue_id,
                promotion_id=record.promotion_id,
            )
            raise

        self._observability.record_confirmation(record.tier.value, guest=record.is_guest)
        logger.info(
            "Redemption committed",
            record_id=record.id,
            venue_id=record.venue_id,
            promotion_id=record.promotion_id,
            staff_id=staff_id,
            tier=record.tier.value,
        )
        return record

    async def check_static_link(self, encoded: str, now_seconds: int | None = None) -> LinkStatus:
        """Validate a redeem link with the fixed link age limit.

        This window is separate from the scanner's refresh window and never
        decides redemption eligibility.
        """

        token = decode_token(encoded)
        if token is None:
            return LinkStatus(valid=False, reason=LinkStatusReason.INVALID)

        verification = await self._verifier.verify(token)
        if verification.failure is VerificationFailure.UNKNOWN_VENUE:
            return LinkStatus(valid=False, reason=LinkStatusReason.UNKNOWN_VENUE)
        if verification.failure is VerificationFailure.BAD_SIGNATURE:
            return LinkStatus(valid=False, reason=LinkStatusReason.BAD_SIGNATURE)

        now = self.now() if now_seconds is None else now_seconds
        if is_stale(token.payload.issued_at, now, self.static_link_max_age_seconds):
            return LinkStatus(valid=False, reason=LinkStatusReason.EXPIRED, payload=token.payload)
        return LinkStatus(valid=True, payload=token.payload)


__all__ = [
    "BillFormReady",
    "LinkStatus",
    "LinkStatusReason",
    "Rejected",
    "RejectionReason",
    "RedemptionService",
    "ScanOutcome",
    "VerifiedClaim",
    "already_redeemed_reason",
    "is_stale",
    "resolve_window",
]
