"""Signed, rotating coupon redemption protocol."""

from .catalog import CouponCatalog, CouponRef, InMemoryCouponCatalog, SqlCouponCatalog  # noqa: F401
from .codec import build_redeem_link, decode_token, encode_token, extract_scan_payload  # noqa: F401
from .errors import (  # noqa: F401
    InvalidScannerTransition,
    LedgerConflictError,
    RedemptionError,
    ScannerBusyError,
    UnknownVenueError,
)
from .ledger import (  # noqa: F401
    GuestConversion,
    InMemoryRedemptionLedger,
    RedemptionLedger,
    RedemptionRecord,
    SqlRedemptionLedger,
    StaffStats,
)
from .service import (  # noqa: F401
    BillFormReady,
    LinkStatus,
    LinkStatusReason,
    Rejected,
    RejectionReason,
    RedemptionService,
    ScanOutcome,
    VerifiedClaim,
    is_stale,
    resolve_window,
)
from .subjects import GuestSubject, MemberSubject, classify_subject  # noqa: F401
from .tokens import (  # noqa: F401
    RedemptionPayload,
    SignedToken,
    TokenSigner,
    TokenVerifier,
    VerificationFailure,
    VerificationResult,
    canonical_payload_bytes,
)
from .scanner import ScannerRegistry, ScannerSnapshot, ScannerState, ScannerStateMachine  # noqa: F401
