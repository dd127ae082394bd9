"""Exceptions raised by the redemption protocol."""

from __future__ import annotations


class RedemptionError(RuntimeError):
    """Base class for redemption protocol failures."""


class UnknownVenueError(RedemptionError):
    """Raised when no signing secret is configured for a venue."""

    def __init__(self, venue_id: str) -> None:
        super().__init__(f"No signing secret configured for venue '{venue_id}'")
        self.venue_id = venue_id


class LedgerConflictError(RedemptionError):
    """Raised when a record with the same identity or dedup key already exists."""

    def __init__(self, dedup_key: str, *, record_id: str | None = None) -> None:
        super().__init__(f"Redemption already recorded for '{dedup_key}'")
        self.dedup_key = dedup_key
        self.record_id = record_id


class ScannerBusyError(RedemptionError):
    """Raised when a scan arrives while another one is still in flight."""


class InvalidScannerTransition(RedemptionError):
    """Raised when an operation is not allowed from the scanner's current state."""
