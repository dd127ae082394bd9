from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Dict


@dataclass
class RedemptionSnapshot:
    tokens_issued: Dict[str, int]
    scans: Dict[str, int]
    confirmations: Dict[str, int]
    conflicts: int

    def as_dict(self) -> Dict[str, object]:
        return {
            "tokens_issued": dict(self.tokens_issued),
            "scans": dict(self.scans),
            "confirmations": dict(self.confirmations),
            "conflicts": self.conflicts,
        }


class RedemptionObservabilityStore:
    """Collect redemption protocol telemetry for dashboards and alerting."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._tokens_issued: Dict[str, int] = defaultdict(int)
        self._scans: Dict[str, int] = defaultdict(int)
        self._confirmations: Dict[str, int] = defaultdict(int)
        self._conflicts = 0

    def record_token_issued(self, venue_id: str) -> None:
        with self._lock:
            self._tokens_issued["total"] += 1
            self._tokens_issued[f"venue:{venue_id}"] += 1

    def record_scan(self, outcome: str) -> None:
        with self._lock:
            self._scans["total"] += 1
            self._scans[outcome] += 1

    def record_confirmation(self, tier: str, *, guest: bool) -> None:
        with self._lock:
            self._confirmations["total"] += 1
            self._confirmations[f"tier:{tier}"] += 1
            self._confirmations["guest" if guest else "member"] += 1

    def record_conflict(self) -> None:
        with self._lock:
            self._conflicts += 1

    def snapshot(self) -> RedemptionSnapshot:
        with self._lock:
            return RedemptionSnapshot(
                tokens_issued=dict(self._tokens_issued),
                scans=dict(self._scans),
                confirmations=dict(self._confirmations),
                conflicts=self._conflicts,
            )

    def reset(self) -> None:
        with self._lock:
            self._tokens_issued.clear()
            self._scans.clear()
            self._confirmations.clear()
            self._conflicts = 0


_STORE = RedemptionObservabilityStore()


def get_redemption_store() -> RedemptionObservabilityStore:
    return _STORE


__all__ = ["get_redemption_store", "RedemptionObservabilityStore", "RedemptionSnapshot"]
