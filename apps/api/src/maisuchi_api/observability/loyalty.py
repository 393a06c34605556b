from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Dict


@dataclass
class LoyaltySnapshot:
    credits: Dict[str, int]
    drains: Dict[str, int]
    claims: Dict[str, int]
    reconciliations: Dict[str, int]
    failures: Dict[str, int]

    def as_dict(self) -> Dict[str, object]:
        return {
            "credits": dict(self.credits),
            "drains": dict(self.drains),
            "claims": dict(self.claims),
            "reconciliations": dict(self.reconciliations),
            "failures": dict(self.failures),
        }


class LoyaltyObservabilityStore:
    """Collect loyalty ledger telemetry for dashboards and alerting."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._credits: Dict[str, int] = defaultdict(int)
        self._drains: Dict[str, int] = defaultdict(int)
        self._claims: Dict[str, int] = defaultdict(int)
        self._reconciliations: Dict[str, int] = defaultdict(int)
        self._failures: Dict[str, int] = defaultdict(int)

    def record_credit(self, outcome: str) -> None:
        with self._lock:
            self._credits[outcome] += 1

    def record_drain(self, *, applied: int, skipped: int, failed: int) -> None:
        with self._lock:
            self._drains["applied"] += applied
            self._drains["skipped"] += skipped
            self._drains["failed"] += failed

    def record_claim(self, outcome: str) -> None:
        with self._lock:
            self._claims[outcome] += 1

    def record_reconciliation(self, *, checked: int, repaired: int) -> None:
        with self._lock:
            self._reconciliations["checked"] += checked
            self._reconciliations["repaired"] += repaired

    def record_cache_failure(self) -> None:
        with self._lock:
            self._failures["balance_cache"] += 1

    def record_mirror_failure(self) -> None:
        with self._lock:
            self._failures["profile_mirror"] += 1

    def snapshot(self) -> LoyaltySnapshot:
        with self._lock:
            return LoyaltySnapshot(
                credits=dict(self._credits),
                drains=dict(self._drains),
                claims=dict(self._claims),
                reconciliations=dict(self._reconciliations),
                failures=dict(self._failures),
            )

    def reset(self) -> None:
        with self._lock:
            self._credits.clear()
            self._drains.clear()
            self._claims.clear()
            self._reconciliations.clear()
            self._failures.clear()


_STORE = LoyaltyObservabilityStore()


def get_loyalty_store() -> LoyaltyObservabilityStore:
    return _STORE


__all__ = ["get_loyalty_store", "LoyaltyObservabilityStore", "LoyaltySnapshot"]
