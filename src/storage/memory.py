"""
In-memory storage backend.

This backend keeps distributions, claims and audit records in memory only,
useful for:
- Unit testing
- Development with the simulated payment gateway
"""

import copy
import threading
from typing import Any

from profit_models import (
    ClaimStatus,
    DistributionStatus,
    Page,
    ProfitClaim,
    ProfitDistribution,
)
from storage.base import (
    ProfitStore,
    claim_matches,
    claim_sort_key,
    distribution_matches,
    distribution_sort_key,
    paginate,
)


class MemoryStorage(ProfitStore):
    """
    In-memory storage backend.

    All data is lost when the process exits. Thread-safe operations.
    Records are frozen dataclasses, so they are shared without copying.
    """

    def __init__(self):
        """Initialize empty memory storage."""
        self._distributions: dict[str, ProfitDistribution] = {}
        self._periods: dict[tuple[str, int, int], str] = {}
        self._claims: dict[str, ProfitClaim] = {}
        self._audit: list[dict[str, Any]] = []
        # Use RLock to allow reentrant locking (get_info calls counters)
        self._lock = threading.RLock()

    # Distributions

    def insert_distribution_if_absent(
        self, distribution: ProfitDistribution
    ) -> ProfitDistribution | None:
        with self._lock:
            existing_id = self._periods.get(distribution.period_key)
            if existing_id is not None:
                return self._distributions[existing_id]
            self._distributions[distribution.distribution_id] = distribution
            self._periods[distribution.period_key] = distribution.distribution_id
            return None

    def get_distribution(self, distribution_id: str) -> ProfitDistribution | None:
        with self._lock:
            return self._distributions.get(distribution_id)

    def find_distribution_by_period(
        self, project_id: str, quarter: int, year: int
    ) -> ProfitDistribution | None:
        with self._lock:
            distribution_id = self._periods.get((project_id, quarter, year))
            return self._distributions.get(distribution_id) if distribution_id else None

    def update_distribution_if(
        self, expected: ProfitDistribution, updated: ProfitDistribution
    ) -> bool:
        with self._lock:
            stored = self._distributions.get(expected.distribution_id)
            if stored is None or not distribution_matches(stored, expected):
                return False
            self._distributions[updated.distribution_id] = updated
            return True

    def list_distributions(
        self,
        project_id: str | None = None,
        status: DistributionStatus | None = None,
        limit: int | None = None,
        cursor: str | None = None,
    ) -> Page:
        with self._lock:
            items = [
                d
                for d in self._distributions.values()
                if (project_id is None or d.project_id == project_id)
                and (status is None or d.status == status)
            ]
        return paginate(items, distribution_sort_key, limit, cursor)

    # Claims

    def upsert_claim(self, claim: ProfitClaim) -> ProfitClaim:
        with self._lock:
            return self._claims.setdefault(claim.claim_id, claim)

    def get_claim(self, claim_id: str) -> ProfitClaim | None:
        with self._lock:
            return self._claims.get(claim_id)

    def find_claim_by_payment_id(self, payment_id: str) -> ProfitClaim | None:
        with self._lock:
            for claim in self._claims.values():
                if claim.payment_id == payment_id:
                    return claim
            return None

    def compare_and_swap_claim(self, expected: ProfitClaim, updated: ProfitClaim) -> bool:
        with self._lock:
            stored = self._claims.get(expected.claim_id)
            if stored is None or not claim_matches(stored, expected):
                return False
            self._claims[updated.claim_id] = updated
            return True

    def list_claims(
        self,
        distribution_id: str | None = None,
        user_id: str | None = None,
        status: ClaimStatus | None = None,
        limit: int | None = None,
        cursor: str | None = None,
    ) -> Page:
        with self._lock:
            items = [
                c
                for c in self._claims.values()
                if (distribution_id is None or c.distribution_id == distribution_id)
                and (user_id is None or c.user_id == user_id)
                and (status is None or c.status == status)
            ]
        return paginate(items, claim_sort_key, limit, cursor)

    # Audit

    def append_audit(self, record: dict[str, Any]) -> None:
        with self._lock:
            self._audit.append(copy.deepcopy(record))

    def list_audit(
        self, entity_id: str | None = None, action: str | None = None
    ) -> list[dict[str, Any]]:
        with self._lock:
            return [
                copy.deepcopy(r)
                for r in self._audit
                if (entity_id is None or r.get("entity_id") == entity_id)
                and (action is None or r.get("action") == action)
            ]

    # Backend

    def is_available(self) -> bool:
        """Memory storage is always available."""
        return True

    def get_info(self) -> dict[str, Any]:
        """Get storage backend information."""
        info = super().get_info()
        with self._lock:
            info.update(
                {
                    "distribution_count": len(self._distributions),
                    "claim_count": len(self._claims),
                    "audit_record_count": len(self._audit),
                }
            )
        return info

    def clear(self) -> None:
        """Clear all stored data."""
        with self._lock:
            self._distributions.clear()
            self._periods.clear()
            self._claims.clear()
            self._audit.clear()
