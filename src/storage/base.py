"""
Abstract base class for profit storage backends.

This module defines the interface that all storage backends must implement,
plus the cursor helpers shared by the in-process backends.
"""

import base64
import json
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable

from profit_errors import ValidationError
from profit_models import (
    ClaimStatus,
    DistributionStatus,
    Page,
    ProfitClaim,
    ProfitDistribution,
)

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


class StorageError(Exception):
    """Base exception for storage-related errors."""
    pass


class StorageConnectionError(StorageError):
    """Raised when connection to storage backend fails."""
    pass


class StorageReadError(StorageError):
    """Raised when reading from storage fails."""
    pass


class StorageWriteError(StorageError):
    """Raised when writing to storage fails."""
    pass


# =============================================================================
# Cursor helpers
# =============================================================================


def encode_cursor(created_at: datetime, record_id: str) -> str:
    """Opaque cursor pointing just after (created_at, record_id)."""
    raw = json.dumps([created_at.isoformat(), record_id]).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii")


def decode_cursor(cursor: str) -> tuple[datetime, str]:
    """
    Decode a cursor produced by :func:`encode_cursor`.

    Raises:
        ValidationError: If the cursor is malformed
    """
    try:
        created_at, record_id = json.loads(base64.urlsafe_b64decode(cursor.encode("ascii")))
        return datetime.fromisoformat(created_at), str(record_id)
    except (ValueError, TypeError) as e:
        raise ValidationError("Invalid cursor", cursor=cursor) from e


def distribution_sort_key(distribution: ProfitDistribution) -> tuple[datetime, str]:
    return (distribution.created_at, distribution.distribution_id)


def claim_sort_key(claim: ProfitClaim) -> tuple[datetime, str]:
    return (claim.created_at, claim.claim_id)


def paginate(
    items: list[Any],
    sort_key: Callable[[Any], tuple[datetime, str]],
    limit: int | None,
    cursor: str | None,
) -> Page:
    """
    Order items by (created_at, id) and cut one page.

    Args:
        items: Candidate records (already filtered)
        sort_key: Returns (created_at, id) for a record
        limit: Page size, or None for everything after the cursor
        cursor: Cursor returned with the previous page
    """
    ordered = sorted(items, key=sort_key)
    if cursor:
        after = decode_cursor(cursor)
        ordered = [item for item in ordered if sort_key(item) > after]

    if limit is None or len(ordered) <= limit:
        return Page(items=ordered)

    page = ordered[:limit]
    return Page(items=page, next_cursor=encode_cursor(*sort_key(page[-1])))


# =============================================================================
# Backend interface
# =============================================================================


class ProfitStore(ABC):
    """
    Abstract base class for profit distribution storage backends.

    Every mutating method that guards an invariant (period uniqueness,
    claim transitions, settlement reference) is atomic within the backend.
    """

    # Distributions

    @abstractmethod
    def insert_distribution_if_absent(
        self, distribution: ProfitDistribution
    ) -> ProfitDistribution | None:
        """
        Insert a distribution unless one exists for the same period key.

        Returns:
            None when inserted, otherwise the existing distribution
        """
        pass

    @abstractmethod
    def get_distribution(self, distribution_id: str) -> ProfitDistribution | None:
        pass

    @abstractmethod
    def find_distribution_by_period(
        self, project_id: str, quarter: int, year: int
    ) -> ProfitDistribution | None:
        pass

    @abstractmethod
    def update_distribution_if(
        self, expected: ProfitDistribution, updated: ProfitDistribution
    ) -> bool:
        """
        Replace a distribution if its status and settlement reference still
        match ``expected``.

        Returns:
            True if the update was applied
        """
        pass

    @abstractmethod
    def list_distributions(
        self,
        project_id: str | None = None,
        status: DistributionStatus | None = None,
        limit: int | None = None,
        cursor: str | None = None,
    ) -> Page:
        pass

    # Claims

    @abstractmethod
    def upsert_claim(self, claim: ProfitClaim) -> ProfitClaim:
        """
        Insert a claim if absent.

        Returns:
            The stored claim (the existing one when already present)
        """
        pass

    @abstractmethod
    def get_claim(self, claim_id: str) -> ProfitClaim | None:
        pass

    @abstractmethod
    def find_claim_by_payment_id(self, payment_id: str) -> ProfitClaim | None:
        pass

    @abstractmethod
    def compare_and_swap_claim(self, expected: ProfitClaim, updated: ProfitClaim) -> bool:
        """
        Replace a claim if its stored status and payment id still match
        ``expected``.

        Returns:
            True if the swap was applied
        """
        pass

    @abstractmethod
    def list_claims(
        self,
        distribution_id: str | None = None,
        user_id: str | None = None,
        status: ClaimStatus | None = None,
        limit: int | None = None,
        cursor: str | None = None,
    ) -> Page:
        pass

    # Audit

    @abstractmethod
    def append_audit(self, record: dict[str, Any]) -> None:
        pass

    @abstractmethod
    def list_audit(
        self, entity_id: str | None = None, action: str | None = None
    ) -> list[dict[str, Any]]:
        pass

    # Backend

    @abstractmethod
    def is_available(self) -> bool:
        """
        Check if the storage backend is available and ready.

        Returns:
            True if storage is accessible, False otherwise
        """
        pass

    def get_info(self) -> dict[str, Any]:
        """
        Get information about the storage backend.

        Returns:
            Dictionary with backend type, status, and configuration
        """
        return {
            "backend_type": self.__class__.__name__,
            "available": self.is_available(),
        }

    def close(self) -> None:
        """Release backend resources."""
        pass


def claim_matches(stored: ProfitClaim, expected: ProfitClaim) -> bool:
    """CAS predicate shared by the in-process backends."""
    return stored.status == expected.status and stored.payment_id == expected.payment_id


def distribution_matches(stored: ProfitDistribution, expected: ProfitDistribution) -> bool:
    return (
        stored.status == expected.status
        and stored.settlement_reference == expected.settlement_reference
    )
