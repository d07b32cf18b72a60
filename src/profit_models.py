"""
InfraShare - Profit Distribution Data Model

Records for profit distributions and per-holder claims.

Key Concepts:
- A ProfitDistribution is one admin-declared profit-sharing event for a
  project and fiscal quarter. It is append-only apart from attaching a
  settlement reference.
- A ProfitClaim is one investor's entitlement to a share of a distribution.
  Its state is a tagged variant per status, so settlement fields exist only
  once the claim is completed.
- All amounts are integer minor units; ``scale`` is the number of
  minor-unit digits used when serializing.
"""

from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar

from money import format_amount, format_decimal, to_minor_units

# =============================================================================
# Enums
# =============================================================================


class DistributionStatus(Enum):
    """Status of a profit distribution."""

    CALCULATED = "calculated"  # Allocation computed, claims created
    DISTRIBUTED = "distributed"  # Settlement reference attached


class ClaimStatus(Enum):
    """Status of a profit claim."""

    PENDING = "pending"  # Awaiting the investor's request
    PROCESSING = "processing"  # Payment initiated or being initiated
    COMPLETED = "completed"  # Funds settled (terminal)


# =============================================================================
# Helpers
# =============================================================================


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def _iso(value: datetime | date | None) -> str | None:
    return value.isoformat() if value is not None else None


def parse_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def make_claim_id(distribution_id: str, user_id: str) -> str:
    """Claim ids are derived from the distribution and the holder."""
    return f"{distribution_id}_{user_id}"


# =============================================================================
# Value Objects
# =============================================================================


@dataclass(frozen=True)
class Holding:
    """Circulating tokens held by one investor via completed investments."""

    user_id: str
    token_amount: int

    def to_dict(self) -> dict[str, Any]:
        return {"userId": self.user_id, "tokenAmount": self.token_amount}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Holding":
        return cls(user_id=data["userId"], token_amount=int(data["tokenAmount"]))


@dataclass(frozen=True)
class Period:
    """Fiscal period a distribution covers."""

    start_date: date
    end_date: date
    quarter: int
    year: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "startDate": self.start_date.isoformat(),
            "endDate": self.end_date.isoformat(),
            "quarter": self.quarter,
            "year": self.year,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Period":
        return cls(
            start_date=date.fromisoformat(data["startDate"][:10]),
            end_date=date.fromisoformat(data["endDate"][:10]),
            quarter=int(data["quarter"]),
            year=int(data["year"]),
        )


@dataclass(frozen=True)
class PaymentDetails:
    """Payment artifact returned by the gateway for a claim."""

    payment_id: str
    bank_account: str
    processed_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "paymentId": self.payment_id,
            "bankAccount": self.bank_account,
            "processedAt": _iso(self.processed_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "PaymentDetails | None":
        if not data or not data.get("paymentId"):
            return None
        return cls(
            payment_id=data["paymentId"],
            bank_account=data.get("bankAccount") or "",
            processed_at=parse_datetime(data.get("processedAt")) or utc_now(),
        )


# =============================================================================
# Claim State Variants
# =============================================================================


@dataclass(frozen=True)
class PendingState:
    """Claim created, nothing requested yet."""

    status: ClassVar[ClaimStatus] = ClaimStatus.PENDING


@dataclass(frozen=True)
class ProcessingState:
    """Settlement requested; payment is None until the gateway acknowledges."""

    status: ClassVar[ClaimStatus] = ClaimStatus.PROCESSING

    started_at: datetime
    payment: PaymentDetails | None = None


@dataclass(frozen=True)
class CompletedState:
    """Funds settled. Absorbing."""

    status: ClassVar[ClaimStatus] = ClaimStatus.COMPLETED

    claimed_amount: int
    claimed_at: datetime
    payment: PaymentDetails | None = None


ClaimState = PendingState | ProcessingState | CompletedState


# =============================================================================
# Records
# =============================================================================


@dataclass(frozen=True)
class ProfitClaim:
    """One investor's entitlement to a share of a distribution."""

    claim_id: str
    user_id: str
    project_id: str
    distribution_id: str
    token_amount: int
    claimable_amount: int  # Minor units, fixed at creation
    created_at: datetime = field(default_factory=utc_now)
    state: ClaimState = field(default_factory=PendingState)
    currency: str = "IDR"
    scale: int = 2

    @property
    def status(self) -> ClaimStatus:
        return self.state.status

    @property
    def claimed_amount(self) -> int:
        if isinstance(self.state, CompletedState):
            return self.state.claimed_amount
        return 0

    @property
    def claimed_at(self) -> datetime | None:
        if isinstance(self.state, CompletedState):
            return self.state.claimed_at
        return None

    @property
    def payment(self) -> PaymentDetails | None:
        if isinstance(self.state, (ProcessingState, CompletedState)):
            return self.state.payment
        return None

    @property
    def payment_id(self) -> str | None:
        payment = self.payment
        return payment.payment_id if payment else None

    def with_state(self, state: ClaimState) -> "ProfitClaim":
        """Return a copy of the claim in a new state."""
        return replace(self, state=state)

    def same_entitlement(self, other: "ProfitClaim") -> bool:
        """True when the immutable fields of both claims agree."""
        return (
            self.claim_id == other.claim_id
            and self.user_id == other.user_id
            and self.project_id == other.project_id
            and self.distribution_id == other.distribution_id
            and self.token_amount == other.token_amount
            and self.claimable_amount == other.claimable_amount
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to the persisted/serialized shape."""
        payment = self.payment
        processing_started = (
            self.state.started_at if isinstance(self.state, ProcessingState) else None
        )
        return {
            "id": self.claim_id,
            "userId": self.user_id,
            "projectId": self.project_id,
            "distributionId": self.distribution_id,
            "tokenAmount": self.token_amount,
            "claimableAmount": format_amount(self.claimable_amount, self.scale),
            "claimedAmount": format_amount(self.claimed_amount, self.scale),
            "status": self.status.value,
            "paymentDetails": payment.to_dict() if payment else None,
            "createdAt": _iso(self.created_at),
            "claimedAt": _iso(self.claimed_at),
            "processingStartedAt": _iso(processing_started),
            "currency": self.currency,
            "scale": self.scale,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProfitClaim":
        """Rebuild a claim from its persisted shape."""
        scale = int(data.get("scale", 2))
        status = ClaimStatus(data["status"])
        payment = PaymentDetails.from_dict(data.get("paymentDetails"))

        state: ClaimState
        if status == ClaimStatus.PENDING:
            state = PendingState()
        elif status == ClaimStatus.PROCESSING:
            state = ProcessingState(
                started_at=parse_datetime(data.get("processingStartedAt")) or utc_now(),
                payment=payment,
            )
        else:
            state = CompletedState(
                claimed_amount=to_minor_units(data["claimedAmount"], scale, "claimedAmount"),
                claimed_at=parse_datetime(data.get("claimedAt")) or utc_now(),
                payment=payment,
            )

        return cls(
            claim_id=data["id"],
            user_id=data["userId"],
            project_id=data["projectId"],
            distribution_id=data["distributionId"],
            token_amount=int(data["tokenAmount"]),
            claimable_amount=to_minor_units(data["claimableAmount"], scale, "claimableAmount"),
            created_at=parse_datetime(data.get("createdAt")) or utc_now(),
            state=state,
            currency=data.get("currency", "IDR"),
            scale=scale,
        )


@dataclass(frozen=True)
class ProfitDistribution:
    """One profit-sharing event for a project and fiscal quarter."""

    distribution_id: str
    project_id: str
    period: Period
    total_profit: int  # Minor units
    platform_fee: int
    distributed_profit: int
    profit_per_token: Decimal  # Major units, informational
    total_circulating_tokens: int
    admin_id: str
    holder_snapshot: tuple[Holding, ...] = ()
    status: DistributionStatus = DistributionStatus.CALCULATED
    settlement_reference: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    distributed_at: datetime | None = None
    notes: str | None = None
    currency: str = "IDR"
    scale: int = 2

    @property
    def period_key(self) -> tuple[str, int, int]:
        """Natural key enforced unique by the Period Registry."""
        return (self.project_id, self.period.quarter, self.period.year)

    def with_settlement(self, reference: str, at: datetime | None = None) -> "ProfitDistribution":
        """Return a copy with the settlement reference attached."""
        return replace(
            self,
            settlement_reference=reference,
            status=DistributionStatus.DISTRIBUTED,
            distributed_at=at or utc_now(),
        )

    def to_dict(self, include_snapshot: bool = True) -> dict[str, Any]:
        """Convert to the persisted/serialized shape."""
        data = {
            "id": self.distribution_id,
            "projectId": self.project_id,
            "period": self.period.to_dict(),
            "totalProfit": format_amount(self.total_profit, self.scale),
            "platformFee": format_amount(self.platform_fee, self.scale),
            "distributedProfit": format_amount(self.distributed_profit, self.scale),
            "profitPerToken": format_decimal(self.profit_per_token),
            "status": self.status.value,
            "settlementReference": self.settlement_reference,
            "createdAt": _iso(self.created_at),
            "distributedAt": _iso(self.distributed_at),
            "adminId": self.admin_id,
            "notes": self.notes,
            "currency": self.currency,
            "scale": self.scale,
            "totalCirculatingTokens": self.total_circulating_tokens,
            "holderCount": len(self.holder_snapshot),
        }
        if include_snapshot:
            data["holderSnapshot"] = [h.to_dict() for h in self.holder_snapshot]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProfitDistribution":
        """Rebuild a distribution from its persisted shape."""
        scale = int(data.get("scale", 2))
        return cls(
            distribution_id=data["id"],
            project_id=data["projectId"],
            period=Period.from_dict(data["period"]),
            total_profit=to_minor_units(data["totalProfit"], scale, "totalProfit"),
            platform_fee=to_minor_units(data["platformFee"], scale, "platformFee"),
            distributed_profit=to_minor_units(
                data["distributedProfit"], scale, "distributedProfit"
            ),
            profit_per_token=Decimal(data["profitPerToken"]),
            total_circulating_tokens=int(data.get("totalCirculatingTokens", 0)),
            admin_id=data.get("adminId", ""),
            holder_snapshot=tuple(
                Holding.from_dict(h) for h in data.get("holderSnapshot", [])
            ),
            status=DistributionStatus(data.get("status", "calculated")),
            settlement_reference=data.get("settlementReference") or None,
            created_at=parse_datetime(data.get("createdAt")) or utc_now(),
            distributed_at=parse_datetime(data.get("distributedAt")),
            notes=data.get("notes"),
            currency=data.get("currency", "IDR"),
            scale=scale,
        )


@dataclass
class Page:
    """One page of a cursor-paginated query."""

    items: list[Any]
    next_cursor: str | None = None

    def to_dict(self, serialize=None) -> dict[str, Any]:
        serialize = serialize or (lambda item: item.to_dict())
        return {
            "items": [serialize(item) for item in self.items],
            "count": len(self.items),
            "next_cursor": self.next_cursor,
        }
