"""
InfraShare - Allocation Calculator

Computes a distribution's platform fee, distributable pool, per-token profit
and every holder's share, entirely in integer minor units.

Rounding policy:
- platform_fee = round_half_up(total_profit * fee_rate)
- distributed_profit = total_profit - platform_fee
- each holder gets floor(distributed_profit * tokens / total_tokens); the
  few minor units left over are handed out one each to the holders with
  the largest fractional remainders (ties by user id). The shares therefore
  add up to distributed_profit exactly.
"""

import logging
from dataclasses import dataclass, field
from decimal import ROUND_DOWN, Decimal

from money import format_decimal, round_half_up
from profit_errors import NoCirculatingTokens, ValidationError
from profit_models import Holding

logger = logging.getLogger(__name__)

# Fractional digits kept for the informational profit-per-token figure
PROFIT_PER_TOKEN_PRECISION = 10


@dataclass
class Allocation:
    """Result of an allocation run."""

    total_profit: int
    fee_rate: Decimal
    platform_fee: int
    distributed_profit: int
    total_circulating_tokens: int
    profit_per_token: Decimal  # Major units
    shares: dict[str, int] = field(default_factory=dict)  # user_id -> minor units
    remainder_units: int = 0  # Minor units assigned by largest remainder

    def to_dict(self) -> dict:
        return {
            "total_profit": self.total_profit,
            "fee_rate": str(self.fee_rate),
            "platform_fee": self.platform_fee,
            "distributed_profit": self.distributed_profit,
            "total_circulating_tokens": self.total_circulating_tokens,
            "profit_per_token": format_decimal(self.profit_per_token),
            "holder_count": len(self.shares),
            "remainder_units": self.remainder_units,
        }


def aggregate_holdings(holdings: list[Holding]) -> list[Holding]:
    """
    Merge holdings per user and validate token amounts.

    An investor with several completed investments gets a single claim.

    Raises:
        ValidationError: If a token amount is not a positive integer
    """
    totals: dict[str, int] = {}
    for holding in holdings:
        amount = holding.token_amount
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationError(
                f"Invalid token amount for {holding.user_id}: {amount!r}",
                user_id=holding.user_id,
            )
        if not holding.user_id:
            raise ValidationError("Holding without user id")
        totals[holding.user_id] = totals.get(holding.user_id, 0) + amount

    return [Holding(user_id=u, token_amount=t) for u, t in sorted(totals.items())]


class AllocationCalculator:
    """Splits a project's quarterly profit between the platform and holders."""

    def __init__(self, fee_rate: Decimal, minor_unit_digits: int = 2):
        """
        Initialize the calculator.

        Args:
            fee_rate: Platform fee as a fraction of gross profit (0 <= rate < 1)
            minor_unit_digits: Minor-unit digits of the currency
        """
        fee_rate = Decimal(str(fee_rate))
        if not Decimal("0") <= fee_rate < Decimal("1"):
            raise ValidationError(f"fee_rate must be in [0, 1), got {fee_rate}")
        self.fee_rate = fee_rate
        self.minor_unit_digits = minor_unit_digits

    def platform_fee(self, total_profit: int) -> int:
        """Fee retained by the platform, in minor units."""
        return round_half_up(Decimal(total_profit) * self.fee_rate)

    def allocate(self, total_profit: int, holdings: list[Holding]) -> Allocation:
        """
        Compute the full allocation for a distribution.

        Args:
            total_profit: Gross profit in minor units
            holdings: Completed holdings from the Investment Ledger

        Returns:
            Allocation with per-holder shares

        Raises:
            ValidationError: If total_profit is not positive
            NoCirculatingTokens: If no tokens are in circulation
        """
        if total_profit <= 0:
            raise ValidationError("total_profit must be positive")

        merged = aggregate_holdings(holdings)
        total_tokens = sum(h.token_amount for h in merged)
        if total_tokens == 0:
            raise NoCirculatingTokens("No circulating tokens found for this project")

        platform_fee = self.platform_fee(total_profit)
        distributed_profit = total_profit - platform_fee

        shares, remainder_units = apportion(distributed_profit, merged)

        profit_per_token = (
            Decimal(distributed_profit).scaleb(-self.minor_unit_digits) / Decimal(total_tokens)
        ).quantize(Decimal(1).scaleb(-PROFIT_PER_TOKEN_PRECISION), rounding=ROUND_DOWN)

        allocation = Allocation(
            total_profit=total_profit,
            fee_rate=self.fee_rate,
            platform_fee=platform_fee,
            distributed_profit=distributed_profit,
            total_circulating_tokens=total_tokens,
            profit_per_token=profit_per_token,
            shares=shares,
            remainder_units=remainder_units,
        )

        logger.debug("Allocation computed", extra={"allocation": allocation.to_dict()})
        return allocation


def apportion(pool: int, holdings: list[Holding]) -> tuple[dict[str, int], int]:
    """
    Largest-remainder apportionment of ``pool`` minor units over holdings
    with distinct user ids.

    Returns:
        (shares by user id, minor units handed out by remainder)

    Raises:
        NoCirculatingTokens: If the holdings carry no tokens
    """
    total_tokens = sum(h.token_amount for h in holdings)
    if total_tokens <= 0:
        raise NoCirculatingTokens("No circulating tokens found for this project")

    shares: dict[str, int] = {}
    remainders: list[tuple[int, str]] = []
    for holding in holdings:
        quota, remainder = divmod(pool * holding.token_amount, total_tokens)
        shares[holding.user_id] = quota
        remainders.append((remainder, holding.user_id))

    leftover = pool - sum(shares.values())
    # Largest remainder first, then user id ascending
    remainders.sort(key=lambda item: (-item[0], item[1]))
    for _, user_id in remainders[:leftover]:
        shares[user_id] += 1

    return shares, leftover
