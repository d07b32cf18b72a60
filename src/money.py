"""
InfraShare - Money Helpers

Amounts are held as integer minor units (e.g. cents) everywhere inside the
engine. These helpers convert to and from the decimal strings used on the
wire and in persisted documents.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from profit_errors import ValidationError


def to_minor_units(value: Any, digits: int, field_name: str = "amount") -> int:
    """
    Parse a decimal amount into integer minor units.

    Args:
        value: Amount as str, int or Decimal (floats are converted via str)
        digits: Number of minor-unit digits for the currency
        field_name: Name used in error messages

    Returns:
        Amount in minor units

    Raises:
        ValidationError: If the value is not numeric or is more precise
            than the currency allows
    """
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field_name} must be a number")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValidationError(f"{field_name} must be a number") from e

    if not amount.is_finite():
        raise ValidationError(f"{field_name} must be finite")

    scaled = amount.scaleb(digits)
    if scaled != scaled.to_integral_value():
        raise ValidationError(
            f"{field_name} has more than {digits} fractional digits"
        )
    return int(scaled)


def format_amount(minor: int, digits: int) -> str:
    """Format integer minor units as a decimal string in major units."""
    quantum = Decimal(1).scaleb(-digits)
    return str(Decimal(minor).scaleb(-digits).quantize(quantum))


def format_decimal(value: Decimal) -> str:
    """Plain decimal notation without trailing zeros ('950', '4.75')."""
    return format(value.normalize(), "f")


def round_half_up(value: Decimal) -> int:
    """Round a Decimal to the nearest integer, halves away from zero."""
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def mask_account(account: str | None) -> str | None:
    """Mask a bank account number, keeping the last four characters."""
    if not account:
        return account
    if len(account) <= 4:
        return "*" * len(account)
    return "*" * (len(account) - 4) + account[-4:]
