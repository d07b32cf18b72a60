"""
InfraShare - Engine Configuration

Runtime settings for the profit distribution engine, read from the
environment. The platform fee rate is configuration, never a constant
embedded in a component.

Environment Variables:
    PLATFORM_FEE_RATE=0.05
    CURRENCY=IDR
    MINOR_UNIT_DIGITS=2
    CLAIM_FANOUT_WORKERS=8
    INVESTMENT_LEDGER_URL=https://ledger.internal/api/v1
    INVESTMENT_LEDGER_TIMEOUT=5.0
    PAYMENT_GATEWAY_URL=https://payments.internal/api/v1
    PAYMENT_GATEWAY_API_KEY=...
    PAYMENT_GATEWAY_TIMEOUT=10.0
    PAYMENT_WEBHOOK_SECRET=...
    PAYMENT_WEBHOOK_TOLERANCE=300
"""

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from profit_errors import ValidationError

# Maximum minor-unit scale supported (satoshi-like currencies)
MAX_MINOR_UNIT_DIGITS = 8


@dataclass
class EngineConfig:
    """Configuration for the distribution engine and its collaborators."""

    # Allocation
    fee_rate: Decimal = Decimal("0.05")
    currency: str = "IDR"
    minor_unit_digits: int = 2

    # Claim fan-out
    claim_fanout_workers: int = 8

    # Investment Ledger
    ledger_url: str | None = None
    ledger_timeout: float = 5.0

    # Payment Gateway
    payment_url: str | None = None
    payment_api_key: str | None = None
    payment_timeout: float = 10.0

    # Webhooks
    webhook_secret: str | None = None
    webhook_tolerance_seconds: int = 300

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Create configuration from environment variables."""
        try:
            fee_rate = Decimal(os.getenv("PLATFORM_FEE_RATE", "0.05"))
        except InvalidOperation as e:
            raise ValidationError("PLATFORM_FEE_RATE must be a decimal number") from e

        config = cls(
            fee_rate=fee_rate,
            currency=os.getenv("CURRENCY", "IDR"),
            minor_unit_digits=int(os.getenv("MINOR_UNIT_DIGITS", "2")),
            claim_fanout_workers=int(os.getenv("CLAIM_FANOUT_WORKERS", "8")),
            ledger_url=os.getenv("INVESTMENT_LEDGER_URL") or None,
            ledger_timeout=float(os.getenv("INVESTMENT_LEDGER_TIMEOUT", "5.0")),
            payment_url=os.getenv("PAYMENT_GATEWAY_URL") or None,
            payment_api_key=os.getenv("PAYMENT_GATEWAY_API_KEY") or None,
            payment_timeout=float(os.getenv("PAYMENT_GATEWAY_TIMEOUT", "10.0")),
            webhook_secret=os.getenv("PAYMENT_WEBHOOK_SECRET") or None,
            webhook_tolerance_seconds=int(os.getenv("PAYMENT_WEBHOOK_TOLERANCE", "300")),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """
        Check the configuration is usable.

        Raises:
            ValidationError: If any setting is out of range
        """
        if not Decimal("0") <= self.fee_rate < Decimal("1"):
            raise ValidationError(f"fee_rate must be in [0, 1), got {self.fee_rate}")
        if not 0 <= self.minor_unit_digits <= MAX_MINOR_UNIT_DIGITS:
            raise ValidationError(
                f"minor_unit_digits must be between 0 and {MAX_MINOR_UNIT_DIGITS}"
            )
        if self.claim_fanout_workers < 1:
            raise ValidationError("claim_fanout_workers must be at least 1")
        if self.ledger_timeout <= 0 or self.payment_timeout <= 0:
            raise ValidationError("Collaborator timeouts must be positive")

    def to_dict(self) -> dict:
        """Public view of the configuration (no secrets)."""
        return {
            "fee_rate": str(self.fee_rate),
            "currency": self.currency,
            "minor_unit_digits": self.minor_unit_digits,
            "claim_fanout_workers": self.claim_fanout_workers,
            "ledger_configured": self.ledger_url is not None,
            "ledger_timeout": self.ledger_timeout,
            "payment_gateway_configured": self.payment_url is not None,
            "payment_timeout": self.payment_timeout,
            "webhook_signing_enabled": self.webhook_secret is not None,
        }
