"""
Tests for engine configuration.
"""

import os
import sys
from decimal import Decimal
from unittest.mock import patch

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from config import EngineConfig
from profit_errors import ValidationError


class TestEngineConfig:
    def test_defaults(self):
        with patch.dict(os.environ, {}, clear=True):
            config = EngineConfig.from_env()

        assert config.fee_rate == Decimal("0.05")
        assert config.currency == "IDR"
        assert config.minor_unit_digits == 2
        assert config.webhook_secret is None
        assert config.webhook_tolerance_seconds == 300

    def test_from_env(self):
        env = {
            "PLATFORM_FEE_RATE": "0.025",
            "CURRENCY": "USD",
            "MINOR_UNIT_DIGITS": "0",
            "CLAIM_FANOUT_WORKERS": "2",
            "PAYMENT_GATEWAY_URL": "https://pay.internal",
            "PAYMENT_WEBHOOK_SECRET": "whsec",
        }
        with patch.dict(os.environ, env, clear=True):
            config = EngineConfig.from_env()

        assert config.fee_rate == Decimal("0.025")
        assert config.minor_unit_digits == 0
        assert config.claim_fanout_workers == 2
        assert config.payment_url == "https://pay.internal"

    @pytest.mark.parametrize(
        "env",
        [
            {"PLATFORM_FEE_RATE": "abc"},
            {"PLATFORM_FEE_RATE": "1"},
            {"PLATFORM_FEE_RATE": "-0.01"},
            {"MINOR_UNIT_DIGITS": "9"},
            {"CLAIM_FANOUT_WORKERS": "0"},
            {"INVESTMENT_LEDGER_TIMEOUT": "0"},
        ],
    )
    def test_invalid(self, env):
        with patch.dict(os.environ, env, clear=True):
            with pytest.raises(ValidationError):
                EngineConfig.from_env()

    def test_to_dict_hides_secrets(self):
        config = EngineConfig(payment_api_key="gw-key", webhook_secret="whsec")

        data = config.to_dict()

        assert "gw-key" not in str(data)
        assert "whsec" not in str(data)
        assert data["webhook_signing_enabled"] is True
        assert data["fee_rate"] == "0.05"
