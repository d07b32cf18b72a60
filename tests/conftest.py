"""
Pytest configuration and shared fixtures for InfraShare tests.

This module provides shared fixtures and test configuration including:
- Isolated stores, collaborators, metrics and circuit breakers
- A fully wired ProfitDistributionService
- Flask app and client with test configuration
- Caller identity headers
"""

import os
import sys
from decimal import Decimal

import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

# Set up test environment before any imports
os.environ["INFRASHARE_API_KEY"] = "test-api-key-12345"
os.environ["INFRASHARE_REQUIRE_AUTH"] = "false"
os.environ["STORAGE_BACKEND"] = "memory"
os.environ.pop("INFRASHARE_ENCRYPTION_KEY", None)
os.environ.pop("INVESTMENT_LEDGER_URL", None)
os.environ.pop("PAYMENT_GATEWAY_URL", None)

WEBHOOK_SECRET = "test-webhook-secret"


@pytest.fixture
def store():
    """Fresh in-memory store."""
    from storage.memory import MemoryStorage

    return MemoryStorage()


@pytest.fixture
def ledger():
    """Investment ledger with no investments."""
    from collaborators import InMemoryInvestmentLedger

    return InMemoryInvestmentLedger()


@pytest.fixture
def gateway():
    """Simulated payment gateway."""
    from collaborators import SimulatedPaymentGateway

    return SimulatedPaymentGateway()


@pytest.fixture
def test_metrics():
    """Metrics collector isolated from the global one."""
    from monitoring.metrics import MetricsCollector

    return MetricsCollector()


@pytest.fixture
def breaker():
    """Payment circuit breaker isolated from the global registry."""
    from retry import CircuitBreaker

    return CircuitBreaker("payment_gateway_test", failure_threshold=3, recovery_timeout=60.0)


@pytest.fixture
def audit_sink():
    from audit import MemoryAuditSink

    return MemoryAuditSink()


@pytest.fixture
def engine_config():
    from config import EngineConfig

    return EngineConfig(
        fee_rate=Decimal("0.05"),
        currency="IDR",
        minor_unit_digits=2,
        claim_fanout_workers=4,
        webhook_secret=WEBHOOK_SECRET,
    )


@pytest.fixture
def service(store, ledger, gateway, engine_config, test_metrics, breaker, audit_sink):
    """Service wired to in-process collaborators."""
    from audit import AuditTrail, StorageAuditSink
    from profit_service import ProfitDistributionService

    return ProfitDistributionService(
        store,
        ledger,
        gateway,
        config=engine_config,
        audit=AuditTrail([audit_sink, StorageAuditSink(store)]),
        metrics=test_metrics,
        circuit_breaker=breaker,
    )


@pytest.fixture
def solar_project(ledger):
    """
    Project with three holders (2,000 tokens in circulation).

    user-3 also has a pending investment, which must not count.
    """
    ledger.record_investment("proj-solar", "user-1", 1000)
    ledger.record_investment("proj-solar", "user-2", 600)
    ledger.record_investment("proj-solar", "user-3", 400)
    ledger.record_investment("proj-solar", "user-3", 500, status="pending")
    return "proj-solar"


@pytest.fixture
def q1_distribution(service, solar_project):
    """Q1 2024 distribution of 10,000.00 for the solar project."""
    return service.create_distribution(
        project_id=solar_project,
        total_profit="10000.00",
        period_start="2024-01-01",
        period_end="2024-03-31",
        quarter=1,
        year=2024,
        admin_id="admin-1",
    )


@pytest.fixture
def bank_details():
    return {
        "accountNumber": "1234567890",
        "bankName": "Bank Mandiri",
        "accountHolder": "Investor One",
    }


@pytest.fixture
def flask_app(service):
    """Flask test app bound to the test service."""
    from api import create_app

    app = create_app(service)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def flask_client(flask_app):
    """Create Flask test client."""
    return flask_app.test_client()


@pytest.fixture
def admin_headers():
    return {
        "Content-Type": "application/json",
        "X-API-Key": "test-api-key-12345",
        "X-Caller-ID": "admin-1",
        "X-Caller-Role": "admin",
    }


@pytest.fixture
def investor_headers():
    """Headers for user-1 acting as an investor."""
    return {
        "Content-Type": "application/json",
        "X-API-Key": "test-api-key-12345",
        "X-Caller-ID": "user-1",
        "X-Caller-Role": "investor",
    }
