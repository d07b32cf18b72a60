"""
Tests for ProfitDistributionService distribution operations.

Tests:
- Distribution creation and claim fan-out
- One distribution per project period, also under concurrency
- Period registry lookups
- End-to-end settlement of an indivisible pool
- No-holder guard
- Settlement reference attachment
- Paginated queries
"""

import os
import sys
import threading
from decimal import Decimal

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from audit import AuditAction
from period_registry import PeriodRegistry
from profit_errors import (
    DuplicateDistribution,
    NoCirculatingTokens,
    NotFoundError,
    StateConflictError,
    TransientDependencyError,
    ValidationError,
)
from profit_models import ClaimStatus, DistributionStatus
from profit_service import bound_limit
from reconciliation import ReconciliationStatus


def create(service, project_id, quarter=1, year=2024, total="10000.00"):
    return service.create_distribution(
        project_id=project_id,
        total_profit=total,
        period_start=f"{year}-01-01",
        period_end=f"{year}-03-31",
        quarter=quarter,
        year=year,
        admin_id="admin-1",
    )


class TestCreateDistribution:
    """Distribution creation."""

    def test_amounts(self, q1_distribution):
        assert q1_distribution.total_profit == 1_000_000
        assert q1_distribution.platform_fee == 50_000
        assert q1_distribution.distributed_profit == 950_000
        assert q1_distribution.total_circulating_tokens == 2000
        assert q1_distribution.profit_per_token == Decimal("4.75")
        assert q1_distribution.status == DistributionStatus.CALCULATED
        assert q1_distribution.settlement_reference is None

    def test_fee_invariant(self, q1_distribution):
        assert (
            q1_distribution.platform_fee + q1_distribution.distributed_profit
            == q1_distribution.total_profit
        )

    def test_serialized_profit_per_token(self, q1_distribution):
        data = q1_distribution.to_dict()

        assert data["profitPerToken"] == "4.75"
        assert data["distributedProfit"] == "9500.00"

    def test_claims_created_for_completed_holdings_only(self, service, q1_distribution):
        claims = service.list_claims_by_distribution(q1_distribution.distribution_id).items
        by_user = {c.user_id: c for c in claims}

        assert set(by_user) == {"user-1", "user-2", "user-3"}
        assert by_user["user-1"].claimable_amount == 475_000
        assert by_user["user-3"].token_amount == 400
        assert all(c.status == ClaimStatus.PENDING for c in claims)
        assert sum(c.claimable_amount for c in claims) == q1_distribution.distributed_profit

    def test_claim_ids_derived_from_distribution(self, service, q1_distribution):
        claim = service.get_claim(f"{q1_distribution.distribution_id}_user-2")

        assert claim.user_id == "user-2"
        assert claim.project_id == "proj-solar"

    def test_snapshot_excludes_later_investments(self, service, ledger, q1_distribution):
        ledger.record_investment("proj-solar", "user-4", 5000)

        claims = service.list_claims_by_distribution(q1_distribution.distribution_id).items
        assert "user-4" not in {c.user_id for c in claims}
        assert service.get_distribution(q1_distribution.distribution_id).holder_snapshot == (
            q1_distribution.holder_snapshot
        )

    def test_metrics_and_audit(self, service, q1_distribution, test_metrics, audit_sink):
        assert test_metrics.get_counter("distributions_created_total") == 1
        assert test_metrics.get_counter("claims_created_total") == 3

        created = audit_sink.by_action(AuditAction.DISTRIBUTION_CREATED)
        assert len(created) == 1
        assert created[0].actor == "admin-1"
        assert created[0].entity_id == q1_distribution.distribution_id
        assert len(audit_sink.by_action(AuditAction.CLAIM_CREATED)) == 3

    @pytest.mark.parametrize(
        "overrides",
        [
            {"total_profit": "0"},
            {"total_profit": "-5"},
            {"total_profit": "1.001"},
            {"quarter": 5},
            {"quarter": "one"},
            {"year": 1800},
            {"period_start": "2024-04-01", "period_end": "2024-03-31"},
            {"period_start": "not-a-date"},
            {"project_id": ""},
            {"admin_id": None},
        ],
    )
    def test_invalid_input_rejected_before_write(self, service, store, solar_project, overrides):
        params = {
            "project_id": solar_project,
            "total_profit": "1000",
            "period_start": "2024-01-01",
            "period_end": "2024-03-31",
            "quarter": 1,
            "year": 2024,
            "admin_id": "admin-1",
        }
        params.update(overrides)

        with pytest.raises(ValidationError):
            service.create_distribution(**params)
        assert store.list_distributions().items == []
        assert store.list_claims().items == []


class TestPeriodRegistry:
    """Lookup of reserved periods."""

    def test_free_period(self, store):
        registry = PeriodRegistry(store)

        assert registry.find("proj-solar", 1, 2024) is None
        assert registry.is_reserved("proj-solar", 1, 2024) is False

    def test_reserved_after_creation(self, store, q1_distribution):
        registry = PeriodRegistry(store)

        assert registry.find("proj-solar", 1, 2024).distribution_id == (
            q1_distribution.distribution_id
        )
        assert registry.is_reserved("proj-solar", 1, 2024) is True
        assert registry.is_reserved("proj-solar", 2, 2024) is False
        assert registry.is_reserved("proj-wind", 1, 2024) is False


class TestEndToEndSettlement:
    """Every minor unit of an indivisible pool reaches an investor."""

    def test_all_claims_settled_balances(self, service, ledger, gateway, bank_details):
        for user_id in ("user-a", "user-b", "user-c"):
            ledger.record_investment("proj-tiny", user_id, 1)

        distribution = create(service, "proj-tiny", total="1.00")
        assert distribution.platform_fee == 5
        assert distribution.distributed_profit == 95

        for user_id in ("user-a", "user-b", "user-c"):
            claim = service.request_claim(distribution.distribution_id, user_id, bank_details)
            gateway.complete(claim.payment_id)

        claims = service.list_claims_by_distribution(distribution.distribution_id).items
        assert sorted(c.claimed_amount for c in claims) == [31, 32, 32]
        assert all(c.status == ClaimStatus.COMPLETED for c in claims)

        report = service.reconcile(distribution.distribution_id)
        assert report.status == ReconciliationStatus.BALANCED
        assert report.discrepancies == []
        assert report.total_claimed == distribution.distributed_profit
        assert report.outstanding == 0


class TestDuplicateDistribution:
    """At most one distribution per (project, quarter, year)."""

    def test_second_call_rejected(self, service, store, q1_distribution):
        with pytest.raises(DuplicateDistribution) as exc_info:
            create(service, "proj-solar")

        assert exc_info.value.details["distribution_id"] == q1_distribution.distribution_id
        assert len(store.list_distributions(project_id="proj-solar").items) == 1
        assert len(store.list_claims().items) == 3

    def test_duplicate_is_a_validation_error(self):
        assert issubclass(DuplicateDistribution, ValidationError)
        assert DuplicateDistribution("x").http_status == 409

    def test_other_quarter_and_project_allowed(self, service, ledger, q1_distribution):
        ledger.record_investment("proj-wind", "user-1", 10)

        q2 = create(service, "proj-solar", quarter=2)
        wind = create(service, "proj-wind")

        assert q2.distribution_id != q1_distribution.distribution_id
        assert wind.project_id == "proj-wind"

    def test_concurrent_creation_succeeds_once(self, service, store, solar_project):
        results = []
        errors = []
        barrier = threading.Barrier(8)

        def attempt():
            barrier.wait()
            try:
                results.append(create(service, solar_project, quarter=3))
            except DuplicateDistribution as e:
                errors.append(e)

        threads = [threading.Thread(target=attempt) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(results) == 1
        assert len(errors) == 7
        assert len(store.list_distributions(project_id=solar_project).items) == 1
        assert len(store.list_claims().items) == 3


class TestNoHolderGuard:
    """A project without completed investments cannot distribute."""

    def test_no_investments(self, service, store):
        with pytest.raises(NoCirculatingTokens):
            create(service, "proj-empty")

        assert store.list_distributions().items == []
        assert store.list_claims().items == []

    def test_only_pending_investments(self, service, ledger, store):
        ledger.record_investment("proj-new", "user-1", 100, status="pending")

        with pytest.raises(NoCirculatingTokens):
            create(service, "proj-new")
        assert store.find_distribution_by_period("proj-new", 1, 2024) is None

    def test_ledger_unavailable(self, service, ledger, store, solar_project):
        ledger.available = False

        with pytest.raises(TransientDependencyError):
            create(service, solar_project)
        assert store.list_distributions().items == []


class TestSettlementReference:
    """Attaching the treasury settlement reference."""

    def test_attach(self, service, q1_distribution, audit_sink):
        updated = service.attach_settlement_reference(
            q1_distribution.distribution_id, "TRX-001", "admin-2"
        )

        assert updated.status == DistributionStatus.DISTRIBUTED
        assert updated.settlement_reference == "TRX-001"
        assert updated.distributed_at is not None
        stored = service.get_distribution(q1_distribution.distribution_id)
        assert stored.settlement_reference == "TRX-001"

        records = audit_sink.by_action(AuditAction.SETTLEMENT_ATTACHED)
        assert len(records) == 1
        assert records[0].actor == "admin-2"

    def test_same_reference_is_noop(self, service, q1_distribution, audit_sink):
        first = service.attach_settlement_reference(
            q1_distribution.distribution_id, "TRX-001", "admin-1"
        )
        second = service.attach_settlement_reference(
            q1_distribution.distribution_id, "TRX-001", "admin-1"
        )

        assert second.distributed_at == first.distributed_at
        assert len(audit_sink.by_action(AuditAction.SETTLEMENT_ATTACHED)) == 1

    def test_different_reference_conflicts(self, service, q1_distribution):
        service.attach_settlement_reference(q1_distribution.distribution_id, "TRX-001", "admin-1")

        with pytest.raises(StateConflictError):
            service.attach_settlement_reference(
                q1_distribution.distribution_id, "TRX-002", "admin-1"
            )

    def test_unknown_distribution(self, service):
        with pytest.raises(NotFoundError):
            service.attach_settlement_reference("dist_missing", "TRX-001", "admin-1")

    def test_blank_reference(self, service, q1_distribution):
        with pytest.raises(ValidationError):
            service.attach_settlement_reference(q1_distribution.distribution_id, " ", "admin-1")


class TestQueries:
    """Read-only queries with cursor pagination."""

    def test_list_by_project_pages(self, service, solar_project):
        for quarter in (1, 2, 3, 4):
            create(service, solar_project, quarter=quarter)

        first = service.list_distributions_by_project(solar_project, limit=3)
        assert len(first.items) == 3
        assert first.next_cursor is not None

        second = service.list_distributions_by_project(
            solar_project, limit=3, cursor=first.next_cursor
        )
        assert len(second.items) == 1
        assert second.next_cursor is None

        ids = [d.distribution_id for d in first.items + second.items]
        assert len(set(ids)) == 4

    def test_list_by_status(self, service, solar_project):
        q1 = create(service, solar_project, quarter=1)
        create(service, solar_project, quarter=2)
        service.attach_settlement_reference(q1.distribution_id, "TRX-1", "admin-1")

        distributed = service.list_distributions(status=DistributionStatus.DISTRIBUTED)
        assert [d.distribution_id for d in distributed.items] == [q1.distribution_id]

    def test_list_claims_by_user_and_claimable(self, service, solar_project):
        create(service, solar_project, quarter=1)
        create(service, solar_project, quarter=2)

        assert len(service.list_claims_by_user("user-1").items) == 2
        assert len(service.list_claimable("user-1").items) == 2
        assert service.list_claims_by_user("nobody").items == []

    def test_get_claim_authorization(self, service, q1_distribution):
        from profit_errors import AuthorizationError

        claim_id = f"{q1_distribution.distribution_id}_user-1"
        assert service.get_claim(claim_id, caller_id="user-1").user_id == "user-1"
        assert service.get_claim(claim_id, caller_id="admin-1", caller_is_admin=True)
        with pytest.raises(AuthorizationError):
            service.get_claim(claim_id, caller_id="user-2")

    def test_unknown_ids(self, service):
        with pytest.raises(NotFoundError):
            service.get_distribution("dist_missing")
        with pytest.raises(NotFoundError):
            service.get_claim("dist_missing_user-1")
        with pytest.raises(NotFoundError):
            service.list_claims_by_distribution("dist_missing")

    def test_invalid_cursor(self, service, solar_project):
        with pytest.raises(ValidationError):
            service.list_distributions_by_project(solar_project, cursor="%%%")

    def test_audit_trail_by_entity(self, service, q1_distribution):
        records = service.get_audit_trail(q1_distribution.distribution_id)

        assert [r["action"] for r in records] == [AuditAction.DISTRIBUTION_CREATED]


class TestBoundLimit:
    """Page size validation."""

    def test_default(self):
        assert bound_limit(None) == 20

    def test_valid(self):
        assert bound_limit("50") == 50
        assert bound_limit(100) == 100

    @pytest.mark.parametrize("value", [0, 101, "-1", "ten"])
    def test_invalid(self, value):
        with pytest.raises(ValidationError):
            bound_limit(value)
