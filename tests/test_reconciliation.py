"""
Tests for distribution and project reconciliation.
"""

import os
import sys
from dataclasses import replace

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from audit import AuditAction
from profit_errors import NotFoundError
from profit_models import CompletedState, make_claim_id, utc_now
from reconciliation import ReconciliationStatus


def settle_all(service, gateway, distribution, bank_details):
    for claim in service.list_claims_by_distribution(distribution.distribution_id).items:
        requested = service.request_claim(distribution.distribution_id, claim.user_id, bank_details)
        gateway.complete(requested.payment_id)


class TestReconcileDistribution:
    """Single distribution reports."""

    def test_open_while_claims_pending(self, service, q1_distribution):
        report = service.reconcile(q1_distribution.distribution_id)

        assert report.status == ReconciliationStatus.OPEN
        assert report.total_claimable == q1_distribution.distributed_profit
        assert report.total_claimed == 0
        assert report.outstanding == q1_distribution.distributed_profit
        assert report.status_counts == {"pending": 3, "processing": 0, "completed": 0}

    def test_balanced_when_all_completed(self, service, gateway, q1_distribution, bank_details):
        settle_all(service, gateway, q1_distribution, bank_details)

        report = service.reconcile(q1_distribution.distribution_id)

        assert report.status == ReconciliationStatus.BALANCED
        assert report.total_claimed == q1_distribution.distributed_profit
        assert report.outstanding == 0
        assert report.discrepancies == []

    def test_report_serialization(self, service, q1_distribution):
        data = service.reconcile(q1_distribution.distribution_id).to_dict()

        assert data["status"] == "open"
        assert data["distributedProfit"] == "9500.00"
        assert data["totalClaimable"] == "9500.00"
        assert data["outstanding"] == "9500.00"
        assert data["claimCount"] == 3

    def test_claimed_amount_mismatch(
        self, service, store, q1_distribution, test_metrics, audit_sink
    ):
        claim_id = make_claim_id(q1_distribution.distribution_id, "user-2")
        claim = store.get_claim(claim_id)
        store._claims[claim_id] = claim.with_state(
            CompletedState(claimed_amount=claim.claimable_amount - 1, claimed_at=utc_now())
        )

        report = service.reconcile(q1_distribution.distribution_id)

        assert report.status == ReconciliationStatus.DISCREPANCY
        assert [d.kind for d in report.discrepancies] == ["claimed_amount_mismatch"]
        assert report.discrepancies[0].claim_id == claim_id
        assert test_metrics.get_counter(
            "reconciliation_discrepancies_total", labels={"kind": "claimed_amount_mismatch"}
        ) == 1
        alerts = audit_sink.by_action(AuditAction.RECONCILIATION_ALERT)
        assert len(alerts) == 1
        assert alerts[0].actor == "reconciler"

    def test_claimable_total_mismatch(self, service, store, q1_distribution):
        claim_id = make_claim_id(q1_distribution.distribution_id, "user-1")
        store._claims[claim_id] = replace(store.get_claim(claim_id), claimable_amount=1)

        report = service.reconcile(q1_distribution.distribution_id)

        assert "claimable_total_mismatch" in {d.kind for d in report.discrepancies}

    def test_unknown_distribution(self, service):
        with pytest.raises(NotFoundError):
            service.reconcile("dist_missing")


class TestReconcileProject:
    """Totals across a project's distributions."""

    def test_project_totals(self, service, gateway, solar_project, bank_details):
        q1 = service.create_distribution(
            solar_project, "10000.00", "2024-01-01", "2024-03-31", 1, 2024, "admin-1"
        )
        service.create_distribution(
            solar_project, "2000.00", "2024-04-01", "2024-06-30", 2, 2024, "admin-1"
        )
        settle_all(service, gateway, q1, bank_details)

        result = service.reconcile_project(solar_project)
        data = result.to_dict()

        assert result.status == ReconciliationStatus.OPEN
        assert data["distributionCount"] == 2
        assert data["totalProfit"] == "12000.00"
        assert data["totalPlatformFees"] == "600.00"
        assert data["totalDistributed"] == "11400.00"
        assert data["totalClaimed"] == "9500.00"
        assert data["totalOutstanding"] == "1900.00"

    def test_empty_project_is_balanced(self, service):
        result = service.reconcile_project("proj-none")

        assert result.reports == []
        assert result.status == ReconciliationStatus.BALANCED
