"""
InfraShare - Reconciliation Reporter

Verifies that what investors were owed and paid adds up to what a
distribution promised. Discrepancies are reported and alerted, never
corrected automatically.

Report status:
- balanced: every claim completed and all totals agree
- open: claims still pending or processing, nothing inconsistent so far
- discrepancy: at least one check failed
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from audit import AuditAction, AuditTrail
from money import format_amount
from monitoring.metrics import MetricsCollector, metrics as default_metrics
from profit_errors import NotFoundError
from profit_models import ClaimStatus, ProfitDistribution, utc_now
from storage.base import ProfitStore

logger = logging.getLogger(__name__)

RECONCILER_ACTOR = "reconciler"


class ReconciliationStatus(Enum):
    BALANCED = "balanced"
    OPEN = "open"
    DISCREPANCY = "discrepancy"


@dataclass
class Discrepancy:
    """One failed reconciliation check."""

    kind: str
    message: str
    claim_id: str | None = None
    expected: str | None = None
    actual: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "claimId": self.claim_id,
            "expected": self.expected,
            "actual": self.actual,
        }


@dataclass
class ReconciliationReport:
    """Totals and checks for one distribution."""

    distribution_id: str
    project_id: str
    scale: int
    distributed_profit: int
    total_claimable: int
    total_claimed: int
    claim_count: int
    holder_count: int
    status_counts: dict[str, int]
    discrepancies: list[Discrepancy] = field(default_factory=list)
    generated_at: datetime = field(default_factory=utc_now)

    @property
    def outstanding(self) -> int:
        return self.total_claimable - self.total_claimed

    @property
    def complete(self) -> bool:
        return self.claim_count > 0 and self.status_counts.get(
            ClaimStatus.COMPLETED.value, 0
        ) == self.claim_count

    @property
    def status(self) -> ReconciliationStatus:
        if self.discrepancies:
            return ReconciliationStatus.DISCREPANCY
        if self.complete:
            return ReconciliationStatus.BALANCED
        return ReconciliationStatus.OPEN

    def to_dict(self) -> dict[str, Any]:
        return {
            "distributionId": self.distribution_id,
            "projectId": self.project_id,
            "status": self.status.value,
            "distributedProfit": format_amount(self.distributed_profit, self.scale),
            "totalClaimable": format_amount(self.total_claimable, self.scale),
            "totalClaimed": format_amount(self.total_claimed, self.scale),
            "outstanding": format_amount(self.outstanding, self.scale),
            "claimCount": self.claim_count,
            "holderCount": self.holder_count,
            "statusCounts": self.status_counts,
            "discrepancies": [d.to_dict() for d in self.discrepancies],
            "generatedAt": self.generated_at.isoformat(),
        }


@dataclass
class ProjectReconciliation:
    """Totals across every distribution of a project."""

    project_id: str
    scale: int
    reports: list[ReconciliationReport]
    total_profit: int
    total_platform_fees: int

    @property
    def total_distributed(self) -> int:
        return sum(r.distributed_profit for r in self.reports)

    @property
    def total_claimed(self) -> int:
        return sum(r.total_claimed for r in self.reports)

    @property
    def total_outstanding(self) -> int:
        return sum(r.outstanding for r in self.reports)

    @property
    def status(self) -> ReconciliationStatus:
        statuses = {r.status for r in self.reports}
        if ReconciliationStatus.DISCREPANCY in statuses:
            return ReconciliationStatus.DISCREPANCY
        if ReconciliationStatus.OPEN in statuses:
            return ReconciliationStatus.OPEN
        return ReconciliationStatus.BALANCED

    def to_dict(self) -> dict[str, Any]:
        return {
            "projectId": self.project_id,
            "status": self.status.value,
            "distributionCount": len(self.reports),
            "totalProfit": format_amount(self.total_profit, self.scale),
            "totalPlatformFees": format_amount(self.total_platform_fees, self.scale),
            "totalDistributed": format_amount(self.total_distributed, self.scale),
            "totalClaimed": format_amount(self.total_claimed, self.scale),
            "totalOutstanding": format_amount(self.total_outstanding, self.scale),
            "distributions": [r.to_dict() for r in self.reports],
        }


class Reconciler:
    """Checks distributions against their claims."""

    def __init__(
        self,
        store: ProfitStore,
        audit: AuditTrail | None = None,
        metrics: MetricsCollector | None = None,
        minor_unit_digits: int = 2,
    ):
        self.store = store
        self.audit = audit or AuditTrail()
        self.metrics = metrics or default_metrics
        self.minor_unit_digits = minor_unit_digits

    def reconcile(self, distribution_id: str) -> ReconciliationReport:
        """
        Reconcile one distribution.

        Raises:
            NotFoundError: If the distribution does not exist
        """
        distribution = self.store.get_distribution(distribution_id)
        if distribution is None:
            raise NotFoundError(
                f"Distribution {distribution_id} not found", distribution_id=distribution_id
            )
        report = self._check(distribution)
        self._alert(report)
        return report

    def reconcile_project(self, project_id: str) -> ProjectReconciliation:
        """Reconcile every distribution of a project."""
        distributions = self.store.list_distributions(project_id=project_id).items
        reports = []
        for distribution in distributions:
            report = self._check(distribution)
            self._alert(report)
            reports.append(report)

        scale = distributions[0].scale if distributions else self.minor_unit_digits
        return ProjectReconciliation(
            project_id=project_id,
            scale=scale,
            reports=reports,
            total_profit=sum(d.total_profit for d in distributions),
            total_platform_fees=sum(d.platform_fee for d in distributions),
        )

    def _check(self, distribution: ProfitDistribution) -> ReconciliationReport:
        claims = self.store.list_claims(distribution_id=distribution.distribution_id).items
        scale = distribution.scale

        status_counts = {status.value: 0 for status in ClaimStatus}
        for claim in claims:
            status_counts[claim.status.value] += 1

        report = ReconciliationReport(
            distribution_id=distribution.distribution_id,
            project_id=distribution.project_id,
            scale=scale,
            distributed_profit=distribution.distributed_profit,
            total_claimable=sum(c.claimable_amount for c in claims),
            total_claimed=sum(c.claimed_amount for c in claims),
            claim_count=len(claims),
            holder_count=len(distribution.holder_snapshot),
            status_counts=status_counts,
        )

        if report.claim_count != report.holder_count:
            report.discrepancies.append(
                Discrepancy(
                    kind="claim_count_mismatch",
                    message="Number of claims differs from the holder snapshot",
                    expected=str(report.holder_count),
                    actual=str(report.claim_count),
                )
            )
        if report.total_claimable != distribution.distributed_profit:
            report.discrepancies.append(
                Discrepancy(
                    kind="claimable_total_mismatch",
                    message="Sum of claimable amounts differs from distributed profit",
                    expected=format_amount(distribution.distributed_profit, scale),
                    actual=format_amount(report.total_claimable, scale),
                )
            )
        for claim in claims:
            if (
                claim.status == ClaimStatus.COMPLETED
                and claim.claimed_amount != claim.claimable_amount
            ):
                report.discrepancies.append(
                    Discrepancy(
                        kind="claimed_amount_mismatch",
                        message="Completed claim paid a different amount than claimable",
                        claim_id=claim.claim_id,
                        expected=format_amount(claim.claimable_amount, scale),
                        actual=format_amount(claim.claimed_amount, scale),
                    )
                )
        if report.complete and report.total_claimed != distribution.distributed_profit:
            report.discrepancies.append(
                Discrepancy(
                    kind="claimed_total_mismatch",
                    message="All claims completed but claimed total differs from distributed profit",
                    expected=format_amount(distribution.distributed_profit, scale),
                    actual=format_amount(report.total_claimed, scale),
                )
            )
        return report

    def _alert(self, report: ReconciliationReport) -> None:
        for discrepancy in report.discrepancies:
            self.metrics.increment(
                "reconciliation_discrepancies_total", labels={"kind": discrepancy.kind}
            )
            logger.error(
                f"Reconciliation discrepancy in {report.distribution_id}: {discrepancy.message}",
                extra={"discrepancy": discrepancy.to_dict()},
            )
            self.audit.record(
                actor=RECONCILER_ACTOR,
                action=AuditAction.RECONCILIATION_ALERT,
                entity_id=report.distribution_id,
                after_state=discrepancy.to_dict(),
            )
        if not report.discrepancies:
            logger.info(
                f"Distribution {report.distribution_id} reconciled: {report.status.value}"
            )
