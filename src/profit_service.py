"""
InfraShare - Profit Distribution Service

Facade that wires the engine's components together and exposes the
operations used by the HTTP API and the CLI:

- Admin: create a distribution, attach a settlement reference, resume an
  interrupted claim fan-out, list and reconcile distributions
- Investor: list own claims, request settlement of a claim
- Payment gateway: completion and failure notifications

All read operations are pure and cursor-paginated.
"""

import logging
import uuid
from datetime import date
from typing import Any

from allocation import AllocationCalculator, aggregate_holdings
from audit import AuditAction, AuditTrail, LoggingAuditSink, StorageAuditSink
from claim_factory import ClaimFactory
from claim_lifecycle import ClaimLifecycleManager
from collaborators import (
    BankDetails,
    HTTPInvestmentLedger,
    HTTPPaymentGateway,
    InMemoryInvestmentLedger,
    InvestmentLedger,
    PaymentGateway,
    PaymentNotification,
    SimulatedPaymentGateway,
)
from config import EngineConfig
from money import to_minor_units
from monitoring.metrics import MetricsCollector, metrics as default_metrics
from period_registry import PeriodRegistry
from profit_errors import (
    AuthorizationError,
    DuplicateDistribution,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from profit_models import (
    ClaimStatus,
    DistributionStatus,
    Page,
    Period,
    ProfitClaim,
    ProfitDistribution,
    utc_now,
)
from reconciliation import ProjectReconciliation, ReconciliationReport, Reconciler
from retry import CircuitBreaker
from storage.base import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE, ProfitStore

logger = logging.getLogger(__name__)


# =============================================================================
# Input helpers
# =============================================================================


def bound_limit(limit: Any) -> int:
    """
    Validate a page size.

    Raises:
        ValidationError: If the limit is not an integer in 1..MAX_PAGE_SIZE
    """
    if limit is None:
        return DEFAULT_PAGE_SIZE
    if isinstance(limit, bool):
        raise ValidationError("limit must be an integer")
    try:
        limit = int(limit)
    except (TypeError, ValueError) as e:
        raise ValidationError("limit must be an integer") from e
    if not 1 <= limit <= MAX_PAGE_SIZE:
        raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
    return limit


def parse_claim_status(value: str | None) -> ClaimStatus | None:
    if value is None or value == "":
        return None
    try:
        return ClaimStatus(value)
    except ValueError as e:
        raise ValidationError(f"Unknown claim status: {value}") from e


def parse_distribution_status(value: str | None) -> DistributionStatus | None:
    if value is None or value == "":
        return None
    try:
        return DistributionStatus(value)
    except ValueError as e:
        raise ValidationError(f"Unknown distribution status: {value}") from e


def _parse_date(value: Any, field_name: str) -> date:
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        raise ValidationError(f"{field_name} must be an ISO date")
    try:
        return date.fromisoformat(value[:10])
    except ValueError as e:
        raise ValidationError(f"{field_name} must be an ISO date") from e


def _parse_int(value: Any, field_name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise ValidationError(f"{field_name} must be an integer")
    try:
        return int(value)
    except ValueError as e:
        raise ValidationError(f"{field_name} must be an integer") from e


def _require_text(value: Any, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field_name} is required")
    return value.strip()


# =============================================================================
# Service
# =============================================================================


class ProfitDistributionService:
    """Entry point for every profit distribution operation."""

    def __init__(
        self,
        store: ProfitStore,
        ledger: InvestmentLedger,
        gateway: PaymentGateway,
        config: EngineConfig | None = None,
        audit: AuditTrail | None = None,
        metrics: MetricsCollector | None = None,
        circuit_breaker: CircuitBreaker | None = None,
    ):
        self.config = config or EngineConfig()
        self.store = store
        self.ledger = ledger
        self.gateway = gateway
        self.audit = audit or AuditTrail([LoggingAuditSink(), StorageAuditSink(store)])
        self.metrics = metrics or default_metrics

        self.calculator = AllocationCalculator(
            self.config.fee_rate, self.config.minor_unit_digits
        )
        self.registry = PeriodRegistry(store)
        self.claim_factory = ClaimFactory(
            store,
            audit=self.audit,
            max_workers=self.config.claim_fanout_workers,
            metrics=self.metrics,
        )
        self.lifecycle = ClaimLifecycleManager(
            store,
            gateway,
            audit=self.audit,
            metrics=self.metrics,
            circuit_breaker=circuit_breaker,
        )
        self.reconciler = Reconciler(
            store,
            audit=self.audit,
            metrics=self.metrics,
            minor_unit_digits=self.config.minor_unit_digits,
        )

        if isinstance(gateway, SimulatedPaymentGateway):
            gateway.subscribe(self.lifecycle.handle_notification)

    # =========================================================================
    # Admin operations
    # =========================================================================

    def create_distribution(
        self,
        project_id: str,
        total_profit: Any,
        period_start: Any,
        period_end: Any,
        quarter: Any,
        year: Any,
        admin_id: str,
        notes: str | None = None,
    ) -> ProfitDistribution:
        """
        Declare a quarterly profit distribution and create its claims.

        Args:
            project_id: Project whose profit is distributed
            total_profit: Gross profit in major units (decimal string or number)
            period_start: First day of the period (date or ISO string)
            period_end: Last day of the period (date or ISO string)
            quarter: Fiscal quarter, 1-4
            year: Fiscal year
            admin_id: Administrator declaring the distribution
            notes: Free-text notes

        Returns:
            The persisted distribution

        Raises:
            ValidationError: Bad input
            DuplicateDistribution: The period already has a distribution
            NoCirculatingTokens: The project has no completed investments
            TransientDependencyError: The ledger could not be read
            ClaimFanoutIncomplete: Distribution stored but some claims are
                missing; resume with ``resume_claims``
        """
        project_id = _require_text(project_id, "projectId")
        admin_id = _require_text(admin_id, "adminId")
        profit = to_minor_units(total_profit, self.config.minor_unit_digits, "totalProfit")
        if profit <= 0:
            raise ValidationError("totalProfit must be positive")

        period = Period(
            start_date=_parse_date(period_start, "periodStart"),
            end_date=_parse_date(period_end, "periodEnd"),
            quarter=_parse_int(quarter, "quarter"),
            year=_parse_int(year, "year"),
        )
        if not 1 <= period.quarter <= 4:
            raise ValidationError("quarter must be between 1 and 4")
        if not 1900 <= period.year <= 9999:
            raise ValidationError("year is out of range")
        if period.start_date > period.end_date:
            raise ValidationError("periodStart must not be after periodEnd")

        existing = self.registry.find(project_id, period.quarter, period.year)
        if existing is not None:
            raise DuplicateDistribution(
                f"Profit distribution already exists for Q{period.quarter} {period.year}",
                project_id=project_id,
                quarter=period.quarter,
                year=period.year,
                distribution_id=existing.distribution_id,
            )

        holdings = aggregate_holdings(self.ledger.get_completed_holdings(project_id))
        allocation = self.calculator.allocate(profit, holdings)

        distribution = ProfitDistribution(
            distribution_id=f"dist_{uuid.uuid4().hex}",
            project_id=project_id,
            period=period,
            total_profit=allocation.total_profit,
            platform_fee=allocation.platform_fee,
            distributed_profit=allocation.distributed_profit,
            profit_per_token=allocation.profit_per_token,
            total_circulating_tokens=allocation.total_circulating_tokens,
            admin_id=admin_id,
            holder_snapshot=tuple(holdings),
            notes=notes,
            currency=self.config.currency,
            scale=self.config.minor_unit_digits,
        )
        self.registry.reserve(distribution)

        self.metrics.increment("distributions_created_total")
        self.audit.record(
            actor=admin_id,
            action=AuditAction.DISTRIBUTION_CREATED,
            entity_id=distribution.distribution_id,
            after_state=distribution.to_dict(include_snapshot=False),
        )
        logger.info(
            f"Distribution {distribution.distribution_id} created for {project_id} "
            f"Q{period.quarter} {period.year}",
            extra={"allocation": allocation.to_dict(), "admin_id": admin_id},
        )

        self.claim_factory.create_claims(distribution)
        return distribution

    def attach_settlement_reference(
        self, distribution_id: str, reference: str, admin_id: str
    ) -> ProfitDistribution:
        """
        Record the settlement (treasury transfer) reference of a distribution
        and mark it distributed. Succeeds at most once; repeating the same
        reference is a no-op.

        Raises:
            NotFoundError: Unknown distribution
            StateConflictError: A different reference is already attached
        """
        reference = _require_text(reference, "settlementReference")
        admin_id = _require_text(admin_id, "adminId")
        distribution = self.get_distribution(distribution_id)

        if distribution.settlement_reference is None:
            updated = distribution.with_settlement(reference, utc_now())
            if self.store.update_distribution_if(distribution, updated):
                self.audit.record(
                    actor=admin_id,
                    action=AuditAction.SETTLEMENT_ATTACHED,
                    entity_id=distribution_id,
                    before_state={
                        "status": distribution.status.value,
                        "settlementReference": None,
                    },
                    after_state={
                        "status": updated.status.value,
                        "settlementReference": reference,
                    },
                )
                logger.info(f"Settlement reference attached to {distribution_id}")
                return updated
            distribution = self.get_distribution(distribution_id)

        if distribution.settlement_reference == reference:
            return distribution
        raise StateConflictError(
            "Distribution already has a settlement reference",
            distribution_id=distribution_id,
        )

    def resume_claims(self, distribution_id: str) -> list[ProfitClaim]:
        """Finish an interrupted claim fan-out."""
        return self.claim_factory.resume(distribution_id)

    # =========================================================================
    # Investor and gateway operations
    # =========================================================================

    def request_claim(
        self,
        distribution_id: str,
        user_id: str,
        bank_details: Any,
        caller_id: str | None = None,
    ) -> ProfitClaim:
        details = bank_details if isinstance(bank_details, BankDetails) else BankDetails.from_dict(
            bank_details
        )
        return self.lifecycle.request_claim(distribution_id, user_id, details, caller_id)

    def handle_payment_notification(self, notification: PaymentNotification) -> ProfitClaim:
        return self.lifecycle.handle_notification(notification)

    # =========================================================================
    # Queries
    # =========================================================================

    def get_distribution(self, distribution_id: str) -> ProfitDistribution:
        distribution = self.store.get_distribution(distribution_id)
        if distribution is None:
            raise NotFoundError(
                f"Distribution {distribution_id} not found", distribution_id=distribution_id
            )
        return distribution

    def get_claim(
        self, claim_id: str, caller_id: str | None = None, caller_is_admin: bool = False
    ) -> ProfitClaim:
        """
        Fetch a claim. When ``caller_id`` is given, only the owner or an
        admin may read it.
        """
        claim = self.store.get_claim(claim_id)
        if claim is None:
            raise NotFoundError(f"Profit claim {claim_id} not found", claim_id=claim_id)
        if caller_id is not None and not caller_is_admin and caller_id != claim.user_id:
            raise AuthorizationError("Not allowed to view this claim", claim_id=claim_id)
        return claim

    def list_distributions_by_project(
        self, project_id: str, limit: Any = None, cursor: str | None = None
    ) -> Page:
        return self.store.list_distributions(
            project_id=project_id, limit=bound_limit(limit), cursor=cursor
        )

    def list_distributions(
        self,
        status: DistributionStatus | None = None,
        limit: Any = None,
        cursor: str | None = None,
    ) -> Page:
        return self.store.list_distributions(status=status, limit=bound_limit(limit), cursor=cursor)

    def list_claims_by_user(
        self,
        user_id: str,
        status: ClaimStatus | None = None,
        limit: Any = None,
        cursor: str | None = None,
    ) -> Page:
        return self.store.list_claims(
            user_id=user_id, status=status, limit=bound_limit(limit), cursor=cursor
        )

    def list_claimable(self, user_id: str, limit: Any = None, cursor: str | None = None) -> Page:
        """Pending claims the investor can still request."""
        return self.list_claims_by_user(user_id, ClaimStatus.PENDING, limit, cursor)

    def list_claims_by_distribution(
        self,
        distribution_id: str,
        status: ClaimStatus | None = None,
        limit: Any = None,
        cursor: str | None = None,
    ) -> Page:
        self.get_distribution(distribution_id)
        return self.store.list_claims(
            distribution_id=distribution_id, status=status, limit=bound_limit(limit), cursor=cursor
        )

    def reconcile(self, distribution_id: str) -> ReconciliationReport:
        return self.reconciler.reconcile(distribution_id)

    def reconcile_project(self, project_id: str) -> ProjectReconciliation:
        return self.reconciler.reconcile_project(project_id)

    def get_audit_trail(self, entity_id: str) -> list[dict[str, Any]]:
        return self.store.list_audit(entity_id=entity_id)


def build_service(
    config: EngineConfig | None = None, store: ProfitStore | None = None
) -> ProfitDistributionService:
    """
    Build a service from configuration.

    Uses the HTTP collaborators when their URLs are configured and the
    in-process ledger and simulated gateway otherwise.
    """
    config = config or EngineConfig.from_env()
    if store is None:
        from storage import get_storage_backend

        store = get_storage_backend()

    if config.ledger_url:
        ledger: InvestmentLedger = HTTPInvestmentLedger(
            config.ledger_url, timeout=config.ledger_timeout
        )
    else:
        logger.warning("INVESTMENT_LEDGER_URL not set, using in-memory investment ledger")
        ledger = InMemoryInvestmentLedger()

    if config.payment_url:
        gateway: PaymentGateway = HTTPPaymentGateway(
            config.payment_url,
            timeout=config.payment_timeout,
            api_key=config.payment_api_key,
            currency=config.currency,
            minor_unit_digits=config.minor_unit_digits,
        )
    else:
        logger.warning("PAYMENT_GATEWAY_URL not set, using simulated payment gateway")
        gateway = SimulatedPaymentGateway()

    return ProfitDistributionService(store, ledger, gateway, config=config)
