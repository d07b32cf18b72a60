"""
InfraShare - Claim Lifecycle Manager

Drives a claim through settlement:

    PENDING --request--> PROCESSING --payment completed--> COMPLETED
                             |
                             +--initiation failed / payment failed--> PENDING

Every transition is a compare-and-swap in the store, so two concurrent
requests for the same claim cannot both initiate a payment, and a late or
duplicated gateway notification can never move a claim backwards.
COMPLETED is absorbing.

Payment completion always arrives asynchronously (webhook or simulated
gateway notification). Notifications are idempotent: anything that does
not apply to the claim's current state is logged and acknowledged.
"""

import logging
from typing import Any

import requests

from audit import AuditAction, AuditTrail
from collaborators import BankDetails, PaymentGateway, PaymentNotification, PaymentOutcome
from money import mask_account
from monitoring.metrics import MetricsCollector, metrics as default_metrics
from profit_errors import (
    AuthorizationError,
    ClaimProcessingFailed,
    NotFoundError,
    StateConflictError,
    TransientDependencyError,
)
from profit_models import (
    ClaimStatus,
    CompletedState,
    PaymentDetails,
    PendingState,
    ProcessingState,
    ProfitClaim,
    make_claim_id,
    utc_now,
)
from retry import CircuitBreaker, RetryConfig, get_circuit_breaker, retry_call
from storage.base import ProfitStore, StorageError

logger = logging.getLogger(__name__)

GATEWAY_ACTOR = "payment_gateway"
PAYMENT_CIRCUIT = "payment_gateway"

# Failures of the gateway call that leave the request retryable
INITIATION_ERRORS = (
    TransientDependencyError,
    requests.RequestException,
    ConnectionError,
    TimeoutError,
)


def audit_view(claim: ProfitClaim) -> dict[str, Any]:
    """Claim snapshot for the audit trail, with the bank account masked."""
    data = claim.to_dict()
    if data["paymentDetails"]:
        data["paymentDetails"] = dict(
            data["paymentDetails"],
            bankAccount=mask_account(data["paymentDetails"]["bankAccount"]),
        )
    return data


class ClaimLifecycleManager:
    """Owns every state change of a profit claim after creation."""

    def __init__(
        self,
        store: ProfitStore,
        gateway: PaymentGateway,
        audit: AuditTrail | None = None,
        metrics: MetricsCollector | None = None,
        circuit_breaker: CircuitBreaker | None = None,
        retry_config: RetryConfig | None = None,
    ):
        self.store = store
        self.gateway = gateway
        self.retry_config = retry_config or RetryConfig(retryable_exceptions=(StorageError,))
        self.audit = audit or AuditTrail()
        self.metrics = metrics or default_metrics
        self.circuit_breaker = circuit_breaker or get_circuit_breaker(PAYMENT_CIRCUIT)

    # =========================================================================
    # Investor request
    # =========================================================================

    def request_claim(
        self,
        distribution_id: str,
        user_id: str,
        bank_details: BankDetails,
        caller_id: str | None = None,
    ) -> ProfitClaim:
        """
        Start settlement of a pending claim.

        Args:
            distribution_id: Distribution the claim belongs to
            user_id: Holder whose claim is requested
            bank_details: Destination account for the transfer
            caller_id: Authenticated caller (defaults to user_id)

        Returns:
            The claim in PROCESSING with its payment recorded (or COMPLETED
            if the completion notification overtook the acknowledgement)

        Raises:
            NotFoundError: No claim for this holder in the distribution
            AuthorizationError: Caller does not own the claim
            StateConflictError: Claim is not pending
            ClaimProcessingFailed: Payment could not be initiated; the claim
                is pending again and the request may be retried
        """
        claim_id = make_claim_id(distribution_id, user_id)
        claim = self.store.get_claim(claim_id)
        if claim is None:
            raise NotFoundError(f"Profit claim {claim_id} not found", claim_id=claim_id)

        caller = caller_id if caller_id is not None else user_id
        if caller != claim.user_id:
            logger.warning(f"Caller {caller} attempted to claim {claim_id}")
            raise AuthorizationError("Unauthorized claim attempt", claim_id=claim_id)

        if claim.status != ClaimStatus.PENDING:
            raise StateConflictError(
                f"Profit claim is already {claim.status.value}",
                claim_id=claim_id,
                status=claim.status.value,
            )

        if not self.circuit_breaker.is_allowed():
            self.metrics.increment("payment_initiation_failures_total")
            raise ClaimProcessingFailed(
                "Payment gateway is unavailable, please retry later", claim_id=claim_id
            )

        processing = claim.with_state(ProcessingState(started_at=utc_now()))
        if not self.store.compare_and_swap_claim(claim, processing):
            raise StateConflictError(
                "Profit claim is already being processed", claim_id=claim_id
            )
        self._record_transition(caller, claim, processing)

        try:
            receipt = self.gateway.initiate(
                user_id, claim.claimable_amount, bank_details, reference=claim_id
            )
        except INITIATION_ERRORS as e:
            self.circuit_breaker.record_failure()
            self.metrics.increment("payment_initiation_failures_total")
            logger.error(f"Payment initiation failed for {claim_id}: {e}")
            self._roll_back(caller, processing, reason=f"payment initiation failed: {e}")
            raise ClaimProcessingFailed(
                "Failed to process profit claim, please retry", claim_id=claim_id
            ) from e
        except Exception as e:
            logger.exception(f"Payment gateway raised unexpectedly for {claim_id}")
            self._roll_back(caller, processing, reason=f"payment initiation error: {e!r}")
            raise
        self.circuit_breaker.record_success()

        acknowledged = claim.with_state(
            ProcessingState(
                started_at=processing.state.started_at,
                payment=PaymentDetails(
                    payment_id=receipt.payment_id,
                    bank_account=bank_details.account_number,
                    processed_at=receipt.processed_at,
                ),
            )
        )
        if self.store.compare_and_swap_claim(processing, acknowledged):
            self.audit.record(
                actor=caller,
                action=AuditAction.PAYMENT_INITIATED,
                entity_id=claim_id,
                before_state=audit_view(processing),
                after_state=audit_view(acknowledged),
            )
            logger.info(
                f"Payment {receipt.payment_id} initiated for claim {claim_id}",
                extra={"amount": acknowledged.to_dict()["claimableAmount"]},
            )
            return acknowledged

        # The completion callback settled the claim before the payment id
        # could be recorded.
        current = self.store.get_claim(claim_id)
        logger.info(
            f"Claim {claim_id} moved to {current.status.value} while payment "
            f"{receipt.payment_id} was being recorded"
        )
        return current

    # =========================================================================
    # Gateway callbacks
    # =========================================================================

    def settle_claim(self, claim_id: str, payment_id: str | None = None) -> ProfitClaim:
        """
        Complete a processing claim after the gateway confirmed the payment.

        Idempotent: a claim that is not PROCESSING, or whose recorded payment
        differs from ``payment_id``, is returned unchanged.

        Raises:
            NotFoundError: If the claim does not exist
        """
        claim = self._get_claim(claim_id)

        if claim.status != ClaimStatus.PROCESSING:
            logger.info(
                f"Ignoring completion for claim {claim_id} in state {claim.status.value}",
                extra={"payment_id": payment_id},
            )
            return claim
        if payment_id and claim.payment_id and payment_id != claim.payment_id:
            logger.warning(
                f"Ignoring completion for claim {claim_id}: payment {payment_id} "
                f"does not match recorded {claim.payment_id}"
            )
            return claim

        payment = claim.payment
        if payment is None and payment_id:
            payment = PaymentDetails(payment_id=payment_id, bank_account="", processed_at=utc_now())

        completed = claim.with_state(
            CompletedState(
                claimed_amount=claim.claimable_amount,
                claimed_at=utc_now(),
                payment=payment,
            )
        )
        if not self.store.compare_and_swap_claim(claim, completed):
            current = self._get_claim(claim_id)
            logger.info(
                f"Completion for claim {claim_id} lost a race; now {current.status.value}"
            )
            return current

        self._record_transition(GATEWAY_ACTOR, claim, completed)
        logger.info(
            f"Claim {claim_id} completed",
            extra={
                "payment_id": completed.payment_id,
                "claimed_amount": completed.to_dict()["claimedAmount"],
            },
        )
        return completed

    def fail_claim_payment(
        self, claim_id: str, payment_id: str | None = None, reason: str = ""
    ) -> ProfitClaim:
        """
        Return a processing claim to PENDING after the gateway reported the
        payment as failed, so the investor can request it again.

        Idempotent in the same way as :meth:`settle_claim`.

        Raises:
            NotFoundError: If the claim does not exist
        """
        claim = self._get_claim(claim_id)

        if claim.status != ClaimStatus.PROCESSING:
            logger.info(
                f"Ignoring failure for claim {claim_id} in state {claim.status.value}",
                extra={"payment_id": payment_id},
            )
            return claim
        if payment_id and claim.payment_id and payment_id != claim.payment_id:
            logger.warning(
                f"Ignoring failure for claim {claim_id}: payment {payment_id} "
                f"does not match recorded {claim.payment_id}"
            )
            return claim

        rolled_back = self._roll_back(GATEWAY_ACTOR, claim, reason=reason or "payment failed")
        return rolled_back or self._get_claim(claim_id)

    def resolve_claim_id(
        self, payment_id: str | None = None, reference: str | None = None
    ) -> str:
        """
        Find the claim a gateway notification refers to.

        Raises:
            NotFoundError: If neither the reference nor the payment id match
        """
        if reference and self.store.get_claim(reference) is not None:
            return reference
        if payment_id:
            claim = self.store.find_claim_by_payment_id(payment_id)
            if claim is not None:
                return claim.claim_id
        raise NotFoundError(
            "No claim matches the payment notification",
            payment_id=payment_id,
            reference=reference,
        )

    def handle_notification(self, notification: PaymentNotification) -> ProfitClaim:
        """Apply a completion or failure notification from the gateway."""
        claim_id = self.resolve_claim_id(notification.payment_id, notification.reference)
        if notification.outcome == PaymentOutcome.COMPLETED:
            return self.settle_claim(claim_id, notification.payment_id)
        return self.fail_claim_payment(claim_id, notification.payment_id, notification.reason)

    # =========================================================================
    # Internals
    # =========================================================================

    def _get_claim(self, claim_id: str) -> ProfitClaim:
        claim = self.store.get_claim(claim_id)
        if claim is None:
            raise NotFoundError(f"Profit claim {claim_id} not found", claim_id=claim_id)
        return claim

    def _roll_back(self, actor: str, processing: ProfitClaim, reason: str) -> ProfitClaim | None:
        pending = processing.with_state(PendingState())
        try:
            applied = retry_call(
                self.store.compare_and_swap_claim,
                args=(processing, pending),
                config=self.retry_config,
            )
        except StorageError as e:
            logger.error(
                f"Rollback of claim {processing.claim_id} failed, left processing "
                f"without a payment: {e}",
                extra={"claim_id": processing.claim_id, "reason": reason},
            )
            self.audit.record(
                actor=actor,
                action=AuditAction.RECONCILIATION_ALERT,
                entity_id=processing.claim_id,
                before_state=audit_view(processing),
                after_state={"alert": "rollback_failed", "reason": reason, "error": str(e)},
            )
            return None
        if not applied:
            logger.error(
                f"Rollback of claim {processing.claim_id} skipped: state changed concurrently"
            )
            return None

        self.metrics.increment("claim_rollbacks_total")
        self.metrics.increment(
            "claim_transitions_total",
            labels={"from": ClaimStatus.PROCESSING.value, "to": ClaimStatus.PENDING.value},
        )
        self.audit.record(
            actor=actor,
            action=AuditAction.CLAIM_ROLLBACK,
            entity_id=processing.claim_id,
            before_state=audit_view(processing),
            after_state=dict(audit_view(pending), reason=reason),
        )
        logger.warning(f"Claim {processing.claim_id} rolled back to pending: {reason}")
        return pending

    def _record_transition(self, actor: str, before: ProfitClaim, after: ProfitClaim) -> None:
        self.metrics.increment(
            "claim_transitions_total",
            labels={"from": before.status.value, "to": after.status.value},
        )
        self.audit.record(
            actor=actor,
            action=AuditAction.CLAIM_TRANSITION,
            entity_id=after.claim_id,
            before_state=audit_view(before),
            after_state=audit_view(after),
        )
        logger.info(
            f"Claim {after.claim_id}: {before.status.value} -> {after.status.value}",
            extra={"actor": actor},
        )
