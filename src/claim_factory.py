"""
InfraShare - Claim Factory

Creates one pending claim per holder in a distribution's snapshot.

Claim writes are idempotent upserts keyed by "{distribution_id}_{user_id}",
so the fan-out can run in parallel, be retried per claim, and be resumed
for a distribution whose fan-out was interrupted.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed

from allocation import apportion
from audit import AuditAction, AuditTrail
from monitoring.metrics import MetricsCollector, metrics as default_metrics
from profit_errors import ClaimFanoutIncomplete, NotFoundError, StateConflictError
from profit_models import Holding, ProfitClaim, ProfitDistribution, make_claim_id
from retry import RetryConfig, retry_call
from storage.base import ProfitStore, StorageError

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


class ClaimFactory:
    """Builds and persists the claims of a distribution."""

    def __init__(
        self,
        store: ProfitStore,
        audit: AuditTrail | None = None,
        max_workers: int = 8,
        retry_config: RetryConfig | None = None,
        metrics: MetricsCollector | None = None,
    ):
        self.store = store
        self.audit = audit or AuditTrail()
        self.max_workers = max_workers
        self.retry_config = retry_config or RetryConfig(
            retryable_exceptions=(ConnectionError, TimeoutError, StorageError)
        )
        self.metrics = metrics or default_metrics

    def build_claims(self, distribution: ProfitDistribution) -> list[ProfitClaim]:
        """
        Split the stored distributed profit over the holder snapshot.

        Uses the persisted pool; the fee is not recomputed from the current
        configuration.
        """
        shares, _ = apportion(distribution.distributed_profit, list(distribution.holder_snapshot))
        return [
            self._new_claim(distribution, holding, shares[holding.user_id])
            for holding in distribution.holder_snapshot
        ]

    @staticmethod
    def _new_claim(
        distribution: ProfitDistribution, holding: Holding, claimable_amount: int
    ) -> ProfitClaim:
        return ProfitClaim(
            claim_id=make_claim_id(distribution.distribution_id, holding.user_id),
            user_id=holding.user_id,
            project_id=distribution.project_id,
            distribution_id=distribution.distribution_id,
            token_amount=holding.token_amount,
            claimable_amount=claimable_amount,
            created_at=distribution.created_at,
            currency=distribution.currency,
            scale=distribution.scale,
        )

    def create_claims(self, distribution: ProfitDistribution) -> list[ProfitClaim]:
        """
        Upsert every claim of the distribution in parallel.

        Returns:
            The stored claims, in snapshot order

        Raises:
            ClaimFanoutIncomplete: If some claims could not be written;
                calling again (or ``resume``) completes the fan-out
            StateConflictError: If a stored claim disagrees with the snapshot
        """
        claims = self.build_claims(distribution)
        stored: dict[str, ProfitClaim] = {}
        failed: dict[str, str] = {}
        conflicts: list[str] = []

        with ThreadPoolExecutor(max_workers=max(1, self.max_workers)) as executor:
            futures = {executor.submit(self._write_claim, claim): claim for claim in claims}
            for future in as_completed(futures):
                claim = futures[future]
                try:
                    stored[claim.claim_id] = future.result()
                except StateConflictError:
                    conflicts.append(claim.user_id)
                except (StorageError, ConnectionError, TimeoutError) as e:
                    failed[claim.user_id] = str(e)
                    logger.error(
                        f"Claim write failed for {claim.claim_id}: {e}",
                        extra={"distribution_id": distribution.distribution_id},
                    )

        if conflicts:
            raise StateConflictError(
                "Stored claims disagree with the distribution snapshot",
                distribution_id=distribution.distribution_id,
                user_ids=sorted(conflicts),
            )
        if failed:
            raise ClaimFanoutIncomplete(
                f"{len(failed)} of {len(claims)} claims could not be written",
                distribution_id=distribution.distribution_id,
                failed_user_ids=sorted(failed),
            )

        logger.info(
            f"Created {len(claims)} claims for distribution {distribution.distribution_id}"
        )
        return [stored[claim.claim_id] for claim in claims]

    def resume(self, distribution_id: str) -> list[ProfitClaim]:
        """
        Re-run the fan-out from the persisted holder snapshot.

        Raises:
            NotFoundError: If the distribution does not exist
        """
        distribution = self.store.get_distribution(distribution_id)
        if distribution is None:
            raise NotFoundError(
                f"Distribution {distribution_id} not found", distribution_id=distribution_id
            )
        logger.info(f"Resuming claim fan-out for distribution {distribution_id}")
        return self.create_claims(distribution)

    def _write_claim(self, claim: ProfitClaim) -> ProfitClaim:
        stored = retry_call(self.store.upsert_claim, args=(claim,), config=self.retry_config)
        if not stored.same_entitlement(claim):
            logger.error(
                f"Claim {claim.claim_id} already exists with different entitlement",
                extra={
                    "stored_claimable": stored.claimable_amount,
                    "expected_claimable": claim.claimable_amount,
                },
            )
            raise StateConflictError(
                f"Claim {claim.claim_id} already exists with different entitlement",
                claim_id=claim.claim_id,
            )

        if stored is claim:
            self.metrics.increment("claims_created_total")
            self.audit.record(
                actor=SYSTEM_ACTOR,
                action=AuditAction.CLAIM_CREATED,
                entity_id=claim.claim_id,
                after_state={
                    "status": claim.status.value,
                    "claimableAmount": claim.to_dict()["claimableAmount"],
                    "tokenAmount": claim.token_amount,
                },
            )
        return stored
