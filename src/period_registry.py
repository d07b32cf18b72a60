"""
InfraShare - Period Registry

Guarantees at most one distribution per (project, quarter, year).

The reservation is a single conditional insert in the store; there is no
check-then-act in application code, so two concurrent admin requests for
the same period cannot both succeed.
"""

import logging

from profit_errors import DuplicateDistribution
from profit_models import ProfitDistribution
from storage.base import ProfitStore

logger = logging.getLogger(__name__)


class PeriodRegistry:
    """Reserves fiscal periods for distributions."""

    def __init__(self, store: ProfitStore):
        self.store = store

    def reserve(self, distribution: ProfitDistribution) -> ProfitDistribution:
        """
        Persist a distribution if its period is still free.

        Raises:
            DuplicateDistribution: If the period already has a distribution
        """
        existing = self.store.insert_distribution_if_absent(distribution)
        if existing is not None:
            project_id, quarter, year = distribution.period_key
            logger.warning(
                f"Duplicate distribution rejected for {project_id} Q{quarter} {year}",
                extra={"existing_distribution_id": existing.distribution_id},
            )
            raise DuplicateDistribution(
                f"Profit distribution already exists for Q{quarter} {year}",
                project_id=project_id,
                quarter=quarter,
                year=year,
                distribution_id=existing.distribution_id,
            )
        logger.info(
            f"Reserved Q{distribution.period.quarter} {distribution.period.year} "
            f"for {distribution.project_id} as {distribution.distribution_id}"
        )
        return distribution

    def find(self, project_id: str, quarter: int, year: int) -> ProfitDistribution | None:
        return self.store.find_distribution_by_period(project_id, quarter, year)

    def is_reserved(self, project_id: str, quarter: int, year: int) -> bool:
        return self.find(project_id, quarter, year) is not None
