"""
Shared state for the InfraShare API.

Holds the service instance used by every blueprint. It is set by
``api.init_services`` when the app is created, which keeps blueprints free
of construction logic and lets tests inject their own service.
"""

from dataclasses import dataclass

from profit_errors import TransientDependencyError
from profit_service import ProfitDistributionService


@dataclass
class ServiceRegistry:
    """Registry of the services the blueprints depend on."""

    profit_service: ProfitDistributionService | None = None

    def clear(self) -> None:
        self.profit_service = None


services = ServiceRegistry()


def get_service() -> ProfitDistributionService:
    """
    The initialized profit service.

    Raises:
        TransientDependencyError: If the service was not initialized
    """
    if services.profit_service is None:
        raise TransientDependencyError("Profit distribution service not initialized")
    return services.profit_service
