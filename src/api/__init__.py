"""
InfraShare API Package.

This package contains the Flask blueprints for the profit distribution
engine.

Blueprints:
- distributions: Declaring, settling and reconciling distributions (admin)
- claims: Investor claim browsing and payout requests
- webhooks: Payment gateway notifications
- monitoring: Health checks and metrics
"""

import logging

from flask import Flask, jsonify

from api.claims import claims_bp
from api.distributions import distributions_bp
from api.monitoring import monitoring_bp
from api.state import services
from api.webhooks import webhooks_bp
from monitoring import setup_request_logging
from profit_errors import ProfitEngineError
from profit_service import ProfitDistributionService, build_service
from storage import StorageError

logger = logging.getLogger(__name__)

# List of all blueprints for registration
# Tuple format: (blueprint, url_prefix)
ALL_BLUEPRINTS = [
    (distributions_bp, ""),
    (claims_bp, ""),
    (webhooks_bp, ""),
    (monitoring_bp, ""),
]


def register_blueprints(app: Flask) -> None:
    """Register all blueprints with the Flask app."""
    for blueprint, url_prefix in ALL_BLUEPRINTS:
        app.register_blueprint(blueprint, url_prefix=url_prefix)


def init_services(service: ProfitDistributionService | None = None) -> ProfitDistributionService:
    """
    Populate the shared ServiceRegistry.

    Args:
        service: Pre-built service (tests); built from the environment otherwise
    """
    services.profit_service = service or build_service()
    logger.info(
        "Profit distribution service initialized",
        extra={"storage": services.profit_service.store.__class__.__name__},
    )
    return services.profit_service


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(ProfitEngineError)
    def profit_engine_error(error: ProfitEngineError):
        return jsonify(error.to_dict()), error.http_status

    @app.errorhandler(StorageError)
    def storage_error(error: StorageError):
        logger.error(f"Storage failure: {error}")
        return jsonify({
            "error": "Storage unavailable",
            "code": "storage_unavailable",
            "retryable": True,
        }), 503

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({"error": "Endpoint not found"}), 404

    @app.errorhandler(405)
    def method_not_allowed(error):
        return jsonify({"error": "Method not allowed"}), 405

    @app.errorhandler(500)
    def internal_error(error):
        return jsonify({"error": "Internal server error"}), 500


def create_app(service: ProfitDistributionService | None = None) -> Flask:
    """Create the Flask application."""
    app = Flask(__name__)
    app.config["JSON_SORT_KEYS"] = False
    app.json.sort_keys = False

    setup_request_logging(app)
    register_blueprints(app)
    register_error_handlers(app)
    init_services(service)
    return app
