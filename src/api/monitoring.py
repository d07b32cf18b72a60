"""
Monitoring and metrics API endpoints.

This blueprint provides:
- /metrics: Prometheus-compatible metrics endpoint
- /metrics/json: JSON format metrics
- /health: Basic health check
- /health/live: Kubernetes liveness check
- /health/ready: Kubernetes readiness check
"""

import logging
import time

from flask import Blueprint, Response, jsonify

from monitoring import metrics
from storage import StorageError

from .state import get_service

logger = logging.getLogger(__name__)

monitoring_bp = Blueprint("monitoring", __name__)

_startup_time = time.time()


@monitoring_bp.route("/metrics", methods=["GET"])
def prometheus_metrics():
    """Metrics in Prometheus text exposition format."""
    _update_dynamic_metrics()
    return Response(metrics.to_prometheus(), mimetype="text/plain; charset=utf-8")


@monitoring_bp.route("/metrics/json", methods=["GET"])
def json_metrics():
    _update_dynamic_metrics()
    return jsonify(metrics.get_all())


@monitoring_bp.route("/health", methods=["GET"])
def health():
    """
    Basic health check endpoint.

    Returns service status and the state of its dependencies.
    """
    service = get_service()
    return jsonify({
        "status": "healthy",
        "service": "InfraShare Profit Engine",
        "version": _get_version(),
        "uptime_seconds": time.time() - _startup_time,
        "checks": {
            "storage": _check_storage(),
            "payment_gateway": {
                "backend": service.gateway.__class__.__name__,
                "circuit": service.lifecycle.circuit_breaker.to_dict(),
            },
            "investment_ledger": {
                "backend": service.ledger.__class__.__name__,
            },
        },
        "config": service.config.to_dict(),
    })


@monitoring_bp.route("/health/live", methods=["GET"])
def liveness():
    """
    Kubernetes liveness check.

    Returns 200 if the application is running.
    """
    return jsonify({"status": "alive"})


@monitoring_bp.route("/health/ready", methods=["GET"])
def readiness():
    """
    Kubernetes readiness check.

    Returns 200 if storage is reachable.
    """
    storage = _check_storage()
    if not storage["available"]:
        return jsonify({"status": "not_ready", "issues": ["storage: not available"]}), 503
    return jsonify({"status": "ready"})


def _get_version() -> str:
    from importlib.metadata import PackageNotFoundError, version

    try:
        return version("infrashare")
    except PackageNotFoundError:
        return "0.1.0"


def _check_storage() -> dict:
    store = get_service().store
    try:
        available = store.is_available()
    except StorageError as e:
        logger.warning(f"Storage check failed: {e}")
        available = False
    return {
        "status": "ok" if available else "degraded",
        "available": available,
        "backend": store.__class__.__name__,
    }


def _update_dynamic_metrics() -> None:
    """Update gauges before export."""
    service = get_service()
    metrics.set_gauge("storage_available", 1 if _check_storage()["available"] else 0)
    metrics.set_gauge(
        "payment_circuit_open",
        0 if service.lifecycle.circuit_breaker.is_allowed() else 1,
    )
