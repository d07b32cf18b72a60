"""
Monitoring and metrics infrastructure for InfraShare.

This package provides:
- Application metrics collection (counters, gauges, histograms)
- Structured logging with JSON output and sensitive-data redaction
- Request timing middleware

Usage:
    from monitoring import metrics, get_logger

    # Record a metric
    metrics.increment("claim_transitions_total", labels={"from": "pending", "to": "processing"})

    # Get a logger
    logger = get_logger(__name__)
    logger.info("Claim requested", extra={"claim_id": "dist_1_user-1"})
"""

from monitoring.logging import configure_logging, get_logger
from monitoring.metrics import MetricsCollector, metrics
from monitoring.middleware import setup_request_logging

__all__ = [
    "MetricsCollector",
    "metrics",
    "get_logger",
    "configure_logging",
    "setup_request_logging",
]
