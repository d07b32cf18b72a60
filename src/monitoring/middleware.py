"""
Per-request hooks for the InfraShare API.

Each request gets an ``X-Request-ID`` (echoed back on the response) and a
logging context carrying the id, method, path and caller. On completion
the request is counted and timed under a cardinality-safe path label.
"""

import logging
import re
import time
import uuid

from flask import Flask, Response, g, request

from monitoring.logging import clear_request_context, set_request_context
from monitoring.metrics import metrics

logger = logging.getLogger("infrashare.request")

# Generated identifiers: distribution ids, claim ids, uuids, hex digests
_ID_SEGMENT = re.compile(
    r"^(dist_[0-9a-f]{32}(_.+)?|[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}|[0-9a-f]{32,64}|\d+)$",
    re.IGNORECASE,
)

# Top-level resources whose second path segment is an identifier
_ID_PARENTS = {"distributions", "projects", "claims"}
_STATIC_SEGMENTS = {"mine"}


def setup_request_logging(app: Flask) -> None:
    """Register the before, after and teardown hooks on ``app``."""

    @app.before_request
    def before_request():
        g.request_id = request.headers.get("X-Request-ID", str(uuid.uuid4())[:8])
        g.start_time = time.perf_counter()

        set_request_context(
            request_id=g.request_id,
            method=request.method,
            path=request.path,
            caller_id=request.headers.get("X-Caller-ID", "anonymous"),
        )
        metrics.increment_gauge("http_requests_active")

    @app.after_request
    def after_request(response: Response) -> Response:
        _record_request_metrics(response.status_code)

        if hasattr(g, "request_id"):
            response.headers["X-Request-ID"] = g.request_id
        return response

    @app.teardown_request
    def teardown_request(exception=None):
        clear_request_context()
        metrics.decrement_gauge("http_requests_active")

        if exception:
            logger.error(
                "Unhandled exception in request",
                exc_info=exception,
                extra={
                    "request_id": getattr(g, "request_id", "unknown"),
                    "path": request.path,
                    "method": request.method,
                },
            )


def _record_request_metrics(status_code: int) -> None:
    """Count, time and log the finished request."""
    duration_ms = 0.0
    if hasattr(g, "start_time"):
        duration_ms = (time.perf_counter() - g.start_time) * 1000

    path = normalize_path(request.path)
    metrics.increment(
        "http_requests_total",
        labels={"method": request.method, "path": path, "status": str(status_code)},
    )
    metrics.timing(
        "http_request_duration_ms",
        duration_ms,
        labels={"method": request.method, "path": path},
    )

    if status_code >= 500:
        log = logger.error
    elif status_code >= 400:
        log = logger.warning
    else:
        log = logger.info
    log(
        f"{request.method} {request.path} -> {status_code}",
        extra={
            "status_code": status_code,
            "duration_ms": round(duration_ms, 2),
            "request_id": getattr(g, "request_id", "unknown"),
        },
    )


def normalize_path(path: str) -> str:
    """
    Collapse identifiers in a request path to ``:id``.

    ``/distributions/dist_ab../claims`` becomes ``/distributions/:id/claims``;
    ``/claims/mine`` is left alone.
    """
    parts = [p for p in path.strip("/").split("/") if p]
    normalized = []

    for index, part in enumerate(parts):
        parent = parts[index - 1] if index else None
        if part in _STATIC_SEGMENTS:
            normalized.append(part)
        elif (index == 1 and parent in _ID_PARENTS) or _ID_SEGMENT.match(part):
            normalized.append(":id")
        else:
            normalized.append(part)

    return "/" + "/".join(normalized)
