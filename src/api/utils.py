"""
Shared utilities for the InfraShare API.

This module contains common utilities, decorators, and helpers
used across all API blueprints.
"""

import os
import secrets
from dataclasses import dataclass
from functools import wraps
from typing import Any

from flask import g, jsonify, request

from claim_lifecycle import audit_view
from profit_errors import AuthorizationError, ValidationError
from profit_models import Page, ProfitClaim

ROLE_ADMIN = "admin"
ROLE_INVESTOR = "investor"
KNOWN_ROLES = {ROLE_ADMIN, ROLE_INVESTOR}


# ============================================================
# Authentication
# ============================================================

def api_key_settings() -> tuple[str | None, bool]:
    """
    Current API key configuration.

    Environment variables:
        INFRASHARE_API_KEY: Shared key expected in the X-API-Key header
        INFRASHARE_REQUIRE_AUTH: "true" (default) to enforce the key
    """
    api_key = os.getenv("INFRASHARE_API_KEY") or None
    required = os.getenv("INFRASHARE_REQUIRE_AUTH", "true").lower() == "true"
    return api_key, required


def require_api_key(f):
    """Decorator to require API key authentication."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        api_key, required = api_key_settings()
        if not required:
            return f(*args, **kwargs)

        provided_key = request.headers.get("X-API-Key")

        if not provided_key:
            return jsonify({
                "error": "API key required",
                "hint": "Provide API key in X-API-Key header"
            }), 401

        if not api_key:
            return jsonify({
                "error": "Server API key not configured",
                "hint": "Set INFRASHARE_API_KEY environment variable"
            }), 503

        if not secrets.compare_digest(provided_key, api_key):
            return jsonify({"error": "Invalid API key"}), 403

        return f(*args, **kwargs)
    return decorated_function


@dataclass(frozen=True)
class Caller:
    """Identity asserted by the upstream identity gateway."""

    caller_id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


def get_caller() -> Caller:
    """
    Read the caller identity from the request headers.

    Raises:
        AuthorizationError: If no caller id is present or the role is unknown
    """
    caller_id = (request.headers.get("X-Caller-ID") or "").strip()
    if not caller_id:
        raise AuthorizationError("Caller identity required")
    role = (request.headers.get("X-Caller-Role") or ROLE_INVESTOR).strip().lower()
    if role not in KNOWN_ROLES:
        raise AuthorizationError(f"Unknown caller role: {role}")
    return Caller(caller_id=caller_id, role=role)


def require_caller(f):
    """Decorator that resolves the caller into ``flask.g.caller``."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        g.caller = get_caller()
        return f(*args, **kwargs)
    return decorated_function


def require_role(role: str):
    """Decorator restricting an endpoint to callers with ``role``."""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            caller = get_caller()
            if caller.role != role:
                raise AuthorizationError(f"{role} role required")
            g.caller = caller
            return f(*args, **kwargs)
        return decorated_function
    return decorator


# ============================================================
# Request / Response Helpers
# ============================================================

def get_json_body() -> dict[str, Any]:
    """
    The request body as a JSON object.

    Raises:
        ValidationError: If the body is missing or not an object
    """
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def get_page_params() -> tuple[str | None, str | None]:
    """Raw ``limit`` and ``cursor`` query parameters (validated by the service)."""
    return request.args.get("limit"), request.args.get("cursor") or None


def claim_view(claim: ProfitClaim) -> dict[str, Any]:
    """Claim as returned by the API, with the bank account masked."""
    return audit_view(claim)


def page_response(page: Page, serialize=None):
    return jsonify(page.to_dict(serialize))
