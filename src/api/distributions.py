"""
InfraShare - Distributions API Blueprint

REST API endpoints for declaring quarterly profit distributions and
inspecting them.

Provides access to:
- Declare a distribution (admin)
- Attach a settlement reference (admin)
- Resume an interrupted claim fan-out (admin)
- Read a distribution or a project's distributions (any caller)
- Browse distributions by status (admin)
- Reconcile a distribution or a whole project
"""

from flask import Blueprint, g, jsonify, request

from profit_service import parse_claim_status, parse_distribution_status

from .state import get_service
from .utils import (
    ROLE_ADMIN,
    claim_view,
    get_json_body,
    get_page_params,
    page_response,
    require_api_key,
    require_caller,
    require_role,
)

distributions_bp = Blueprint("distributions", __name__)


# =============================================================================
# Admin Endpoints
# =============================================================================


@distributions_bp.route("/distributions", methods=["POST"])
@require_api_key
@require_role(ROLE_ADMIN)
def create_distribution():
    """
    Declare a quarterly profit distribution.

    Request body:
        {
            "projectId": "proj-1",
            "totalProfit": "10000.00",      // Gross profit, major units
            "periodStart": "2024-01-01",
            "periodEnd": "2024-03-31",
            "quarter": 1,
            "year": 2024,
            "notes": "Q1 solar revenue"      // Optional
        }

    Returns:
        The created distribution (201)
    """
    data = get_json_body()
    distribution = get_service().create_distribution(
        project_id=data.get("projectId"),
        total_profit=data.get("totalProfit"),
        period_start=data.get("periodStart"),
        period_end=data.get("periodEnd"),
        quarter=data.get("quarter"),
        year=data.get("year"),
        admin_id=g.caller.caller_id,
        notes=data.get("notes"),
    )
    return jsonify(distribution.to_dict(include_snapshot=False)), 201


@distributions_bp.route("/distributions/<distribution_id>/settlement", methods=["POST"])
@require_api_key
@require_role(ROLE_ADMIN)
def attach_settlement(distribution_id: str):
    """
    Attach the treasury settlement reference to a distribution.

    Request body:
        {"settlementReference": "TRX-2024-Q1-001"}
    """
    data = get_json_body()
    distribution = get_service().attach_settlement_reference(
        distribution_id, data.get("settlementReference"), g.caller.caller_id
    )
    return jsonify(distribution.to_dict(include_snapshot=False))


@distributions_bp.route("/distributions/<distribution_id>/claims/resume", methods=["POST"])
@require_api_key
@require_role(ROLE_ADMIN)
def resume_claims(distribution_id: str):
    """Create any claims missing after an interrupted fan-out."""
    claims = get_service().resume_claims(distribution_id)
    return jsonify({"distributionId": distribution_id, "count": len(claims)})


# =============================================================================
# Query Endpoints
# =============================================================================


@distributions_bp.route("/distributions", methods=["GET"])
@require_api_key
@require_role(ROLE_ADMIN)
def list_distributions():
    """
    List distributions, optionally filtered by status.

    Query params:
        status: calculated | distributed
        limit: Page size (1-100, default 20)
        cursor: Continuation token from a previous page
    """
    limit, cursor = get_page_params()
    page = get_service().list_distributions(
        status=parse_distribution_status(request.args.get("status")),
        limit=limit,
        cursor=cursor,
    )
    return page_response(page, lambda d: d.to_dict(include_snapshot=False))


@distributions_bp.route("/distributions/<distribution_id>", methods=["GET"])
@require_api_key
@require_caller
def get_distribution(distribution_id: str):
    """Get a distribution. Only admins see the holder snapshot."""
    distribution = get_service().get_distribution(distribution_id)
    return jsonify(distribution.to_dict(include_snapshot=g.caller.is_admin))


@distributions_bp.route("/distributions/<distribution_id>/claims", methods=["GET"])
@require_api_key
@require_role(ROLE_ADMIN)
def list_distribution_claims(distribution_id: str):
    limit, cursor = get_page_params()
    page = get_service().list_claims_by_distribution(
        distribution_id,
        status=parse_claim_status(request.args.get("status")),
        limit=limit,
        cursor=cursor,
    )
    return page_response(page, claim_view)


@distributions_bp.route("/distributions/<distribution_id>/reconciliation", methods=["GET"])
@require_api_key
@require_role(ROLE_ADMIN)
def reconcile_distribution(distribution_id: str):
    """Reconcile a distribution against its claims."""
    return jsonify(get_service().reconcile(distribution_id).to_dict())


@distributions_bp.route("/distributions/<distribution_id>/audit", methods=["GET"])
@require_api_key
@require_role(ROLE_ADMIN)
def distribution_audit(distribution_id: str):
    records = get_service().get_audit_trail(distribution_id)
    return jsonify({"items": records, "count": len(records)})


# =============================================================================
# Project Endpoints
# =============================================================================


@distributions_bp.route("/projects/<project_id>/distributions", methods=["GET"])
@require_api_key
@require_caller
def list_project_distributions(project_id: str):
    limit, cursor = get_page_params()
    page = get_service().list_distributions_by_project(project_id, limit=limit, cursor=cursor)
    return page_response(page, lambda d: d.to_dict(include_snapshot=False))


@distributions_bp.route("/projects/<project_id>/reconciliation", methods=["GET"])
@require_api_key
@require_role(ROLE_ADMIN)
def reconcile_project(project_id: str):
    """Totals and status across all distributions of a project."""
    return jsonify(get_service().reconcile_project(project_id).to_dict())
