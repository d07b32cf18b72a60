"""
InfraShare - Claims API Blueprint

Investor-facing endpoints for browsing and requesting profit claims.
"""

from flask import Blueprint, g, jsonify, request

from profit_errors import AuthorizationError
from profit_service import parse_claim_status

from .state import get_service
from .utils import (
    claim_view,
    get_json_body,
    get_page_params,
    page_response,
    require_api_key,
    require_caller,
)

claims_bp = Blueprint("claims", __name__)


@claims_bp.route("/claims/mine", methods=["GET"])
@require_api_key
@require_caller
def my_claims():
    """
    List the caller's claims.

    Query params:
        status: pending | processing | completed
        limit: Page size (1-100, default 20)
        cursor: Continuation token from a previous page
    """
    limit, cursor = get_page_params()
    page = get_service().list_claims_by_user(
        g.caller.caller_id,
        status=parse_claim_status(request.args.get("status")),
        limit=limit,
        cursor=cursor,
    )
    return page_response(page, claim_view)


@claims_bp.route("/claims/mine/claimable", methods=["GET"])
@require_api_key
@require_caller
def my_claimable():
    """List the caller's claims that can still be requested."""
    limit, cursor = get_page_params()
    page = get_service().list_claimable(g.caller.caller_id, limit=limit, cursor=cursor)
    return page_response(page, claim_view)


@claims_bp.route("/claims/<claim_id>", methods=["GET"])
@require_api_key
@require_caller
def get_claim(claim_id: str):
    """Get a claim. Only its owner or an admin may read it."""
    claim = get_service().get_claim(
        claim_id, caller_id=g.caller.caller_id, caller_is_admin=g.caller.is_admin
    )
    return jsonify(claim_view(claim))


@claims_bp.route("/claims/<distribution_id>/request", methods=["POST"])
@require_api_key
@require_caller
def request_claim(distribution_id: str):
    """
    Request payout of the caller's claim on a distribution.

    Request body:
        {
            "bankDetails": {
                "accountNumber": "1234567890",
                "bankName": "Bank Mandiri",
                "accountHolder": "A. Investor"
            },
            "userId": "user-1"          // Optional, must match the caller
        }

    Returns:
        The claim in processing state (202). Completion arrives later
        through the payment webhook.
    """
    data = get_json_body()
    user_id = data.get("userId") or g.caller.caller_id
    if user_id != g.caller.caller_id:
        raise AuthorizationError("Investors may only request their own claims")

    claim = get_service().request_claim(
        distribution_id,
        user_id,
        data.get("bankDetails"),
        caller_id=g.caller.caller_id,
    )
    return jsonify(claim_view(claim)), 202
