"""
InfraShare - Payment Webhook Blueprint

Receives asynchronous completion and failure notifications from the
payment gateway. Requests are authenticated with an HMAC-SHA256 signature
over ``"{timestamp}.{raw body}"`` and rejected outside the timestamp window.
"""

import hashlib
import hmac
import logging
import time

from flask import Blueprint, jsonify, request

from collaborators import PaymentNotification

from .state import get_service

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Signature"
TIMESTAMP_HEADER = "X-Timestamp"

webhooks_bp = Blueprint("webhooks", __name__)


def sign_payload(secret: str, timestamp: int, body: bytes) -> str:
    """Compute the hex signature the gateway sends for a payload."""
    message = str(timestamp).encode("utf-8") + b"." + body
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_signature(
    secret: str,
    body: bytes,
    signature: str | None,
    timestamp: str | None,
    tolerance_seconds: int = 300,
    now: float | None = None,
) -> tuple[bool, str]:
    """
    Verify a webhook signature.

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not signature or not timestamp:
        return False, "Missing signature headers"

    try:
        ts = int(timestamp)
    except ValueError:
        return False, "Invalid timestamp"

    current = int(now if now is not None else time.time())
    if abs(current - ts) > tolerance_seconds:
        return False, "Timestamp outside allowed window"

    expected = sign_payload(secret, ts, body)
    if not hmac.compare_digest(signature, expected):
        return False, "Invalid signature"

    return True, ""


@webhooks_bp.route("/webhooks/payments", methods=["POST"])
def payment_notification():
    """
    Payment gateway notification.

    Request body:
        {
            "paymentId": "PAY-...",
            "status": "completed",          // completed | failed
            "reference": "dist_..._user-1", // Claim id sent at initiation
            "reason": "..."                 // Optional, for failures
        }

    Redelivery of an already applied notification returns 200 with the
    current claim.
    """
    service = get_service()
    secret = service.config.webhook_secret
    if not secret:
        return jsonify({
            "error": "Webhook secret not configured",
            "hint": "Set PAYMENT_WEBHOOK_SECRET environment variable"
        }), 503

    body = request.get_data()
    valid, error = verify_signature(
        secret,
        body,
        request.headers.get(SIGNATURE_HEADER),
        request.headers.get(TIMESTAMP_HEADER),
        service.config.webhook_tolerance_seconds,
    )
    if not valid:
        logger.warning(f"Rejected payment webhook: {error}")
        return jsonify({"error": error}), 401

    notification = PaymentNotification.from_dict(request.get_json(silent=True))
    claim = service.handle_payment_notification(notification)
    return jsonify({
        "claimId": claim.claim_id,
        "status": claim.status.value,
        "paymentId": notification.payment_id,
    })
