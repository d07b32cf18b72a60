"""
InfraShare - Profit Engine Errors

Exception hierarchy for the profit distribution and claim settlement engine.

Every error carries a machine-readable ``code``, the HTTP status the API
maps it to, and whether the caller may retry the same request.
"""

from typing import Any

from retry import RetryableError


class ProfitEngineError(Exception):
    """Base class for all profit engine errors."""

    code = "profit_engine_error"
    http_status = 500
    retryable = False

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        """Convert to an API error payload."""
        payload = {
            "error": self.message,
            "code": self.code,
            "retryable": self.retryable,
        }
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(ProfitEngineError):
    """Request rejected before any write."""

    code = "validation_error"
    http_status = 400


class DuplicateDistribution(ValidationError):
    """A distribution already exists for the (project, quarter, year)."""

    code = "duplicate_distribution"
    http_status = 409


class NoCirculatingTokens(ValidationError):
    """The project has no completed investments to distribute to."""

    code = "no_circulating_tokens"
    http_status = 422


class NotFoundError(ProfitEngineError):
    """Distribution or claim id is unknown."""

    code = "not_found"
    http_status = 404


class AuthorizationError(ProfitEngineError):
    """Caller is not allowed to act on the entity."""

    code = "forbidden"
    http_status = 403


class StateConflictError(ProfitEngineError):
    """Requested transition is not legal from the current state."""

    code = "state_conflict"
    http_status = 409


class TransientDependencyError(ProfitEngineError, RetryableError):
    """An external dependency failed in a way that may succeed on retry."""

    code = "dependency_unavailable"
    http_status = 503
    retryable = True


class ClaimProcessingFailed(TransientDependencyError):
    """Payment initiation failed; the claim was rolled back to pending."""

    code = "claim_processing_failed"


class ClaimFanoutIncomplete(TransientDependencyError):
    """Some claim records could not be written for a distribution."""

    code = "claim_fanout_incomplete"
