"""
InfraShare - External Collaborators

Contracts for the systems the engine talks to but does not own:

- InvestmentLedger: completed token holdings per project (read only)
- PaymentGateway: initiates bank transfers; completion or failure is
  reported back asynchronously as a PaymentNotification

Each contract ships with an HTTP client for production (requests, bounded
timeouts) and an in-process implementation for development and tests.
The simulated gateway never completes payments on its own: callers emit
notifications explicitly with ``complete()`` / ``fail()``.
"""

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable
from urllib.parse import quote

import requests

from money import format_amount, mask_account
from profit_errors import NotFoundError, TransientDependencyError, ValidationError
from profit_models import Holding, parse_datetime, utc_now
from retry import RetryConfig, retry_call

logger = logging.getLogger(__name__)

USER_AGENT = "InfraShare-ProfitEngine/1.0"


# =============================================================================
# Value objects
# =============================================================================


@dataclass(frozen=True)
class BankDetails:
    """Destination account supplied by the investor when claiming."""

    account_number: str
    bank_name: str | None = None
    account_holder: str | None = None

    @classmethod
    def from_dict(cls, data: Any) -> "BankDetails":
        """
        Parse bank details from a request body.

        Raises:
            ValidationError: If the account number is missing
        """
        if isinstance(data, str):
            data = {"accountNumber": data}
        if not isinstance(data, dict):
            raise ValidationError("bankDetails must be an object")
        account = data.get("accountNumber") or data.get("bankAccount")
        if not isinstance(account, str) or not account.strip():
            raise ValidationError("bankDetails.accountNumber is required")
        return cls(
            account_number=account.strip(),
            bank_name=data.get("bankName"),
            account_holder=data.get("accountHolder"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "accountNumber": self.account_number,
            "bankName": self.bank_name,
            "accountHolder": self.account_holder,
        }

    def __repr__(self) -> str:
        return f"BankDetails(account_number={mask_account(self.account_number)!r})"


@dataclass(frozen=True)
class PaymentReceipt:
    """Gateway acknowledgement of an initiated transfer."""

    payment_id: str
    processed_at: datetime = field(default_factory=utc_now)


class PaymentOutcome(Enum):
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class PaymentNotification:
    """Asynchronous completion or failure report from the gateway."""

    payment_id: str
    outcome: PaymentOutcome
    reference: str | None = None
    reason: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> "PaymentNotification":
        """
        Parse a webhook payload.

        Raises:
            ValidationError: If required fields are missing or unknown
        """
        if not isinstance(data, dict):
            raise ValidationError("Notification body must be a JSON object")
        payment_id = data.get("paymentId")
        if not isinstance(payment_id, str) or not payment_id:
            raise ValidationError("paymentId is required")
        try:
            outcome = PaymentOutcome(data.get("status"))
        except ValueError as e:
            raise ValidationError(
                "status must be 'completed' or 'failed'", status=data.get("status")
            ) from e
        return cls(
            payment_id=payment_id,
            outcome=outcome,
            reference=data.get("reference"),
            reason=data.get("reason") or "",
        )


# =============================================================================
# Contracts
# =============================================================================


class InvestmentLedger(ABC):
    """Source of completed token holdings."""

    @abstractmethod
    def get_completed_holdings(self, project_id: str) -> list[Holding]:
        """
        Holdings backed by completed investments in the project.

        Raises:
            TransientDependencyError: If the ledger cannot be reached
        """
        pass


class PaymentGateway(ABC):
    """Initiates transfers to investors' bank accounts."""

    @abstractmethod
    def initiate(
        self, user_id: str, amount: int, bank_details: BankDetails, reference: str
    ) -> PaymentReceipt:
        """
        Start a transfer of ``amount`` minor units.

        ``reference`` is the claim id and doubles as the idempotency key.

        Raises:
            TransientDependencyError: If the transfer could not be initiated
        """
        pass


# =============================================================================
# HTTP clients
# =============================================================================


def _new_session(api_key: str | None = None) -> requests.Session:
    session = requests.Session()
    if api_key:
        session.headers["Authorization"] = f"Bearer {api_key}"
    session.headers["Content-Type"] = "application/json"
    session.headers["User-Agent"] = USER_AGENT
    return session


class HTTPInvestmentLedger(InvestmentLedger):
    """Investment Ledger over HTTP. Reads are retried with backoff."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        api_key: str | None = None,
        retry_config: RetryConfig | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.retry_config = retry_config or RetryConfig.from_env()
        self._session = _new_session(api_key)

    def get_completed_holdings(self, project_id: str) -> list[Holding]:
        return retry_call(self._fetch, args=(project_id,), config=self.retry_config)

    def _fetch(self, project_id: str) -> list[Holding]:
        url = f"{self.base_url}/projects/{quote(project_id, safe='')}/holdings"
        try:
            response = self._session.get(
                url, params={"status": "completed"}, timeout=self.timeout
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransientDependencyError(
                "Investment ledger unreachable", project_id=project_id
            ) from e

        if response.status_code == 404:
            raise NotFoundError(f"Project {project_id} not found", project_id=project_id)
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientDependencyError(
                f"Investment ledger returned {response.status_code}", project_id=project_id
            )
        if response.status_code != 200:
            raise ValidationError(
                f"Investment ledger rejected request ({response.status_code})",
                project_id=project_id,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise TransientDependencyError("Investment ledger returned invalid JSON") from e
        items = payload.get("holdings", []) if isinstance(payload, dict) else payload

        try:
            return [
                Holding(user_id=str(item["userId"]), token_amount=item["tokenAmount"])
                for item in items
            ]
        except (KeyError, TypeError) as e:
            raise ValidationError(f"Malformed holding from ledger: {e}") from e


class HTTPPaymentGateway(PaymentGateway):
    """
    Payment Gateway over HTTP.

    Never retried automatically: a repeated initiation is the investor's
    decision, guarded on the provider side by the idempotency key.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        api_key: str | None = None,
        currency: str = "IDR",
        minor_unit_digits: int = 2,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.currency = currency
        self.minor_unit_digits = minor_unit_digits
        self._session = _new_session(api_key)

    def initiate(
        self, user_id: str, amount: int, bank_details: BankDetails, reference: str
    ) -> PaymentReceipt:
        body = {
            "reference": reference,
            "userId": user_id,
            "amount": format_amount(amount, self.minor_unit_digits),
            "currency": self.currency,
            "bankDetails": bank_details.to_dict(),
        }
        try:
            response = self._session.post(
                f"{self.base_url}/transfers",
                json=body,
                headers={"Idempotency-Key": reference},
                timeout=self.timeout,
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransientDependencyError(
                "Payment gateway unreachable", reference=reference
            ) from e

        if response.status_code not in (200, 201, 202):
            raise TransientDependencyError(
                f"Payment gateway returned {response.status_code}", reference=reference
            )

        try:
            payload = response.json()
            payment_id = payload["paymentId"]
        except (ValueError, KeyError, TypeError) as e:
            raise TransientDependencyError(
                "Payment gateway returned no payment id", reference=reference
            ) from e

        return PaymentReceipt(
            payment_id=str(payment_id),
            processed_at=parse_datetime(payload.get("processedAt")) or utc_now(),
        )


# =============================================================================
# In-process implementations
# =============================================================================


@dataclass
class _Investment:
    project_id: str
    user_id: str
    token_amount: int
    status: str


class InMemoryInvestmentLedger(InvestmentLedger):
    """Ledger backed by a list of recorded investments."""

    def __init__(self):
        self._investments: list[_Investment] = []
        self._lock = threading.Lock()
        self.available = True

    def record_investment(
        self, project_id: str, user_id: str, token_amount: int, status: str = "completed"
    ) -> None:
        with self._lock:
            self._investments.append(_Investment(project_id, user_id, token_amount, status))

    def get_completed_holdings(self, project_id: str) -> list[Holding]:
        if not self.available:
            raise TransientDependencyError("Investment ledger unavailable", project_id=project_id)
        with self._lock:
            return [
                Holding(user_id=i.user_id, token_amount=i.token_amount)
                for i in self._investments
                if i.project_id == project_id and i.status == "completed"
            ]


NotificationHandler = Callable[[PaymentNotification], Any]


class SimulatedPaymentGateway(PaymentGateway):
    """
    Gateway for development and tests.

    Initiations succeed unless ``failing`` is set or failures are queued
    with ``fail_next()``. Settlement happens only when ``complete()`` or
    ``fail()`` is called, which delivers a notification to subscribers.
    """

    def __init__(self):
        self.initiated: dict[str, dict[str, Any]] = {}
        self.failing = False
        self._queued_failures = 0
        self._handlers: list[NotificationHandler] = []
        self._lock = threading.Lock()

    def subscribe(self, handler: NotificationHandler) -> None:
        self._handlers.append(handler)

    def fail_next(self, count: int = 1) -> None:
        with self._lock:
            self._queued_failures += count

    def initiate(
        self, user_id: str, amount: int, bank_details: BankDetails, reference: str
    ) -> PaymentReceipt:
        with self._lock:
            if self.failing or self._queued_failures > 0:
                self._queued_failures = max(0, self._queued_failures - 1)
                raise TransientDependencyError(
                    "Simulated payment initiation failure", reference=reference
                )
            payment_id = f"PAY-{uuid.uuid4().hex[:16].upper()}"
            self.initiated[payment_id] = {
                "reference": reference,
                "user_id": user_id,
                "amount": amount,
                "bank_account": bank_details.account_number,
            }
        logger.info(f"Simulated transfer {payment_id} initiated for {reference}")
        return PaymentReceipt(payment_id=payment_id)

    def complete(self, payment_id: str) -> list[Any]:
        """Deliver a completion notification for a payment."""
        return self._notify(payment_id, PaymentOutcome.COMPLETED)

    def fail(self, payment_id: str, reason: str = "rejected by bank") -> list[Any]:
        """Deliver a failure notification for a payment."""
        return self._notify(payment_id, PaymentOutcome.FAILED, reason)

    def _notify(self, payment_id: str, outcome: PaymentOutcome, reason: str = "") -> list[Any]:
        with self._lock:
            payment = self.initiated.get(payment_id)
        if payment is None:
            raise NotFoundError(f"Unknown payment {payment_id}", payment_id=payment_id)
        notification = PaymentNotification(
            payment_id=payment_id,
            outcome=outcome,
            reference=payment["reference"],
            reason=reason,
        )
        return [handler(notification) for handler in self._handlers]
