"""
InfraShare - Retry Logic and Circuit Breaking

Retry utilities for the engine's blocking I/O boundaries:
- Investment Ledger reads (idempotent, safe to retry)
- Claim fan-out writes (idempotent upserts, safe to retry)
- Payment Gateway initiation is NEVER retried automatically; it sits
  behind a circuit breaker instead so an unhealthy gateway fails fast.

Usage:
    from retry import retry_call, get_circuit_breaker

    holdings = retry_call(ledger.get_completed_holdings, args=(project_id,), config=config)
    result = retry_call(store.upsert_claim, args=(claim,), config=config)

Environment Variables:
    RETRY_MAX_ATTEMPTS=3
    RETRY_BASE_DELAY=0.5
    RETRY_MAX_DELAY=10.0
    RETRY_EXPONENTIAL_BASE=2.0
    RETRY_JITTER=0.1
    CIRCUIT_BREAKER_THRESHOLD=5
    CIRCUIT_BREAKER_TIMEOUT=30.0
"""

import logging
import os
import random
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Type

logger = logging.getLogger(__name__)


class RetryableError(Exception):
    """Base class for errors that may succeed if the call is repeated."""
    pass


class NonRetryableError(Exception):
    """Base class for errors that must not be retried."""
    pass


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"      # Calls flow normally
    OPEN = "open"          # Too many failures, calls refused
    HALF_OPEN = "half_open"  # Probing whether the dependency recovered


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_retries: int = 3
    base_delay: float = 0.5
    max_delay: float = 10.0
    exponential_base: float = 2.0
    jitter: float = 0.1

    retryable_exceptions: tuple = (
        ConnectionError,
        TimeoutError,
        RetryableError,
    )

    log_level: int = logging.WARNING

    @classmethod
    def from_env(cls) -> "RetryConfig":
        """Create configuration from environment variables."""
        return cls(
            max_retries=int(os.getenv("RETRY_MAX_ATTEMPTS", "3")),
            base_delay=float(os.getenv("RETRY_BASE_DELAY", "0.5")),
            max_delay=float(os.getenv("RETRY_MAX_DELAY", "10.0")),
            exponential_base=float(os.getenv("RETRY_EXPONENTIAL_BASE", "2.0")),
            jitter=float(os.getenv("RETRY_JITTER", "0.1")),
        )


class CircuitBreaker:
    """
    Circuit breaker in front of an external collaborator.

    After ``failure_threshold`` consecutive failures the circuit opens and
    calls are refused for ``recovery_timeout`` seconds. The first call
    after that window is let through as a trial call.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at = 0.0
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        """Current state, moving OPEN -> HALF_OPEN once the timeout elapsed."""
        with self._lock:
            if (
                self._state == CircuitState.OPEN
                and time.monotonic() - self._opened_at >= self.recovery_timeout
            ):
                self._state = CircuitState.HALF_OPEN
                logger.info(f"Circuit {self.name}: OPEN -> HALF_OPEN")
            return self._state

    def is_allowed(self) -> bool:
        """Check whether a call may proceed."""
        return self.state != CircuitState.OPEN

    def record_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                logger.info(f"Circuit {self.name}: HALF_OPEN -> CLOSED")
            self._state = CircuitState.CLOSED
            self._failure_count = 0

    def record_failure(self) -> None:
        with self._lock:
            self._failure_count += 1
            if self._state == CircuitState.HALF_OPEN or (
                self._state == CircuitState.CLOSED
                and self._failure_count >= self.failure_threshold
            ):
                logger.warning(
                    f"Circuit {self.name}: {self._state.value} -> open "
                    f"(failures: {self._failure_count})"
                )
                self._state = CircuitState.OPEN
                self._opened_at = time.monotonic()

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._opened_at = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self._failure_count,
            "failure_threshold": self.failure_threshold,
        }


_circuit_breakers: dict[str, CircuitBreaker] = {}
_circuit_breakers_lock = threading.Lock()


def get_circuit_breaker(name: str, **kwargs) -> CircuitBreaker:
    """Get or create a named circuit breaker."""
    with _circuit_breakers_lock:
        if name not in _circuit_breakers:
            kwargs.setdefault(
                "failure_threshold", int(os.getenv("CIRCUIT_BREAKER_THRESHOLD", "5"))
            )
            kwargs.setdefault(
                "recovery_timeout", float(os.getenv("CIRCUIT_BREAKER_TIMEOUT", "30.0"))
            )
            _circuit_breakers[name] = CircuitBreaker(name, **kwargs)
        return _circuit_breakers[name]


def reset_circuit_breakers() -> None:
    """Reset every registered circuit breaker (test isolation)."""
    with _circuit_breakers_lock:
        for breaker in _circuit_breakers.values():
            breaker.reset()


def calculate_delay(
    attempt: int,
    base_delay: float,
    exponential_base: float,
    max_delay: float,
    jitter: float,
) -> float:
    """
    Exponential backoff delay with jitter.

    Args:
        attempt: Attempt number (0-indexed)
        base_delay: Initial delay in seconds
        exponential_base: Growth factor per attempt
        max_delay: Upper bound before jitter
        jitter: Random jitter factor (0.0 to 1.0)

    Returns:
        Delay in seconds, never negative
    """
    delay = min(base_delay * (exponential_base ** attempt), max_delay)
    if jitter > 0:
        delay += delay * jitter * (2 * random.random() - 1)
    return max(0.0, delay)


def is_retryable_exception(
    exception: Exception,
    retryable_types: tuple[Type[Exception], ...],
) -> bool:
    """Check whether an exception should trigger another attempt."""
    if isinstance(exception, NonRetryableError):
        return False
    if isinstance(exception, RetryableError):
        return True
    return isinstance(exception, retryable_types)


def retry_call(
    func: Callable,
    args: tuple = (),
    kwargs: dict | None = None,
    config: RetryConfig | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Any:
    """
    Call ``func`` and retry retryable failures with exponential backoff.

    Only use for idempotent operations.

    Args:
        func: Function to call
        args: Positional arguments
        kwargs: Keyword arguments
        config: Retry configuration
        sleep: Sleep function (injectable for tests)

    Returns:
        Result of the function call
    """
    config = config or RetryConfig()
    kwargs = kwargs or {}
    name = getattr(func, "__name__", repr(func))

    for attempt in range(config.max_retries + 1):
        try:
            return func(*args, **kwargs)
        except Exception as e:
            if not is_retryable_exception(e, config.retryable_exceptions):
                raise
            if attempt >= config.max_retries:
                logger.log(
                    config.log_level,
                    f"Max retries ({config.max_retries}) exceeded for {name}: {e}",
                )
                raise

            delay = calculate_delay(
                attempt,
                config.base_delay,
                config.exponential_base,
                config.max_delay,
                config.jitter,
            )
            logger.log(
                config.log_level,
                f"Retry {attempt + 1}/{config.max_retries} for {name} after {delay:.2f}s: {e}",
            )
            sleep(delay)
