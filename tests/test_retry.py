"""
Tests for retry logic and the circuit breaker.

Tests:
- calculate_delay function
- retry_call
- CircuitBreaker state management
"""

import os
import sys
from unittest.mock import patch

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from retry import (
    CircuitBreaker,
    CircuitState,
    NonRetryableError,
    RetryableError,
    RetryConfig,
    calculate_delay,
    get_circuit_breaker,
    is_retryable_exception,
    reset_circuit_breakers,
    retry_call,
)

NO_WAIT = RetryConfig(max_retries=3, base_delay=0.0, jitter=0.0)


class TestRetryConfig:
    def test_defaults(self):
        config = RetryConfig()
        assert config.max_retries == 3
        assert ConnectionError in config.retryable_exceptions

    def test_from_env(self):
        with patch.dict(os.environ, {"RETRY_MAX_ATTEMPTS": "5", "RETRY_BASE_DELAY": "0.25"}):
            config = RetryConfig.from_env()

        assert config.max_retries == 5
        assert config.base_delay == 0.25


class TestCalculateDelay:
    def test_exponential_growth(self):
        delays = [calculate_delay(i, 1.0, 2.0, 100.0, 0.0) for i in range(4)]
        assert delays == [1.0, 2.0, 4.0, 8.0]

    def test_capped(self):
        assert calculate_delay(10, 1.0, 2.0, 5.0, 0.0) == 5.0

    def test_jitter_bounds(self):
        for _ in range(50):
            delay = calculate_delay(0, 1.0, 2.0, 10.0, 0.5)
            assert 0.5 <= delay <= 1.5


class TestIsRetryable:
    def test_marker_classes_win(self):
        assert is_retryable_exception(RetryableError("x"), ()) is True
        assert is_retryable_exception(NonRetryableError("x"), (Exception,)) is False

    def test_configured_types(self):
        assert is_retryable_exception(TimeoutError(), (TimeoutError,)) is True
        assert is_retryable_exception(ValueError(), (TimeoutError,)) is False


class TestRetryCall:
    def test_succeeds_after_transient_failures(self):
        calls = []
        sleeps = []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise ConnectionError("reset by peer")
            return "ok"

        assert retry_call(flaky, config=NO_WAIT, sleep=sleeps.append) == "ok"
        assert len(calls) == 3
        assert len(sleeps) == 2

    def test_gives_up_after_max_retries(self):
        calls = []

        def always_down():
            calls.append(1)
            raise TimeoutError("timed out")

        with pytest.raises(TimeoutError):
            retry_call(always_down, config=NO_WAIT, sleep=lambda _: None)
        assert len(calls) == NO_WAIT.max_retries + 1

    def test_non_retryable_raised_immediately(self):
        calls = []

        def invalid():
            calls.append(1)
            raise ValueError("bad input")

        with pytest.raises(ValueError):
            retry_call(invalid, config=NO_WAIT, sleep=lambda _: None)
        assert len(calls) == 1

    def test_passes_arguments(self):
        assert retry_call(lambda a, b=0: a + b, args=(2,), kwargs={"b": 3}) == 5


class TestCircuitBreaker:
    def test_opens_after_threshold(self):
        breaker = CircuitBreaker("gateway", failure_threshold=3, recovery_timeout=60.0)

        for _ in range(2):
            breaker.record_failure()
        assert breaker.is_allowed() is True

        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN
        assert breaker.is_allowed() is False

    def test_success_resets_count(self):
        breaker = CircuitBreaker("gateway", failure_threshold=2)
        breaker.record_failure()
        breaker.record_success()
        breaker.record_failure()

        assert breaker.state == CircuitState.CLOSED

    def test_half_open_trial_call(self):
        breaker = CircuitBreaker("gateway", failure_threshold=1, recovery_timeout=0.0)
        breaker.record_failure()

        assert breaker.state == CircuitState.HALF_OPEN
        assert breaker.is_allowed() is True

        breaker.record_failure()
        breaker.recovery_timeout = 60.0
        assert breaker.state == CircuitState.OPEN

    def test_half_open_success_closes(self):
        breaker = CircuitBreaker("gateway", failure_threshold=1, recovery_timeout=0.0)
        breaker.record_failure()
        assert breaker.state == CircuitState.HALF_OPEN

        breaker.record_success()
        assert breaker.state == CircuitState.CLOSED

    def test_to_dict(self):
        breaker = CircuitBreaker("gateway", failure_threshold=4)
        breaker.record_failure()

        assert breaker.to_dict() == {
            "name": "gateway",
            "state": "closed",
            "failure_count": 1,
            "failure_threshold": 4,
        }

    def test_registry_returns_same_instance(self):
        first = get_circuit_breaker("registry_test", failure_threshold=1)
        first.record_failure()

        assert get_circuit_breaker("registry_test") is first
        reset_circuit_breakers()
        assert first.state == CircuitState.CLOSED
