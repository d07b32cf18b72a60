"""
Structured logging for InfraShare.

Log output is either one JSON object per line (LOG_FORMAT=json, for log
aggregation) or a colored single line for development. Both formats share
the same redaction: secrets are replaced outright and bank account numbers
are cut down to their last four digits, wherever they appear (message text,
request context, or ``extra=`` fields such as audit snapshots).
"""

import json
import logging
import os
import re
import sys
import threading
from datetime import UTC, datetime
from typing import Any

# ============================================================
# Redaction
# ============================================================

REDACTED = "[REDACTED]"

# (pattern, replacement) pairs applied to free text
SENSITIVE_PATTERNS = [
    # key=value secrets, including webhook signatures
    (
        re.compile(
            r"(api[_-]?key|secret|password|token|signature)([\"']?\s*[:=]\s*[\"']?)([^\s\"',}{]+)",
            re.IGNORECASE,
        ),
        rf"\1\2{REDACTED}",
    ),
    (re.compile(r"(Bearer\s+)(\S+)", re.IGNORECASE), rf"\1{REDACTED}"),
    # Bank account numbers keep their last four characters
    (
        re.compile(
            r"(bank_?account|account_?number)([\"']?\s*[:=]\s*[\"']?)([^\s\"',}{]*)([^\s\"',}{]{4})",
            re.IGNORECASE,
        ),
        r"\1\2****\4",
    ),
]

# Keys (lowercased, dashes as underscores) whose values are dropped
REDACTED_FIELDS = frozenset({
    "password",
    "secret",
    "api_key",
    "token",
    "authorization",
    "x_api_key",
    "x_signature",
    "webhook_secret",
    "payment_api_key",
    "encryption_key",
})

# Keys whose values are masked to the last four characters
MASKED_FIELDS = frozenset({
    "bank_account",
    "bankaccount",
    "account_number",
    "accountnumber",
})

# Standard LogRecord attributes; anything else on a record came from extra=
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "asctime"}


def _mask(value: Any) -> Any:
    if not isinstance(value, str) or not value:
        return value
    return "*" * max(len(value) - 4, 0) + value[-4:] if len(value) > 4 else "*" * len(value)


def redact_string(text: str) -> str:
    """Apply the sensitive patterns to a piece of free text."""
    if not isinstance(text, str):
        return text
    for pattern, replacement in SENSITIVE_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def redact_sensitive_data(data: Any, depth: int = 0, max_depth: int = 10) -> Any:
    """
    Recursively redact a structure destined for the logs.

    Args:
        data: dict, list, tuple, string or scalar
        depth: Current recursion depth
        max_depth: Depth at which nested data is replaced by a marker
    """
    if depth > max_depth:
        return "[MAX_DEPTH_EXCEEDED]"

    if isinstance(data, dict):
        result = {}
        for key, value in data.items():
            normalized = str(key).lower().replace("-", "_")
            if normalized in REDACTED_FIELDS:
                result[key] = REDACTED
            elif normalized in MASKED_FIELDS:
                result[key] = _mask(value)
            else:
                result[key] = redact_sensitive_data(value, depth + 1, max_depth)
        return result
    if isinstance(data, (list, tuple)):
        return [redact_sensitive_data(item, depth + 1, max_depth) for item in data]
    if isinstance(data, str):
        return redact_string(data)
    return data


# ============================================================
# Request context
# ============================================================

_request_context = threading.local()


def set_request_context(**kwargs) -> None:
    """Attach values (request id, caller, ...) to logs from this thread."""
    if not hasattr(_request_context, "data"):
        _request_context.data = {}
    _request_context.data.update(kwargs)


def clear_request_context() -> None:
    _request_context.data = {}


def get_request_context() -> dict[str, Any]:
    return getattr(_request_context, "data", {})


class LoggingContext:
    """
    Temporarily add context to every log line of the current thread.

    Usage:
        with LoggingContext(command="reconcile", project_id="proj-1"):
            logger.info("Reconciling")
    """

    def __init__(self, **kwargs):
        self.context = kwargs
        self.previous_context: dict[str, Any] = {}

    def __enter__(self):
        self.previous_context = get_request_context().copy()
        set_request_context(**self.context)
        return self

    def __exit__(self, _exc_type, _exc_val, _exc_tb):
        clear_request_context()
        if self.previous_context:
            set_request_context(**self.previous_context)
        return False


# ============================================================
# Formatters
# ============================================================


def _extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    return {k: v for k, v in vars(record).items() if k not in _RECORD_ATTRS}


class JSONFormatter(logging.Formatter):
    """
    One JSON object per record:

    {"timestamp": "...", "level": "INFO", "logger": "claim_lifecycle",
     "message": "Claim dist_1_user-1: pending -> processing",
     "context": {"request_id": "ab12cd34", "caller_id": "user-1"},
     "actor": "user-1"}

    Warnings and errors also carry their source location.
    """

    def __init__(self, include_stack_info: bool = True, redact_sensitive: bool = True):
        super().__init__()
        self.include_stack_info = include_stack_info
        self.redact_sensitive = redact_sensitive

    def _clean(self, value: Any) -> Any:
        return redact_sensitive_data(value) if self.redact_sensitive else value

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": self._clean(record.getMessage()),
        }

        if record.levelno >= logging.WARNING:
            entry["location"] = {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            }
        if record.exc_info and self.include_stack_info:
            entry["exception"] = self.formatException(record.exc_info)

        context = get_request_context()
        if context:
            entry["context"] = self._clean(context)

        for key, value in _extra_fields(record).items():
            entry[key] = self._clean(value)

        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Colored single-line output for development, redacted like the JSON output."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        timestamp = datetime.now().strftime("%H:%M:%S.%f")[:-3]

        parts = [
            f"{color}{timestamp} {record.levelname[0]} [{record.name}]{self.RESET}",
            redact_string(record.getMessage()),
        ]

        context = get_request_context()
        if context:
            ctx = " ".join(f"{k}={v}" for k, v in redact_sensitive_data(context).items())
            parts.append(f"{color}({ctx}){self.RESET}")

        extras = _extra_fields(record)
        if extras:
            parts.append(
                "[" + ", ".join(f"{k}={redact_sensitive_data(v)}" for k, v in extras.items()) + "]"
            )

        line = " ".join(parts)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


# ============================================================
# Setup
# ============================================================


def configure_logging(
    level: str = "INFO",
    json_output: bool | None = None,
    log_file: str | None = None,
) -> None:
    """
    Configure the root logger.

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        json_output: JSON lines on stdout (default: LOG_FORMAT=json)
        log_file: Also write JSON lines to this file (default: LOG_FILE)
    """
    if json_output is None:
        json_output = os.getenv("LOG_FORMAT", "").lower() == "json"
    log_file = log_file or os.getenv("LOG_FILE") or None

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    root_logger.handlers.clear()

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(JSONFormatter() if json_output else ConsoleFormatter())
    root_logger.addHandler(console)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(JSONFormatter())
        root_logger.addHandler(file_handler)

    for noisy in ("urllib3", "werkzeug"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
