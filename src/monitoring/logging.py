"""
Kudos Integrity - Structured Logging

JSON or console output for the stdlib logging tree, with redaction of
credentials and personal data, and a thread-local request context that the
Flask middleware fills in (request id, method, path, actor hash).

Environment Variables:
    LOG_LEVEL=INFO
    LOG_FORMAT=console        # or "json"
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
# Sensitive Data Redaction
# ============================================================

SENSITIVE_PATTERNS = [
    (
        re.compile(
            r"(api[_-]?key|token|secret|password|passwd)([\"']?\s*[:=]\s*[\"']?)([^\s\"',}{]+)",
            re.IGNORECASE,
        ),
        r"\1\2[REDACTED]",
    ),
    (re.compile(r"(Bearer\s+)([^\s]+)", re.IGNORECASE), r"\1[REDACTED]"),
    # Connection strings: keep scheme and host, drop credentials
    (re.compile(r"(postgres(?:ql)?|redis)://[^@\s/]+@"), r"\1://[REDACTED]@"),
    # Email addresses keep their domain only
    (re.compile(r"([a-zA-Z0-9._%+-]+)@([a-zA-Z0-9.-]+\.[a-zA-Z]{2,})"), r"[...]@\2"),
]

REDACTED_FIELDS = {
    "password",
    "secret",
    "api_key",
    "token",
    "access_token",
    "refresh_token",
    "authorization",
    "credentials",
    "database_url",
    "redis_url",
    "recipient_email",
    "email",
}

# Attributes every LogRecord carries; anything else came in via ``extra=``
_RECORD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__.keys() | {"message", "taskName"}
)


def redact_string(text: str) -> str:
    for pattern, replacement in SENSITIVE_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def redact_sensitive_data(data: Any, depth: int = 0, max_depth: int = 10) -> Any:
    """Recursively redact sensitive keys and patterns from a log payload."""
    if depth > max_depth:
        return "[MAX_DEPTH_EXCEEDED]"
    if isinstance(data, dict):
        return {
            key: "[REDACTED]"
            if str(key).lower().replace("-", "_") in REDACTED_FIELDS
            else redact_sensitive_data(value, depth + 1, max_depth)
            for key, value in data.items()
        }
    if isinstance(data, list):
        return [redact_sensitive_data(item, depth + 1, max_depth) for item in data]
    if isinstance(data, str):
        return redact_string(data)
    return data


# ============================================================
# Request Context
# ============================================================

_request_context = threading.local()


def set_request_context(**kwargs) -> None:
    if not hasattr(_request_context, "data"):
        _request_context.data = {}
    _request_context.data.update(kwargs)


def clear_request_context() -> None:
    _request_context.data = {}


def get_request_context() -> dict[str, Any]:
    return getattr(_request_context, "data", {})


def _extras(record: logging.LogRecord) -> dict[str, Any]:
    return {k: v for k, v in record.__dict__.items() if k not in _RECORD_ATTRS}


# ============================================================
# Formatters
# ============================================================


class JSONFormatter(logging.Formatter):
    """
    One JSON object per line:

        {"timestamp": "...", "level": "INFO", "logger": "verification",
         "message": "...", "context": {"request_id": "..."}, ...extra fields}
    """

    def __init__(self, redact_sensitive: bool = True):
        super().__init__()
        self.redact_sensitive = redact_sensitive

    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        context = get_request_context()
        extras = _extras(record)
        if self.redact_sensitive:
            message = redact_string(message)
            context = redact_sensitive_data(context)
            extras = redact_sensitive_data(extras)

        entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": message,
        }
        if record.levelno >= logging.WARNING:
            entry["location"] = {"file": record.pathname, "line": record.lineno, "function": record.funcName}
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        if context:
            entry["context"] = context
        entry.update(extras)
        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Colored single-line output for development."""

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
        msg = f"{color}{timestamp} {record.levelname[0]} [{record.name}]{self.RESET} {record.getMessage()}"

        context = get_request_context()
        if context:
            msg += f" {color}(" + " ".join(f"{k}={v}" for k, v in context.items()) + f"){self.RESET}"

        extras = _extras(record)
        if extras:
            msg += " [" + ", ".join(f"{k}={v}" for k, v in extras.items()) + "]"

        if record.exc_info:
            msg += "\n" + self.formatException(record.exc_info)
        return msg


def configure_logging(
    level: str | None = None,
    json_output: bool | None = None,
    log_file: str | None = None,
) -> None:
    """
    Configure the root logger. Called once by the process entry point.

    Args:
        level: Log level name; defaults to LOG_LEVEL or INFO
        json_output: JSON lines instead of console format; defaults to LOG_FORMAT=json
        log_file: Optional extra file handler (always JSON)
    """
    level = level or os.getenv("LOG_LEVEL", "INFO")
    if json_output is None:
        json_output = os.getenv("LOG_FORMAT", "").lower() == "json"

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if json_output else ConsoleFormatter())
    root.addHandler(handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(JSONFormatter())
        root.addHandler(file_handler)

    logging.getLogger("werkzeug").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


class LoggingContext:
    """
    Temporarily add fields to the request context.

    Usage:
        with LoggingContext(recognition_id="rec_123"):
            logger.info("Running abuse detection")
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
