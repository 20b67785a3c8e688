"""
Kudos Integrity - Flask Request Middleware

Per-request id, logging context, timing and HTTP metrics.
"""

import logging
import re
import time
import uuid

from flask import Flask, Response, g, request

from audit import hash_id
from monitoring.logging import clear_request_context, set_request_context
from monitoring.metrics import MetricsCollector

logger = logging.getLogger("kudos.request")

_ID_SEGMENT = re.compile(r"^(rec|flag|evt)_[0-9a-zA-Z_]+$")
_UUID_SEGMENT = re.compile(r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$")


def setup_request_logging(app: Flask, metrics: MetricsCollector) -> None:
    """
    Install before/after/teardown hooks on ``app``.

    Adds an X-Request-ID response header, logs every request with its
    status and duration, and records http_requests_total and
    http_request_duration_ms on ``metrics``.
    """

    @app.before_request
    def before_request():
        g.request_id = request.headers.get("X-Request-ID", str(uuid.uuid4())[:8])
        g.start_time = time.perf_counter()
        set_request_context(
            request_id=g.request_id,
            method=request.method,
            path=request.path,
            actor_hash=hash_id(request.headers.get("X-Actor-Id")),
        )
        metrics.increment_gauge("http_requests_active")

    @app.after_request
    def after_request(response: Response) -> Response:
        _record_request(metrics, response.status_code)
        response.headers["X-Request-ID"] = getattr(g, "request_id", "unknown")
        return response

    @app.teardown_request
    def teardown_request(exception=None):
        metrics.decrement_gauge("http_requests_active")
        if exception is not None:
            logger.error(
                "Request failed with exception",
                exc_info=exception,
                extra={"path": request.path, "method": request.method},
            )
        clear_request_context()


def _record_request(metrics: MetricsCollector, status_code: int) -> None:
    duration_ms = (time.perf_counter() - g.start_time) * 1000 if hasattr(g, "start_time") else 0.0
    path = normalize_path(request.path)

    metrics.increment(
        "http_requests_total",
        labels={"method": request.method, "path": path, "status": str(status_code)},
    )
    metrics.timing("http_request_duration_ms", duration_ms, labels={"method": request.method, "path": path})

    if status_code >= 500:
        log = logger.error
    elif status_code >= 400:
        log = logger.warning
    else:
        log = logger.info
    log(
        f"{request.method} {request.path} -> {status_code}",
        extra={"status_code": status_code, "duration_ms": round(duration_ms, 2)},
    )


def normalize_path(path: str) -> str:
    """Replace record ids in a path with placeholders to bound label cardinality."""
    parts = []
    for part in path.strip("/").split("/"):
        if _ID_SEGMENT.match(part):
            parts.append(":id")
        elif _UUID_SEGMENT.match(part):
            parts.append(":uuid")
        elif part.isdigit():
            parts.append(":n")
        else:
            parts.append(part)
    return "/" + "/".join(parts)
