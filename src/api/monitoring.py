"""
Monitoring endpoints.

- /health: component availability (200 healthy, 503 degraded)
- /metrics: Prometheus text exposition
- /metrics/json: the same metrics as JSON
"""

import time

from flask import Blueprint, Response, jsonify

from api.utils import components

monitoring_bp = Blueprint("monitoring", __name__)

_startup_time = time.time()


@monitoring_bp.route("/health", methods=["GET"])
def health():
    """
    Record store and rate limiter availability.

    The service reports "degraded" (503) only when the record store is
    down; a rate limiter running on its memory fallback is still healthy.
    """
    c = components()
    try:
        store_info = c.store.get_info()
    except Exception as e:
        store_info = {"backend_type": type(c.store).__name__, "available": False, "error": str(e)}

    rate_limiter = c.rate_limiter.is_healthy()
    healthy = bool(store_info.get("available"))

    body = {
        "status": "healthy" if healthy else "degraded",
        "service": "Kudos Integrity",
        "version": _get_version(),
        "uptime_seconds": round(time.time() - _startup_time, 2),
        "checks": {
            "storage": store_info,
            "rate_limiter": rate_limiter,
        },
    }
    return jsonify(body), 200 if healthy else 503


@monitoring_bp.route("/metrics", methods=["GET"])
def prometheus_metrics():
    metrics = components().metrics
    _update_dynamic_metrics()
    return Response(metrics.to_prometheus(), mimetype="text/plain; charset=utf-8")


@monitoring_bp.route("/metrics/json", methods=["GET"])
def json_metrics():
    _update_dynamic_metrics()
    return jsonify(components().metrics.get_all())


def _get_version() -> str:
    from importlib.metadata import PackageNotFoundError, version

    try:
        return version("kudos-integrity")
    except PackageNotFoundError:
        return "0.1.0"


def _update_dynamic_metrics() -> None:
    c = components()
    c.metrics.set_gauge("storage_available", 1 if c.store.is_available() else 0)
    healthy = c.rate_limiter.is_healthy()
    c.metrics.set_gauge("rate_limiter_primary_available", 1 if healthy["primary_available"] else 0)
