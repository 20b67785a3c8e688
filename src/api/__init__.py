"""
Kudos Integrity API Package.

Flask application factory and blueprint registration.

Blueprints:
- recognitions: creation, verification, batch verification
- abuse: detection, flags, review, admin report
- limits: quota and rate limit status
- monitoring: health and metrics

Usage:
    app = create_app(build_components(MemoryRecordStore()))
    app.run()
"""

import logging
import os

from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException

from api.abuse import abuse_bp
from api.limits import limits_bp
from api.monitoring import monitoring_bp
from api.recognitions import recognitions_bp
from api.utils import COMPONENTS_KEY
from bootstrap import Components
from errors import IntegrityError, RateLimited
from monitoring.middleware import setup_request_logging
from storage.base import StorageError

logger = logging.getLogger(__name__)

# Tuple format: (blueprint, url_prefix)
ALL_BLUEPRINTS = [
    (recognitions_bp, ""),
    (abuse_bp, ""),
    (limits_bp, ""),
    (monitoring_bp, ""),
]


def register_blueprints(app: Flask) -> None:
    for blueprint, url_prefix in ALL_BLUEPRINTS:
        app.register_blueprint(blueprint, url_prefix=url_prefix)


def register_error_handlers(app: Flask) -> None:
    """Render every failure as {"error": {"code", "message", "details"}}."""

    @app.errorhandler(IntegrityError)
    def handle_integrity_error(error: IntegrityError):
        headers = {}
        if isinstance(error, RateLimited) and error.retry_after:
            headers["Retry-After"] = str(error.retry_after)
        return jsonify({"error": error.to_dict()}), error.http_status, headers

    @app.errorhandler(StorageError)
    def handle_storage_error(error: StorageError):
        logger.error(f"Record store error: {error}")
        return jsonify(
            {"error": {"code": "UNAVAILABLE", "message": "Record store unavailable", "details": {}}}
        ), 500

    @app.errorhandler(Exception)
    def internal_error(error: Exception):
        if isinstance(error, HTTPException):
            code = "NOT_FOUND" if error.code == 404 else "INVALID_REQUEST" if error.code < 500 else "INTERNAL"
            return jsonify({"error": {"code": code, "message": error.description, "details": {}}}), error.code
        logger.exception("Unhandled error")
        return jsonify({"error": {"code": "INTERNAL", "message": "Internal server error", "details": {}}}), 500


def create_app(components: Components) -> Flask:
    """Build the Flask app around an already-wired set of components."""
    app = Flask(__name__)
    app.json.sort_keys = False
    app.extensions[COMPONENTS_KEY] = components

    setup_request_logging(app, components.metrics)
    register_blueprints(app)
    register_error_handlers(app)
    return app


def run_server() -> None:
    """Run the Flask development server from environment configuration."""
    from dotenv import load_dotenv

    from bootstrap import build_components_from_env
    from monitoring.logging import configure_logging

    load_dotenv()
    configure_logging()

    host = os.getenv("HOST", "127.0.0.1")
    port = int(os.getenv("PORT", "5000"))
    debug = os.getenv("FLASK_DEBUG", "false").lower() == "true"

    components = build_components_from_env()
    app = create_app(components)

    logger.info(f"Kudos Integrity API listening on http://{host}:{port}")
    try:
        app.run(host=host, port=port, debug=debug)
    finally:
        components.close()
