"""
Monitoring for Kudos Integrity: structured logging, metrics and request middleware.

Usage:
    from monitoring import MetricsCollector, configure_logging

    configure_logging()
    metrics = MetricsCollector()
    metrics.increment("verifications_total", labels={"status": "VERIFIED"})
"""

from monitoring.logging import LoggingContext, configure_logging, get_logger
from monitoring.metrics import MetricsCollector
from monitoring.middleware import setup_request_logging

__all__ = [
    "LoggingContext",
    "MetricsCollector",
    "configure_logging",
    "get_logger",
    "setup_request_logging",
]
