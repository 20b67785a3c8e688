"""
Kudos Integrity - Component Wiring

Builds every engine component once and hands the collaborators to each
other explicitly. The process entry point owns the result and closes it on
shutdown; nothing here is kept in module state.

Usage:
    from dotenv import load_dotenv
    from bootstrap import build_components_from_env

    load_dotenv()
    components = build_components_from_env()
    try:
        ...
    finally:
        components.close()
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from abuse_detector import AbuseDetector, AbuseThresholds
from abuse_review import AbuseFlagRepository, AbuseReviewService
from audit import AuditSink, LoggingTelemetrySink, StoreAuditSink, TelemetrySink
from idempotency import IdempotencyConfig, IdempotencyGuard
from identity import IdentityResolver, StoreIdentityResolver
from models import utc_now
from monitoring.metrics import MetricsCollector
from quota import QuotaConfig, QuotaManager
from rate_limiter import RateLimitConfig, RateLimiter, RateLimitStore
from recognition_service import RecognitionService
from storage import get_record_store
from storage.base import RecordStore
from verification import VerificationEngine

logger = logging.getLogger(__name__)


@dataclass
class Components:
    """Everything the HTTP layer needs, built once per process."""

    store: RecordStore
    identity: IdentityResolver
    rate_limiter: RateLimiter
    quotas: QuotaManager
    idempotency: IdempotencyGuard
    detector: AbuseDetector
    flags: AbuseFlagRepository
    audit: AuditSink
    telemetry: TelemetrySink
    metrics: MetricsCollector
    verification: VerificationEngine
    recognitions: RecognitionService
    review: AbuseReviewService

    def close(self) -> None:
        self.store.close()


def build_components(
    store: RecordStore,
    rate_limit_config: RateLimitConfig | None = None,
    quota_config: QuotaConfig | None = None,
    idempotency_config: IdempotencyConfig | None = None,
    thresholds: AbuseThresholds | None = None,
    identity: IdentityResolver | None = None,
    rate_limit_store: RateLimitStore | None = None,
    audit: AuditSink | None = None,
    telemetry: TelemetrySink | None = None,
    metrics: MetricsCollector | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> Components:
    """
    Wire components around an existing record store.

    ``clock`` drives every datetime-based component; the rate limiter gets
    the same clock as Unix seconds.
    """
    identity = identity or StoreIdentityResolver(store)
    rate_limiter = RateLimiter(
        rate_limit_config or RateLimitConfig.from_env(),
        primary_store=rate_limit_store,
        clock=lambda: clock().timestamp(),
    )
    quotas = QuotaManager(store, quota_config or QuotaConfig.from_env(), clock=clock)
    idempotency = IdempotencyGuard(store, idempotency_config or IdempotencyConfig.from_env(), clock=clock)
    detector = AbuseDetector(thresholds or AbuseThresholds.from_env())
    flags = AbuseFlagRepository(store)
    audit = audit or StoreAuditSink(store, clock)
    telemetry = telemetry or LoggingTelemetrySink()
    metrics = metrics or MetricsCollector()

    shared = dict(
        store=store,
        identity=identity,
        rate_limiter=rate_limiter,
        quotas=quotas,
        idempotency=idempotency,
        detector=detector,
        flags=flags,
        audit=audit,
        telemetry=telemetry,
        metrics=metrics,
        clock=clock,
    )
    return Components(
        store=store,
        identity=identity,
        rate_limiter=rate_limiter,
        quotas=quotas,
        idempotency=idempotency,
        detector=detector,
        flags=flags,
        audit=audit,
        telemetry=telemetry,
        metrics=metrics,
        verification=VerificationEngine(**shared),
        recognitions=RecognitionService(**shared),
        review=AbuseReviewService(store, audit, flags, clock=clock),
    )


def build_components_from_env() -> Components:
    """Build components from environment configuration (call load_dotenv() first)."""
    store = get_record_store()
    logger.info(f"Record store: {type(store).__name__}")
    return build_components(store)

