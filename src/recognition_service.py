"""
Kudos Integrity - Recognition Creation

Creates PENDING recognitions behind the same guards as verification:
idempotency, validation, per-giver rate limits, per-organization quotas and
an abuse pre-check. Flags found at creation are stored with the recognition
and the stored weight is the flag-adjusted weight.
"""

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from abuse_detector import AbuseDetector
from abuse_review import AbuseFlagRepository
from audit import (
    AuditEventCode,
    AuditSink,
    LoggingTelemetrySink,
    StoreAuditSink,
    TelemetrySink,
    record_audit,
    record_telemetry,
)
from errors import InvalidRequest, QuotaExceeded, RateLimited, Unavailable, ValidationError
from idempotency import IdempotencyGuard, fingerprint
from identity import IdentityResolver
from models import (
    RECOGNITIONS,
    Recognition,
    to_iso,
    utc_now,
    validate_recognition_input,
)
from monitoring.metrics import MetricsCollector
from quota import QuotaManager, QuotaResult
from rate_limiter import RateLimiter, RateLimitResult
from storage.base import RecordStore, StorageError
from weights import compute_recognition_weight

logger = logging.getLogger(__name__)

CREATE_ACTION = "create_recognition"
RATE_LIMIT_ACTIONS = ("recognition_daily", "recognition_weekly", "recognition_monthly")
QUOTA_RESOURCES = ("recognitions_per_day", "recognitions_per_month")
MAX_EVIDENCE_IDS = 10


class RecognitionService:
    def __init__(
        self,
        store: RecordStore,
        identity: IdentityResolver,
        rate_limiter: RateLimiter,
        quotas: QuotaManager,
        idempotency: IdempotencyGuard,
        detector: AbuseDetector | None = None,
        flags: AbuseFlagRepository | None = None,
        audit: AuditSink | None = None,
        telemetry: TelemetrySink | None = None,
        metrics: MetricsCollector | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.identity = identity
        self.rate_limiter = rate_limiter
        self.quotas = quotas
        self.idempotency = idempotency
        self.detector = detector or AbuseDetector()
        self.flags = flags or AbuseFlagRepository(store)
        self.audit = audit or StoreAuditSink(store, clock)
        self.telemetry = telemetry or LoggingTelemetrySink()
        self.metrics = metrics
        self.clock = clock

    def _reject(self, guard: str, code: AuditEventCode, actor_id: str, **metadata) -> None:
        record_audit(self.audit, code, actor_id, None, metadata)
        if self.metrics is not None:
            self.metrics.increment("recognition_rejections_total", labels={"guard": guard})

    def _enforce_rate_limit(self, giver_id: str, action: str, limit: RateLimitResult) -> None:
        if limit.allowed:
            return
        self._reject("rate_limit", AuditEventCode.RECOGNITION_RATE_LIMITED, giver_id, action=action)
        raise RateLimited(
            "Recognition rate limit exceeded",
            retry_after=limit.retry_after,
            details={"action": action, "limit": limit.limit, "remaining": 0},
        )

    def _enforce_quota(self, giver_id: str, resource: str, quota: QuotaResult) -> None:
        if quota.allowed:
            return
        self._reject("quota", AuditEventCode.RECOGNITION_QUOTA_EXCEEDED, giver_id, resource=resource)
        raise QuotaExceeded(
            "Organization recognition quota exceeded",
            details={"resource": resource, "limit": quota.limit, "reset_at": quota.reset_at},
        )

    def create_recognition(
        self,
        giver_id: str,
        recipient_id: str | None,
        reason: str | None,
        tags: list[str] | None = None,
        evidence_ids: list[str] | None = None,
        visibility: str | None = None,
        recipient_email: str | None = None,
        claimed_weight: float | None = None,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        """
        Create a recognition in PENDING state.

        Returns:
            {"recognition": {...}, "abuse": {...detection result...}}

        Raises:
            ValidationError: Malformed input
            InvalidRequest: Giver named themselves as recipient
            RateLimited: Giver exhausted a recognition rate limit
            QuotaExceeded: Organization exhausted a recognition quota
            Unavailable: The record store failed
        """
        if not giver_id:
            raise ValidationError("giver_id is required", details={"field": "giver_id"})

        cached = self.idempotency.lookup(idempotency_key, giver_id)
        if cached is not None:
            return cached

        if evidence_ids is not None and (
            not isinstance(evidence_ids, list) or not all(isinstance(e, str) for e in evidence_ids)
        ):
            raise ValidationError("evidence_ids must be a list of strings", details={"field": "evidence_ids"})
        evidence_ids = [e for e in (evidence_ids or []) if e]
        if len(evidence_ids) > MAX_EVIDENCE_IDS:
            raise ValidationError(
                f"At most {MAX_EVIDENCE_IDS} evidence references are allowed",
                details={"field": "evidence_ids", "max_items": MAX_EVIDENCE_IDS},
            )
        if claimed_weight is not None and (
            isinstance(claimed_weight, bool)
            or not isinstance(claimed_weight, int | float)
            or claimed_weight < 0
        ):
            raise ValidationError(
                "claimed_weight must be a non-negative number", details={"field": "claimed_weight"}
            )

        try:
            giver = self.identity.resolve(giver_id)
            try:
                tags, vis = validate_recognition_input(
                    giver, recipient_id, reason, tags, visibility, recipient_email
                )
            except InvalidRequest:
                self._reject("self_recognition", AuditEventCode.RECOGNITION_SELF_ATTEMPT, giver_id)
                raise

            # Peek every limit before consuming any: a blocked call must not move other counters
            for action in RATE_LIMIT_ACTIONS:
                self._enforce_rate_limit(giver_id, action, self.rate_limiter.get_status(giver_id, action))
            for resource in QUOTA_RESOURCES:
                self._enforce_quota(giver_id, resource, self.quotas.peek_quota(giver.organization_id, resource))

            for action in RATE_LIMIT_ACTIONS:
                self._enforce_rate_limit(giver_id, action, self.rate_limiter.check(giver_id, action))
            for resource in QUOTA_RESOURCES:
                self._enforce_quota(giver_id, resource, self.quotas.check_quota(giver.organization_id, resource))

            reason = reason.strip()
            weight = compute_recognition_weight(giver.role, reason, tags, bool(evidence_ids))
            candidate = Recognition(
                giver_id=giver_id,
                recipient_id=recipient_id,
                recipient_email=recipient_email,
                reason=reason,
                tags=tags,
                evidence_ids=evidence_ids,
                weight=weight,
                claimed_weight=claimed_weight,
                visibility=vis,
                organization_id=giver.organization_id,
                created_at=to_iso(self.clock()),
            )

            history = [
                Recognition.from_dict(d)
                for d in self.store.find(RECOGNITIONS, {"giver_id": giver_id})
                + self.store.find(RECOGNITIONS, {"giver_id": recipient_id, "recipient_id": giver_id})
            ]
            detection = self.detector.detect(candidate, history)
            candidate.weight = detection.adjusted_weight

            self.store.create(RECOGNITIONS, candidate.id, candidate.to_dict())
            if detection.flags:
                self.flags.save_flags(detection.flags)
        except StorageError as e:
            logger.error(f"Record store failed creating recognition: {e}")
            raise Unavailable("Record store unavailable", cause=e) from e

        metadata = {
            "weight": candidate.weight,
            "original_weight": detection.original_weight,
            "flags": detection.reason_codes,
            "visibility": vis.value,
        }
        record_audit(self.audit, AuditEventCode.RECOGNITION_CREATED, giver_id, candidate.id, metadata)
        record_telemetry(self.telemetry, "recognition_created", giver_id, candidate.id, metadata)
        if detection.flags:
            record_audit(
                self.audit,
                AuditEventCode.ABUSE_FLAGGED,
                giver_id,
                candidate.id,
                {"flag_types": [f.flag_type.value for f in detection.flags], "risk_score": detection.risk_score},
            )
        if self.metrics is not None:
            self.metrics.increment("recognitions_created_total")
        logger.info(f"Recognition {candidate.id} created with weight {candidate.weight}")

        response = {"recognition": candidate.to_dict(), "abuse": detection.to_dict()}
        self.idempotency.store(
            idempotency_key,
            giver_id,
            CREATE_ACTION,
            response,
            fingerprint(giver_id, CREATE_ACTION, {"recipient_id": recipient_id, "reason": reason, "tags": tags}),
        )
        return response
