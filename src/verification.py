"""
Kudos Integrity - Verification State Machine

Moves a recognition from PENDING to VERIFIED or REJECTED, exactly once.

Guard sequence for verify_recognition(), each step short-circuiting:
    1. Idempotency lookup (replay the cached response and stop)
    2. Authorization (verifier must be MANAGER or ADMIN)
    3. Rate limit on the verifier (verification_daily)
    4. Quota on the verifier's organization (verifications_per_day)
    5. Load the recognition
    6. Status guard (must be PENDING)
    7. Self-verification guard
    8. Weight computation
    9. Conditional write on status=PENDING, then audit + telemetry
   10. Cache the response under the idempotency key

Every guard failure writes its own audit event code.

Usage:
    engine = VerificationEngine(store, identity, rate_limiter, quotas, idempotency)
    result = engine.verify_recognition("rec_123", True, "manager_1")
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from abuse_detector import AbuseDetector, AbuseFlag
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
from errors import (
    Conflict,
    Forbidden,
    IntegrityError,
    Internal,
    InvalidRequest,
    NotFound,
    QuotaExceeded,
    RateLimited,
    Unavailable,
    ValidationError,
)
from idempotency import IdempotencyGuard, fingerprint
from identity import IdentityResolver
from models import RECOGNITIONS, Recognition, RecognitionStatus, to_iso, utc_now
from monitoring.metrics import MetricsCollector
from quota import QuotaManager, QuotaResult
from rate_limiter import RateLimiter, RateLimitResult
from storage.base import PreconditionFailedError, RecordNotFoundError, RecordStore, StorageError
from weights import compute_verified_weight, weight_change

logger = logging.getLogger(__name__)

VERIFY_ACTION = "verify_recognition"
RATE_LIMIT_ACTION = "verification_daily"
QUOTA_RESOURCE = "verifications_per_day"
MAX_BATCH_SIZE = 50
MAX_NOTE_LENGTH = 1000


@dataclass
class VerificationResult:
    """Response of a successful verification; also what gets replayed."""

    recognition_id: str
    status: str
    original_weight: float
    verified_weight: float
    weight_change: float
    verified_at: str
    verifier_id: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "recognition_id": self.recognition_id,
            "status": self.status,
            "original_weight": self.original_weight,
            "verified_weight": self.verified_weight,
            "weight_change": self.weight_change,
            "verified_at": self.verified_at,
            "verifier_id": self.verifier_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "VerificationResult":
        return cls(**{k: data[k] for k in cls.__dataclass_fields__})


class VerificationEngine:
    """
    Orchestrates the guards around a recognition's single status transition.

    All collaborators are passed in; the engine keeps no state between calls.
    """

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

    def _count(self, name: str, **labels: str) -> None:
        if self.metrics is not None:
            self.metrics.increment(name, labels=labels or None)

    def _reject(
        self, guard: str, code: AuditEventCode, actor_id: str, target_id: str | None, **metadata
    ) -> None:
        record_audit(self.audit, code, actor_id, target_id, metadata)
        self._count("verification_rejections_total", guard=guard)

    # =========================================================================
    # Engine-facing checks
    # =========================================================================

    def check_rate_limit(self, actor_id: str, action_key: str) -> RateLimitResult:
        return self.rate_limiter.check(actor_id, action_key)

    def check_quota(self, organization_id: str | None, resource: str) -> QuotaResult:
        return self.quotas.check_quota(organization_id, resource)

    # =========================================================================
    # Verification
    # =========================================================================

    def verify_recognition(
        self,
        recognition_id: str,
        verified: bool,
        verifier_id: str,
        note: str | None = None,
        idempotency_key: str | None = None,
    ) -> VerificationResult:
        """
        Verify or reject a pending recognition.

        Raises:
            ValidationError: Malformed input
            Forbidden: Verifier is not a MANAGER or ADMIN
            RateLimited: Verifier exhausted verification_daily
            QuotaExceeded: Organization exhausted verifications_per_day
            NotFound: Unknown recognition
            Conflict: Recognition already processed (possibly by a concurrent request)
            InvalidRequest: Verifier gave the recognition
            Unavailable: The record store failed on the critical path
            Internal: Anything unexpected
        """
        if not recognition_id or not verifier_id:
            raise ValidationError("recognition_id and verifier_id are required")
        if not isinstance(verified, bool):
            raise ValidationError("verified must be a boolean", details={"field": "verified"})
        if note is not None and len(note) > MAX_NOTE_LENGTH:
            raise ValidationError(
                f"Note must be at most {MAX_NOTE_LENGTH} characters",
                details={"field": "note", "max_length": MAX_NOTE_LENGTH},
            )

        cached = self.idempotency.lookup(idempotency_key, verifier_id)
        if cached is not None:
            self._count("verification_replays_total")
            return VerificationResult.from_dict(cached)

        try:
            result = self._verify(recognition_id, verified, verifier_id, note)
        except IntegrityError:
            raise
        except StorageError as e:
            logger.error(f"Record store failed verifying {recognition_id}: {e}")
            self._reject(
                "storage", AuditEventCode.VERIFICATION_ERROR, verifier_id, recognition_id, error=type(e).__name__
            )
            raise Unavailable("Record store unavailable", cause=e) from e
        except Exception as e:
            logger.exception(f"Unexpected error verifying {recognition_id}")
            self._reject(
                "internal", AuditEventCode.VERIFICATION_ERROR, verifier_id, recognition_id, error=type(e).__name__
            )
            raise Internal("Verification failed unexpectedly", cause=e) from e

        self.idempotency.store(
            idempotency_key,
            verifier_id,
            VERIFY_ACTION,
            result.to_dict(),
            fingerprint(verifier_id, VERIFY_ACTION, {"id": recognition_id, "verified": verified, "note": note}),
        )
        return result

    def _verify(
        self, recognition_id: str, verified: bool, verifier_id: str, note: str | None
    ) -> VerificationResult:
        verifier = self.identity.resolve(verifier_id)
        if not verifier.role.can_verify:
            self._reject(
                "authorization",
                AuditEventCode.VERIFICATION_UNAUTHORIZED,
                verifier_id,
                recognition_id,
                role=verifier.role.value,
            )
            raise Forbidden(
                "Only managers and admins can verify recognitions",
                details={"role": verifier.role.value},
            )

        limit = self.rate_limiter.check(verifier_id, RATE_LIMIT_ACTION)
        if not limit.allowed:
            self._reject("rate_limit", AuditEventCode.VERIFICATION_RATE_LIMITED, verifier_id, recognition_id)
            raise RateLimited(
                "Verification rate limit exceeded",
                retry_after=limit.retry_after,
                details={"action": RATE_LIMIT_ACTION, "limit": limit.limit, "remaining": 0},
            )

        quota = self.quotas.check_quota(verifier.organization_id, QUOTA_RESOURCE)
        if quota.degraded:
            record_audit(
                self.audit,
                AuditEventCode.VERIFICATION_QUOTA_DEGRADED,
                verifier_id,
                recognition_id,
                {"resource": QUOTA_RESOURCE},
            )
        elif not quota.allowed:
            self._reject("quota", AuditEventCode.VERIFICATION_QUOTA_EXCEEDED, verifier_id, recognition_id)
            raise QuotaExceeded(
                "Organization verification quota exceeded",
                details={"resource": QUOTA_RESOURCE, "limit": quota.limit, "reset_at": quota.reset_at},
            )

        data = self.store.get(RECOGNITIONS, recognition_id)
        if data is None:
            self._reject("not_found", AuditEventCode.VERIFICATION_NOT_FOUND, verifier_id, recognition_id)
            raise NotFound("Recognition not found", details={"recognition_id": recognition_id})
        recognition = Recognition.from_dict(data)

        if not recognition.is_pending:
            self._reject(
                "status",
                AuditEventCode.VERIFICATION_CONFLICT,
                verifier_id,
                recognition_id,
                status=recognition.status.value,
            )
            raise Conflict(
                f"Recognition already {recognition.status.value}",
                details={"recognition_id": recognition_id, "status": recognition.status.value},
            )

        if verifier.id == recognition.giver_id:
            self._reject("self_verification", AuditEventCode.VERIFICATION_SELF_ATTEMPT, verifier_id, recognition_id)
            raise InvalidRequest(
                "Cannot verify a recognition you gave",
                details={"recognition_id": recognition_id},
            )

        new_weight = compute_verified_weight(recognition.weight, verified, verifier.role)
        new_status = RecognitionStatus.VERIFIED if verified else RecognitionStatus.REJECTED
        verified_at = to_iso(self.clock())

        try:
            updated = self.store.update_if(
                RECOGNITIONS,
                recognition_id,
                {"status": RecognitionStatus.PENDING.value},
                {
                    "status": new_status.value,
                    "verified_weight": new_weight,
                    "verifier_id": verifier.id,
                    "verifier_role": verifier.role.value,
                    "verification_note": note,
                    "verified_at": verified_at,
                },
            )
        except PreconditionFailedError as e:
            self._reject("status", AuditEventCode.VERIFICATION_CONFLICT, verifier_id, recognition_id, race=True)
            raise Conflict(
                "Recognition was processed by a concurrent request",
                details={"recognition_id": recognition_id},
                cause=e,
            ) from e
        except RecordNotFoundError as e:
            self._reject("not_found", AuditEventCode.VERIFICATION_NOT_FOUND, verifier_id, recognition_id)
            raise NotFound("Recognition not found", details={"recognition_id": recognition_id}, cause=e) from e

        result = VerificationResult(
            recognition_id=recognition_id,
            status=new_status.value,
            original_weight=recognition.weight,
            verified_weight=new_weight,
            weight_change=weight_change(recognition.weight, new_weight),
            verified_at=verified_at,
            verifier_id=verifier.id,
        )

        code = AuditEventCode.RECOGNITION_VERIFIED if verified else AuditEventCode.RECOGNITION_REJECTED
        metadata = {
            "status": result.status,
            "original_weight": result.original_weight,
            "verified_weight": result.verified_weight,
            "weight_change": result.weight_change,
            "verifier_role": verifier.role.value,
        }
        record_audit(self.audit, code, verifier_id, recognition_id, metadata)
        record_telemetry(self.telemetry, "recognition_verified", verifier_id, recognition_id, metadata)
        self._count("verifications_total", status=result.status)
        logger.info(f"Recognition {recognition_id} {result.status} by {verifier.role.value}")

        if verified:
            self._flag_after_verification(Recognition.from_dict(updated))
        return result

    def _flag_after_verification(self, recognition: Recognition) -> None:
        """Run abuse detection on a freshly verified recognition; never fails the verification."""
        try:
            self._detect_and_store(recognition, self._history_for(recognition), recognition.verifier_id)
        except StorageError as e:
            logger.warning(f"Post-verification abuse check for {recognition.id} skipped: {e}")
        except Exception:
            # The status change is already committed
            logger.exception(f"Post-verification abuse check for {recognition.id} failed")

    # =========================================================================
    # Batch verification
    # =========================================================================

    def batch_verify(
        self,
        recognition_ids: list[str],
        verified: bool,
        verifier_id: str,
        note: str | None = None,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        """
        Verify several recognitions with the same decision.

        Each id goes through the full guard sequence; one failure does not
        stop the batch. Duplicate ids are processed once.
        """
        if not recognition_ids:
            raise ValidationError("recognition_ids must not be empty", details={"field": "recognition_ids"})
        unique_ids = list(dict.fromkeys(recognition_ids))
        if len(unique_ids) > MAX_BATCH_SIZE:
            raise ValidationError(
                f"At most {MAX_BATCH_SIZE} recognitions per batch",
                details={"field": "recognition_ids", "max_items": MAX_BATCH_SIZE},
            )

        results = []
        for recognition_id in unique_ids:
            item_key = f"{idempotency_key}:{recognition_id}" if idempotency_key else None
            try:
                outcome = self.verify_recognition(recognition_id, verified, verifier_id, note, item_key)
                results.append({"recognition_id": recognition_id, "success": True, "result": outcome.to_dict()})
            except IntegrityError as e:
                results.append({"recognition_id": recognition_id, "success": False, "error": e.to_dict()})

        succeeded = sum(1 for r in results if r["success"])
        logger.info(f"Batch verification: {succeeded}/{len(results)} succeeded")
        return {
            "total": len(results),
            "succeeded": succeeded,
            "failed": len(results) - succeeded,
            "results": results,
        }

    # =========================================================================
    # Abuse detection
    # =========================================================================

    def _history_for(self, recognition: Recognition) -> list[Recognition]:
        """Everything the giver sent plus everything the recipient sent back to them."""
        given = self.store.find(RECOGNITIONS, {"giver_id": recognition.giver_id})
        reverse = self.store.find(
            RECOGNITIONS,
            {"giver_id": recognition.recipient_id, "recipient_id": recognition.giver_id},
        )
        return [Recognition.from_dict(d) for d in given + reverse]

    def _detect_and_store(
        self, recognition: Recognition, history: list[Recognition], actor_id: str | None
    ) -> list[AbuseFlag]:
        result = self.detector.detect(recognition, history)
        if not result.flags:
            return []

        new_flags = self.flags.save_flags(result.flags)
        if new_flags:
            metadata = {
                "flag_types": [f.flag_type.value for f in new_flags],
                "risk_score": result.risk_score,
                "severity": result.severity.value,
                "original_weight": result.original_weight,
                "adjusted_weight": result.adjusted_weight,
            }
            record_audit(self.audit, AuditEventCode.ABUSE_FLAGGED, actor_id, recognition.id, metadata)
            record_telemetry(self.telemetry, "abuse_detected", actor_id, recognition.id, metadata)
            for flag in new_flags:
                self._count("abuse_flags_total", flag_type=flag.flag_type.value)
        return result.flags

    def detect_abuse(
        self,
        recognition_id: str,
        history: list[Recognition] | None = None,
        actor_id: str | None = None,
    ) -> list[AbuseFlag]:
        """
        Run the abuse detector on a stored recognition and persist its flags.

        When ``history`` is omitted it is loaded from the store: the giver's
        recognitions plus those the recipient gave back to the giver.
        """
        try:
            data = self.store.get(RECOGNITIONS, recognition_id)
            if data is None:
                raise NotFound("Recognition not found", details={"recognition_id": recognition_id})
            recognition = Recognition.from_dict(data)
            if history is None:
                history = self._history_for(recognition)
            return self._detect_and_store(recognition, history, actor_id)
        except StorageError as e:
            raise Unavailable("Record store unavailable", cause=e) from e
