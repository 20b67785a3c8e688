"""
Tests for the verification engine.

Covers the full guard sequence, weight outcomes, idempotent replay,
concurrent verification of the same recognition, batch verification and
post-verification abuse detection.
"""

import threading
from unittest.mock import MagicMock, patch

import pytest

from abuse_detector import FlagType
from audit import AuditEventCode
from errors import (
    Conflict,
    Forbidden,
    Internal,
    InvalidRequest,
    NotFound,
    QuotaExceeded,
    RateLimited,
    Unavailable,
    ValidationError,
)
from models import RECOGNITIONS, Actor, Role
from quota import QuotaPeriod, QuotaRule
from rate_limiter import DAY, RateLimitRule
from storage.base import StorageConnectionError
from verification import MAX_BATCH_SIZE, VerificationResult


def audits(components, code):
    return components.audit.entries(code)


class TestVerifyRecognition:
    def test_admin_verifies_with_bonus(self, components, make_recognition, clock):
        rec = make_recognition(weight=1.0)

        result = components.verification.verify_recognition(rec.id, True, "admin_1", note="Confirmed")

        assert result.status == "VERIFIED"
        assert result.original_weight == 1.0
        assert result.verified_weight == 1.3
        assert result.weight_change == 0.3
        assert result.verifier_id == "admin_1"

        stored = components.store.get(RECOGNITIONS, rec.id)
        assert stored["status"] == "VERIFIED"
        assert stored["verified_weight"] == 1.3
        assert stored["verifier_role"] == "ADMIN"
        assert stored["verification_note"] == "Confirmed"
        assert stored["verified_at"] == result.verified_at
        assert len(audits(components, AuditEventCode.RECOGNITION_VERIFIED)) == 1

    def test_manager_verifies_with_bonus(self, components, make_recognition):
        rec = make_recognition(weight=2.5)
        result = components.verification.verify_recognition(rec.id, True, "manager_1")
        assert result.verified_weight == 3.0
        assert result.weight_change == 0.5

    def test_rejection_zeroes_weight(self, components, make_recognition):
        rec = make_recognition(weight=1.5)

        result = components.verification.verify_recognition(rec.id, False, "manager_1")

        assert result.status == "REJECTED"
        assert result.verified_weight == 0.0
        assert result.weight_change == -1.5
        assert len(audits(components, AuditEventCode.RECOGNITION_REJECTED)) == 1

    def test_audit_entries_carry_hashed_ids(self, components, make_recognition):
        rec = make_recognition()
        components.verification.verify_recognition(rec.id, True, "manager_1")

        entry = audits(components, AuditEventCode.RECOGNITION_VERIFIED)[0]
        assert entry["actor_hash"] != "manager_1"
        assert rec.id not in entry["target_hash"]
        assert entry["metadata"]["verified_weight"] == 1.2

    def test_metrics_counted(self, components, make_recognition):
        rec = make_recognition()
        components.verification.verify_recognition(rec.id, True, "manager_1")
        assert components.metrics.get_counter("verifications_total", labels={"status": "VERIFIED"}) == 1


class TestVerificationGuards:
    def test_plain_user_is_forbidden(self, components, make_recognition):
        rec = make_recognition(giver_id="user_1", recipient_id="user_2")

        with pytest.raises(Forbidden):
            components.verification.verify_recognition(rec.id, True, "user_3")

        assert components.store.get(RECOGNITIONS, rec.id)["status"] == "PENDING"
        assert len(audits(components, AuditEventCode.VERIFICATION_UNAUTHORIZED)) == 1

    def test_unknown_actor_is_forbidden(self, components, make_recognition):
        rec = make_recognition()
        with pytest.raises(Forbidden):
            components.verification.verify_recognition(rec.id, True, "stranger")

    def test_self_verification_is_invalid(self, components, make_recognition):
        rec = make_recognition(giver_id="manager_1", recipient_id="user_1")

        with pytest.raises(InvalidRequest):
            components.verification.verify_recognition(rec.id, True, "manager_1")

        assert components.store.get(RECOGNITIONS, rec.id)["status"] == "PENDING"
        assert len(audits(components, AuditEventCode.VERIFICATION_SELF_ATTEMPT)) == 1

    def test_missing_recognition(self, components):
        with pytest.raises(NotFound):
            components.verification.verify_recognition("rec_missing", True, "manager_1")
        assert len(audits(components, AuditEventCode.VERIFICATION_NOT_FOUND)) == 1

    def test_already_processed(self, components, make_recognition):
        rec = make_recognition()
        components.verification.verify_recognition(rec.id, True, "manager_1")

        with pytest.raises(Conflict) as exc_info:
            components.verification.verify_recognition(rec.id, False, "admin_1")

        assert exc_info.value.details["status"] == "VERIFIED"
        assert components.store.get(RECOGNITIONS, rec.id)["verified_weight"] == 1.2
        assert len(audits(components, AuditEventCode.VERIFICATION_CONFLICT)) == 1

    def test_rate_limited(self, components, make_recognition):
        components.rate_limiter.config.rules["verification_daily"] = RateLimitRule(1, DAY)
        first, second = make_recognition(), make_recognition()

        components.verification.verify_recognition(first.id, True, "manager_1")
        with pytest.raises(RateLimited) as exc_info:
            components.verification.verify_recognition(second.id, True, "manager_1")

        assert exc_info.value.retry_after == DAY
        assert components.store.get(RECOGNITIONS, second.id)["status"] == "PENDING"
        assert len(audits(components, AuditEventCode.VERIFICATION_RATE_LIMITED)) == 1

    def test_rate_limit_is_checked_before_lookup(self, components):
        components.rate_limiter.config.rules["verification_daily"] = RateLimitRule(1, DAY)
        with pytest.raises(NotFound):
            components.verification.verify_recognition("rec_missing", True, "manager_1")
        with pytest.raises(RateLimited):
            components.verification.verify_recognition("rec_missing", True, "manager_1")

    def test_quota_exceeded(self, components, make_recognition):
        components.quotas.config.quotas["verifications_per_day"] = QuotaRule(1, QuotaPeriod.DAILY)
        first, second = make_recognition(), make_recognition()

        components.verification.verify_recognition(first.id, True, "manager_1")
        with pytest.raises(QuotaExceeded):
            components.verification.verify_recognition(second.id, True, "admin_1")

        assert len(audits(components, AuditEventCode.VERIFICATION_QUOTA_EXCEEDED)) == 1

    def test_quota_store_failure_degrades(self, components, make_recognition):
        rec = make_recognition()
        broken = MagicMock()
        broken.consume_counter.side_effect = StorageConnectionError("down")
        components.quotas.store = broken

        result = components.verification.verify_recognition(rec.id, True, "manager_1")

        assert result.status == "VERIFIED"
        assert len(audits(components, AuditEventCode.VERIFICATION_QUOTA_DEGRADED)) == 1

    def test_store_failure_is_unavailable(self, components, make_recognition):
        rec = make_recognition()

        with patch.object(components.store, "update_if", side_effect=StorageConnectionError("down")):
            with pytest.raises(Unavailable):
                components.verification.verify_recognition(rec.id, True, "manager_1")

        assert len(audits(components, AuditEventCode.VERIFICATION_ERROR)) == 1

    def test_unexpected_failure_is_internal(self, components, make_recognition):
        rec = make_recognition()

        with patch("verification.compute_verified_weight", side_effect=ZeroDivisionError()):
            with pytest.raises(Internal):
                components.verification.verify_recognition(rec.id, True, "manager_1")

        assert components.store.get(RECOGNITIONS, rec.id)["status"] == "PENDING"

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"recognition_id": "", "verified": True, "verifier_id": "manager_1"},
            {"recognition_id": "rec_1", "verified": "yes", "verifier_id": "manager_1"},
            {"recognition_id": "rec_1", "verified": True, "verifier_id": "manager_1", "note": "x" * 1001},
        ],
    )
    def test_malformed_input(self, components, kwargs):
        with pytest.raises(ValidationError):
            components.verification.verify_recognition(**kwargs)


class TestIdempotentVerification:
    def test_replay_returns_cached_result(self, components, make_recognition, clock):
        rec = make_recognition()

        first = components.verification.verify_recognition(rec.id, True, "manager_1", idempotency_key="k1")
        clock.advance(minutes=5)
        second = components.verification.verify_recognition(rec.id, True, "manager_1", idempotency_key="k1")

        assert second == first
        assert len(audits(components, AuditEventCode.RECOGNITION_VERIFIED)) == 1
        assert components.metrics.get_counter("verification_replays_total") == 1

    def test_other_verifier_with_same_key_is_not_replayed(self, components, make_recognition):
        rec = make_recognition()
        components.verification.verify_recognition(rec.id, True, "manager_1", idempotency_key="k1")

        with pytest.raises(Conflict):
            components.verification.verify_recognition(rec.id, True, "admin_1", idempotency_key="k1")

    def test_key_and_actor_are_not_confused(self, components, make_recognition):
        for actor_id in ("mgr-a", "mgr"):
            components.identity.register(Actor(id=actor_id, role=Role.MANAGER, organization_id="org_1"))
        rec1, rec2 = make_recognition(), make_recognition()

        components.verification.verify_recognition(rec1.id, True, "mgr-a", idempotency_key="k")
        second = components.verification.verify_recognition(rec2.id, False, "mgr", idempotency_key="a-k")

        assert second.recognition_id == rec2.id
        assert second.status == "REJECTED"
        assert components.store.get(RECOGNITIONS, rec2.id)["status"] == "REJECTED"

    def test_failures_are_not_cached(self, components, make_recognition):
        rec = make_recognition()
        with pytest.raises(Forbidden):
            components.verification.verify_recognition(rec.id, True, "user_3", idempotency_key="k1")

        components.identity.register(Actor(id="user_3", role=Role.MANAGER, organization_id="org_1"))
        result = components.verification.verify_recognition(rec.id, True, "user_3", idempotency_key="k1")
        assert result.status == "VERIFIED"

    def test_result_round_trip(self):
        result = VerificationResult("rec_1", "VERIFIED", 1.0, 1.3, 0.3, "2026-03-02T12:00:00+00:00", "admin_1")
        assert VerificationResult.from_dict(result.to_dict()) == result


class TestConcurrentVerification:
    def test_exactly_one_verifier_wins(self, components, make_recognition):
        rec = make_recognition(weight=1.0)
        verifiers = ["manager_1", "admin_1"] * 5
        outcomes = []
        lock = threading.Lock()
        barrier = threading.Barrier(len(verifiers))

        def worker(verifier_id):
            barrier.wait()
            try:
                result = components.verification.verify_recognition(rec.id, True, verifier_id)
                outcome = ("ok", result.verifier_id)
            except Conflict:
                outcome = ("conflict", verifier_id)
            with lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=worker, args=(v,)) for v in verifiers]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        winners = [o for o in outcomes if o[0] == "ok"]
        assert len(winners) == 1
        assert len(outcomes) == len(verifiers)
        assert components.store.get(RECOGNITIONS, rec.id)["verifier_id"] == winners[0][1]
        assert len(audits(components, AuditEventCode.RECOGNITION_VERIFIED)) == 1


class TestBatchVerify:
    def test_mixed_outcomes(self, components, make_recognition):
        first, second = make_recognition(), make_recognition(giver_id="manager_1", recipient_id="user_1")

        batch = components.verification.batch_verify(
            [first.id, second.id, "rec_missing", first.id], True, "manager_1"
        )

        assert batch["total"] == 3
        assert batch["succeeded"] == 1
        assert batch["failed"] == 2
        by_id = {r["recognition_id"]: r for r in batch["results"]}
        assert by_id[first.id]["result"]["status"] == "VERIFIED"
        assert by_id[second.id]["error"]["code"] == "INVALID_REQUEST"
        assert by_id["rec_missing"]["error"]["code"] == "NOT_FOUND"

    def test_batch_replay_with_key(self, components, make_recognition):
        recs = [make_recognition() for _ in range(3)]
        ids = [r.id for r in recs]

        first = components.verification.batch_verify(ids, True, "admin_1", idempotency_key="batch-1")
        second = components.verification.batch_verify(ids, True, "admin_1", idempotency_key="batch-1")

        assert first == second
        assert second["succeeded"] == 3
        assert len(audits(components, AuditEventCode.RECOGNITION_VERIFIED)) == 3

    def test_empty_batch(self, components):
        with pytest.raises(ValidationError):
            components.verification.batch_verify([], True, "manager_1")

    def test_oversized_batch(self, components):
        ids = [f"rec_{i}" for i in range(MAX_BATCH_SIZE + 1)]
        with pytest.raises(ValidationError):
            components.verification.batch_verify(ids, True, "manager_1")


class TestAbuseDetectionAroundVerification:
    def _mutual(self, make_recognition, exchanges=3):
        recs = []
        for _ in range(exchanges):
            recs.append(make_recognition(giver_id="user_1", recipient_id="user_2"))
            recs.append(make_recognition(giver_id="user_2", recipient_id="user_1"))
        return recs

    def test_verification_runs_detection(self, components, make_recognition):
        recs = self._mutual(make_recognition)

        components.verification.verify_recognition(recs[0].id, True, "manager_1")

        flags = components.flags.for_recognition(recs[0].id)
        assert [f.flag_type for f in flags] == [FlagType.RECIPROCITY]
        assert len(audits(components, AuditEventCode.ABUSE_FLAGGED)) == 1

    def test_detection_failure_does_not_fail_verification(self, components, make_recognition):
        rec = make_recognition()
        with patch.object(components.verification, "_history_for", side_effect=StorageConnectionError("down")):
            result = components.verification.verify_recognition(rec.id, True, "manager_1")
        assert result.status == "VERIFIED"

    def test_unexpected_detection_error_keeps_verification(self, components, make_recognition):
        rec = make_recognition()
        with patch.object(components.verification.detector, "detect", side_effect=RuntimeError("bad history")):
            result = components.verification.verify_recognition(rec.id, True, "manager_1", idempotency_key="k9")

        assert result.status == "VERIFIED"
        replay = components.verification.verify_recognition(rec.id, True, "manager_1", idempotency_key="k9")
        assert replay == result

    def test_detect_abuse_persists_flags_once(self, components, make_recognition):
        recs = self._mutual(make_recognition)

        first = components.verification.detect_abuse(recs[0].id, actor_id="admin_1")
        second = components.verification.detect_abuse(recs[0].id, actor_id="admin_1")

        assert [f.id for f in first] == [f.id for f in second]
        assert len(components.flags.for_recognition(recs[0].id)) == 1
        assert len(audits(components, AuditEventCode.ABUSE_FLAGGED)) == 1

    def test_detect_abuse_with_explicit_history(self, components, make_recognition):
        rec = make_recognition()
        assert components.verification.detect_abuse(rec.id, history=[]) == []

    def test_detect_abuse_missing(self, components):
        with pytest.raises(NotFound):
            components.verification.detect_abuse("rec_missing")

    def test_detect_abuse_store_failure(self, components, make_recognition):
        rec = make_recognition()
        with patch.object(components.store, "find", side_effect=StorageConnectionError("down")):
            with pytest.raises(Unavailable):
                components.verification.detect_abuse(rec.id)
