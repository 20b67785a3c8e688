"""
Tests for the HTTP API.

Exercises every blueprint through the Flask test client, including the
JSON error envelope and status code mapping.
"""

from unittest.mock import patch

import pytest

from models import RECOGNITIONS
from rate_limiter import DAY, RateLimitRule
from storage.base import StorageConnectionError

REASON = "Stayed late to get the demo environment working"


def as_actor(actor_id, **headers):
    return {"X-Actor-Id": actor_id, **headers}


def assert_error(response, status, code):
    assert response.status_code == status, response.get_json()
    body = response.get_json()
    assert body["error"]["code"] == code
    assert set(body["error"]) == {"code", "message", "details"}
    return body["error"]


class TestCreateEndpoint:
    def test_create(self, client):
        response = client.post(
            "/recognitions",
            json={"recipient_id": "user_2", "reason": REASON, "tags": ["demo"]},
            headers=as_actor("user_1"),
        )

        assert response.status_code == 201
        body = response.get_json()
        assert body["recognition"]["status"] == "PENDING"
        assert body["recognition"]["giver_id"] == "user_1"
        assert body["abuse"]["is_abusive"] is False

    def test_missing_actor_header(self, client):
        response = client.post("/recognitions", json={"recipient_id": "user_2", "reason": REASON})
        assert_error(response, 400, "VALIDATION_ERROR")

    def test_body_must_be_object(self, client):
        response = client.post("/recognitions", json=["nope"], headers=as_actor("user_1"))
        assert_error(response, 400, "VALIDATION_ERROR")

    def test_wrong_field_type(self, client):
        response = client.post(
            "/recognitions",
            json={"recipient_id": "user_2", "reason": REASON, "claimed_weight": True},
            headers=as_actor("user_1"),
        )
        error = assert_error(response, 400, "VALIDATION_ERROR")
        assert error["details"]["field"] == "claimed_weight"

    @pytest.mark.parametrize("field,value", [("tags", [1]), ("tags", ["ok", None]), ("evidence_ids", [42])])
    def test_non_string_list_items(self, client, field, value):
        response = client.post(
            "/recognitions",
            json={"recipient_id": "user_2", "reason": REASON, field: value},
            headers=as_actor("user_1"),
        )
        error = assert_error(response, 400, "VALIDATION_ERROR")
        assert error["details"]["field"] == field

    def test_self_recognition(self, client):
        response = client.post(
            "/recognitions", json={"recipient_id": "user_1", "reason": REASON}, headers=as_actor("user_1")
        )
        assert_error(response, 400, "INVALID_REQUEST")

    def test_rate_limited_sets_retry_after(self, client, components):
        components.rate_limiter.config.rules["recognition_daily"] = RateLimitRule(1, DAY)
        body = {"recipient_id": "user_2", "reason": REASON}
        client.post("/recognitions", json=body, headers=as_actor("user_1"))

        response = client.post("/recognitions", json=body, headers=as_actor("user_1"))

        assert_error(response, 429, "RATE_LIMITED")
        assert response.headers["Retry-After"] == str(DAY)

    def test_idempotency_header(self, client, components):
        headers = as_actor("user_1", **{"Idempotency-Key": "abc"})
        body = {"recipient_id": "user_2", "reason": REASON}

        first = client.post("/recognitions", json=body, headers=headers)
        second = client.post("/recognitions", json=body, headers=headers)

        assert first.get_json() == second.get_json()
        assert len(components.store.find(RECOGNITIONS)) == 1


class TestVerifyEndpoints:
    def test_verify(self, client, make_recognition):
        rec = make_recognition(weight=1.0)

        response = client.post(
            f"/recognitions/{rec.id}/verify", json={"verified": True, "note": "ok"}, headers=as_actor("admin_1")
        )

        assert response.status_code == 200
        body = response.get_json()
        assert body["status"] == "VERIFIED"
        assert body["verified_weight"] == 1.3
        assert body["weight_change"] == 0.3

    def test_verify_requires_boolean(self, client, make_recognition):
        rec = make_recognition()
        response = client.post(
            f"/recognitions/{rec.id}/verify", json={"verified": "yes"}, headers=as_actor("admin_1")
        )
        assert_error(response, 400, "VALIDATION_ERROR")

    @pytest.mark.parametrize(
        "actor,status,code",
        [("user_3", 403, "FORBIDDEN"), ("user_1", 403, "FORBIDDEN"), ("manager_1", 200, None)],
    )
    def test_verify_authorization(self, client, make_recognition, actor, status, code):
        rec = make_recognition(giver_id="user_1", recipient_id="user_2")
        response = client.post(f"/recognitions/{rec.id}/verify", json={"verified": True}, headers=as_actor(actor))
        if code:
            assert_error(response, status, code)
        else:
            assert response.status_code == status

    def test_verify_missing(self, client):
        response = client.post("/recognitions/rec_nope/verify", json={"verified": True}, headers=as_actor("admin_1"))
        assert_error(response, 404, "NOT_FOUND")

    def test_verify_twice_conflicts(self, client, make_recognition):
        rec = make_recognition()
        client.post(f"/recognitions/{rec.id}/verify", json={"verified": True}, headers=as_actor("admin_1"))
        response = client.post(
            f"/recognitions/{rec.id}/verify", json={"verified": False}, headers=as_actor("manager_1")
        )
        assert_error(response, 409, "CONFLICT")

    def test_verify_replay(self, client, make_recognition):
        rec = make_recognition()
        headers = as_actor("admin_1", **{"X-Idempotency-Key": "retry-1"})

        first = client.post(f"/recognitions/{rec.id}/verify", json={"verified": True}, headers=headers)
        second = client.post(f"/recognitions/{rec.id}/verify", json={"verified": True}, headers=headers)

        assert second.status_code == 200
        assert second.get_json() == first.get_json()

    def test_store_outage_is_unavailable(self, client, components, make_recognition):
        rec = make_recognition()
        with patch.object(components.store, "update_if", side_effect=StorageConnectionError("down")):
            response = client.post(
                f"/recognitions/{rec.id}/verify", json={"verified": True}, headers=as_actor("admin_1")
            )
        assert_error(response, 500, "UNAVAILABLE")

    def test_batch_verify(self, client, make_recognition):
        a, b = make_recognition(), make_recognition()

        response = client.post(
            "/recognitions/batch-verify",
            json={"recognition_ids": [a.id, b.id, "rec_nope"], "verified": False},
            headers=as_actor("manager_1"),
        )

        assert response.status_code == 200
        body = response.get_json()
        assert (body["total"], body["succeeded"], body["failed"]) == (3, 2, 1)

    def test_batch_verify_rejects_bad_ids(self, client):
        response = client.post(
            "/recognitions/batch-verify",
            json={"recognition_ids": ["rec_a", 7], "verified": True},
            headers=as_actor("manager_1"),
        )
        assert_error(response, 400, "VALIDATION_ERROR")


class TestAbuseEndpoints:
    def _mutual(self, make_recognition):
        recs = []
        for _ in range(3):
            recs.append(make_recognition(giver_id="user_1", recipient_id="user_2"))
            recs.append(make_recognition(giver_id="user_2", recipient_id="user_1"))
        return recs

    def test_detect_and_list_flags(self, client, make_recognition):
        recs = self._mutual(make_recognition)

        detect = client.post(f"/recognitions/{recs[0].id}/abuse/detect", headers=as_actor("manager_1"))
        assert detect.status_code == 200
        assert detect.get_json()["is_abusive"] is True

        listing = client.get(f"/recognitions/{recs[0].id}/abuse-flags", headers=as_actor("admin_1"))
        assert listing.get_json()["count"] == 1
        assert listing.get_json()["flags"][0]["flag_type"] == "RECIPROCITY"

    def test_detect_requires_privilege(self, client, make_recognition):
        rec = make_recognition()
        response = client.post(f"/recognitions/{rec.id}/abuse/detect", headers=as_actor("user_3"))
        assert_error(response, 403, "FORBIDDEN")

    def test_report_and_review(self, client, make_recognition):
        rec = make_recognition()

        report = client.post(
            f"/recognitions/{rec.id}/abuse/report",
            json={"description": "Same reason pasted to five people", "flag_type": "CONTENT"},
            headers=as_actor("user_3"),
        )
        assert report.status_code == 201
        flag_id = report.get_json()["id"]

        forbidden = client.post(
            f"/abuse-flags/{flag_id}/review", json={"status": "RESOLVED"}, headers=as_actor("manager_1")
        )
        assert_error(forbidden, 403, "FORBIDDEN")

        review = client.post(
            f"/abuse-flags/{flag_id}/review",
            json={"status": "RESOLVED", "notes": "Confirmed"},
            headers=as_actor("admin_1"),
        )
        assert review.status_code == 200
        assert review.get_json()["status"] == "RESOLVED"

    def test_admin_report(self, client, make_recognition):
        recs = self._mutual(make_recognition)
        client.post(f"/recognitions/{recs[0].id}/abuse/detect", headers=as_actor("admin_1"))

        response = client.get(
            "/admin/abuse-report?flag_types=reciprocity&since=2026-03-01T00:00:00Z", headers=as_actor("admin_1")
        )

        assert response.status_code == 200
        body = response.get_json()
        assert body["statistics"]["total_flags"] == 1
        assert body["suggested_actions"][0]["recognition_id"] == recs[0].id

    def test_admin_report_bad_filter(self, client):
        response = client.get("/admin/abuse-report?severities=apocalyptic", headers=as_actor("admin_1"))
        assert_error(response, 400, "VALIDATION_ERROR")


class TestLimitEndpoints:
    def test_quota_status(self, client):
        response = client.get("/quota/org_1", headers=as_actor("user_1"))
        assert response.status_code == 200
        resources = {q["resource"] for q in response.get_json()["quotas"]}
        assert "verifications_per_day" in resources

    def test_quota_other_org_forbidden(self, client):
        response = client.get("/quota/org_1/alerts", headers=as_actor("manager_2"))
        assert_error(response, 403, "FORBIDDEN")

    def test_admin_sees_any_org(self, client):
        response = client.get("/quota/org_2/alerts", headers=as_actor("admin_1"))
        assert response.status_code == 200
        assert response.get_json()["count"] == 0

    def test_rate_limit_status(self, client, make_recognition):
        rec = make_recognition()
        client.post(f"/recognitions/{rec.id}/verify", json={"verified": True}, headers=as_actor("manager_1"))

        response = client.get("/rate-limit/verification_daily", headers=as_actor("manager_1"))

        assert response.status_code == 200
        assert response.get_json()["remaining"] == 49
        assert response.headers["X-RateLimit-Limit"] == "50"

    def test_unknown_action(self, client):
        response = client.get("/rate-limit/teleport", headers=as_actor("user_1"))
        assert_error(response, 400, "VALIDATION_ERROR")


class TestMonitoringEndpoints:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        body = response.get_json()
        assert body["status"] == "healthy"
        assert body["checks"]["storage"]["available"] is True
        assert body["checks"]["rate_limiter"]["effective_backend"] == "primary"

    def test_health_keeps_field_order(self, client):
        assert list(client.get("/health").get_json()) == [
            "status",
            "service",
            "version",
            "uptime_seconds",
            "checks",
        ]

    def test_health_degraded(self, client, components):
        with patch.object(components.store, "is_available", return_value=False):
            response = client.get("/health")
        assert response.status_code == 503
        assert response.get_json()["status"] == "degraded"

    def test_metrics(self, client, make_recognition):
        rec = make_recognition()
        client.post(f"/recognitions/{rec.id}/verify", json={"verified": True}, headers=as_actor("admin_1"))

        text = client.get("/metrics").get_data(as_text=True)
        assert 'kudos_verifications_total{status="VERIFIED"} 1' in text
        assert "kudos_storage_available 1" in text

    def test_metrics_json(self, client):
        body = client.get("/metrics/json").get_json()
        assert "counters" in body

    def test_request_id_header(self, client):
        response = client.get("/health", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"

    def test_unknown_route(self, client):
        assert_error(client.get("/nowhere"), 404, "NOT_FOUND")

    def test_wrong_method(self, client):
        assert_error(client.get("/recognitions"), 405, "INVALID_REQUEST")
