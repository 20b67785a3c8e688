"""
Recognition blueprint: creation and verification.

Routes:
- POST /recognitions
- POST /recognitions/<id>/verify
- POST /recognitions/batch-verify
"""

from flask import Blueprint

from api.utils import components, current_actor_id, idempotency_key, json_body, ok, validate_json_schema
from errors import ValidationError

recognitions_bp = Blueprint("recognitions", __name__)


@recognitions_bp.route("/recognitions", methods=["POST"])
def create_recognition():
    """
    Create a PENDING recognition from the calling actor.

    Request body:
    {
        "recipient_id": "user_2",
        "reason": "At least twenty characters of why",
        "tags": ["teamwork"],               // optional, at most 3
        "evidence_ids": ["ev_1"],           // optional
        "visibility": "PRIVATE",            // optional: PRIVATE, TEAM, PUBLIC
        "recipient_email": "b@example.com", // optional
        "claimed_weight": 1.5               // optional
    }
    """
    data = json_body()
    validate_json_schema(
        data,
        required_fields={"recipient_id": str, "reason": str},
        optional_fields={
            "tags": list,
            "evidence_ids": list,
            "visibility": str,
            "recipient_email": str,
            "claimed_weight": (int, float),
        },
        max_lengths={"reason": 2000, "recipient_id": 128, "recipient_email": 254},
    )

    result = components().recognitions.create_recognition(
        giver_id=current_actor_id(),
        recipient_id=data["recipient_id"],
        reason=data["reason"],
        tags=data.get("tags"),
        evidence_ids=data.get("evidence_ids"),
        visibility=data.get("visibility"),
        recipient_email=data.get("recipient_email"),
        claimed_weight=data.get("claimed_weight"),
        idempotency_key=idempotency_key(),
    )
    return ok(result, 201)


@recognitions_bp.route("/recognitions/<recognition_id>/verify", methods=["POST"])
def verify_recognition(recognition_id: str):
    """
    Approve or reject a pending recognition.

    Request body:
    {
        "verified": true,
        "note": "optional verifier note"
    }

    Replaying the same Idempotency-Key returns the original response.
    """
    data = json_body()
    validate_json_schema(data, required_fields={"verified": bool}, optional_fields={"note": str})

    result = components().verification.verify_recognition(
        recognition_id,
        data["verified"],
        current_actor_id(),
        note=data.get("note"),
        idempotency_key=idempotency_key(),
    )
    return ok(result.to_dict())


@recognitions_bp.route("/recognitions/batch-verify", methods=["POST"])
def batch_verify():
    """
    Apply one decision to several recognitions.

    Request body:
    {
        "recognition_ids": ["rec_a", "rec_b"],
        "verified": true,
        "note": "optional"
    }

    Always 200 when the batch itself is valid; per-item errors are in "results".
    """
    data = json_body()
    validate_json_schema(
        data,
        required_fields={"recognition_ids": list, "verified": bool},
        optional_fields={"note": str},
    )
    ids = data["recognition_ids"]
    if not all(isinstance(i, str) and i for i in ids):
        raise ValidationError("recognition_ids must be non-empty strings", details={"field": "recognition_ids"})

    result = components().verification.batch_verify(
        ids,
        data["verified"],
        current_actor_id(),
        note=data.get("note"),
        idempotency_key=idempotency_key(),
    )
    return ok(result)
