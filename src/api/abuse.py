"""
Abuse blueprint: detection, flags, review and the admin report.

Routes:
- POST /recognitions/<id>/abuse/detect
- GET  /recognitions/<id>/abuse-flags
- POST /recognitions/<id>/abuse/report
- POST /abuse-flags/<id>/review
- GET  /admin/abuse-report
"""

from flask import Blueprint

from abuse_detector import FlagType, Severity
from api.utils import components, current_actor, json_body, ok, query_datetime, query_list, validate_json_schema
from errors import Forbidden, ValidationError
from models import Role

abuse_bp = Blueprint("abuse", __name__)


def _require_privileged():
    actor = current_actor()
    if actor.role not in (Role.MANAGER, Role.ADMIN):
        raise Forbidden("Managers or admins only", details={"role": actor.role.value})
    return actor


@abuse_bp.route("/recognitions/<recognition_id>/abuse/detect", methods=["POST"])
def detect_abuse(recognition_id: str):
    """Run abuse detection against stored history and persist any new flags."""
    actor = _require_privileged()
    flags = components().verification.detect_abuse(recognition_id, actor_id=actor.id)
    return ok(
        {
            "recognition_id": recognition_id,
            "is_abusive": bool(flags),
            "flags": [f.to_dict() for f in flags],
        }
    )


@abuse_bp.route("/recognitions/<recognition_id>/abuse-flags", methods=["GET"])
def list_flags(recognition_id: str):
    _require_privileged()
    flags = components().flags.for_recognition(recognition_id)
    return ok({"recognition_id": recognition_id, "count": len(flags), "flags": [f.to_dict() for f in flags]})


@abuse_bp.route("/recognitions/<recognition_id>/abuse/report", methods=["POST"])
def report_abuse(recognition_id: str):
    """
    Report a recognition as abusive.

    Request body:
    {
        "description": "What looks wrong",
        "flag_type": "RECIPROCITY",   // optional, default MANUAL
        "severity": "MEDIUM"          // optional, default MEDIUM
    }
    """
    data = json_body()
    validate_json_schema(
        data,
        required_fields={"description": str},
        optional_fields={"flag_type": str, "severity": str},
        max_lengths={"description": 2000},
    )
    flag = components().review.report_flag(
        recognition_id,
        current_actor(),
        data["description"],
        flag_type=data.get("flag_type"),
        severity=data.get("severity"),
    )
    return ok(flag.to_dict(), 201)


@abuse_bp.route("/abuse-flags/<flag_id>/review", methods=["POST"])
def review_flag(flag_id: str):
    """
    Move a flag through review (admins only).

    Request body:
    {
        "status": "RESOLVED",         // UNDER_REVIEW, RESOLVED or DISMISSED
        "notes": "optional",
        "action_taken": "optional"
    }
    """
    data = json_body()
    validate_json_schema(
        data,
        required_fields={"status": str},
        optional_fields={"notes": str, "action_taken": str},
        max_lengths={"notes": 2000, "action_taken": 200},
    )
    flag = components().review.review_flag(
        flag_id,
        current_actor(),
        data["status"],
        notes=data.get("notes"),
        action_taken=data.get("action_taken"),
    )
    return ok(flag.to_dict())


@abuse_bp.route("/admin/abuse-report", methods=["GET"])
def abuse_report():
    """
    Abuse statistics and prioritized suggested actions (admins only).

    Query params:
        since: ISO timestamp lower bound on flagged_at
        flag_types: comma-separated flag types
        severities: comma-separated severities
    """
    try:
        flag_types = [FlagType(v) for v in query_list("flag_types")]
        severities = [Severity(v) for v in query_list("severities")]
    except ValueError as e:
        raise ValidationError(f"Invalid filter: {e}") from e

    report = components().review.generate_report(
        current_actor(),
        since=query_datetime("since"),
        flag_types=flag_types or None,
        severities=severities or None,
    )
    return ok(report)
