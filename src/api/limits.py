"""
Limits blueprint: read-only quota and rate limit status.

Routes:
- GET /quota/<org_id>
- GET /quota/<org_id>/alerts
- GET /rate-limit/<action>
"""

from flask import Blueprint

from api.utils import components, current_actor, current_actor_id, ok
from errors import Forbidden
from models import Role

limits_bp = Blueprint("limits", __name__)


def _require_org_access(org_id: str) -> None:
    actor = current_actor()
    if actor.role != Role.ADMIN and actor.organization_id != org_id:
        raise Forbidden("Not a member of this organization", details={"organization_id": org_id})


@limits_bp.route("/quota/<org_id>", methods=["GET"])
def quota_status(org_id: str):
    """Usage of every quota resource for the organization."""
    _require_org_access(org_id)
    return ok({"organization_id": org_id, "quotas": components().quotas.get_all_statuses(org_id)})


@limits_bp.route("/quota/<org_id>/alerts", methods=["GET"])
def quota_alerts(org_id: str):
    _require_org_access(org_id)
    alerts = components().quotas.get_alerts(org_id)
    return ok({"organization_id": org_id, "count": len(alerts), "alerts": alerts})


@limits_bp.route("/rate-limit/<action>", methods=["GET"])
def rate_limit_status(action: str):
    """The caller's current usage of a rate-limited action; consumes nothing."""
    status = components().rate_limiter.get_status(current_actor_id(), action)
    return ok({"action": action, **status.to_dict()}, headers=status.to_headers())
