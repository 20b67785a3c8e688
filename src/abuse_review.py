"""
Kudos Integrity - Abuse Flag Review

Persistence for abuse flags plus the admin-facing review workflow:
- Storing detected flags (one per recognition and flag type)
- User reports and manual flags
- Reviewing a flag (UNDER_REVIEW -> RESOLVED / DISMISSED)
- The abuse report: statistics and prioritized suggested actions
"""

import logging
from collections import defaultdict
from collections.abc import Callable
from datetime import datetime
from typing import Any

from abuse_detector import (
    AbuseFlag,
    DetectionMethod,
    FlaggedBy,
    FlagStatus,
    FlagType,
    Severity,
    SuggestedAction,
    priority_for,
    risk_score,
    suggest_action,
)
from audit import AuditEventCode, AuditSink, hash_id, record_audit
from errors import Conflict, Forbidden, NotFound, ValidationError
from models import RECOGNITIONS, Actor, Role, parse_iso, to_iso, utc_now
from storage.base import DuplicateRecordError, PreconditionFailedError, RecordStore
from weights import round2

logger = logging.getLogger(__name__)

ABUSE_FLAGS = "abuse_flags"
MAX_SUGGESTED_ACTIONS = 50
MIN_REPORT_DESCRIPTION = 10

FINAL_STATUSES = (FlagStatus.RESOLVED, FlagStatus.DISMISSED)


class AbuseFlagRepository:
    """Abuse flags in the record store, keyed by flag id."""

    def __init__(self, store: RecordStore):
        self.store = store

    def save_flags(self, flags: list[AbuseFlag]) -> list[AbuseFlag]:
        """
        Persist flags. A flag whose id is already stored is left as it is,
        so re-running detection never resets a reviewed flag.

        Returns:
            The flags that were newly stored
        """
        stored = []
        for flag in flags:
            try:
                self.store.create(ABUSE_FLAGS, flag.id, flag.to_dict())
                stored.append(flag)
            except DuplicateRecordError:
                logger.debug(f"Abuse flag {flag.id} already recorded")
        return stored

    def get(self, flag_id: str) -> AbuseFlag | None:
        data = self.store.get(ABUSE_FLAGS, flag_id)
        return AbuseFlag.from_dict(data) if data else None

    def for_recognition(self, recognition_id: str) -> list[AbuseFlag]:
        return [
            AbuseFlag.from_dict(d)
            for d in self.store.find(ABUSE_FLAGS, {"recognition_id": recognition_id})
        ]

    def list(
        self,
        status: FlagStatus | None = None,
        since: datetime | None = None,
        flag_types: list[FlagType] | None = None,
        severities: list[Severity] | None = None,
    ) -> list[AbuseFlag]:
        where = {"status": status.value} if status else None
        flags = [AbuseFlag.from_dict(d) for d in self.store.find(ABUSE_FLAGS, where)]
        if since is not None:
            flags = [f for f in flags if parse_iso(f.flagged_at) >= since]
        if flag_types:
            flags = [f for f in flags if f.flag_type in flag_types]
        if severities:
            flags = [f for f in flags if f.severity in severities]
        return flags

    def update_if_status(self, flag_id: str, expected: FlagStatus, fields: dict[str, Any]) -> AbuseFlag:
        data = self.store.update_if(ABUSE_FLAGS, flag_id, {"status": expected.value}, fields)
        return AbuseFlag.from_dict(data)


class AbuseReviewService:
    """Admin review of abuse flags and the abuse report."""

    def __init__(
        self,
        store: RecordStore,
        audit: AuditSink,
        repository: AbuseFlagRepository | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.audit = audit
        self.flags = repository or AbuseFlagRepository(store)
        self.clock = clock

    @staticmethod
    def _require_admin(actor: Actor, action: str) -> None:
        if actor.role != Role.ADMIN:
            raise Forbidden(
                f"Only administrators can {action}",
                details={"required_role": Role.ADMIN.value},
            )

    # =========================================================================
    # Reporting and review
    # =========================================================================

    def report_flag(
        self,
        recognition_id: str,
        reporter: Actor,
        description: str,
        flag_type: str | None = None,
        severity: str | None = None,
    ) -> AbuseFlag:
        """
        Record a flag raised by a person rather than the detector.

        Users file REPORTED flags; managers and admins file MANUAL_REVIEW flags.
        """
        if not description or len(description.strip()) < MIN_REPORT_DESCRIPTION:
            raise ValidationError(
                f"Description must be at least {MIN_REPORT_DESCRIPTION} characters",
                details={"field": "description"},
            )
        try:
            ftype = FlagType((flag_type or FlagType.MANUAL.value).upper())
            sev = Severity((severity or Severity.MEDIUM.value).upper())
        except ValueError as e:
            raise ValidationError(f"Invalid flag type or severity: {e}") from e

        if self.store.get(RECOGNITIONS, recognition_id) is None:
            raise NotFound("Recognition not found", details={"recognition_id": recognition_id})

        privileged = reporter.role in (Role.MANAGER, Role.ADMIN)
        now = to_iso(self.clock())
        flag = AbuseFlag(
            recognition_id=recognition_id,
            flag_type=ftype,
            severity=sev,
            description=description.strip(),
            detection_method=DetectionMethod.MANUAL_REVIEW if privileged else DetectionMethod.REPORTED,
            flagged_by=FlaggedBy.ADMIN if privileged else FlaggedBy.USER,
            metadata={"reporter_hash": hash_id(reporter.id)},
            flagged_at=now,
        )
        self.flags.save_flags([flag])

        record_audit(
            self.audit,
            AuditEventCode.ABUSE_REPORTED,
            reporter.id,
            recognition_id,
            {"flag_id": flag.id, "flag_type": ftype.value, "severity": sev.value},
        )
        return flag

    def review_flag(
        self,
        flag_id: str,
        reviewer: Actor,
        status: str,
        notes: str | None = None,
        action_taken: str | None = None,
    ) -> AbuseFlag:
        """
        Move a flag through review. RESOLVED and DISMISSED are final.

        Raises:
            Forbidden: Reviewer is not an admin
            NotFound: Unknown flag
            ValidationError: Unknown or non-review status
            Conflict: Flag already closed, or changed concurrently
        """
        self._require_admin(reviewer, "review abuse flags")

        try:
            new_status = FlagStatus(status.upper())
        except (ValueError, AttributeError) as e:
            raise ValidationError(f"Invalid status: {status}", details={"field": "status"}) from e
        if new_status == FlagStatus.PENDING:
            raise ValidationError("A flag cannot be moved back to PENDING", details={"field": "status"})

        flag = self.flags.get(flag_id)
        if flag is None:
            raise NotFound("Abuse flag not found", details={"flag_id": flag_id})
        if flag.status in FINAL_STATUSES:
            raise Conflict(
                f"Abuse flag already {flag.status.value}",
                details={"flag_id": flag_id, "status": flag.status.value},
            )

        fields = {
            "status": new_status.value,
            "reviewed_by": reviewer.id,
            "reviewed_at": to_iso(self.clock()),
            "review_notes": notes,
            "action_taken": action_taken,
        }
        try:
            updated = self.flags.update_if_status(flag_id, flag.status, fields)
        except PreconditionFailedError as e:
            raise Conflict("Abuse flag was modified concurrently", details={"flag_id": flag_id}, cause=e) from e

        record_audit(
            self.audit,
            AuditEventCode.ABUSE_FLAG_REVIEWED,
            reviewer.id,
            flag.recognition_id,
            {"flag_id": flag_id, "from": flag.status.value, "to": new_status.value},
        )
        return updated

    # =========================================================================
    # Abuse report
    # =========================================================================

    def generate_report(
        self,
        requester: Actor,
        since: datetime | None = None,
        flag_types: list[FlagType] | None = None,
        severities: list[Severity] | None = None,
    ) -> dict[str, Any]:
        self._require_admin(requester, "view the abuse report")

        flags = self.flags.list(since=since, flag_types=flag_types, severities=severities)
        pending = [f for f in flags if f.status == FlagStatus.PENDING]

        return {
            "generated_at": to_iso(self.clock()),
            "since": to_iso(since) if since else None,
            "statistics": self._statistics(flags),
            "suggested_actions": self.suggested_actions(pending),
        }

    def _statistics(self, flags: list[AbuseFlag]) -> dict[str, Any]:
        today = self.clock().replace(hour=0, minute=0, second=0, microsecond=0)
        by_type: dict[str, int] = defaultdict(int)
        by_severity: dict[str, int] = defaultdict(int)
        for f in flags:
            by_type[f.flag_type.value] += 1
            by_severity[f.severity.value] += 1

        reductions = [
            f.original_weight - f.adjusted_weight
            for f in flags
            if f.original_weight is not None and f.adjusted_weight is not None
        ]
        total_reduced = sum(reductions)

        return {
            "total_flags": len(flags),
            "pending_review": sum(1 for f in flags if f.status == FlagStatus.PENDING),
            "resolved_today": sum(
                1
                for f in flags
                if f.status == FlagStatus.RESOLVED
                and f.reviewed_at
                and parse_iso(f.reviewed_at) >= today
            ),
            "critical_flags": sum(1 for f in flags if f.severity == Severity.CRITICAL),
            "flags_by_type": dict(by_type),
            "flags_by_severity": dict(by_severity),
            "recognitions_affected": len({f.recognition_id for f in flags}),
            "weight_adjustments_summary": {
                "total_adjustments": len(reductions),
                "average_reduction": round2(total_reduced / len(reductions)) if reductions else 0.0,
                "total_weight_reduced": round2(total_reduced),
            },
        }

    def suggested_actions(self, pending: list[AbuseFlag]) -> list[dict[str, Any]]:
        """One suggestion per recognition, highest priority and risk first."""
        groups: dict[str, list[AbuseFlag]] = defaultdict(list)
        for flag in pending:
            groups[flag.recognition_id].append(flag)

        suggestions = []
        for recognition_id, group in groups.items():
            score = risk_score(group)
            action = suggest_action(group)
            priority = priority_for(score)
            suggestions.append(
                {
                    "recognition_id": recognition_id,
                    "flag_ids": [f.id for f in group],
                    "priority": priority.value,
                    "suggested_action": action.value,
                    "reasoning": _reasoning(group, action),
                    "risk_score": score,
                    "_rank": priority.rank,
                }
            )

        suggestions.sort(key=lambda s: (-s["_rank"], -s["risk_score"], s["recognition_id"]))
        for s in suggestions:
            del s["_rank"]
        return suggestions[:MAX_SUGGESTED_ACTIONS]


def _reasoning(flags: list[AbuseFlag], action: SuggestedAction) -> str:
    types = ", ".join(sorted({f.flag_type.value for f in flags}))
    worst = max(flags, key=lambda f: f.severity.rank).severity.value
    match action:
        case SuggestedAction.ESCALATE:
            return f"High-risk case with {worst} severity flags: {types}. Requires senior admin review."
        case SuggestedAction.ADJUST_WEIGHT:
            return f"Weight manipulation detected: {types}. Consider reducing weight."
        case SuggestedAction.DISMISS:
            return f"Low-risk case with minor issues: {types}. Likely false positive."
        case SuggestedAction.APPROVE:
            return f"Moderate risk with {types} flags. Review and approve if justified."
