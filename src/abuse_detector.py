"""
Kudos Integrity - Abuse Detection

Deterministic pattern analysis over a recognition and the history around it.
Given the same candidate, history and thresholds, detect() always returns the
same flags: there is no randomness, no model inference and no wall clock
(every window is measured back from the candidate's own timestamp).

Detectors:
- Reciprocity: two people recognizing each other repeatedly
- Frequency: one giver handing out too many recognitions
- Content: short reasons, near-duplicate reasons
- Evidence: high weight with nothing attached
- Weight manipulation: claimed weight or edits far from the computed weight

Usage:
    from abuse_detector import AbuseDetector, AbuseThresholds

    detector = AbuseDetector(AbuseThresholds.from_env())
    result = detector.detect(candidate, history)
    for flag in result.flags:
        print(flag.flag_type, flag.severity)

Environment Variables:
    ABUSE_<THRESHOLD_NAME>=<value>   e.g. ABUSE_MUTUAL_EXCHANGE_THRESHOLD=4
"""

import logging
import os
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field, fields
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, assert_never

from models import Recognition, parse_iso, to_iso, utc_now
from weights import round2

logger = logging.getLogger(__name__)


# =============================================================================
# Enums
# =============================================================================


class FlagType(Enum):
    RECIPROCITY = "RECIPROCITY"
    FREQUENCY = "FREQUENCY"
    CONTENT = "CONTENT"
    EVIDENCE = "EVIDENCE"
    WEIGHT_MANIPULATION = "WEIGHT_MANIPULATION"
    MANUAL = "MANUAL"

    @property
    def weight_multiplier(self) -> float:
        """Factor applied to a recognition's weight when flagged with this type."""
        match self:
            case FlagType.RECIPROCITY:
                return 0.7
            case FlagType.FREQUENCY:
                return 0.8
            case FlagType.CONTENT:
                return 0.9
            case FlagType.EVIDENCE:
                return 0.6
            case FlagType.WEIGHT_MANIPULATION:
                return 0.5
            case FlagType.MANUAL:
                return 1.0
            case _:
                assert_never(self)

    @property
    def reason_code(self) -> str:
        match self:
            case FlagType.RECIPROCITY:
                return "Excessive reciprocity pattern detected"
            case FlagType.FREQUENCY:
                return "Recognition frequency exceeds normal patterns"
            case FlagType.CONTENT:
                return "Similar or duplicate recognition content"
            case FlagType.EVIDENCE:
                return "Weight-evidence ratio suspicious"
            case FlagType.WEIGHT_MANIPULATION:
                return "Unusual weight patterns detected"
            case FlagType.MANUAL:
                return "Administrative weight adjustment"
            case _:
                assert_never(self)


class Severity(Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        match self:
            case Severity.LOW:
                return 1
            case Severity.MEDIUM:
                return 2
            case Severity.HIGH:
                return 3
            case Severity.CRITICAL:
                return 4
            case _:
                assert_never(self)

    @property
    def risk_weight(self) -> int:
        """Contribution of one flag of this severity to a risk score."""
        match self:
            case Severity.LOW:
                return 1
            case Severity.MEDIUM:
                return 3
            case Severity.HIGH:
                return 7
            case Severity.CRITICAL:
                return 15
            case _:
                assert_never(self)


class DetectionMethod(Enum):
    AUTOMATIC = "AUTOMATIC"
    REPORTED = "REPORTED"
    MANUAL_REVIEW = "MANUAL_REVIEW"


class FlaggedBy(Enum):
    SYSTEM = "SYSTEM"
    USER = "USER"
    ADMIN = "ADMIN"


class FlagStatus(Enum):
    PENDING = "PENDING"
    UNDER_REVIEW = "UNDER_REVIEW"
    RESOLVED = "RESOLVED"
    DISMISSED = "DISMISSED"


class SuggestedAction(Enum):
    ESCALATE = "ESCALATE"
    ADJUST_WEIGHT = "ADJUST_WEIGHT"
    DISMISS = "DISMISS"
    APPROVE = "APPROVE"


# =============================================================================
# Data types
# =============================================================================


@dataclass
class AbuseFlag:
    """A suspected policy violation attached to a recognition."""

    recognition_id: str
    flag_type: FlagType
    severity: Severity
    description: str
    detection_method: DetectionMethod = DetectionMethod.AUTOMATIC
    flagged_by: FlaggedBy = FlaggedBy.SYSTEM
    status: FlagStatus = FlagStatus.PENDING
    metadata: dict[str, Any] = field(default_factory=dict)
    original_weight: float | None = None
    adjusted_weight: float | None = None
    id: str = field(default_factory=lambda: f"flag_{uuid.uuid4().hex[:16]}")
    flagged_at: str = field(default_factory=lambda: to_iso(utc_now()))
    reviewed_by: str | None = None
    reviewed_at: str | None = None
    review_notes: str | None = None
    action_taken: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "recognition_id": self.recognition_id,
            "flag_type": self.flag_type.value,
            "severity": self.severity.value,
            "description": self.description,
            "detection_method": self.detection_method.value,
            "flagged_by": self.flagged_by.value,
            "status": self.status.value,
            "metadata": self.metadata,
            "original_weight": self.original_weight,
            "adjusted_weight": self.adjusted_weight,
            "flagged_at": self.flagged_at,
            "reviewed_by": self.reviewed_by,
            "reviewed_at": self.reviewed_at,
            "review_notes": self.review_notes,
            "action_taken": self.action_taken,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AbuseFlag":
        return cls(
            id=data["id"],
            recognition_id=data["recognition_id"],
            flag_type=FlagType(data["flag_type"]),
            severity=Severity(data["severity"]),
            description=data.get("description", ""),
            detection_method=DetectionMethod(data.get("detection_method", "AUTOMATIC")),
            flagged_by=FlaggedBy(data.get("flagged_by", "SYSTEM")),
            status=FlagStatus(data.get("status", "PENDING")),
            metadata=dict(data.get("metadata") or {}),
            original_weight=data.get("original_weight"),
            adjusted_weight=data.get("adjusted_weight"),
            flagged_at=data.get("flagged_at") or to_iso(utc_now()),
            reviewed_by=data.get("reviewed_by"),
            reviewed_at=data.get("reviewed_at"),
            review_notes=data.get("review_notes"),
            action_taken=data.get("action_taken"),
        )


@dataclass
class AbuseThresholds:
    """
    Policy inputs for the detectors.

    Counts are compared with ``>=`` for reciprocity and duplicates (N mutual
    exchanges is already a pattern) and ``>`` for frequency (the limit itself
    is allowed).
    """

    # Reciprocity
    reciprocity_window_days: int = 7
    mutual_exchange_threshold: int = 3
    pair_volume_threshold: int = 5
    high_multiplier: float = 2.0
    critical_multiplier: float = 3.0

    # Frequency
    daily_limit: int = 10
    daily_high_multiplier: float = 1.5
    weekly_limit: int = 50

    # Content
    min_reason_length: int = 20
    duplicate_reason_limit: int = 3
    duplicate_window_days: int = 30
    similarity_threshold: float = 0.8

    # Evidence and weight
    evidenceless_weight_threshold: float = 2.5
    evidenceless_high_weight: float = 4.0
    weight_delta_threshold: float = 0.5

    # Adjusted weight floor
    min_adjusted_weight: float = 0.1

    @classmethod
    def from_env(cls) -> "AbuseThresholds":
        """Override any threshold with ABUSE_<FIELD_NAME>."""
        overrides: dict[str, Any] = {}
        for f in fields(cls):
            raw = os.getenv(f"ABUSE_{f.name.upper()}")
            if raw is None:
                continue
            caster = int if f.type in (int, "int") else float
            try:
                overrides[f.name] = caster(raw)
            except ValueError:
                logger.warning(f"Ignoring malformed abuse threshold ABUSE_{f.name.upper()}={raw!r}")
        return cls(**overrides)


@dataclass
class DetectionResult:
    flags: list[AbuseFlag]
    risk_score: int
    severity: Severity
    original_weight: float
    adjusted_weight: float

    @property
    def is_abusive(self) -> bool:
        return bool(self.flags)

    @property
    def reason_codes(self) -> list[str]:
        return [f.flag_type.reason_code for f in self.flags]

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_abusive": self.is_abusive,
            "flags": [f.to_dict() for f in self.flags],
            "risk_score": self.risk_score,
            "severity": self.severity.value,
            "original_weight": self.original_weight,
            "adjusted_weight": self.adjusted_weight,
            "reason_codes": self.reason_codes,
        }


# =============================================================================
# Scoring helpers
# =============================================================================


def risk_score(flags: Iterable[AbuseFlag]) -> int:
    """Sum of the flags' severity weights (LOW=1, MEDIUM=3, HIGH=7, CRITICAL=15)."""
    return sum(f.severity.risk_weight for f in flags)


def priority_for(score: int) -> Severity:
    """Review priority for an aggregate risk score."""
    if score >= 20:
        return Severity.CRITICAL
    if score >= 10:
        return Severity.HIGH
    if score >= 5:
        return Severity.MEDIUM
    return Severity.LOW


def suggest_action(flags: list[AbuseFlag]) -> SuggestedAction:
    """
    Review suggestion for one recognition's flags. First match wins:

    1. any HIGH or CRITICAL flag -> ESCALATE
    2. any WEIGHT_MANIPULATION flag -> ADJUST_WEIGHT
    3. a CONTENT flag where everything is LOW (risk <= 3) -> DISMISS
    4. otherwise -> APPROVE
    """
    if any(f.severity.rank >= Severity.HIGH.rank for f in flags):
        return SuggestedAction.ESCALATE
    if any(f.flag_type == FlagType.WEIGHT_MANIPULATION for f in flags):
        return SuggestedAction.ADJUST_WEIGHT
    if (
        any(f.flag_type == FlagType.CONTENT for f in flags)
        and all(f.severity == Severity.LOW for f in flags)
        and risk_score(flags) <= 3
    ):
        return SuggestedAction.DISMISS
    return SuggestedAction.APPROVE


def calculate_adjusted_weight(weight: float, flags: Iterable[AbuseFlag], floor: float = 0.1) -> float:
    """Reduce a weight once per distinct flag type, never below ``floor``."""
    adjusted = weight
    for flag_type in {f.flag_type for f in flags}:
        adjusted *= flag_type.weight_multiplier
    return round2(max(floor, adjusted))


def levenshtein(a: str, b: str) -> int:
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            current.append(
                min(
                    previous[j] + 1,
                    current[j - 1] + 1,
                    previous[j - 1] + (ca != cb),
                )
            )
        previous = current
    return previous[-1]


def similarity(a: str, b: str) -> float:
    """1.0 for identical strings, scaled by edit distance over the longer length."""
    longer = max(len(a), len(b))
    if longer == 0:
        return 1.0
    return (longer - levenshtein(a, b)) / longer


# =============================================================================
# Detector
# =============================================================================


class AbuseDetector:
    """
    Runs every detector against a candidate recognition.

    ``history`` may include the candidate itself; it is de-duplicated by id.
    Only recognitions created at or before the candidate are considered.
    """

    def __init__(self, thresholds: AbuseThresholds | None = None):
        self.thresholds = thresholds or AbuseThresholds()

    def _escalate(self, count: float, threshold: float, base: Severity) -> Severity:
        t = self.thresholds
        if count >= threshold * t.critical_multiplier:
            return Severity.CRITICAL
        if count >= threshold * t.high_multiplier:
            return Severity.HIGH if base.rank < Severity.HIGH.rank else base
        return base

    def detect(self, candidate: Recognition, history: Iterable[Recognition]) -> DetectionResult:
        at = parse_iso(candidate.created_at)
        prior = [
            r for r in history
            if r.id != candidate.id and parse_iso(r.created_at) <= at
        ]
        context = prior + [candidate]

        flags: list[AbuseFlag] = []
        for check in (
            self.check_reciprocity,
            self.check_frequency,
            self.check_content,
            self.check_evidence,
            self.check_weight_manipulation,
        ):
            flag = check(candidate, context, at)
            if flag is not None:
                flags.append(flag)

        adjusted = (
            calculate_adjusted_weight(candidate.weight, flags, self.thresholds.min_adjusted_weight)
            if flags
            else candidate.weight
        )
        for flag in flags:
            flag.original_weight = candidate.weight
            flag.adjusted_weight = adjusted

        score = risk_score(flags)
        if flags:
            logger.info(
                f"Recognition {candidate.id}: {len(flags)} abuse flag(s), risk score {score}"
            )

        return DetectionResult(
            flags=flags,
            risk_score=score,
            severity=priority_for(score),
            original_weight=candidate.weight,
            adjusted_weight=adjusted,
        )

    def check_reciprocity(
        self, candidate: Recognition, context: list[Recognition], at: datetime
    ) -> AbuseFlag | None:
        t = self.thresholds
        since = at - timedelta(days=t.reciprocity_window_days)
        recent = [r for r in context if parse_iso(r.created_at) > since]

        giver, recipient = candidate.giver_id, candidate.recipient_id
        direct = sum(1 for r in recent if r.giver_id == giver and r.recipient_id == recipient)
        reverse = sum(1 for r in recent if r.giver_id == recipient and r.recipient_id == giver)
        mutual = min(direct, reverse)

        metadata = {
            "direct_count": direct,
            "reverse_count": reverse,
            "mutual_exchanges": mutual,
            "window_days": t.reciprocity_window_days,
        }

        mutual_severity = (
            self._escalate(mutual, t.mutual_exchange_threshold, Severity.MEDIUM)
            if mutual >= t.mutual_exchange_threshold
            else None
        )
        volume_severity = (
            self._escalate(direct, t.pair_volume_threshold, Severity.MEDIUM)
            if direct >= t.pair_volume_threshold
            else None
        )
        if mutual_severity is None and volume_severity is None:
            return None

        # One RECIPROCITY flag per recognition; the more severe pattern names it.
        if volume_severity is None or (
            mutual_severity is not None and mutual_severity.rank >= volume_severity.rank
        ):
            return self._flag(
                candidate,
                FlagType.RECIPROCITY,
                mutual_severity,
                f"Mutual recognition exchange: {mutual} exchanges in {t.reciprocity_window_days} days",
                metadata,
            )
        return self._flag(
            candidate,
            FlagType.RECIPROCITY,
            volume_severity,
            f"Excessive recognitions to the same person: {direct} in {t.reciprocity_window_days} days",
            metadata,
        )

    def check_frequency(
        self, candidate: Recognition, context: list[Recognition], at: datetime
    ) -> AbuseFlag | None:
        t = self.thresholds
        given = [parse_iso(r.created_at) for r in context if r.giver_id == candidate.giver_id]
        daily = sum(1 for ts in given if ts > at - timedelta(days=1))
        weekly = sum(1 for ts in given if ts > at - timedelta(days=7))
        metadata = {"daily_count": daily, "weekly_count": weekly}

        if weekly > t.weekly_limit:
            return self._flag(
                candidate,
                FlagType.FREQUENCY,
                Severity.CRITICAL,
                f"Weekly recognition limit exceeded: {weekly}/{t.weekly_limit}",
                metadata,
            )

        if daily > t.daily_limit:
            severity = Severity.HIGH if daily > t.daily_limit * t.daily_high_multiplier else Severity.MEDIUM
            return self._flag(
                candidate,
                FlagType.FREQUENCY,
                severity,
                f"Daily recognition limit exceeded: {daily}/{t.daily_limit}",
                metadata,
            )

        return None

    def check_content(
        self, candidate: Recognition, context: list[Recognition], at: datetime
    ) -> AbuseFlag | None:
        t = self.thresholds
        since = at - timedelta(days=t.duplicate_window_days)
        reason = candidate.reason.strip().lower()

        similar = sum(
            1
            for r in context
            if r.id != candidate.id
            and r.giver_id == candidate.giver_id
            and parse_iso(r.created_at) > since
            and similarity(reason, r.reason.strip().lower()) > t.similarity_threshold
        )

        if similar >= t.duplicate_reason_limit:
            return self._flag(
                candidate,
                FlagType.CONTENT,
                Severity.MEDIUM,
                f"Duplicate/similar content: {similar} similar reasons in {t.duplicate_window_days} days",
                {"similar_count": similar},
            )

        if len(reason) < t.min_reason_length:
            return self._flag(
                candidate,
                FlagType.CONTENT,
                Severity.LOW,
                f"Reason too short: {len(reason)} characters",
                {"reason_length": len(reason)},
            )

        return None

    def check_evidence(
        self, candidate: Recognition, context: list[Recognition], at: datetime
    ) -> AbuseFlag | None:
        t = self.thresholds
        if candidate.has_evidence or candidate.weight <= t.evidenceless_weight_threshold:
            return None

        severity = Severity.HIGH if candidate.weight > t.evidenceless_high_weight else Severity.MEDIUM
        return self._flag(
            candidate,
            FlagType.EVIDENCE,
            severity,
            f"High weight ({candidate.weight}) without supporting evidence",
            {"weight": candidate.weight, "evidence_count": 0},
        )

    def check_weight_manipulation(
        self, candidate: Recognition, context: list[Recognition], at: datetime
    ) -> AbuseFlag | None:
        t = self.thresholds
        deltas: list[float] = []

        if candidate.claimed_weight is not None:
            deltas.append(abs(float(candidate.claimed_weight) - candidate.weight))

        edits = candidate.weight_edits
        deltas.extend(abs(b - a) for a, b in zip(edits, edits[1:]))

        worst = round2(max(deltas, default=0.0))
        if worst <= t.weight_delta_threshold:
            return None

        return self._flag(
            candidate,
            FlagType.WEIGHT_MANIPULATION,
            Severity.HIGH,
            f"Weight delta {worst} exceeds allowed {t.weight_delta_threshold}",
            {
                "max_delta": worst,
                "claimed_weight": candidate.claimed_weight,
                "computed_weight": candidate.weight,
                "edit_count": len(edits),
            },
        )

    def _flag(
        self,
        candidate: Recognition,
        flag_type: FlagType,
        severity: Severity,
        description: str,
        metadata: dict[str, Any],
    ) -> AbuseFlag:
        return AbuseFlag(
            recognition_id=candidate.id,
            flag_type=flag_type,
            severity=severity,
            description=description,
            metadata=metadata,
            flagged_at=candidate.created_at,
            # One flag per (recognition, type)
            id=f"flag_{candidate.id}_{flag_type.value.lower()}",
        )
