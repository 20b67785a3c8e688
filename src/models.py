"""
Kudos Integrity - Recognition Data Model

Records are persisted as plain dicts in the record store; the dataclasses here
are the typed view the engine works with.
"""

import uuid
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from errors import InvalidRequest, ValidationError

MIN_REASON_LENGTH = 20
MAX_TAGS = 3

RECOGNITIONS = "recognitions"
USERS = "users"


class RecognitionStatus(Enum):
    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    REJECTED = "REJECTED"


class Visibility(Enum):
    PRIVATE = "PRIVATE"
    TEAM = "TEAM"
    PUBLIC = "PUBLIC"


class Role(Enum):
    """Actor roles. Every role must be handled wherever roles are matched."""

    USER = "USER"
    MANAGER = "MANAGER"
    ADMIN = "ADMIN"

    @classmethod
    def parse(cls, value: str | None) -> "Role":
        """Parse a role string; anything unrecognized is an ordinary USER."""
        if not value:
            return cls.USER
        try:
            return cls(value.strip().upper())
        except ValueError:
            return cls.USER

    @property
    def can_verify(self) -> bool:
        return self in (Role.MANAGER, Role.ADMIN)


def utc_now() -> datetime:
    return datetime.now(UTC)


def to_iso(value: datetime) -> str:
    return value.astimezone(UTC).isoformat()


def parse_iso(value: str | datetime) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


@dataclass
class Actor:
    """A resolved caller: who they are and what they may do."""

    id: str
    role: Role = Role.USER
    organization_id: str | None = None
    email: str | None = None
    name: str | None = None


@dataclass
class Recognition:
    """
    A peer-given acknowledgment.

    ``weight`` is fixed at creation. ``verified_weight`` and the verifier
    fields are only ever set by the single PENDING -> VERIFIED/REJECTED
    transition.
    """

    giver_id: str
    recipient_id: str
    reason: str
    weight: float
    id: str = field(default_factory=lambda: f"rec_{uuid.uuid4().hex[:16]}")
    recipient_email: str | None = None
    tags: list[str] = field(default_factory=list)
    evidence_ids: list[str] = field(default_factory=list)
    claimed_weight: float | None = None
    weight_edits: list[float] = field(default_factory=list)
    verified_weight: float | None = None
    status: RecognitionStatus = RecognitionStatus.PENDING
    visibility: Visibility = Visibility.PRIVATE
    organization_id: str | None = None
    verifier_id: str | None = None
    verifier_role: Role | None = None
    verification_note: str | None = None
    verified_at: str | None = None
    created_at: str = field(default_factory=lambda: to_iso(utc_now()))

    @property
    def is_pending(self) -> bool:
        return self.status == RecognitionStatus.PENDING

    @property
    def has_evidence(self) -> bool:
        return bool(self.evidence_ids)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["visibility"] = self.visibility.value
        data["verifier_role"] = self.verifier_role.value if self.verifier_role else None
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Recognition":
        verifier_role = data.get("verifier_role")
        return cls(
            id=data["id"],
            giver_id=data["giver_id"],
            recipient_id=data["recipient_id"],
            recipient_email=data.get("recipient_email"),
            reason=data.get("reason", ""),
            tags=list(data.get("tags") or []),
            evidence_ids=list(data.get("evidence_ids") or []),
            weight=float(data.get("weight", 1.0)),
            claimed_weight=data.get("claimed_weight"),
            weight_edits=[float(w) for w in data.get("weight_edits") or []],
            verified_weight=data.get("verified_weight"),
            status=RecognitionStatus(data.get("status", RecognitionStatus.PENDING.value)),
            visibility=Visibility(data.get("visibility", Visibility.PRIVATE.value)),
            organization_id=data.get("organization_id"),
            verifier_id=data.get("verifier_id"),
            verifier_role=Role.parse(verifier_role) if verifier_role else None,
            verification_note=data.get("verification_note"),
            verified_at=data.get("verified_at"),
            created_at=data.get("created_at") or to_iso(utc_now()),
        )


def validate_recognition_input(
    giver: Actor,
    recipient_id: str | None,
    reason: str | None,
    tags: list[str] | None = None,
    visibility: str | None = None,
    recipient_email: str | None = None,
) -> tuple[list[str], Visibility]:
    """
    Validate the fields of a new recognition.

    Returns:
        Normalized (tags, visibility)

    Raises:
        ValidationError: On missing or malformed fields
        InvalidRequest: When the giver names themselves as recipient
    """
    if not recipient_id:
        raise ValidationError("Recipient is required", details={"field": "recipient_id"})

    if not reason or len(reason.strip()) < MIN_REASON_LENGTH:
        raise ValidationError(
            f"Reason must be at least {MIN_REASON_LENGTH} characters",
            details={"field": "reason", "min_length": MIN_REASON_LENGTH},
        )

    if tags is not None and (
        not isinstance(tags, list) or not all(isinstance(t, str) for t in tags)
    ):
        raise ValidationError("Tags must be a list of strings", details={"field": "tags"})
    tags = [t.strip() for t in (tags or []) if t and t.strip()]
    if len(tags) > MAX_TAGS:
        raise ValidationError(
            f"At most {MAX_TAGS} tags are allowed",
            details={"field": "tags", "max_items": MAX_TAGS},
        )

    try:
        vis = Visibility((visibility or Visibility.PRIVATE.value).upper())
    except ValueError as e:
        raise ValidationError(
            f"Invalid visibility: {visibility}",
            details={"field": "visibility", "allowed": [v.value for v in Visibility]},
        ) from e

    if recipient_id == giver.id or (
        recipient_email and giver.email and recipient_email.lower() == giver.email.lower()
    ):
        raise InvalidRequest("Cannot recognize yourself", details={"field": "recipient_id"})

    return tags, vis
