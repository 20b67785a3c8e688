"""
Kudos Integrity - Weight Calculator

Pure functions computing a recognition's trust weight at creation and after
verification. No I/O, no clock.
"""

import math
from typing import assert_never

from models import Role

QUALITY_KEYWORDS = ("impact", "helped", "improved", "collaborated", "delivered", "solved")

LONG_REASON_LENGTH = 100
LONG_REASON_BONUS = 0.2
MULTI_TAG_BONUS = 0.1
EVIDENCE_BONUS = 0.5
KEYWORD_BONUS = 0.1


def round2(value: float) -> float:
    """Round half up on the cent boundary, i.e. floor(x * 100 + 0.5) / 100."""
    return math.floor(value * 100 + 0.5) / 100


def verification_bonus(role: Role) -> float:
    """Fractional bonus a verifier's role adds to an approved recognition."""
    match role:
        case Role.ADMIN:
            return 0.3
        case Role.MANAGER:
            return 0.2
        case Role.USER:
            return 0.0
        case _:
            assert_never(role)


def base_weight(role: Role) -> float:
    """Starting weight of a recognition given by an actor with this role."""
    match role:
        case Role.ADMIN:
            return 2.0
        case Role.MANAGER:
            return 1.5
        case Role.USER:
            return 1.0
        case _:
            assert_never(role)


def compute_verified_weight(original_weight: float, verified: bool, verifier_role: Role) -> float:
    """
    Weight of a recognition after review.

    A rejected recognition carries no weight regardless of who rejected it.
    An approved one is boosted by the verifier's role bonus.
    """
    if not verified:
        return 0.0
    return round2(original_weight * (1 + verification_bonus(verifier_role)))


def weight_change(original_weight: float, verified_weight: float) -> float:
    return round2(verified_weight - original_weight)


def compute_recognition_weight(
    giver_role: Role,
    reason: str,
    tags: list[str] | None = None,
    has_evidence: bool = False,
) -> float:
    """
    Initial weight of a new recognition.

    Starts from the giver's role and adds bonuses for a detailed reason,
    multiple tags, attached evidence and each quality keyword in the reason.
    """
    weight = base_weight(giver_role)

    if len(reason) >= LONG_REASON_LENGTH:
        weight += LONG_REASON_BONUS

    if tags and len(tags) >= 2:
        weight += MULTI_TAG_BONUS

    if has_evidence:
        weight += EVIDENCE_BONUS

    lowered = reason.lower()
    weight += KEYWORD_BONUS * sum(1 for kw in QUALITY_KEYWORDS if kw in lowered)

    return round2(weight)
