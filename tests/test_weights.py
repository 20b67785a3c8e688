"""
Tests for recognition weight calculation.
"""

import pytest

from models import Role
from weights import (
    base_weight,
    compute_recognition_weight,
    compute_verified_weight,
    round2,
    verification_bonus,
    weight_change,
)


class TestRound2:
    def test_rounds_half_up_on_cent_boundary(self):
        assert round2(1.005 + 1e-9) == 1.01
        assert round2(0.125) == 0.13

    def test_negative_values(self):
        assert round2(-1.0) == -1.0
        assert round2(-0.3) == -0.3


class TestVerifiedWeight:
    @pytest.mark.parametrize("role", list(Role))
    def test_rejection_is_zero_for_every_role(self, role):
        assert compute_verified_weight(2.5, False, role) == 0.0

    def test_admin_bonus(self):
        assert compute_verified_weight(1.0, True, Role.ADMIN) == 1.30

    def test_manager_bonus(self):
        assert compute_verified_weight(2.5, True, Role.MANAGER) == 3.00

    def test_user_has_no_bonus(self):
        assert compute_verified_weight(1.7, True, Role.USER) == 1.7

    def test_every_role_has_a_bonus_entry(self):
        for role in Role:
            assert verification_bonus(role) >= 0
            assert base_weight(role) >= 1.0

    def test_weight_change(self):
        assert weight_change(1.0, 1.3) == 0.3
        assert weight_change(1.5, 0.0) == -1.5


class TestRecognitionWeight:
    def test_base_weight_by_role(self):
        reason = "Thanks for the thorough code review"
        assert compute_recognition_weight(Role.USER, reason) == 1.0
        assert compute_recognition_weight(Role.MANAGER, reason) == 1.5
        assert compute_recognition_weight(Role.ADMIN, reason) == 2.0

    def test_bonuses_accumulate(self):
        reason = "She helped and delivered " + "x" * 100
        weight = compute_recognition_weight(Role.USER, reason, ["a", "b"], has_evidence=True)
        # 1.0 + 0.2 (long) + 0.1 (tags) + 0.5 (evidence) + 0.2 (two keywords)
        assert weight == 2.0

    def test_single_tag_gets_no_bonus(self):
        assert compute_recognition_weight(Role.USER, "Thanks for the thorough code review", ["a"]) == 1.0
