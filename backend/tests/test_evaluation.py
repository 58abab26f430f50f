"""
Override evaluation tests.

Verifies:
- Ladder resolution (no approval at or below the lowest rung, lowest
  sufficient tier above it, unlimited tier, unapprovable values)
- Margin, below-cost and event type rules
- Most specific threshold wins; time rules and exceptions
- Discount evaluation picks the most restrictive rule
"""

from datetime import datetime, timedelta

import pytest

from override_authority.errors import ConflictError, NotFoundError, ValidationError
from override_authority.levels import ApprovalLevel, OverrideType
from override_authority.services import evaluation_service, threshold_service
from override_authority.services.evaluation_service import check_discount_approval, check_requires_approval

from conftest import NOW


def _threshold(override_type, levels=None, **fields):
    payload = {"override_type": override_type, "name": fields.pop("name", override_type), **fields}
    if levels is not None:
        payload["approval_levels"] = levels
    return threshold_service.create_threshold(payload)


# =============================================================================
# LADDER RESOLUTION
# =============================================================================


class TestLadderResolution:

    @pytest.mark.parametrize("value", [0, 5, 14.99, 15])
    def test_at_or_below_lowest_rung_needs_no_approval(self, discount_threshold, value):
        decision = check_requires_approval("discount_percent", value, now=NOW)
        assert decision.requires_approval is False
        assert decision.required_level is None

    @pytest.mark.parametrize("value,expected", [
        (15.01, ApprovalLevel.MANAGER),
        (20, ApprovalLevel.MANAGER),
        (35, ApprovalLevel.MANAGER),
        (35.5, ApprovalLevel.ADMIN),
        (99, ApprovalLevel.ADMIN),
    ])
    def test_lowest_sufficient_tier(self, discount_threshold, value, expected):
        decision = check_requires_approval("discount_percent", value, now=NOW)
        assert decision.requires_approval is True
        assert decision.required_level is expected
        assert decision.approvable is True
        assert decision.threshold.id == discount_threshold.id

    def test_value_above_every_finite_tier_without_unlimited(self, db_session):
        _threshold("discount_amount", [
            {"approval_level": "shift_lead", "max_value": 50},
            {"approval_level": "manager", "max_value": 200},
        ])

        decision = check_requires_approval("discount_amount", 250, now=NOW)

        assert decision.requires_approval is True
        assert decision.required_level is None
        assert decision.approvable is False
        assert "No approval level" in decision.message

    def test_no_threshold_never_requires_approval(self, db_session):
        decision = check_requires_approval("discount_percent", 90, now=NOW)
        assert decision.requires_approval is False
        assert decision.threshold is None

    def test_inactive_threshold_is_ignored(self, discount_threshold):
        threshold_service.deactivate_threshold(discount_threshold.id)
        decision = check_requires_approval("discount_percent", 90, now=NOW)
        assert decision.requires_approval is False

    def test_threshold_without_ladder_uses_default_level(self, db_session):
        _threshold("refund_amount", threshold_value=100, default_approval_level="area_manager")

        assert check_requires_approval("refund_amount", 100, now=NOW).requires_approval is False
        decision = check_requires_approval("refund_amount", 100.01, now=NOW)
        assert decision.required_level is ApprovalLevel.AREA_MANAGER

    def test_single_unlimited_rung_gates_on_threshold_value(self, db_session):
        _threshold("price_override", [{"approval_level": "manager", "is_unlimited": True}], threshold_value=5)

        assert check_requires_approval("price_override", 5, now=NOW).requires_approval is False
        decision = check_requires_approval("price_override", 6, now=NOW)
        assert decision.required_level is ApprovalLevel.MANAGER


class TestOtherRuleTypes:

    def test_margin_below_threshold(self, db_session):
        _threshold("margin_below", threshold_value=10, default_approval_level="manager")

        assert check_requires_approval("margin_below", 12, now=NOW).requires_approval is False
        decision = check_requires_approval("margin_below", 4.5, now=NOW)
        assert decision.requires_approval is True
        assert decision.required_level is ApprovalLevel.MANAGER

    def test_price_below_cost_uses_highest_defined_level(self, db_session):
        _threshold(
            "price_below_cost",
            [{"approval_level": "manager", "max_value": 0}, {"approval_level": "admin", "is_unlimited": True}],
            default_approval_level="area_manager",
        )

        assert check_requires_approval("price_below_cost", 3, now=NOW).requires_approval is False
        decision = check_requires_approval("price_below_cost", -0.01, now=NOW)
        assert decision.required_level is ApprovalLevel.ADMIN

    def test_event_type_always_requires_approval(self, db_session):
        _threshold("void_transaction", default_approval_level="manager", require_reason=True)

        decision = check_requires_approval("void_transaction", None, now=NOW)

        assert decision.requires_approval is True
        assert decision.required_level is ApprovalLevel.MANAGER
        assert decision.to_dict()["require_reason"] is True

    def test_unknown_type_is_validation_error(self, db_session):
        with pytest.raises(ValidationError):
            check_requires_approval("free_lunch", 10, now=NOW)

    def test_non_numeric_value_is_validation_error(self, discount_threshold):
        with pytest.raises(ValidationError):
            check_requires_approval("discount_percent", "lots", now=NOW)

    def test_missing_value_for_ceiling_type_is_validation_error(self, discount_threshold):
        with pytest.raises(ValidationError):
            check_requires_approval("discount_percent", None, now=NOW)


# =============================================================================
# SCOPE, TIME RULES, EXCEPTIONS
# =============================================================================


class TestThresholdSelection:

    def test_category_threshold_beats_unscoped(self, discount_threshold):
        scoped = _threshold(
            "discount_percent",
            [{"approval_level": "shift_lead", "max_value": 5}, {"approval_level": "area_manager", "is_unlimited": True}],
            category_id=3,
        )

        decision = check_requires_approval("discount_percent", 10, {"category_id": 3}, now=NOW)
        assert decision.threshold.id == scoped.id
        assert decision.required_level is ApprovalLevel.AREA_MANAGER

        fallback = check_requires_approval("discount_percent", 10, {"category_id": 4}, now=NOW)
        assert fallback.threshold.id == discount_threshold.id
        assert fallback.requires_approval is False

    def test_channel_threshold_applies_only_to_its_channel(self, discount_threshold):
        online = _threshold(
            "discount_percent",
            [{"approval_level": "manager", "max_value": 5}, {"approval_level": "admin", "is_unlimited": True}],
            channel="online",
        )

        online_decision = check_requires_approval("discount_percent", 10, {"channel": "online"}, now=NOW)
        pos_decision = check_requires_approval("discount_percent", 10, {"channel": "pos"}, now=NOW)

        assert online_decision.threshold.id == online.id
        assert online_decision.required_level is ApprovalLevel.ADMIN
        assert pos_decision.requires_approval is False

    def test_duplicate_active_scope_is_conflict(self, discount_threshold):
        with pytest.raises(ConflictError):
            _threshold("discount_percent", threshold_value=20)

    def test_duplicate_allowed_after_deactivation(self, discount_threshold):
        threshold_service.deactivate_threshold(discount_threshold.id)
        replacement = _threshold("discount_percent", threshold_value=20)
        assert replacement.is_active is True

    def test_active_days_outside_window(self, db_session):
        # NOW is a Wednesday (3); weekend-only threshold
        _threshold("discount_percent", threshold_value=5, active_days=[0, 6])
        assert check_requires_approval("discount_percent", 10, now=NOW).requires_approval is False

        saturday = NOW + timedelta(days=3)
        assert check_requires_approval("discount_percent", 10, now=saturday).requires_approval is True

    def test_time_window_wrapping_midnight(self, db_session):
        _threshold("discount_percent", threshold_value=5, active_start_time="22:00", active_end_time="06:00")

        assert check_requires_approval("discount_percent", 10, now=NOW).requires_approval is False
        late = NOW.replace(hour=23)
        early = NOW.replace(hour=5, minute=59)
        assert check_requires_approval("discount_percent", 10, now=late).requires_approval is True
        assert check_requires_approval("discount_percent", 10, now=early).requires_approval is True

    def test_valid_to_in_the_past(self, db_session):
        _threshold("discount_percent", threshold_value=5, valid_to="2025-01-01T00:00Z")
        assert check_requires_approval("discount_percent", 10, now=NOW).requires_approval is False


class TestExceptions:

    def test_product_exception_lifts_requirement(self, discount_threshold):
        threshold_service.add_exception(discount_threshold.id, {"exception_type": "product", "product_id": 17})

        exempt = check_requires_approval("discount_percent", 30, {"product_id": 17}, now=NOW)
        other = check_requires_approval("discount_percent", 30, {"product_id": 18}, now=NOW)

        assert exempt.requires_approval is False
        assert exempt.exception_applied is True
        assert other.requires_approval is True

    def test_deactivated_exception_no_longer_applies(self, discount_threshold):
        exc = threshold_service.add_exception(
            discount_threshold.id, {"exception_type": "customer_tier", "customer_tier": "vip"}
        )
        threshold_service.deactivate_exception(exc.id)

        decision = check_requires_approval("discount_percent", 30, {"customer_tier": "vip"}, now=NOW)
        assert decision.requires_approval is True

    def test_expired_exception_no_longer_applies(self, discount_threshold):
        threshold_service.add_exception(
            discount_threshold.id,
            {"exception_type": "user", "user_id": 9, "valid_until": "2025-06-01T00:00Z"},
        )
        decision = check_requires_approval("discount_percent", 30, {"user_id": 9}, now=NOW)
        assert decision.requires_approval is True

    def test_exception_requires_its_match_field(self, discount_threshold):
        with pytest.raises(ValidationError):
            threshold_service.add_exception(discount_threshold.id, {"exception_type": "product"})


# =============================================================================
# LADDER VALIDATION
# =============================================================================


class TestLadderValidation:

    def test_decreasing_max_value_rejected(self, db_session):
        with pytest.raises(ValidationError):
            _threshold("discount_percent", [
                {"approval_level": "shift_lead", "max_value": 20},
                {"approval_level": "manager", "max_value": 10},
            ])

    def test_unlimited_must_be_highest_tier(self, db_session):
        with pytest.raises(ValidationError):
            _threshold("discount_percent", [
                {"approval_level": "manager", "is_unlimited": True},
                {"approval_level": "admin", "max_value": 50},
            ])

    def test_only_one_unlimited(self, db_session):
        with pytest.raises(ValidationError):
            _threshold("discount_percent", [
                {"approval_level": "area_manager", "is_unlimited": True},
                {"approval_level": "admin", "is_unlimited": True},
            ])

    def test_finite_rung_requires_max_value(self, db_session):
        with pytest.raises(ValidationError):
            _threshold("discount_percent", [{"approval_level": "manager"}])

    def test_set_level_keeps_ladder_valid(self, discount_threshold):
        with pytest.raises(ValidationError):
            threshold_service.set_approval_level(discount_threshold.id, "manager", 10)

        rung = threshold_service.set_approval_level(discount_threshold.id, "area_manager", 50)
        assert rung.max_value == 50
        levels = [r.approval_level for r in threshold_service.get_approval_levels(discount_threshold.id)]
        assert levels == ["shift_lead", "manager", "area_manager", "admin"]

    def test_delete_level(self, discount_threshold):
        threshold_service.delete_approval_level(discount_threshold.id, "admin")
        decision = check_requires_approval("discount_percent", 50, now=NOW)
        assert decision.approvable is False

        with pytest.raises(NotFoundError):
            threshold_service.delete_approval_level(discount_threshold.id, "admin")


# =============================================================================
# DISCOUNT EVALUATION
# =============================================================================


class TestDiscountApproval:

    def test_below_cost_dominates_percent_rule(self, db_session):
        # 50% off resolves to manager on the percent ladder; below cost must
        # escalate to the highest tier defined.
        _threshold("discount_percent", [
            {"approval_level": "shift_lead", "max_value": 10},
            {"approval_level": "manager", "max_value": 60},
            {"approval_level": "area_manager", "max_value": 90},
        ])

        decision = check_discount_approval(100, 50, 1, cost=60, now=NOW)

        assert decision.requires_approval is True
        assert decision.required_level is ApprovalLevel.AREA_MANAGER
        assert decision.override_type is OverrideType.PRICE_BELOW_COST
        assert decision.below_cost is True
        assert decision.discount_percent == 50.0
        assert decision.margin_percent == -20.0

    def test_below_cost_with_no_thresholds_needs_admin(self, db_session):
        decision = check_discount_approval(100, 50, 1, cost=60, now=NOW)
        assert decision.required_level is ApprovalLevel.ADMIN

    def test_seeded_thresholds(self, db_session):
        threshold_service.seed_default_thresholds()

        decision = check_discount_approval(100, 50, 1, cost=60, now=NOW)

        assert decision.required_level is ApprovalLevel.AREA_MANAGER
        triggered = {rule["override_type"] for rule in decision.to_dict()["triggered_rules"]}
        assert {"discount_percent", "margin_below", "price_below_cost"} <= triggered

    def test_amount_rule_can_be_most_restrictive(self, db_session):
        _threshold("discount_percent", [
            {"approval_level": "shift_lead", "max_value": 15},
            {"approval_level": "manager", "is_unlimited": True},
        ])
        _threshold("discount_amount", [
            {"approval_level": "shift_lead", "max_value": 50},
            {"approval_level": "area_manager", "is_unlimited": True},
        ])

        # 20% off a 100.00 item, 5 units: 100.00 off in total
        decision = check_discount_approval(100, 80, 5, now=NOW)

        assert decision.discount_amount == 100.0
        assert decision.override_type is OverrideType.DISCOUNT_AMOUNT
        assert decision.required_level is ApprovalLevel.AREA_MANAGER
        assert decision.margin_percent is None

    def test_reason_required_by_any_triggered_rule(self, db_session):
        _threshold("discount_percent", [
            {"approval_level": "shift_lead", "max_value": 15},
            {"approval_level": "area_manager", "is_unlimited": True},
        ])
        _threshold("discount_amount", [
            {"approval_level": "shift_lead", "max_value": 10},
            {"approval_level": "manager", "is_unlimited": True},
        ], require_reason=True, reason_min_length=12)

        decision = check_discount_approval(100, 70, 1, now=NOW)

        # The percent rule sets the level; the amount rule still wants a reason
        assert decision.override_type is OverrideType.DISCOUNT_PERCENT
        assert decision.required_level is ApprovalLevel.AREA_MANAGER
        assert decision.require_reason is True
        data = decision.to_dict()
        assert data["require_reason"] is True
        assert data["reason_min_length"] == 12

    def test_no_reason_when_no_triggered_rule_asks(self, discount_threshold):
        decision = check_discount_approval(100, 70, 1, now=NOW)
        assert decision.requires_approval is True
        assert decision.to_dict()["require_reason"] is False
        assert decision.to_dict()["reason_min_length"] == 0

    def test_no_discount(self, discount_threshold):
        decision = check_discount_approval(100, 100, 1, cost=40, now=NOW)
        assert decision.requires_approval is False
        assert decision.margin_percent == 60.0

    def test_zero_quantity_rejected(self, discount_threshold):
        with pytest.raises(ValidationError):
            check_discount_approval(100, 90, 0, now=NOW)


# =============================================================================
# LADDER PROJECTIONS
# =============================================================================


class TestLadderProjections:

    def test_required_level(self, discount_threshold):
        result = evaluation_service.get_required_approval_level(discount_threshold.id, 20)
        assert result["required_level"] == "manager"
        assert result["requires_approval"] is True

    @pytest.mark.parametrize("level,value,expected", [
        ("shift_lead", 10, True),
        ("shift_lead", 20, False),
        ("manager", 20, True),
        ("manager", 40, False),
        ("admin", 500, True),
    ])
    def test_can_user_approve_value(self, discount_threshold, level, value, expected):
        assert evaluation_service.can_user_approve_value(level, discount_threshold.id, value) is expected

    def test_unknown_threshold(self, db_session):
        with pytest.raises(NotFoundError):
            evaluation_service.get_required_approval_level(999, 5)

    def test_grouped_thresholds(self, db_session):
        threshold_service.seed_default_thresholds()
        grouped = threshold_service.get_override_thresholds(now=datetime(2025, 6, 4, 12, 0))
        assert {t["type"] for t in grouped["discount"]} == {"discount_percent", "discount_amount"}
        assert {t["type"] for t in grouped["voids"]} == {"void_transaction", "void_item"}
        assert len(grouped["other"]) == 3
