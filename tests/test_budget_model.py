"""
Unit Tests for the Budget Model.

Tests:
- Shape detection (legacy vs enhanced)
- Legacy conversion under the estimation policy
- Validation (negatives, top-level mismatch, sub-breakdown warnings)
- Totals and DCC extraction
"""
import pytest
from decimal import Decimal

from buildledger.domain.entities.budget import (
    EnhancedBudget,
    LegacyBudget,
    LegacyEstimationPolicy,
    BudgetTolerance,
    CATEGORY_DCC,
    CATEGORY_INDIRECT,
    is_enhanced,
    parse_budget,
    convert_legacy_to_enhanced,
    validate_budget,
    get_budget_total,
    normalize_budget,
    get_direct_construction_costs,
    to_cents,
    from_cents,
)
from buildledger.domain.exceptions import InvalidBudgetError


LEGACY = {"total": 100000, "materials": 50000, "labour": 30000, "contingency": 10000}

ENHANCED = {
    "total": 1000000,
    "directConstructionCosts": 800000,
    "preConstructionCosts": 50000,
    "indirectCosts": 50000,
    "contingencyReserve": 100000,
    "directCosts": {
        "materials": {"total": 400000, "structural": 260000, "finishing": 100000, "mep": 32000, "specialty": 8000},
        "labour": {"total": 300000},
        "equipment": {"total": 60000},
        "subcontractors": {"total": 40000},
    },
}


# =============================================================================
# Shape detection
# =============================================================================

class TestShapeDetection:

    def test_enhanced_by_direct_costs_key(self):
        assert is_enhanced({"directCosts": {}}) is True

    def test_enhanced_by_dcc_key(self):
        assert is_enhanced({"directConstructionCosts": 10}) is True

    def test_legacy_payload(self):
        assert is_enhanced(LEGACY) is False

    def test_dataclasses(self):
        assert is_enhanced(EnhancedBudget()) is True
        assert is_enhanced(LegacyBudget()) is False

    def test_parse_returns_tagged_shape(self):
        assert isinstance(parse_budget(LEGACY), LegacyBudget)
        assert isinstance(parse_budget(ENHANCED), EnhancedBudget)

    def test_empty_payload_is_empty_enhanced(self):
        budget = parse_budget(None)
        assert isinstance(budget, EnhancedBudget)
        assert get_budget_total(budget) == Decimal("0")

    def test_non_numeric_amount_rejected(self):
        with pytest.raises(InvalidBudgetError):
            parse_budget({"total": "lots", "materials": 1})


# =============================================================================
# Legacy conversion
# =============================================================================

class TestLegacyConversion:

    def test_total_is_preserved(self):
        result = convert_legacy_to_enhanced(parse_budget(LEGACY))
        assert result.converted is True
        assert result.budget.total == Decimal("100000")
        assert result.budget.components_total() == Decimal("100000")

    def test_default_policy_estimates(self):
        budget = convert_legacy_to_enhanced(parse_budget(LEGACY)).budget
        assert budget.pre_construction_costs == Decimal("5000.00")
        assert budget.indirect_costs == Decimal("5000.00")
        assert budget.contingency_reserve == Decimal("10000.00")
        # DCC is the remainder after pre-construction, indirect and contingency
        assert budget.direct_construction_costs == Decimal("80000.00")

    def test_direct_costs_fit_inside_dcc(self):
        budget = convert_legacy_to_enhanced(parse_budget(LEGACY)).budget
        assert budget.direct_costs.total() == budget.direct_construction_costs
        assert budget.direct_costs.materials.total > budget.direct_costs.labour.total

    def test_conversion_warns(self):
        result = convert_legacy_to_enhanced(parse_budget(LEGACY))
        assert any("pre-construction estimated at 5%" in w for w in result.warnings)

    def test_custom_policy(self):
        policy = LegacyEstimationPolicy(pre_construction_pct=Decimal("0.10"), indirect_pct=Decimal("0.03"))
        budget = convert_legacy_to_enhanced(parse_budget(LEGACY), policy).budget
        assert budget.pre_construction_costs == Decimal("10000.00")
        assert budget.indirect_costs == Decimal("3000.00")
        assert budget.direct_construction_costs == Decimal("77000.00")

    def test_contingency_larger_than_remainder(self):
        result = convert_legacy_to_enhanced(
            parse_budget({"total": 1000, "materials": 0, "labour": 0, "contingency": 950})
        )
        assert result.budget.direct_construction_costs == Decimal("0")
        assert any("Direct Construction Cost set to 0" in w for w in result.warnings)

    def test_missing_total_uses_components(self):
        budget = convert_legacy_to_enhanced(
            parse_budget({"materials": 600, "labour": 300, "contingency": 100})
        ).budget
        assert budget.total == Decimal("1000.00")

    def test_normalize_leaves_enhanced_untouched(self):
        result = normalize_budget(ENHANCED)
        assert result.converted is False
        assert result.warnings == []
        assert result.budget.direct_construction_costs == Decimal("800000")


# =============================================================================
# Validation
# =============================================================================

class TestValidateBudget:

    def test_valid_enhanced_budget(self):
        result = validate_budget(ENHANCED)
        assert result.is_valid is True
        assert result.errors == []

    def test_negative_amount_is_error(self):
        payload = dict(ENHANCED, indirectCosts=-5)
        result = validate_budget(payload)
        assert result.is_valid is False
        assert any("indirectCosts cannot be negative" in e for e in result.errors)

    def test_top_level_mismatch_is_error(self):
        payload = dict(ENHANCED, total=2000000)
        result = validate_budget(payload)
        assert result.is_valid is False
        assert any("do not add up" in e for e in result.errors)

    def test_mismatch_within_relative_tolerance(self):
        # 1% of 1,000,000 is 10,000
        payload = dict(ENHANCED, total=1005000)
        assert validate_budget(payload).is_valid is True

    def test_configurable_tolerance(self):
        payload = dict(ENHANCED, total=1005000)
        strict = BudgetTolerance(absolute=Decimal("0.01"), relative=Decimal("0"))
        assert validate_budget(payload, strict).is_valid is False

    def test_sub_breakdown_mismatch_is_warning(self):
        payload = dict(ENHANCED)
        payload["directCosts"] = dict(ENHANCED["directCosts"])
        payload["directCosts"]["materials"] = {"total": 400000, "structural": 1000}
        result = validate_budget(payload)
        assert result.is_valid is True
        assert any("materials items" in w for w in result.warnings)

    def test_legacy_budget_warns_about_conversion(self):
        result = validate_budget(LEGACY)
        assert result.is_valid is True
        assert any("legacy" in w for w in result.warnings)

    def test_legacy_parts_exceeding_total(self):
        result = validate_budget({"total": 100, "materials": 80, "labour": 80, "contingency": 0})
        assert result.is_valid is False


# =============================================================================
# Totals
# =============================================================================

class TestTotals:

    def test_total_when_present(self):
        assert get_budget_total(ENHANCED) == Decimal("1000000")

    def test_total_from_components(self):
        payload = {k: v for k, v in ENHANCED.items() if k != "total"}
        assert get_budget_total(payload) == Decimal("1000000")

    def test_dcc_of_legacy_budget(self):
        assert get_direct_construction_costs(LEGACY) == Decimal("80000.00")

    def test_dcc_of_missing_budget(self):
        assert get_direct_construction_costs(None) == Decimal("0")

    def test_cents_conversion(self):
        assert to_cents(Decimal("1234.565")) == 123457
        assert from_cents(123457) == Decimal("1234.57")


class TestCategoryAmounts:

    def test_with_category_amount_keeps_total(self):
        budget = parse_budget(ENHANCED)
        moved = budget.with_category_amount(CATEGORY_DCC, Decimal("790000"))
        moved = moved.with_category_amount(CATEGORY_INDIRECT, Decimal("60000"))
        assert moved.total == budget.total
        assert moved.components_total() == budget.components_total()
        assert moved.direct_costs.total() == Decimal("790000.00")

    def test_unknown_category(self):
        with pytest.raises(InvalidBudgetError):
            parse_budget(ENHANCED).category_amount("marketing")

    def test_to_dict_round_trips_shape(self):
        data = parse_budget(ENHANCED).to_dict()
        assert is_enhanced(data)
        assert data["directConstructionCosts"] == 800000.0
