"""
Supplier rejection reasons and their retryability rules.

The assessment decides whether a rejected order (or bulk line) is worth
reassigning to another supplier attempt.
"""
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from ..exceptions import InvalidRejectionReasonError


@dataclass(frozen=True)
class RejectionReason:
    code: str
    label: str
    priority: str
    retryable: bool
    confidence: float
    recommendation: str
    subcategories: Tuple[str, ...] = ()


REJECTION_REASONS: Dict[str, RejectionReason] = {
    reason.code: reason
    for reason in (
        RejectionReason(
            "price_too_high", "Price Too High", "high", True, 0.7,
            "Consider price negotiation or alternative specifications",
            ("market_rates_higher", "material_costs_increased", "labor_costs_high",
             "overhead_costs", "insufficient_profit_margin", "currency_fluctuation"),
        ),
        RejectionReason(
            "unavailable", "Material Unavailable", "critical", False, 0.9,
            "Find alternative supplier or material",
            ("out_of_stock", "material_discontinued", "seasonal_unavailable",
             "supplier_shortage", "manufacturing_delay", "shipping_constraints"),
        ),
        RejectionReason(
            "timeline", "Timeline Issues", "medium", True, 0.6,
            "Adjust delivery date or split order",
            ("delivery_date_too_soon", "insufficient_production_time", "logistics_delay",
             "weather_related_delays", "current_workload_too_high", "staff_shortage"),
        ),
        RejectionReason(
            "specifications", "Specification Issues", "high", True, 0.5,
            "Review specifications or find specialized supplier",
            ("cannot_meet_quality_standards", "technical_specifications_unmet",
             "material_grade_unavailable", "custom_requirements_impossible",
             "certification_requirements", "testing_requirements"),
        ),
        RejectionReason(
            "quantity", "Quantity Issues", "medium", True, 0.8,
            "Adjust quantity or split into multiple orders",
            ("below_minimum_order_quantity", "exceeds_production_capacity",
             "batch_size_constraints", "storage_limitations", "can_only_partial_fulfill"),
        ),
        RejectionReason(
            "business_policy", "Business Policy", "low", False, 0.8,
            "Respect supplier policies or find alternative",
            ("unacceptable_payment_terms", "contract_terms_unacceptable", "insurance_requirements",
             "licensing_restrictions", "geographic_service_limits", "client_specific_restrictions"),
        ),
        RejectionReason(
            "external_factors", "External Factors", "variable", True, 0.4,
            "Monitor conditions and retry when resolved",
            ("regulatory_changes", "market_volatility", "force_majeure",
             "transportation_issues", "supply_chain_disruption", "economic_conditions"),
        ),
        RejectionReason(
            "other", "Other Reasons", "low", True, 0.3,
            "Contact supplier for clarification",
            ("custom_reason", "not_specified", "supplier_preference", "business_relationship_issues"),
        ),
    )
}


@dataclass
class RetryAssessment:
    is_retryable: bool
    recommendation: str
    confidence: float = 0.0
    reason: Optional[str] = None
    subcategory: Optional[str] = None
    priority: Optional[str] = None

    @property
    def needs_reassignment(self) -> bool:
        return self.is_retryable


def validate_rejection_reason(reason: Optional[str]) -> Optional[str]:
    """Return the normalized reason code, raising for unknown codes."""
    if reason is None or str(reason).strip() == "":
        return None
    code = str(reason).strip().lower()
    if code not in REJECTION_REASONS:
        raise InvalidRejectionReasonError(reason)
    return code


def assess_rejection(reason: Optional[str], subcategory: Optional[str] = None) -> RetryAssessment:
    """Classify a rejection into a retryability assessment."""
    code = validate_rejection_reason(reason)
    if code is None:
        return RetryAssessment(is_retryable=False, recommendation="Manual review required")

    rule = REJECTION_REASONS[code]
    return RetryAssessment(
        is_retryable=rule.retryable,
        recommendation=rule.recommendation,
        confidence=rule.confidence,
        reason=code,
        subcategory=subcategory,
        priority=rule.priority,
    )
