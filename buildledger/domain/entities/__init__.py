"""
Domain Entities - Budget hierarchy and purchase-order response values.
"""

from .budget import (
    Budget, LegacyBudget, EnhancedBudget, DirectCosts, CategoryBreakdown,
    LegacyEstimationPolicy, BudgetTolerance, BudgetValidationResult, NormalizedBudget,
    is_enhanced, parse_budget, convert_legacy_to_enhanced, validate_budget,
    get_budget_total, normalize_budget, get_direct_construction_costs,
    to_cents, from_cents,
)
from .purchase_order import (
    SupplierAction, SupplierResponse, MaterialDecision, BulkResponsePlan,
    build_bulk_response_plan, check_response_token, line_total_cents,
)
from .rejection_reason import REJECTION_REASONS, RetryAssessment, assess_rejection

__all__ = [
    'Budget', 'LegacyBudget', 'EnhancedBudget', 'DirectCosts', 'CategoryBreakdown',
    'LegacyEstimationPolicy', 'BudgetTolerance', 'BudgetValidationResult', 'NormalizedBudget',
    'is_enhanced', 'parse_budget', 'convert_legacy_to_enhanced', 'validate_budget',
    'get_budget_total', 'normalize_budget', 'get_direct_construction_costs',
    'to_cents', 'from_cents',
    'SupplierAction', 'SupplierResponse', 'MaterialDecision', 'BulkResponsePlan',
    'build_bulk_response_plan', 'check_response_token', 'line_total_cents',
    'REJECTION_REASONS', 'RetryAssessment', 'assess_rejection',
]
