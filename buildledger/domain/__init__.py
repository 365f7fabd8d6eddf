"""
Domain Layer - Core business entities and services for project finance.

This module contains:
- entities/: Value objects (EnhancedBudget, LegacyBudget, BulkResponsePlan)
- services/: Domain services (CapitalLedgerService, PurchaseOrderSettlementService, ...)
- events/: Background recalculation dispatch
"""

from .entities.budget import EnhancedBudget, LegacyBudget, LegacyEstimationPolicy
from .entities.purchase_order import SupplierAction, SupplierResponse, MaterialDecision

__all__ = [
    'EnhancedBudget', 'LegacyBudget', 'LegacyEstimationPolicy',
    'SupplierAction', 'SupplierResponse', 'MaterialDecision',
]
