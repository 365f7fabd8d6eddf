"""
Domain Services - Ledger, settlement, phase allocation and budget workflows.
"""

from .recalculation_service import FinancialRecalculationService
from .capital_ledger_service import (
    CapitalLedgerService, CapitalAvailability, CapitalRemovalCheck, OP_ADD, OP_SUBTRACT,
)
from .phase_allocation_service import PhaseAllocationService, RescaleResult, PhaseRescale
from .settlement_service import PurchaseOrderSettlementService, SettlementResult
from .budget_service import ProjectBudgetService, BudgetUpdateResult
from .budget_transfer_service import BudgetTransferService
from .project_deletion_service import ProjectDeletionService, ProjectDeletionResult

__all__ = [
    'FinancialRecalculationService',
    'CapitalLedgerService',
    'CapitalAvailability',
    'CapitalRemovalCheck',
    'OP_ADD',
    'OP_SUBTRACT',
    'PhaseAllocationService',
    'RescaleResult',
    'PhaseRescale',
    'PurchaseOrderSettlementService',
    'SettlementResult',
    'ProjectBudgetService',
    'BudgetUpdateResult',
    'BudgetTransferService',
    'ProjectDeletionService',
    'ProjectDeletionResult',
]
