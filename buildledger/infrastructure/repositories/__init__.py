"""
Repository implementations for data access layer.
"""
from .base_repository import BaseRepository
from .project_repository import ProjectRepository
from .phase_repository import PhaseRepository
from .purchase_order_repository import PurchaseOrderRepository
from .finance_repository import ProjectFinanceRepository
from .material_request_repository import MaterialRequestRepository
from .budget_transfer_repository import BudgetTransferRepository

__all__ = [
    'BaseRepository',
    'ProjectRepository',
    'PhaseRepository',
    'PurchaseOrderRepository',
    'ProjectFinanceRepository',
    'MaterialRequestRepository',
    'BudgetTransferRepository',
]
