"""
API v1 - REST endpoints for the finance engine.

- Purchase order endpoints (send, supplier response)
- Project endpoints (ledger, capital check, budget, rescale, delete, archive)
- Phase endpoints (allocation)
- Budget transfer endpoints (request, list, approve, reject)
"""
from fastapi import APIRouter

from .purchase_orders import router as purchase_orders_router
from .projects import router as projects_router
from .phases import router as phases_router
from .budget_transfers import router as budget_transfers_router

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(purchase_orders_router, prefix="/purchase-orders", tags=["Purchase Orders"])
api_router.include_router(projects_router, prefix="/projects", tags=["Projects"])
api_router.include_router(phases_router, prefix="/phases", tags=["Phases"])
api_router.include_router(budget_transfers_router, tags=["Budget Transfers"])
