"""
Project API Endpoints - Ledger, budget and lifecycle operations.

Implements:
- GET /api/v1/projects/{id}/finances - Capital ledger (refreshed when stale)
- POST /api/v1/projects/{id}/finances/recalculate - Full recalculation
- POST /api/v1/projects/{id}/capital/check - Capital availability check
- PATCH /api/v1/projects/{id}/budget - Replace the budget, optionally rescaling phases
- POST /api/v1/projects/{id}/phases/rescale - Rescale phases for a DCC change
- DELETE /api/v1/projects/{id} - Delete project (blocked by spending unless forced)
- POST /api/v1/projects/{id}/archive - Archive project
"""
from dataclasses import asdict
from datetime import datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from buildledger.models import get_db
from buildledger.infrastructure.collaborators import AuditSink
from buildledger.domain.exceptions import DomainError
from buildledger.domain.services import (
    CapitalLedgerService,
    FinancialRecalculationService,
    PhaseAllocationService,
    ProjectBudgetService,
    ProjectDeletionService,
)
from .auth import CurrentUser, require_permission
from .dependencies import get_audit_sink
from .errors import domain_error_response, error_response

router = APIRouter()


# =============================================================================
# Pydantic Models
# =============================================================================

class FinanceResponse(BaseModel):
    """Capital ledger entry with the derived available amount."""
    model_config = ConfigDict(from_attributes=True)

    project_id: int
    total_invested_cents: int
    total_loans_cents: int
    total_equity_cents: int
    total_used_cents: int
    committed_cost_cents: int
    estimated_cost_cents: int
    capital_balance_cents: int
    loans_balance_cents: int
    equity_balance_cents: int
    investor_count: int
    available_cents: int
    last_recalculated_at: Optional[datetime] = None


class CapitalCheckRequest(BaseModel):
    amount_cents: int = Field(..., description="Amount about to be committed")


class CapitalCheckResponse(BaseModel):
    is_valid: bool
    required_cents: int
    available_cents: int
    capital_not_set: bool
    shortfall_cents: int
    total_invested_cents: int
    total_used_cents: int
    committed_cost_cents: int
    message: Optional[str] = None


class BudgetUpdateRequest(BaseModel):
    """Budget document in either the legacy or the enhanced shape."""
    budget: Dict = Field(..., description="camelCase budget document")
    rescale_phases: bool = Field(False, description="Rescale phase allocations when DCC changes")


class BudgetUpdateResponse(BaseModel):
    project_id: int
    budget: Dict
    converted: bool
    old_dcc_cents: int
    new_dcc_cents: int
    phases_rescaled: int
    rescale_skipped_reason: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)
    message: Optional[str] = None


class RescaleRequest(BaseModel):
    old_dcc_cents: int = Field(..., ge=0)
    new_dcc_cents: int = Field(..., ge=0)


class RescaleResponse(BaseModel):
    rescaled: int
    skipped_reason: Optional[str] = None
    phases: List[Dict] = Field(default_factory=list)
    failed_phase_ids: List[int] = Field(default_factory=list)


class DeletionResponse(BaseModel):
    project_id: int
    forced: bool
    deleted: Dict[str, int]
    warnings: List[str] = Field(default_factory=list)


class ArchiveResponse(BaseModel):
    project_id: int
    status: str
    archived_at: Optional[datetime] = None


# =============================================================================
# Ledger endpoints
# =============================================================================

def _finance_payload(finance) -> dict:
    return FinanceResponse.model_validate(finance).model_dump()


@router.get(
    "/{project_id}/finances",
    response_model=FinanceResponse,
    summary="Get the project's capital ledger",
    description="Returns the cached ledger, recomputing it first when missing or stale."
)
def get_finances(
    project_id: int,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(require_permission("view_finances")),
):
    ledger = CapitalLedgerService(db)
    try:
        finance = ledger.get_project_finances(project_id)
        payload = _finance_payload(finance)
        db.commit()
    except DomainError as e:
        db.rollback()
        raise domain_error_response(e)
    return payload


@router.post(
    "/{project_id}/finances/recalculate",
    response_model=FinanceResponse,
    summary="Recalculate project finances",
    description="Recompute the ledger and phase totals from source records."
)
def recalculate_finances(
    project_id: int,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(require_permission("recalculate_finances")),
):
    service = FinancialRecalculationService(db)
    try:
        finance = service.recalculate_project_finances(project_id)
        payload = _finance_payload(finance)
        db.commit()
    except DomainError as e:
        db.rollback()
        raise domain_error_response(e)
    return payload


@router.post(
    "/{project_id}/capital/check",
    response_model=CapitalCheckResponse,
    summary="Check capital availability",
    description="Whether invested capital covers a new commitment of the given amount."
)
def check_capital(
    project_id: int,
    data: CapitalCheckRequest,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(require_permission("view_finances")),
):
    ledger = CapitalLedgerService(db)
    try:
        result = ledger.validate_capital_availability(project_id, data.amount_cents)
        db.commit()
    except DomainError as e:
        db.rollback()
        raise domain_error_response(e)
    return asdict(result)


# =============================================================================
# Budget endpoints
# =============================================================================

@router.patch(
    "/{project_id}/budget",
    response_model=BudgetUpdateResponse,
    summary="Update the project budget",
    description="Validates and normalizes the budget; legacy budgets are converted before saving."
)
def update_budget(
    project_id: int,
    data: BudgetUpdateRequest,
    db: Session = Depends(get_db),
    audit_sink: AuditSink = Depends(get_audit_sink),
    current_user: CurrentUser = Depends(require_permission("edit_budget")),
):
    service = ProjectBudgetService(db, audit_sink=audit_sink)
    result = service.update_project_budget(
        project_id, data.budget, actor_id=current_user.id, rescale_phases=data.rescale_phases,
    )
    if not result.success:
        raise error_response(result.error_code, result.message, errors=result.errors or None)
    return asdict(result)


@router.post(
    "/{project_id}/phases/rescale",
    response_model=RescaleResponse,
    summary="Rescale phase budgets",
    description="Proportionally rescale every phase allocation from an old DCC to a new one."
)
def rescale_phases(
    project_id: int,
    data: RescaleRequest,
    db: Session = Depends(get_db),
    audit_sink: AuditSink = Depends(get_audit_sink),
    current_user: CurrentUser = Depends(require_permission("allocate_phase_budget")),
):
    service = PhaseAllocationService(db, audit_sink=audit_sink)
    try:
        service.project_repo.get_or_raise(project_id)
    except DomainError as e:
        raise domain_error_response(e)
    result = service.rescale_phase_budgets_for_project(
        project_id, data.old_dcc_cents, data.new_dcc_cents, actor_id=current_user.id,
    )
    return asdict(result)


# =============================================================================
# Lifecycle endpoints
# =============================================================================

@router.delete(
    "/{project_id}",
    response_model=DeletionResponse,
    summary="Delete a project",
    description="Deletes the project and all dependent records. Blocked by spending unless forced."
)
def delete_project(
    project_id: int,
    force: bool = Query(False, description="Delete even when the project has spending"),
    db: Session = Depends(get_db),
    audit_sink: AuditSink = Depends(get_audit_sink),
    current_user: CurrentUser = Depends(require_permission("delete_project")),
):
    service = ProjectDeletionService(db, audit_sink=audit_sink)
    try:
        result = service.delete_project(project_id, actor_id=current_user.id, force=force)
    except DomainError as e:
        raise domain_error_response(e)
    return asdict(result)


@router.post(
    "/{project_id}/archive",
    response_model=ArchiveResponse,
    status_code=status.HTTP_200_OK,
    summary="Archive a project",
    description="Archived projects keep their records and leave the periodic ledger sweep."
)
def archive_project(
    project_id: int,
    db: Session = Depends(get_db),
    audit_sink: AuditSink = Depends(get_audit_sink),
    current_user: CurrentUser = Depends(require_permission("delete_project")),
):
    service = ProjectBudgetService(db, audit_sink=audit_sink)
    try:
        project = service.archive_project(project_id, actor_id=current_user.id)
    except DomainError as e:
        raise domain_error_response(e)
    return {"project_id": project.id, "status": project.status, "archived_at": project.archived_at}
