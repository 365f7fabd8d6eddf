"""
Budget Transfer API Endpoints - Category-to-category budget transfers.

Implements:
- POST /api/v1/projects/{id}/budget-transfers - Request a transfer
- GET /api/v1/projects/{id}/budget-transfers - List transfers
- POST /api/v1/budget-transfers/{id}/approve - Approve and apply
- POST /api/v1/budget-transfers/{id}/reject - Reject
"""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from buildledger.models import get_db
from buildledger.infrastructure.collaborators import AuditSink
from buildledger.domain.exceptions import DomainError
from buildledger.domain.services import BudgetTransferService
from .auth import CurrentUser, require_permission
from .dependencies import get_audit_sink
from .errors import domain_error_response

router = APIRouter()


# =============================================================================
# Pydantic Models
# =============================================================================

class TransferCreate(BaseModel):
    from_category: str = Field(..., description="dcc, preconstruction, indirect or contingency")
    to_category: str = Field(..., description="dcc, preconstruction or indirect")
    amount_cents: int = Field(..., description="Amount to move")
    reason: Optional[str] = Field(None, max_length=2000)


class TransferDecision(BaseModel):
    notes: Optional[str] = Field(None, max_length=2000)


class TransferResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    project_id: int
    from_category: str
    to_category: str
    amount_cents: int
    reason: Optional[str] = None
    status: str
    requested_by: str
    approved_by: Optional[str] = None
    approval_notes: Optional[str] = None
    decided_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


# =============================================================================
# Endpoints
# =============================================================================

@router.post(
    "/projects/{project_id}/budget-transfers",
    response_model=TransferResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Request a budget transfer",
)
def request_transfer(
    project_id: int,
    data: TransferCreate,
    db: Session = Depends(get_db),
    audit_sink: AuditSink = Depends(get_audit_sink),
    current_user: CurrentUser = Depends(require_permission("request_budget_transfer")),
):
    service = BudgetTransferService(db, audit_sink=audit_sink)
    try:
        return service.request_transfer(
            project_id,
            data.from_category,
            data.to_category,
            data.amount_cents,
            requested_by=current_user.id,
            reason=data.reason,
        )
    except DomainError as e:
        db.rollback()
        raise domain_error_response(e)


@router.get(
    "/projects/{project_id}/budget-transfers",
    response_model=List[TransferResponse],
    summary="List budget transfers",
)
def list_transfers(
    project_id: int,
    transfer_status: Optional[str] = Query(None, alias="status"),
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(require_permission("view_finances")),
):
    service = BudgetTransferService(db)
    try:
        return service.list_transfers(project_id, transfer_status)
    except DomainError as e:
        raise domain_error_response(e)


@router.post(
    "/budget-transfers/{transfer_id}/approve",
    response_model=TransferResponse,
    summary="Approve a budget transfer",
    description="Re-checks the transfer rules, then moves the amount between categories."
)
def approve_transfer(
    transfer_id: int,
    data: Optional[TransferDecision] = None,
    db: Session = Depends(get_db),
    audit_sink: AuditSink = Depends(get_audit_sink),
    current_user: CurrentUser = Depends(require_permission("approve_budget_transfer")),
):
    service = BudgetTransferService(db, audit_sink=audit_sink)
    try:
        return service.approve_transfer(transfer_id, current_user.id, notes=data.notes if data else None)
    except DomainError as e:
        db.rollback()
        raise domain_error_response(e)


@router.post(
    "/budget-transfers/{transfer_id}/reject",
    response_model=TransferResponse,
    summary="Reject a budget transfer",
)
def reject_transfer(
    transfer_id: int,
    data: Optional[TransferDecision] = None,
    db: Session = Depends(get_db),
    audit_sink: AuditSink = Depends(get_audit_sink),
    current_user: CurrentUser = Depends(require_permission("approve_budget_transfer")),
):
    service = BudgetTransferService(db, audit_sink=audit_sink)
    try:
        return service.reject_transfer(transfer_id, current_user.id, notes=data.notes if data else None)
    except DomainError as e:
        db.rollback()
        raise domain_error_response(e)
