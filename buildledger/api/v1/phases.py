"""
Phase API Endpoints - Phase budget allocation.

Implements:
- PUT /api/v1/phases/{id}/allocation - Set a phase allocation within the project DCC
"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from buildledger.models import get_db
from buildledger.infrastructure.collaborators import AuditSink
from buildledger.domain.exceptions import DomainError
from buildledger.domain.services import PhaseAllocationService
from .auth import CurrentUser, require_permission
from .dependencies import get_audit_sink
from .errors import domain_error_response

router = APIRouter()


class AllocationRequest(BaseModel):
    allocated_budget_cents: int = Field(..., ge=0, description="New allocation in cents")


class PhaseResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    project_id: int
    name: str
    allocated_budget_cents: int
    committed_cost_cents: int
    actual_spend_cents: int
    remaining_cents: int
    updated_at: Optional[datetime] = None


@router.put(
    "/{phase_id}/allocation",
    response_model=PhaseResponse,
    summary="Allocate a phase budget",
    description="Sum of phase allocations may not exceed the project's Direct Construction Cost."
)
def allocate_phase(
    phase_id: int,
    data: AllocationRequest,
    db: Session = Depends(get_db),
    audit_sink: AuditSink = Depends(get_audit_sink),
    current_user: CurrentUser = Depends(require_permission("allocate_phase_budget")),
):
    service = PhaseAllocationService(db, audit_sink=audit_sink)
    try:
        phase = service.allocate_phase_budget(phase_id, data.allocated_budget_cents, actor_id=current_user.id)
    except DomainError as e:
        db.rollback()
        raise domain_error_response(e)
    return phase
