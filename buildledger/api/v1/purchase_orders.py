"""
Purchase Order API Endpoints - Sending orders and supplier responses.

Implements:
- POST /api/v1/purchase-orders/{id}/send - Issue a response token to the supplier
- POST /api/v1/purchase-orders/{id}/respond - Supplier accept / reject / modify / bulk

The respond endpoint is authorized by the single-use response token, not
by user headers.
"""
from dataclasses import asdict
from datetime import datetime
from typing import List, Optional, Union

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from buildledger.models import get_db
from buildledger.infrastructure.collaborators import AuditSink, NotificationSink
from buildledger.domain.entities.purchase_order import MaterialDecision, SupplierAction, SupplierResponse
from buildledger.domain.events import RecalculationDispatcher
from buildledger.domain.exceptions import DomainError
from buildledger.domain.services import PurchaseOrderSettlementService
from .auth import CurrentUser, require_permission
from .dependencies import get_audit_sink, get_dispatcher, get_notification_sink
from .errors import domain_error_response, error_response

router = APIRouter()


# =============================================================================
# Pydantic Models
# =============================================================================

class MaterialResponseIn(BaseModel):
    """Supplier decision for one line of a bulk order."""
    material_request_id: Union[int, str] = Field(..., description="Line identifier")
    action: str = Field(..., description="accept, reject or modify")
    unit_cost_cents: Optional[int] = Field(None, description="Unit cost override")
    quantity: Optional[float] = Field(None, description="Quantity override")
    notes: Optional[str] = Field(None, max_length=2000)
    rejection_reason: Optional[str] = None
    rejection_subcategory: Optional[str] = None


class SupplierResponseIn(BaseModel):
    """Request model for a supplier response."""
    token: str = Field(..., min_length=1, description="Response token from the order email")
    action: Optional[str] = Field(None, description="accept, reject or modify (single-line orders)")
    supplier_notes: Optional[str] = Field(None, max_length=2000)
    unit_cost_cents: Optional[int] = Field(None, description="Unit cost override")
    quantity: Optional[float] = Field(None, description="Proposed quantity (modify)")
    delivery_date: Optional[str] = Field(None, description="Proposed delivery date")
    rejection_reason: Optional[str] = None
    rejection_subcategory: Optional[str] = None
    material_responses: List[MaterialResponseIn] = Field(default_factory=list)


class SettlementResponse(BaseModel):
    success: bool
    order_id: int
    status: Optional[str] = None
    message: Optional[str] = None
    total_cost_cents: int = 0
    committed_cents: int = 0
    capital_not_set: bool = False
    available_cents: Optional[int] = None
    is_retryable: Optional[bool] = None
    retry_recommendation: Optional[str] = None
    needs_reassignment: bool = False
    accepted_count: int = 0
    rejected_count: int = 0
    modified_count: int = 0
    material_responses: List[dict] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class SendOrderRequest(BaseModel):
    ttl_hours: Optional[int] = Field(None, gt=0, le=24 * 90, description="Token lifetime in hours")


class SendOrderResponse(BaseModel):
    order_id: int
    status: str
    response_token: str
    response_token_expires_at: datetime


# =============================================================================
# Endpoints
# =============================================================================

def _to_supplier_response(data: SupplierResponseIn) -> SupplierResponse:
    return SupplierResponse(
        action=SupplierAction.parse(data.action) if data.action else None,
        token=data.token,
        supplier_notes=data.supplier_notes,
        unit_cost_cents=data.unit_cost_cents,
        quantity=data.quantity,
        delivery_date=data.delivery_date,
        rejection_reason=data.rejection_reason,
        rejection_subcategory=data.rejection_subcategory,
        material_responses=[
            MaterialDecision(
                material_request_id=line.material_request_id,
                action=SupplierAction.parse(line.action),
                unit_cost_cents=line.unit_cost_cents,
                quantity=line.quantity,
                notes=line.notes,
                rejection_reason=line.rejection_reason,
                rejection_subcategory=line.rejection_subcategory,
            )
            for line in data.material_responses
        ],
    )


@router.post(
    "/{order_id}/respond",
    response_model=SettlementResponse,
    summary="Supplier response to a purchase order",
    description="Accept, reject or modify an order, or answer a bulk order line by line."
)
def respond_to_order(
    order_id: int,
    data: SupplierResponseIn,
    db: Session = Depends(get_db),
    dispatcher: RecalculationDispatcher = Depends(get_dispatcher),
    audit_sink: AuditSink = Depends(get_audit_sink),
    notification_sink: NotificationSink = Depends(get_notification_sink),
):
    """
    Settle a supplier response.

    Token errors answer 401 (invalid) or 410 (expired or already used);
    a capital shortfall answers 400 with the shortfall amount.
    """
    try:
        response = _to_supplier_response(data)
    except DomainError as e:
        raise domain_error_response(e)

    service = PurchaseOrderSettlementService(
        db, dispatcher=dispatcher, audit_sink=audit_sink, notification_sink=notification_sink,
    )
    result = service.process_supplier_response(order_id, response)
    if not result.success:
        raise error_response(
            result.error_code,
            result.message,
            shortfall_cents=result.shortfall_cents or None,
            available_cents=result.available_cents,
        )
    return asdict(result)


@router.post(
    "/{order_id}/send",
    response_model=SendOrderResponse,
    summary="Send a purchase order to its supplier",
    description="Issue a fresh single-use response token; any earlier token stops working."
)
def send_order(
    order_id: int,
    data: Optional[SendOrderRequest] = None,
    db: Session = Depends(get_db),
    dispatcher: RecalculationDispatcher = Depends(get_dispatcher),
    audit_sink: AuditSink = Depends(get_audit_sink),
    notification_sink: NotificationSink = Depends(get_notification_sink),
    current_user: CurrentUser = Depends(require_permission("send_purchase_order")),
):
    service = PurchaseOrderSettlementService(
        db, dispatcher=dispatcher, audit_sink=audit_sink, notification_sink=notification_sink,
    )
    try:
        order = service.issue_response_token(
            order_id, ttl_hours=data.ttl_hours if data else None, actor_id=current_user.id
        )
    except DomainError as e:
        raise domain_error_response(e)

    return {
        "order_id": order.id,
        "status": order.status,
        "response_token": order.response_token,
        "response_token_expires_at": order.response_token_expires_at,
    }
