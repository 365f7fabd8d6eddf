"""
Purchase Order Settlement Service - Supplier response state machine.

    order_sent / order_modified --accept--> order_accepted   (commits cost)
                                --reject--> order_rejected
                                --modify--> order_modified   (awaits buyer)
                                --bulk----> accepted | rejected | partially_responded

Each response is settled in three steps:
1. plan: check the token, validate the input and work out every column to
   write (no storage writes)
2. apply: one transaction that consumes the token in a conditional UPDATE,
   commits cost through a capital-guarded increment, bumps phase committed
   cost and flags rejected material requests
3. after commit: dispatch recalculation, audit and notify (fire-and-forget)

Expected business failures come back as a SettlementResult with an
error_code; only unexpected storage errors propagate.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from buildledger.config import get_config
from buildledger.models import (
    PurchaseOrder, OrderStatus, FinancialStatus, RESPONDABLE_STATUSES, utcnow,
)
from buildledger.infrastructure.collaborators import (
    AuditSink, NotificationSink, DatabaseAuditSink, DatabaseNotificationSink,
)
from buildledger.infrastructure.repositories import (
    PurchaseOrderRepository,
    PhaseRepository,
    MaterialRequestRepository,
)
from buildledger.domain.entities.purchase_order import (
    SupplierAction,
    SupplierResponse,
    build_bulk_response_plan,
    check_response_token,
    generate_response_token,
    line_total_cents,
    resolve_quantity,
    resolve_unit_cost,
)
from buildledger.domain.entities.rejection_reason import assess_rejection
from buildledger.domain.exceptions import (
    DomainError,
    CapitalShortfallError,
    ConcurrencyError,
    BulkResponseRequiredError,
    PartialResponseNotSupportedError,
    InvalidSupplierActionError,
    InvalidUnitCostError,
    OrderNotRespondableError,
    RejectionNoteRequiredError,
    ValidationError,
)
from .capital_ledger_service import CapitalLedgerService

logger = logging.getLogger(__name__)


@dataclass
class SettlementResult:
    """Structured outcome of a supplier response (amounts in cents)."""
    success: bool
    order_id: int
    status: Optional[str] = None
    error_code: Optional[str] = None
    message: Optional[str] = None
    total_cost_cents: int = 0
    committed_cents: int = 0
    capital_not_set: bool = False
    available_cents: Optional[int] = None
    shortfall_cents: int = 0
    is_retryable: Optional[bool] = None
    retry_recommendation: Optional[str] = None
    needs_reassignment: bool = False
    accepted_count: int = 0
    rejected_count: int = 0
    modified_count: int = 0
    material_responses: List[dict] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @classmethod
    def failure(cls, order_id: int, error: DomainError) -> "SettlementResult":
        result = cls(success=False, order_id=order_id, error_code=error.code, message=error.message)
        if isinstance(error, CapitalShortfallError):
            result.available_cents = error.available
            result.shortfall_cents = error.shortfall
        return result


@dataclass
class _Transition:
    """Everything one supplier response will write."""
    values: dict
    result: SettlementResult
    audit_action: str
    notification_title: str
    notification_message: str
    committed_cents: int = 0
    phase_commitments: Dict[Optional[int], int] = field(default_factory=dict)
    reassign_request_ids: List[object] = field(default_factory=list)
    reassignment_reason: Optional[str] = None


class PurchaseOrderSettlementService:
    """
    Service settling supplier responses to purchase orders.

    Ensures:
    - A response token transitions its order at most once
    - Committed cost never exceeds available capital once capital is set
    - Bulk responses are validated in full before anything is written
    """

    def __init__(
        self,
        session: Session,
        ledger: Optional[CapitalLedgerService] = None,
        dispatcher=None,
        audit_sink: Optional[AuditSink] = None,
        notification_sink: Optional[NotificationSink] = None,
        clock: Callable[[], datetime] = utcnow,
        line_tolerance_cents: Optional[int] = None,
    ):
        self.session = session
        self.order_repo = PurchaseOrderRepository(session)
        self.phase_repo = PhaseRepository(session)
        self.request_repo = MaterialRequestRepository(session)
        self.ledger = ledger or CapitalLedgerService(session)
        if dispatcher is None:
            from buildledger.domain.events.dispatcher import get_recalculation_dispatcher
            dispatcher = get_recalculation_dispatcher()
        self.dispatcher = dispatcher
        self.audit = audit_sink or DatabaseAuditSink()
        self.notifications = notification_sink or DatabaseNotificationSink()
        self.clock = clock
        if line_tolerance_cents is None:
            line_tolerance_cents = get_config().line_total_tolerance_cents
        self.line_tolerance_cents = line_tolerance_cents

    # =========================================================================
    # Token issuance
    # =========================================================================

    def issue_response_token(
        self,
        order_id: int,
        ttl_hours: Optional[int] = None,
        actor_id: Optional[str] = None,
    ) -> PurchaseOrder:
        """
        (Re)send an order to its supplier with a fresh single-use token.

        Raises:
            PurchaseOrderNotFoundError: If the order doesn't exist
            OrderNotRespondableError: If the order is already settled
        """
        order = self.order_repo.get_or_raise(order_id)
        if order.status not in RESPONDABLE_STATUSES:
            raise OrderNotRespondableError(order.id, order.status)

        ttl = ttl_hours if ttl_hours is not None else get_config().response_token_ttl_hours
        now = self.clock()
        self.order_repo.issue_token(
            order, generate_response_token(), now + timedelta(hours=ttl), OrderStatus.ORDER_SENT.value
        )
        self.session.commit()

        logger.info(f"Response token issued for PO {order.purchase_order_number} (expires in {ttl}h)")
        self.audit.record(
            actor_id, "PO_SENT", "purchase_order", order.id,
            {"responseTokenExpiresAt": order.response_token_expires_at.isoformat()},
            project_id=order.project_id,
        )
        return order

    # =========================================================================
    # Supplier responses
    # =========================================================================

    def process_supplier_response(self, order_id: int, response: SupplierResponse) -> SettlementResult:
        """
        Settle a supplier response presented with the order's token.

        Args:
            order_id: Purchase order identifier
            response: Supplier decision and token

        Returns:
            SettlementResult; success=False with error_code for business failures
        """
        now = self.clock()
        try:
            order = self.order_repo.get_or_raise(order_id)
            check_response_token(order, response.token, now)
            transition = self._plan(order, response, now)

            if transition.committed_cents > 0:
                availability = self.ledger.validate_capital_availability(
                    order.project_id, transition.committed_cents
                )
                if not availability.is_valid:
                    raise CapitalShortfallError(transition.committed_cents, availability.available_cents)
                transition.result.available_cents = availability.available_cents
                if availability.capital_not_set:
                    transition.result.capital_not_set = True
                    transition.result.warnings.append(availability.message)

            self._apply(order, response.token, now, transition)
        except DomainError as e:
            self.session.rollback()
            logger.warning(f"Supplier response to PO {order_id} refused: {e.code} {e.message}")
            return SettlementResult.failure(order_id, e)

        logger.info(
            f"PO {order.purchase_order_number} settled as {transition.result.status} "
            f"(committed {transition.committed_cents} cents)"
        )
        self._after_commit(order, transition)
        return transition.result

    def _plan(self, order: PurchaseOrder, response: SupplierResponse, now: datetime) -> _Transition:
        if response.material_responses:
            if not order.is_bulk_order:
                raise PartialResponseNotSupportedError(order.id)
            return self._plan_bulk(order, response, now)
        if order.is_bulk_order:
            raise BulkResponseRequiredError(order.id)
        if response.action == SupplierAction.ACCEPT:
            return self._plan_accept(order, response, now)
        if response.action == SupplierAction.REJECT:
            return self._plan_reject(order, response, now)
        if response.action == SupplierAction.MODIFY:
            return self._plan_modify(order, response, now)
        raise InvalidSupplierActionError(response.action)

    def _plan_accept(self, order: PurchaseOrder, response: SupplierResponse, now: datetime) -> _Transition:
        unit_cost = resolve_unit_cost(response.unit_cost_cents, order.unit_cost_cents)
        quantity = resolve_quantity(None, order.quantity_ordered)
        total = line_total_cents(unit_cost, quantity)

        status = OrderStatus.ORDER_ACCEPTED.value
        values = {
            "status": status,
            "financial_status": FinancialStatus.COMMITTED.value,
            "supplier_response": SupplierAction.ACCEPT.value,
            "supplier_response_at": now,
            "supplier_notes": response.supplier_notes,
            "unit_cost_cents": unit_cost,
            "quantity_ordered": quantity,
            "total_cost_cents": total,
            "committed_cost_cents": total,
            "committed_at": now,
            "delivery_date": response.delivery_date or order.delivery_date,
        }
        return _Transition(
            values=values,
            result=SettlementResult(
                success=True, order_id=order.id, status=status,
                total_cost_cents=total, committed_cents=total,
                message="Purchase order accepted",
            ),
            committed_cents=total,
            phase_commitments={order.phase_id: total} if order.phase_id else {},
            audit_action="PO_ACCEPTED",
            notification_title="Purchase order accepted",
            notification_message=(
                f"{order.supplier_name or 'Supplier'} accepted PO {order.purchase_order_number} "
                f"for {total:,} cents"
            ),
        )

    def _plan_reject(self, order: PurchaseOrder, response: SupplierResponse, now: datetime) -> _Transition:
        notes = (response.supplier_notes or "").strip()
        if not notes:
            raise RejectionNoteRequiredError()
        assessment = assess_rejection(response.rejection_reason, response.rejection_subcategory)

        status = OrderStatus.ORDER_REJECTED.value
        values = {
            "status": status,
            "supplier_response": SupplierAction.REJECT.value,
            "supplier_response_at": now,
            "supplier_notes": notes,
            "rejection_reason": assessment.reason,
            "rejection_subcategory": assessment.subcategory,
            "is_retryable": assessment.is_retryable,
            "retry_recommendation": assessment.recommendation,
            "retry_confidence": assessment.confidence,
            "needs_reassignment": assessment.needs_reassignment,
        }
        reassign = [order.material_request_id] if assessment.needs_reassignment and order.material_request_id else []
        return _Transition(
            values=values,
            result=SettlementResult(
                success=True, order_id=order.id, status=status,
                is_retryable=assessment.is_retryable,
                retry_recommendation=assessment.recommendation,
                needs_reassignment=assessment.needs_reassignment,
                message="Purchase order rejected",
            ),
            reassign_request_ids=reassign,
            reassignment_reason=f"Supplier rejected PO {order.purchase_order_number}",
            audit_action="PO_REJECTED",
            notification_title="Purchase order rejected",
            notification_message=(
                f"{order.supplier_name or 'Supplier'} rejected PO {order.purchase_order_number}: {notes}"
            ),
        )

    def _plan_modify(self, order: PurchaseOrder, response: SupplierResponse, now: datetime) -> _Transition:
        if response.unit_cost_cents is None and response.quantity is None and not response.delivery_date:
            raise ValidationError("modifications", "Propose a new quantity, unit cost or delivery date")

        quantity = resolve_quantity(response.quantity, order.quantity_ordered)
        if response.unit_cost_cents is not None and int(response.unit_cost_cents) <= 0:
            raise InvalidUnitCostError(response.unit_cost_cents)
        unit_cost = response.unit_cost_cents if response.unit_cost_cents is not None else order.unit_cost_cents
        total = line_total_cents(unit_cost, quantity) if unit_cost else 0

        modifications = {
            "quantity": quantity,
            "unitCost": unit_cost,
            "totalCost": total,
            "deliveryDate": response.delivery_date or order.delivery_date,
            "notes": response.supplier_notes,
            "previous": {
                "quantity": order.quantity_ordered,
                "unitCost": order.unit_cost_cents,
                "totalCost": order.total_cost_cents,
                "deliveryDate": order.delivery_date,
            },
            "approved": False,
        }
        status = OrderStatus.ORDER_MODIFIED.value
        return _Transition(
            values={
                "status": status,
                "supplier_response": SupplierAction.MODIFY.value,
                "supplier_response_at": now,
                "supplier_notes": response.supplier_notes,
                "supplier_modifications": modifications,
            },
            result=SettlementResult(
                success=True, order_id=order.id, status=status, total_cost_cents=total,
                message="Modification submitted for buyer approval",
            ),
            audit_action="PO_MODIFIED",
            notification_title="Purchase order modification proposed",
            notification_message=(
                f"{order.supplier_name or 'Supplier'} proposed changes to PO {order.purchase_order_number}"
            ),
        )

    def _plan_bulk(self, order: PurchaseOrder, response: SupplierResponse, now: datetime) -> _Transition:
        plan = build_bulk_response_plan(
            order.materials or [],
            response.material_responses,
            default_phase_id=order.phase_id,
            tolerance_cents=self.line_tolerance_cents,
        )
        responded_at = now.isoformat()
        material_responses = [dict(r, respondedAt=responded_at) for r in plan.material_responses]

        committed = plan.accepted_total_cents
        values = {
            "status": plan.status,
            "supplier_response": "partial",
            "supplier_response_at": now,
            "supplier_notes": response.supplier_notes,
            "materials": plan.materials,
            "material_responses": material_responses,
            "total_cost_cents": plan.order_total_cents,
            "committed_cost_cents": committed,
            "financial_status": (
                FinancialStatus.COMMITTED.value if committed > 0 else FinancialStatus.UNCOMMITTED.value
            ),
            "committed_at": now if committed > 0 else None,
            "needs_reassignment": bool(plan.rejected_material_request_ids),
        }
        return _Transition(
            values=values,
            result=SettlementResult(
                success=True, order_id=order.id, status=plan.status,
                total_cost_cents=plan.order_total_cents, committed_cents=committed,
                needs_reassignment=bool(plan.rejected_material_request_ids),
                accepted_count=plan.accepted_count,
                rejected_count=plan.rejected_count,
                modified_count=plan.modified_count,
                material_responses=material_responses,
                message=(
                    f"{plan.accepted_count} accepted, {plan.rejected_count} rejected, "
                    f"{plan.modified_count} modified"
                ),
            ),
            committed_cents=committed,
            phase_commitments=plan.phase_commitments,
            reassign_request_ids=plan.rejected_material_request_ids,
            reassignment_reason=f"Supplier rejected line on PO {order.purchase_order_number}",
            audit_action="PO_BULK_RESPONDED",
            notification_title="Supplier responded to bulk order",
            notification_message=(
                f"{order.supplier_name or 'Supplier'} responded to PO {order.purchase_order_number}: "
                f"{plan.accepted_count} accepted, {plan.rejected_count} rejected, "
                f"{plan.modified_count} modified"
            ),
        )

    def _apply(self, order: PurchaseOrder, token: str, now: datetime, transition: _Transition) -> None:
        """Write the whole transition in one transaction or nothing at all."""
        order_id = order.id
        project_id = order.project_id
        self.session.flush()

        if not self.order_repo.claim_response(order_id, token, now, transition.values):
            self.session.rollback()
            # Lost the race: re-read and report why the token no longer applies
            current = self.order_repo.get_or_raise(order_id)
            check_response_token(current, token, self.clock())
            raise ConcurrencyError("PurchaseOrder", order_id)

        if transition.committed_cents > 0:
            if not self.ledger.try_commit(project_id, transition.committed_cents):
                self.session.rollback()
                finance = self.ledger.get_project_finances(project_id)
                raise CapitalShortfallError(transition.committed_cents, finance.available_cents)
            for phase_id, amount in transition.phase_commitments.items():
                if phase_id and amount > 0:
                    self.phase_repo.increment_committed(phase_id, amount)

        if transition.reassign_request_ids:
            self.request_repo.flag_for_reassignment(
                project_id, transition.reassign_request_ids, transition.reassignment_reason
            )

        self.session.commit()
        self.session.refresh(order)

    def _after_commit(self, order: PurchaseOrder, transition: _Transition) -> None:
        if transition.committed_cents > 0:
            try:
                self.dispatcher.dispatch(order.project_id)
            except Exception:
                logger.exception(f"Could not dispatch recalculation for project {order.project_id}")

        self.audit.record(
            None, transition.audit_action, "purchase_order", order.id,
            {
                "status": transition.result.status,
                "totalCost": transition.result.total_cost_cents,
                "committedCost": transition.committed_cents,
            },
            project_id=order.project_id,
        )
        self.notifications.notify(
            order.created_by,
            transition.notification_title,
            transition.notification_message,
            {"purchaseOrderId": order.id, "projectId": order.project_id, "status": transition.result.status},
        )
