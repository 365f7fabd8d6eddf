"""
Purchase Order Repository - Data access for supplier-settled orders.

Every supplier transition goes through claim_response(), a conditional
UPDATE guarded by the token preconditions, so the token is consumed in the
same statement that moves the order out of its respondable state.
"""
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import func, or_, update
from sqlalchemy.orm import Session

from buildledger.models import (
    PurchaseOrder, FinancialStatus, RESPONDABLE_STATUSES, utcnow,
)
from buildledger.domain.exceptions import PurchaseOrderNotFoundError
from .base_repository import BaseRepository


class PurchaseOrderRepository(BaseRepository[PurchaseOrder]):
    """Repository for PurchaseOrder entities."""

    not_found = PurchaseOrderNotFoundError

    def __init__(self, session: Session):
        super().__init__(session, PurchaseOrder)

    def claim_response(self, order_id: int, token: str, now: datetime, values: dict) -> bool:
        """
        Apply a supplier transition and consume the token in one statement.

        The UPDATE only matches while the token is unused, unexpired and the
        order is still respondable; a concurrent response that got there
        first leaves rowcount at 0.

        Args:
            order_id: Order to transition
            token: Token presented by the supplier
            now: Transition timestamp
            values: Column values to write with the transition

        Returns:
            True if this call won the transition
        """
        result = self.session.execute(
            update(PurchaseOrder)
            .where(
                PurchaseOrder.id == order_id,
                PurchaseOrder.deleted_at.is_(None),
                PurchaseOrder.response_token == token,
                PurchaseOrder.response_token_used_at.is_(None),
                or_(
                    PurchaseOrder.response_token_expires_at.is_(None),
                    PurchaseOrder.response_token_expires_at >= now,
                ),
                PurchaseOrder.status.in_(RESPONDABLE_STATUSES),
            )
            .values(response_token_used_at=now, updated_at=now, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def issue_token(self, order: PurchaseOrder, token: str, expires_at: datetime, status: str) -> PurchaseOrder:
        order.response_token = token
        order.response_token_expires_at = expires_at
        order.response_token_used_at = None
        order.status = status
        order.updated_at = utcnow()
        return order

    def committed_total(self, project_id: int) -> int:
        """Sum of committed cost over committed orders of a project."""
        total = self.session.query(
            func.coalesce(func.sum(PurchaseOrder.committed_cost_cents), 0)
        ).filter(
            PurchaseOrder.project_id == project_id,
            PurchaseOrder.deleted_at.is_(None),
            PurchaseOrder.financial_status == FinancialStatus.COMMITTED.value,
        ).scalar()
        return int(total or 0)

    def committed_by_phase(self, project_id: int) -> Dict[Optional[int], int]:
        """
        Committed cost per phase.

        Bulk orders commit per line, so accepted lines are attributed to
        their own phase (falling back to the order's phase).
        """
        orders = self.session.query(PurchaseOrder).filter(
            PurchaseOrder.project_id == project_id,
            PurchaseOrder.deleted_at.is_(None),
            PurchaseOrder.financial_status == FinancialStatus.COMMITTED.value,
        ).populate_existing().all()

        by_phase: Dict[Optional[int], int] = {}
        for order in orders:
            if order.is_bulk_order and order.materials:
                for line in order.materials:
                    if line.get("status") != "accepted":
                        continue
                    phase_id = line.get("phaseId") or order.phase_id
                    by_phase[phase_id] = by_phase.get(phase_id, 0) + int(line.get("totalCost") or 0)
            else:
                by_phase[order.phase_id] = by_phase.get(order.phase_id, 0) + int(order.committed_cost_cents or 0)
        return by_phase

