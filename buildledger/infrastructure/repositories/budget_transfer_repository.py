"""
Budget Transfer Repository - Data access for category-to-category transfers.
"""
from datetime import datetime
from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from buildledger.models import BudgetTransfer, TransferStatus
from buildledger.domain.exceptions import BudgetTransferNotFoundError
from .base_repository import BaseRepository


class BudgetTransferRepository(BaseRepository[BudgetTransfer]):
    """Repository for BudgetTransfer entities."""

    not_found = BudgetTransferNotFoundError

    def __init__(self, session: Session):
        super().__init__(session, BudgetTransfer)

    def list_for_project(self, project_id: int, status: Optional[str] = None) -> List[BudgetTransfer]:
        query = self.session.query(BudgetTransfer).filter(BudgetTransfer.project_id == project_id)
        if status:
            query = query.filter(BudgetTransfer.status == status)
        return query.order_by(BudgetTransfer.created_at.desc(), BudgetTransfer.id.desc()).all()

    def claim_decision(self, transfer_id: int, status: str, approver_id: str,
                       notes: Optional[str], now: datetime) -> bool:
        """
        Move a pending transfer to its decided status in one statement.

        The UPDATE only matches while the transfer is still pending, so of two
        concurrent approvers exactly one sees rowcount 1.

        Returns:
            True if this call decided the transfer
        """
        result = self.session.execute(
            update(BudgetTransfer)
            .where(
                BudgetTransfer.id == transfer_id,
                BudgetTransfer.status == TransferStatus.PENDING.value,
            )
            .values(status=status, approved_by=approver_id, approval_notes=notes, decided_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
