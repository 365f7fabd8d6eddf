"""
Phase Repository - Data access for phase budget allocations.

Implements repository pattern for Phase operations with:
- DCC ceiling validation (sum of allocations <= project DCC)
- Atomic committed-cost increments
"""
from typing import List, Optional

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from buildledger.models import Phase, utcnow
from buildledger.domain.exceptions import PhaseNotFoundError, DCCCeilingExceededError
from .base_repository import BaseRepository


class PhaseRepository(BaseRepository[Phase]):
    """
    Repository for Phase entities.

    Phase allocations must respect the DCC ceiling constraint.
    """

    not_found = PhaseNotFoundError

    def __init__(self, session: Session):
        super().__init__(session, Phase)

    def total_allocated(self, project_id: int, exclude_phase_id: Optional[int] = None) -> int:
        """
        Sum of live phase allocations for a project.

        Args:
            project_id: Owning project
            exclude_phase_id: Phase to leave out (the one being updated)

        Returns:
            Total allocated cents
        """
        query = self.session.query(
            func.coalesce(func.sum(Phase.allocated_budget_cents), 0)
        ).filter(
            Phase.project_id == project_id,
            Phase.deleted_at.is_(None),
        )
        if exclude_phase_id:
            query = query.filter(Phase.id != exclude_phase_id)
        return int(query.scalar() or 0)

    def validate_dcc_ceiling(
        self,
        project_id: int,
        dcc_cents: int,
        new_amount: int,
        exclude_phase_id: Optional[int] = None,
    ) -> None:
        """
        Validate that an allocation keeps the project within its DCC.

        Raises:
            DCCCeilingExceededError: If the allocation would exceed DCC
        """
        siblings = self.total_allocated(project_id, exclude_phase_id)
        total = siblings + new_amount
        if total > dcc_cents:
            raise DCCCeilingExceededError(
                total_allocated=total,
                dcc_amount=dcc_cents,
                available=max(0, dcc_cents - siblings),
            )

    def set_allocation(self, phase: Phase, amount_cents: int) -> Phase:
        phase.allocated_budget_cents = amount_cents
        phase.updated_at = utcnow()
        return phase

    def increment_committed(self, phase_id: int, amount_cents: int) -> int:
        """
        Atomically add to a phase's committed cost.

        Returns:
            Number of rows updated (0 if the phase is missing)
        """
        result = self.session.execute(
            update(Phase)
            .where(Phase.id == phase_id)
            .values(
                committed_cost_cents=Phase.committed_cost_cents + amount_cents,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    def save_totals(self, phase: Phase, committed_cents: int, actual_cents: int) -> Phase:
        phase.committed_cost_cents = committed_cents
        phase.actual_spend_cents = actual_cents
        phase.updated_at = utcnow()
        return phase

    def rescalable_for_project(self, project_id: int) -> List[Phase]:
        """Live phases with a positive allocation, in sequence order."""
        return self.session.query(Phase).filter(
            Phase.project_id == project_id,
            Phase.deleted_at.is_(None),
            Phase.allocated_budget_cents > 0,
        ).order_by(Phase.sequence, Phase.id).all()
