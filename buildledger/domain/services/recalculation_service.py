"""
Financial Recalculation Service - Rebuilds derived project and phase totals.

Implements the recalculation cascade:
- Ledger: invested (loans + equity), used, committed, balances
- Phases: committed cost and actual spend

Every run recomputes from source records and overwrites the cached values,
so running it twice, or after a failed run, is always safe.
"""
import logging
from typing import Dict

from sqlalchemy.orm import Session

from buildledger.models import ProjectFinance
from buildledger.infrastructure.repositories import (
    ProjectRepository,
    PhaseRepository,
    PurchaseOrderRepository,
    ProjectFinanceRepository,
)

logger = logging.getLogger(__name__)


class FinancialRecalculationService:
    """
    Service for full, idempotent recomputation of cached financials.

    Invariants after a run:
    - capital_balance = total_invested - total_used
    - committed_cost = Σ(PurchaseOrder.committed_cost | financial_status = committed)
    - Phase.committed_cost / actual_spend match their source records
    """

    def __init__(self, session: Session):
        self.session = session
        self.project_repo = ProjectRepository(session)
        self.phase_repo = PhaseRepository(session)
        self.order_repo = PurchaseOrderRepository(session)
        self.finance_repo = ProjectFinanceRepository(session)

    def compute_project_snapshot(self, project_id: int) -> Dict[str, int]:
        """
        Compute ledger values from source records without writing them.

        Args:
            project_id: Project identifier

        Returns:
            Column values for ProjectFinance
        """
        capital = self.finance_repo.capital_totals(project_id)
        used = self.finance_repo.total_used(project_id)
        committed = self.order_repo.committed_total(project_id)

        # Spend is drawn from loans first, then equity
        loans_balance = max(0, capital["loans"] - used)
        equity_balance = capital["equity"] - max(0, used - capital["loans"])

        return {
            "total_invested_cents": capital["invested"],
            "total_loans_cents": capital["loans"],
            "total_equity_cents": capital["equity"],
            "total_used_cents": used,
            "committed_cost_cents": committed,
            "estimated_cost_cents": self.finance_repo.estimated_cost(project_id),
            "capital_balance_cents": capital["invested"] - used,
            "loans_balance_cents": loans_balance,
            "equity_balance_cents": equity_balance,
            "investor_count": capital["investor_count"],
        }

    def recalculate_project_finances(self, project_id: int) -> ProjectFinance:
        """
        Recompute and overwrite the project's ledger entry and phase totals.

        The caller owns the transaction; nothing is committed here.

        Raises:
            ProjectNotFoundError: If project doesn't exist
        """
        self.project_repo.get_or_raise(project_id)

        values = self.compute_project_snapshot(project_id)
        finance = self.finance_repo.save_snapshot(project_id, values)
        phases_updated = self.recalculate_phase_financials(project_id)

        logger.info(
            f"Recalculated finances for project {project_id}: "
            f"invested={values['total_invested_cents']} used={values['total_used_cents']} "
            f"committed={values['committed_cost_cents']} ({phases_updated} phases)"
        )
        return finance

    def recalculate_phase_financials(self, project_id: int) -> int:
        """
        Recompute committed cost and actual spend for every live phase.

        Returns:
            Number of phases whose totals changed
        """
        committed = self.order_repo.committed_by_phase(project_id)
        spend = self.finance_repo.spend_by_phase(project_id)

        changed = 0
        for phase in self.phase_repo.list_for_project(project_id, fresh=True):
            new_committed = committed.get(phase.id, 0)
            new_actual = spend.get(phase.id, 0)
            if phase.committed_cost_cents != new_committed or phase.actual_spend_cents != new_actual:
                self.phase_repo.save_totals(phase, new_committed, new_actual)
                changed += 1
        self.session.flush()
        return changed
