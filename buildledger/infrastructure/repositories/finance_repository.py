"""
Finance Repository - Capital ledger storage and source-record aggregates.

The project_finances row is a cache. Committed cost on it changes only
through single-statement increments; everything else is overwritten by
a full recompute from investor allocations, materials, expenses, labour
and purchase orders.
"""
from typing import Dict, Optional

from sqlalchemy import case, func, or_, update
from sqlalchemy.orm import Session

from buildledger.models import (
    ProjectFinance, Investor, InvestorAllocation, Material, Expense, LabourEntry,
    MaterialRequest, BudgetCategory,
    MATERIAL_SPEND_STATUSES, EXPENSE_SPEND_STATUSES, LABOUR_SPEND_STATUSES, utcnow,
)
from .base_repository import BaseRepository


class ProjectFinanceRepository(BaseRepository[ProjectFinance]):
    """Repository for the per-project capital ledger entry."""

    def __init__(self, session: Session):
        super().__init__(session, ProjectFinance)

    def get_for_project(self, project_id: int, fresh: bool = False) -> Optional[ProjectFinance]:
        """
        Get the ledger entry of a project.

        Args:
            project_id: Project identifier
            fresh: Reload from the database, picking up atomic increments
                   that bypassed the identity map
        """
        query = self.session.query(ProjectFinance).filter(ProjectFinance.project_id == project_id)
        if fresh:
            query = query.populate_existing()
        return query.first()

    def save_snapshot(self, project_id: int, values: dict) -> ProjectFinance:
        """
        Overwrite (or create) the ledger entry with recomputed values.

        Args:
            project_id: Project the entry belongs to
            values: Column values from a full recompute

        Returns:
            The ledger entry
        """
        finance = self.get_for_project(project_id, fresh=True)
        if finance is None:
            finance = ProjectFinance(project_id=project_id)
            self.session.add(finance)
        for key, value in values.items():
            setattr(finance, key, value)
        finance.last_recalculated_at = utcnow()
        finance.updated_at = finance.last_recalculated_at
        self.session.flush()
        return finance

    # =========================================================================
    # Atomic committed-cost updates
    # =========================================================================

    def increment_committed(self, project_id: int, amount_cents: int) -> int:
        """UPDATE ... SET committed = committed + :amount. Returns rowcount."""
        result = self.session.execute(
            update(ProjectFinance)
            .where(ProjectFinance.project_id == project_id)
            .values(
                committed_cost_cents=ProjectFinance.committed_cost_cents + amount_cents,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    def decrement_committed(self, project_id: int, amount_cents: int) -> int:
        """Atomic decrement floored at zero. Returns rowcount."""
        remaining = ProjectFinance.committed_cost_cents - amount_cents
        result = self.session.execute(
            update(ProjectFinance)
            .where(ProjectFinance.project_id == project_id)
            .values(
                committed_cost_cents=case((remaining < 0, 0), else_=remaining),
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    def try_increment_committed(self, project_id: int, amount_cents: int) -> bool:
        """
        Conditional atomic increment.

        Applies only when no capital is set or the available balance still
        covers the amount at the moment of the write.

        Returns:
            True if the increment was applied
        """
        available = (
            ProjectFinance.total_invested_cents
            - ProjectFinance.total_used_cents
            - ProjectFinance.committed_cost_cents
        )
        result = self.session.execute(
            update(ProjectFinance)
            .where(
                ProjectFinance.project_id == project_id,
                or_(ProjectFinance.total_invested_cents <= 0, available >= amount_cents),
            )
            .values(
                committed_cost_cents=ProjectFinance.committed_cost_cents + amount_cents,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # =========================================================================
    # Source-record aggregates
    # =========================================================================

    def capital_totals(self, project_id: int) -> Dict[str, int]:
        """Invested capital split by loans and equity, from active investors."""
        rows = self.session.query(
            InvestorAllocation.investment_type,
            func.coalesce(func.sum(InvestorAllocation.amount_cents), 0),
        ).join(Investor, Investor.id == InvestorAllocation.investor_id).filter(
            InvestorAllocation.project_id == project_id,
            Investor.status == "active",
        ).group_by(InvestorAllocation.investment_type).all()

        totals = {"loans": 0, "equity": 0}
        for investment_type, amount in rows:
            key = "loans" if investment_type == "loan" else "equity"
            totals[key] += int(amount or 0)

        investor_count = self.session.query(
            func.count(func.distinct(InvestorAllocation.investor_id))
        ).join(Investor, Investor.id == InvestorAllocation.investor_id).filter(
            InvestorAllocation.project_id == project_id,
            Investor.status == "active",
        ).scalar()

        totals["invested"] = totals["loans"] + totals["equity"]
        totals["investor_count"] = int(investor_count or 0)
        return totals

    def _sum(self, column, *criteria) -> int:
        return int(self.session.query(func.coalesce(func.sum(column), 0)).filter(*criteria).scalar() or 0)

    def materials_spend(self, project_id: int) -> int:
        return self._sum(
            Material.total_cost_cents,
            Material.project_id == project_id,
            Material.deleted_at.is_(None),
            Material.status.in_(MATERIAL_SPEND_STATUSES),
        )

    def expenses_spend(self, project_id: int, category: Optional[str] = None) -> int:
        criteria = [
            Expense.project_id == project_id,
            Expense.deleted_at.is_(None),
            Expense.status.in_(EXPENSE_SPEND_STATUSES),
        ]
        if category:
            criteria.append(Expense.cost_category == category)
        return self._sum(Expense.amount_cents, *criteria)

    def labour_spend(self, project_id: int) -> int:
        return self._sum(
            LabourEntry.total_cost_cents,
            LabourEntry.project_id == project_id,
            LabourEntry.deleted_at.is_(None),
            LabourEntry.status.in_(LABOUR_SPEND_STATUSES),
        )

    def total_used(self, project_id: int) -> int:
        """Actual spend recomputed from materials, expenses and labour."""
        return (
            self.materials_spend(project_id)
            + self.expenses_spend(project_id)
            + self.labour_spend(project_id)
        )

    def estimated_cost(self, project_id: int) -> int:
        """Estimated cost of approved material requests."""
        return self._sum(
            MaterialRequest.estimated_cost_cents,
            MaterialRequest.project_id == project_id,
            MaterialRequest.deleted_at.is_(None),
            MaterialRequest.status == "approved",
        )

    def spend_by_phase(self, project_id: int) -> Dict[Optional[int], int]:
        """Actual spend per phase; indirect expenses are not charged to phases."""
        by_phase: Dict[Optional[int], int] = {}
        queries = [
            self.session.query(Material.phase_id, func.sum(Material.total_cost_cents)).filter(
                Material.project_id == project_id,
                Material.deleted_at.is_(None),
                Material.status.in_(MATERIAL_SPEND_STATUSES),
            ).group_by(Material.phase_id),
            self.session.query(Expense.phase_id, func.sum(Expense.amount_cents)).filter(
                Expense.project_id == project_id,
                Expense.deleted_at.is_(None),
                Expense.status.in_(EXPENSE_SPEND_STATUSES),
                Expense.cost_category != BudgetCategory.INDIRECT.value,
            ).group_by(Expense.phase_id),
            self.session.query(LabourEntry.phase_id, func.sum(LabourEntry.total_cost_cents)).filter(
                LabourEntry.project_id == project_id,
                LabourEntry.deleted_at.is_(None),
                LabourEntry.status.in_(LABOUR_SPEND_STATUSES),
            ).group_by(LabourEntry.phase_id),
        ]
        for query in queries:
            for phase_id, amount in query.all():
                by_phase[phase_id] = by_phase.get(phase_id, 0) + int(amount or 0)
        return by_phase

    def spend_by_category(self, project_id: int) -> Dict[str, int]:
        """
        Spend charged to each top-level budget category.

        Materials and labour are direct construction cost; expenses are
        charged to the category they were booked against.
        """
        spent = {category.value: 0 for category in BudgetCategory}
        spent[BudgetCategory.DCC.value] += self.materials_spend(project_id) + self.labour_spend(project_id)
        rows = self.session.query(Expense.cost_category, func.sum(Expense.amount_cents)).filter(
            Expense.project_id == project_id,
            Expense.deleted_at.is_(None),
            Expense.status.in_(EXPENSE_SPEND_STATUSES),
        ).group_by(Expense.cost_category).all()
        for category, amount in rows:
            key = category if category in spent else BudgetCategory.DCC.value
            spent[key] += int(amount or 0)
        return spent
