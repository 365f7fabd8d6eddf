"""
Project Repository - Data access for projects and their stored budgets.
"""
from typing import Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from buildledger.models import (
    Project, ProjectStatus, ScheduledReport, utcnow,
    Phase, PurchaseOrder, ProjectFinance, InvestorAllocation, MaterialRequest,
    Material, Expense, LabourEntry, BudgetTransfer,
)
from buildledger.domain.exceptions import ProjectNotFoundError
from .base_repository import BaseRepository

# Child tables before their parents: spend records reference orders and
# phases, orders reference phases and material requests
PROJECT_DEPENDENTS = (
    Material,
    Expense,
    LabourEntry,
    PurchaseOrder,
    MaterialRequest,
    Phase,
    InvestorAllocation,
    BudgetTransfer,
    ProjectFinance,
)


class ProjectRepository(BaseRepository[Project]):
    """Repository for Project entities."""

    not_found = ProjectNotFoundError

    def __init__(self, session: Session):
        super().__init__(session, Project)

    def list_ids(self, include_archived: bool = False) -> List[int]:
        """Ids of all projects, used by the periodic ledger sweep."""
        query = self.session.query(Project.id)
        if not include_archived:
            query = query.filter(Project.status != ProjectStatus.ARCHIVED.value)
        return [row[0] for row in query.order_by(Project.id).all()]

    def save_budget(self, project: Project, budget: dict) -> Project:
        """Replace the stored budget document (JSON columns are reassigned, not mutated)."""
        project.budget = budget
        project.budget_version = Project.budget_version + 1
        project.updated_at = utcnow()
        return project

    def replace_budget_if_current(self, project_id: int, expected_version: int, budget: dict) -> bool:
        """
        Write a budget only if nobody has replaced it since expected_version was read.

        Returns:
            True if the write matched; False if another writer got there first
        """
        result = self.session.execute(
            update(Project)
            .where(Project.id == project_id, Project.budget_version == expected_version)
            .values(budget=budget, budget_version=Project.budget_version + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def archive(self, project: Project) -> Project:
        project.status = ProjectStatus.ARCHIVED.value
        project.archived_at = utcnow()
        return project

    def delete_scheduled_reports(self, project_id: int) -> int:
        return self.session.query(ScheduledReport).filter(
            ScheduledReport.project_id == project_id
        ).delete(synchronize_session=False)

    def delete(self, project_id: int) -> Optional[int]:
        return self.session.query(Project).filter(
            Project.id == project_id
        ).delete(synchronize_session=False)

    def delete_dependents(self, project_id: int) -> Dict[str, int]:
        """
        Hard-delete every record owned by a project.

        Returns:
            Rows deleted per table
        """
        deleted = {}
        for model in PROJECT_DEPENDENTS:
            deleted[model.__tablename__] = self.session.query(model).filter(
                model.project_id == project_id
            ).delete(synchronize_session=False)
        return deleted
