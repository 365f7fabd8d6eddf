"""
Project Deletion Service - Hard delete of a project and everything it owns.

The project row and every dependent record go in one transaction, so a
failure part-way leaves the project fully intact. Scheduled-report cleanup
runs in its own savepoint and never aborts the deletion.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from buildledger.infrastructure.collaborators import AuditSink, DatabaseAuditSink
from buildledger.infrastructure.repositories import (
    ProjectFinanceRepository,
    ProjectRepository,
    PurchaseOrderRepository,
)
from buildledger.domain.exceptions import ProjectHasSpendingError

logger = logging.getLogger(__name__)


@dataclass
class ProjectDeletionResult:
    project_id: int
    forced: bool = False
    deleted: Dict[str, int] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)


class ProjectDeletionService:
    """Service for deleting projects with their dependent records."""

    def __init__(self, session: Session, audit_sink: Optional[AuditSink] = None):
        self.session = session
        self.project_repo = ProjectRepository(session)
        self.finance_repo = ProjectFinanceRepository(session)
        self.order_repo = PurchaseOrderRepository(session)
        self.audit = audit_sink or DatabaseAuditSink()

    def get_spending_cents(self, project_id: int) -> int:
        """Actual spend plus committed purchase-order cost."""
        return self.finance_repo.total_used(project_id) + self.order_repo.committed_total(project_id)

    def delete_project(
        self,
        project_id: int,
        actor_id: Optional[str] = None,
        force: bool = False,
    ) -> ProjectDeletionResult:
        """
        Delete a project and every record that belongs to it.

        Args:
            project_id: Project identifier
            actor_id: User requesting the deletion
            force: Delete even when the project has spending

        Returns:
            ProjectDeletionResult with rows deleted per table

        Raises:
            ProjectNotFoundError: If project doesn't exist
            ProjectHasSpendingError: If the project has spending and force is False
        """
        project = self.project_repo.get_or_raise(project_id)
        spending = self.get_spending_cents(project.id)
        if spending > 0 and not force:
            raise ProjectHasSpendingError(project.id, spending)

        result = ProjectDeletionResult(project_id=project.id, forced=force and spending > 0)
        snapshot = {"name": project.name, "code": project.code, "budget": project.budget, "spending": spending}

        try:
            try:
                with self.session.begin_nested():
                    result.deleted["scheduled_reports"] = self.project_repo.delete_scheduled_reports(project.id)
            except SQLAlchemyError:
                logger.exception(f"Scheduled report cleanup failed for project {project.id}; continuing")
                result.warnings.append("Scheduled reports could not be removed")

            result.deleted.update(self.project_repo.delete_dependents(project.id))
            self.session.expunge(project)
            result.deleted["projects"] = self.project_repo.delete(project.id)
            self.session.commit()
        except Exception:
            self.session.rollback()
            logger.exception(f"Deletion of project {project_id} failed; nothing was removed")
            raise

        logger.info(
            f"Project {project_id} deleted by {actor_id} "
            f"({sum(result.deleted.values())} rows{', forced' if result.forced else ''})"
        )
        self.audit.record(
            actor_id, "PROJECT_DELETED", "project", project_id,
            {"project": snapshot, "deleted": result.deleted, "forced": result.forced},
            project_id=project_id,
        )
        return result
