"""
Project Budget Service - Budget updates with phase rescaling.

Every stored budget is in the enhanced shape: legacy payloads are converted
before they are persisted, and a budget with validation errors is never
written.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy.orm import Session

from buildledger.models import Project
from buildledger.infrastructure.collaborators import AuditSink, DatabaseAuditSink
from buildledger.infrastructure.repositories import ProjectRepository
from buildledger.domain.entities.budget import (
    BudgetTolerance,
    LegacyEstimationPolicy,
    get_direct_construction_costs,
    normalize_budget,
    parse_budget,
    to_cents,
    validate_budget,
)
from buildledger.domain.exceptions import DomainError, InvalidBudgetError
from .phase_allocation_service import PhaseAllocationService

logger = logging.getLogger(__name__)


@dataclass
class BudgetUpdateResult:
    success: bool
    project_id: int
    budget: Optional[dict] = None
    converted: bool = False
    old_dcc_cents: int = 0
    new_dcc_cents: int = 0
    phases_rescaled: int = 0
    rescale_skipped_reason: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    error_code: Optional[str] = None
    message: Optional[str] = None


class ProjectBudgetService:
    """
    Service for project budget changes.

    Ensures:
    - Persisted budgets are enhanced and pass validation
    - Phase allocations follow DCC changes when rescaling is requested
    """

    def __init__(
        self,
        session: Session,
        audit_sink: Optional[AuditSink] = None,
        policy: Optional[LegacyEstimationPolicy] = None,
        tolerance: Optional[BudgetTolerance] = None,
    ):
        self.session = session
        self.project_repo = ProjectRepository(session)
        self.audit = audit_sink or DatabaseAuditSink()
        self.policy = policy or LegacyEstimationPolicy.from_config()
        self.tolerance = tolerance or BudgetTolerance.from_config()
        self.phases = PhaseAllocationService(session, audit_sink=self.audit)

    def update_project_budget(
        self,
        project_id: int,
        payload: dict,
        actor_id: Optional[str] = None,
        rescale_phases: bool = False,
    ) -> BudgetUpdateResult:
        """
        Validate, normalize and store a new project budget.

        Args:
            project_id: Project identifier
            payload: Budget in either wire shape
            actor_id: User making the change
            rescale_phases: Rescale phase allocations when DCC changes

        Returns:
            BudgetUpdateResult; validation errors block the update
        """
        try:
            project = self.project_repo.get_or_raise(project_id)
            budget = parse_budget(payload)
            validation = validate_budget(budget, self.tolerance)
            if not validation.is_valid:
                raise InvalidBudgetError(validation.errors)
            normalized = normalize_budget(budget, self.policy)
        except DomainError as e:
            logger.warning(f"Budget update for project {project_id} refused: {e.message}")
            result = BudgetUpdateResult(
                success=False, project_id=project_id, error_code=e.code, message=e.message,
            )
            if isinstance(e, InvalidBudgetError):
                result.errors = list(e.errors)
            return result

        old_dcc_cents = to_cents(get_direct_construction_costs(project.budget, self.policy))
        new_dcc_cents = to_cents(normalized.budget.direct_construction_costs)
        old_budget = project.budget

        stored = normalized.budget.to_dict()
        self.project_repo.save_budget(project, stored)

        rescale = None
        if rescale_phases and old_dcc_cents != new_dcc_cents:
            rescale = self.phases.rescale_phase_budgets_for_project(
                project.id, old_dcc_cents, new_dcc_cents, actor_id=actor_id, commit=False
            )
        self.session.commit()

        warnings = validation.warnings + normalized.warnings
        result = BudgetUpdateResult(
            success=True,
            project_id=project.id,
            budget=stored,
            converted=normalized.converted,
            old_dcc_cents=old_dcc_cents,
            new_dcc_cents=new_dcc_cents,
            warnings=warnings,
            message="Budget updated",
        )
        if rescale is not None:
            result.phases_rescaled = rescale.rescaled
            result.rescale_skipped_reason = rescale.skipped_reason
            if rescale.skipped_reason:
                warnings.append(f"Phase budgets were not rescaled: {rescale.skipped_reason}")
            if rescale.failed_phase_ids:
                warnings.append(f"Phases {rescale.failed_phase_ids} could not be rescaled")
            self.phases.audit_rescale(project.id, rescale, old_dcc_cents, new_dcc_cents, actor_id)
            result.message = f"Budget updated, {rescale.rescaled} phase budgets rescaled"

        logger.info(
            f"Budget updated for project {project.id} by {actor_id}: "
            f"DCC {old_dcc_cents} -> {new_dcc_cents} cents"
        )
        self.audit.record(
            actor_id, "PROJECT_BUDGET_UPDATED", "project", project.id,
            {"budget": {"old": old_budget, "new": stored}, "converted": normalized.converted},
            project_id=project.id,
        )
        return result

    def archive_project(self, project_id: int, actor_id: Optional[str] = None) -> Project:
        """
        Archive a project instead of deleting it.

        Raises:
            ProjectNotFoundError: If project doesn't exist
        """
        project = self.project_repo.get_or_raise(project_id)
        self.project_repo.archive(project)
        self.session.commit()

        logger.info(f"Project {project.id} archived by {actor_id}")
        self.audit.record(actor_id, "PROJECT_ARCHIVED", "project", project.id, {}, project_id=project.id)
        return project
