"""
Phase Allocation Service - Phase budgets as shares of Direct Construction Cost.

Implements:
- DCC ceiling: Σ(Phase.allocated_budget) <= project DCC
- Proportional rescale of phase allocations when DCC changes
"""
import logging
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional

from sqlalchemy.orm import Session

from buildledger.models import Phase, Project
from buildledger.infrastructure.collaborators import AuditSink, DatabaseAuditSink
from buildledger.infrastructure.repositories import PhaseRepository, ProjectRepository
from buildledger.domain.entities.budget import get_direct_construction_costs, to_cents
from buildledger.domain.exceptions import InvalidAmountError

logger = logging.getLogger(__name__)


@dataclass
class PhaseRescale:
    phase_id: int
    name: str
    old_cents: int
    new_cents: int


@dataclass
class RescaleResult:
    """Outcome of a proportional rescale; rescaled counts phases actually changed."""
    rescaled: int = 0
    skipped_reason: Optional[str] = None
    phases: List[PhaseRescale] = field(default_factory=list)
    failed_phase_ids: List[int] = field(default_factory=list)


def scale_allocation(old_cents: int, old_dcc_cents: int, new_dcc_cents: int) -> int:
    """old x new/old, rounded half-up to whole cents."""
    scaled = Decimal(old_cents) * Decimal(new_dcc_cents) / Decimal(old_dcc_cents)
    return int(scaled.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class PhaseAllocationService:
    """
    Service for phase budget allocations.

    Ensures mathematical invariants:
    - Σ(Phase.allocated_budget | project) <= DCC(project)
    - After a rescale, Phase.allocated_budget = old x newDcc / oldDcc
    """

    def __init__(self, session: Session, audit_sink: Optional[AuditSink] = None):
        self.session = session
        self.phase_repo = PhaseRepository(session)
        self.project_repo = ProjectRepository(session)
        self.audit = audit_sink or DatabaseAuditSink()

    def get_project_dcc_cents(self, project: Project) -> int:
        return to_cents(get_direct_construction_costs(project.budget))

    # =========================================================================
    # Allocation
    # =========================================================================

    def allocate_phase_budget(self, phase_id: int, amount_cents: int, actor_id: Optional[str] = None) -> Phase:
        """
        Set a phase's allocation within the project's DCC.

        Raises:
            PhaseNotFoundError: If the phase doesn't exist
            InvalidAmountError: If the amount is negative
            DCCCeilingExceededError: If allocations would exceed DCC
        """
        if amount_cents is None or amount_cents < 0:
            raise InvalidAmountError(amount_cents)

        phase = self.phase_repo.get_or_raise(phase_id)
        project = self.project_repo.get_or_raise(phase.project_id)
        dcc_cents = self.get_project_dcc_cents(project)

        self.phase_repo.validate_dcc_ceiling(project.id, dcc_cents, amount_cents, exclude_phase_id=phase.id)

        old_cents = phase.allocated_budget_cents
        self.phase_repo.set_allocation(phase, amount_cents)
        self.session.commit()

        logger.info(f"Phase {phase.id} allocation set {old_cents} -> {amount_cents} cents by {actor_id}")
        self.audit.record(
            actor_id, "PHASE_ALLOCATION_UPDATED", "phase", phase.id,
            {"allocatedBudget": {"old": old_cents, "new": amount_cents}},
            project_id=project.id,
        )
        return phase

    # =========================================================================
    # Proportional rescale
    # =========================================================================

    def rescale_phase_budgets_for_project(
        self,
        project_id: int,
        old_dcc_cents: int,
        new_dcc_cents: int,
        actor_id: Optional[str] = None,
        commit: bool = True,
    ) -> RescaleResult:
        """
        Rescale every live phase allocation by new_dcc / old_dcc.

        Skipped (rescaled=0) when either DCC is not positive or they are
        equal. Each phase is written in its own savepoint, so a failing
        phase is logged and left unchanged while the others proceed.

        Args:
            project_id: Project whose phases are rescaled
            old_dcc_cents: DCC before the change
            new_dcc_cents: DCC after the change
            actor_id: User responsible for the change
            commit: Commit and audit here; False leaves both to the caller

        Returns:
            RescaleResult with the number of phases changed
        """
        if old_dcc_cents <= 0:
            reason = "Previous Direct Construction Cost is zero; there is no proportional basis"
            logger.warning(f"Phase rescale skipped for project {project_id}: {reason}")
            return RescaleResult(skipped_reason=reason)
        if new_dcc_cents <= 0:
            reason = "New Direct Construction Cost is not positive"
            logger.warning(f"Phase rescale skipped for project {project_id}: {reason}")
            return RescaleResult(skipped_reason=reason)
        if old_dcc_cents == new_dcc_cents:
            return RescaleResult(skipped_reason="Direct Construction Cost unchanged")

        phases = self.phase_repo.rescalable_for_project(project_id)
        targets = {p.id: scale_allocation(p.allocated_budget_cents, old_dcc_cents, new_dcc_cents) for p in phases}

        # Rounding must not push phases that fitted the old DCC over the new one
        old_total = sum(p.allocated_budget_cents for p in phases)
        overflow = sum(targets.values()) - new_dcc_cents
        if old_total <= old_dcc_cents and overflow > 0:
            for phase_id in sorted(targets, key=lambda pid: targets[pid], reverse=True)[:overflow]:
                targets[phase_id] -= 1

        result = RescaleResult()
        for phase in phases:
            old_cents = phase.allocated_budget_cents
            new_cents = targets[phase.id]
            if new_cents == old_cents:
                continue
            try:
                with self.session.begin_nested():
                    self.phase_repo.set_allocation(phase, new_cents)
                    self.session.flush()
            except Exception:
                logger.exception(f"Rescale of phase {phase.id} in project {project_id} failed")
                result.failed_phase_ids.append(phase.id)
                continue

            logger.info(
                f"Phase {phase.id} ({phase.name}) rescaled {old_cents} -> {new_cents} cents "
                f"(DCC {old_dcc_cents} -> {new_dcc_cents})"
            )
            result.phases.append(PhaseRescale(phase.id, phase.name, old_cents, new_cents))

        result.rescaled = len(result.phases)
        if commit:
            self.session.commit()
            self.audit_rescale(project_id, result, old_dcc_cents, new_dcc_cents, actor_id)
        return result

    def audit_rescale(
        self,
        project_id: int,
        result: RescaleResult,
        old_dcc_cents: int,
        new_dcc_cents: int,
        actor_id: Optional[str],
    ) -> None:
        """Record one audit entry per rescaled phase."""
        for change in result.phases:
            self.audit.record(
                actor_id, "PHASE_BUDGET_RESCALED", "phase", change.phase_id,
                {
                    "allocatedBudget": {"old": change.old_cents, "new": change.new_cents},
                    "directConstructionCosts": {"old": old_dcc_cents, "new": new_dcc_cents},
                },
                project_id=project_id,
            )
