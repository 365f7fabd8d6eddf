"""
Budget Transfer Service - Moves budget between top-level categories.

A transfer only shifts money between category sub-allocations; the budget
total never changes. Rules are checked when the transfer is requested and
again when it is approved, against the budget and spend at that moment.
"""
import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from buildledger.models import BudgetTransfer, Project, TransferStatus, utcnow
from buildledger.infrastructure.collaborators import AuditSink, DatabaseAuditSink
from buildledger.infrastructure.repositories import (
    BudgetTransferRepository,
    PhaseRepository,
    ProjectFinanceRepository,
    ProjectRepository,
)
from buildledger.domain.entities.budget import (
    CATEGORIES,
    CATEGORY_CONTINGENCY,
    CATEGORY_DCC,
    EnhancedBudget,
    LegacyEstimationPolicy,
    from_cents,
    normalize_budget,
    to_cents,
)
from buildledger.domain.exceptions import (
    ConcurrencyError,
    DCCCeilingExceededError,
    InsufficientCategoryBalanceError,
    InvalidAmountError,
    InvalidTransferError,
    TransferNotPendingError,
)

logger = logging.getLogger(__name__)


class BudgetTransferService:
    """
    Service for category-to-category budget transfers.

    Ensures:
    - amount <= budgeted(from) - spent(from)
    - Nothing moves into contingency, and nothing moves out of it once used
    - DCC never drops below the sum of phase allocations
    """

    def __init__(
        self,
        session: Session,
        audit_sink: Optional[AuditSink] = None,
        policy: Optional[LegacyEstimationPolicy] = None,
    ):
        self.session = session
        self.transfer_repo = BudgetTransferRepository(session)
        self.project_repo = ProjectRepository(session)
        self.phase_repo = PhaseRepository(session)
        self.finance_repo = ProjectFinanceRepository(session)
        self.audit = audit_sink or DatabaseAuditSink()
        self.policy = policy or LegacyEstimationPolicy.from_config()

    def _budget(self, project: Project) -> EnhancedBudget:
        return normalize_budget(project.budget, self.policy).budget

    def validate_transfer(
        self,
        project: Project,
        from_category: str,
        to_category: str,
        amount_cents: int,
    ) -> EnhancedBudget:
        """
        Check a transfer against the project's current budget and spend.

        Returns:
            The current enhanced budget

        Raises:
            InvalidAmountError: If amount is not positive
            InvalidTransferError: If a transfer rule is broken
            InsufficientCategoryBalanceError: If the source balance is too small
            DCCCeilingExceededError: If DCC would drop below phase allocations
        """
        if from_category not in CATEGORIES or to_category not in CATEGORIES:
            raise InvalidTransferError(
                f"Categories must be one of {', '.join(CATEGORIES)}", code="INVALID_CATEGORY"
            )
        if from_category == to_category:
            raise InvalidTransferError("Source and destination categories must differ", code="SAME_CATEGORY")
        if amount_cents is None or amount_cents <= 0:
            raise InvalidAmountError(amount_cents)
        if to_category == CATEGORY_CONTINGENCY:
            raise InvalidTransferError(
                "Budget cannot be transferred into the contingency reserve",
                code="CONTINGENCY_TRANSFER_NOT_ALLOWED",
            )

        spent = self.finance_repo.spend_by_category(project.id)
        if from_category == CATEGORY_CONTINGENCY and spent.get(CATEGORY_CONTINGENCY, 0) > 0:
            raise InvalidTransferError(
                "Contingency has already been used and cannot be transferred",
                code="CONTINGENCY_IN_USE",
            )

        budget = self._budget(project)
        budgeted = to_cents(budget.category_amount(from_category))
        available = budgeted - spent.get(from_category, 0)
        if amount_cents > available:
            raise InsufficientCategoryBalanceError(from_category, amount_cents, max(0, available))

        if from_category == CATEGORY_DCC:
            new_dcc = budgeted - amount_cents
            allocated = self.phase_repo.total_allocated(project.id)
            if allocated > new_dcc:
                raise DCCCeilingExceededError(allocated, new_dcc, max(0, new_dcc))
        return budget

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def request_transfer(
        self,
        project_id: int,
        from_category: str,
        to_category: str,
        amount_cents: int,
        requested_by: str,
        reason: Optional[str] = None,
    ) -> BudgetTransfer:
        """
        Record a pending transfer after checking the transfer rules.

        Raises:
            ProjectNotFoundError: If project doesn't exist
            InvalidTransferError: If a transfer rule is broken
        """
        project = self.project_repo.get_or_raise(project_id)
        self.validate_transfer(project, from_category, to_category, amount_cents)

        transfer = self.transfer_repo.add(BudgetTransfer(
            project_id=project.id,
            from_category=from_category,
            to_category=to_category,
            amount_cents=amount_cents,
            reason=reason,
            status=TransferStatus.PENDING.value,
            requested_by=requested_by,
        ))
        self.session.commit()

        logger.info(
            f"Budget transfer {transfer.id} requested on project {project.id}: "
            f"{amount_cents} cents {from_category} -> {to_category}"
        )
        self.audit.record(
            requested_by, "BUDGET_TRANSFER_REQUESTED", "budget_transfer", transfer.id,
            {"from": from_category, "to": to_category, "amount": amount_cents},
            project_id=project.id,
        )
        return transfer

    def approve_transfer(self, transfer_id: int, approver_id: str, notes: Optional[str] = None) -> BudgetTransfer:
        """
        Approve a pending transfer and move the amount between categories.

        The transfer is claimed with a conditional UPDATE on its pending
        status, and the budget is written only if its version is still the
        one the rules were checked against. Either guard failing rolls the
        whole approval back.

        Raises:
            BudgetTransferNotFoundError: If the transfer doesn't exist
            TransferNotPendingError: If it was already decided
            InvalidTransferError: If the transfer no longer satisfies the rules
            ConcurrencyError: If the budget changed while the approval was checked
        """
        transfer = self.transfer_repo.get_or_raise(transfer_id)
        if transfer.status != TransferStatus.PENDING.value:
            raise TransferNotPendingError(transfer.id, transfer.status)

        project = self.project_repo.get_or_raise(transfer.project_id)
        project_id = project.id
        version = project.budget_version
        old_budget = project.budget
        budget = self.validate_transfer(
            project, transfer.from_category, transfer.to_category, transfer.amount_cents
        )
        amount = from_cents(transfer.amount_cents)
        updated = budget.with_category_amount(
            transfer.from_category, budget.category_amount(transfer.from_category) - amount
        )
        updated = updated.with_category_amount(
            transfer.to_category, updated.category_amount(transfer.to_category) + amount
        )
        new_budget = updated.to_dict()

        self._claim(transfer_id, TransferStatus.APPROVED.value, approver_id, notes)
        if not self.project_repo.replace_budget_if_current(project_id, version, new_budget):
            self.session.rollback()
            logger.warning(
                f"Budget transfer {transfer_id} not approved: project {project_id} "
                f"budget changed since version {version}"
            )
            raise ConcurrencyError("project", project_id)
        self.session.commit()

        logger.info(f"Budget transfer {transfer_id} approved by {approver_id}")
        self.audit.record(
            approver_id, "BUDGET_TRANSFER_APPROVED", "budget_transfer", transfer_id,
            {"budget": {"old": old_budget, "new": new_budget}, "notes": notes},
            project_id=project_id,
        )
        return self.transfer_repo.get_or_raise(transfer_id)

    def reject_transfer(self, transfer_id: int, approver_id: str, notes: Optional[str] = None) -> BudgetTransfer:
        """
        Reject a pending transfer; the budget is left unchanged.

        Raises:
            BudgetTransferNotFoundError: If the transfer doesn't exist
            TransferNotPendingError: If it was already decided
        """
        transfer = self.transfer_repo.get_or_raise(transfer_id)
        if transfer.status != TransferStatus.PENDING.value:
            raise TransferNotPendingError(transfer.id, transfer.status)
        project_id = transfer.project_id

        self._claim(transfer_id, TransferStatus.REJECTED.value, approver_id, notes)
        self.session.commit()

        logger.info(f"Budget transfer {transfer_id} rejected by {approver_id}")
        self.audit.record(
            approver_id, "BUDGET_TRANSFER_REJECTED", "budget_transfer", transfer_id,
            {"notes": notes}, project_id=project_id,
        )
        return self.transfer_repo.get_or_raise(transfer_id)

    def _claim(self, transfer_id: int, status: str, approver_id: str, notes: Optional[str]) -> None:
        """Decide the transfer, or raise with the status a competing decision left."""
        if self.transfer_repo.claim_decision(transfer_id, status, approver_id, notes, utcnow()):
            return
        self.session.rollback()
        current = self.transfer_repo.get_or_raise(transfer_id)
        logger.warning(f"Budget transfer {transfer_id} was decided concurrently ({current.status})")
        raise TransferNotPendingError(transfer_id, current.status)

    def list_transfers(self, project_id: int, status: Optional[str] = None) -> List[BudgetTransfer]:
        self.project_repo.get_or_raise(project_id)
        return self.transfer_repo.list_for_project(project_id, status)
