"""
Capital Ledger Service - Capital availability against used and committed cost.

The ledger entry is a materialized view. Reads used for capital decisions
go through a freshness check (recompute when missing or older than the
staleness window), and committed cost only ever moves through atomic
single-statement increments.
"""
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from buildledger.config import get_config
from buildledger.models import ProjectFinance, utcnow
from buildledger.infrastructure.repositories import ProjectFinanceRepository, ProjectRepository
from buildledger.domain.exceptions import InvalidAmountError
from .recalculation_service import FinancialRecalculationService

logger = logging.getLogger(__name__)

OP_ADD = "add"
OP_SUBTRACT = "subtract"


@dataclass
class CapitalAvailability:
    """Result of a capital availability check (all amounts in cents)."""
    is_valid: bool
    required_cents: int
    available_cents: int
    capital_not_set: bool = False
    shortfall_cents: int = 0
    total_invested_cents: int = 0
    total_used_cents: int = 0
    committed_cost_cents: int = 0
    message: Optional[str] = None


@dataclass
class CapitalRemovalCheck:
    is_valid: bool
    amount_cents: int
    removable_cents: int
    message: Optional[str] = None


class CapitalLedgerService:
    """
    Service for the per-project capital ledger.

    available = max(0, total_invested - total_used - committed_cost)
    """

    def __init__(self, session: Session, max_age_seconds: Optional[int] = None):
        self.session = session
        self.finance_repo = ProjectFinanceRepository(session)
        self.project_repo = ProjectRepository(session)
        self.recalculation = FinancialRecalculationService(session)
        if max_age_seconds is None:
            max_age_seconds = get_config().ledger_max_age_seconds
        self.max_age = timedelta(seconds=max_age_seconds)

    # =========================================================================
    # Reads
    # =========================================================================

    def _is_stale(self, finance: ProjectFinance) -> bool:
        if finance.last_recalculated_at is None:
            return True
        return utcnow() - finance.last_recalculated_at > self.max_age

    def get_project_finances(self, project_id: int) -> ProjectFinance:
        """
        Get the ledger entry, creating or refreshing it when needed.

        A failed refresh of an existing entry falls back to the cached
        values; a failed creation propagates.

        Raises:
            ProjectNotFoundError: If project doesn't exist
        """
        self.session.flush()
        finance = self.finance_repo.get_for_project(project_id, fresh=True)
        if finance is not None and not self._is_stale(finance):
            return finance

        if finance is None:
            self.project_repo.get_or_raise(project_id)
            logger.info(f"Creating capital ledger for project {project_id}")
            return self.recalculation.recalculate_project_finances(project_id)

        try:
            with self.session.begin_nested():
                return self.recalculation.recalculate_project_finances(project_id)
        except SQLAlchemyError:
            logger.exception(f"Ledger refresh failed for project {project_id}; using cached values")
            return self.finance_repo.get_for_project(project_id, fresh=True)

    def get_current_total_used(self, project_id: int) -> int:
        """Actual spend recomputed directly from materials, expenses and labour."""
        return self.finance_repo.total_used(project_id)

    # =========================================================================
    # Capital checks
    # =========================================================================

    def validate_capital_availability(self, project_id: int, required_cents: int) -> CapitalAvailability:
        """
        Check whether invested capital covers a new commitment.

        When no capital has been invested the check passes with
        capital_not_set, so spending is tracked without being capped.

        Args:
            project_id: Project identifier
            required_cents: Amount about to be committed

        Returns:
            CapitalAvailability result
        """
        if required_cents is None or required_cents <= 0:
            return CapitalAvailability(
                is_valid=False,
                required_cents=required_cents or 0,
                available_cents=0,
                message="Invalid amount",
            )

        finance = self.get_project_finances(project_id)
        invested = finance.total_invested_cents
        used = finance.total_used_cents
        committed = finance.committed_cost_cents
        available = max(0, invested - used - committed)

        if invested <= 0:
            logger.warning(f"Project {project_id} has no invested capital; spend is tracked but not capped")
            return CapitalAvailability(
                is_valid=True,
                required_cents=required_cents,
                available_cents=available,
                capital_not_set=True,
                total_invested_cents=invested,
                total_used_cents=used,
                committed_cost_cents=committed,
                message="Capital not set for this project; spending is not validated against capital",
            )

        if available < required_cents:
            shortfall = required_cents - available
            return CapitalAvailability(
                is_valid=False,
                required_cents=required_cents,
                available_cents=available,
                shortfall_cents=shortfall,
                total_invested_cents=invested,
                total_used_cents=used,
                committed_cost_cents=committed,
                message=(
                    f"Insufficient capital. Available: {available:,} cents, "
                    f"required: {required_cents:,} cents, shortfall: {shortfall:,} cents"
                ),
            )

        return CapitalAvailability(
            is_valid=True,
            required_cents=required_cents,
            available_cents=available,
            total_invested_cents=invested,
            total_used_cents=used,
            committed_cost_cents=committed,
        )

    def validate_capital_removal(self, project_id: int, amount_cents: int) -> CapitalRemovalCheck:
        """
        Check whether capital can be withdrawn without uncovering spend.

        Capital backing used and committed cost cannot be removed.
        """
        if amount_cents is None or amount_cents <= 0:
            return CapitalRemovalCheck(False, amount_cents or 0, 0, "Invalid amount")

        finance = self.get_project_finances(project_id)
        removable = max(
            0,
            finance.total_invested_cents - finance.total_used_cents - finance.committed_cost_cents,
        )
        if amount_cents > removable:
            return CapitalRemovalCheck(
                is_valid=False,
                amount_cents=amount_cents,
                removable_cents=removable,
                message=(
                    f"Cannot remove {amount_cents:,} cents. Only {removable:,} cents is not "
                    f"backing used or committed cost"
                ),
            )
        return CapitalRemovalCheck(True, amount_cents, removable)

    # =========================================================================
    # Committed cost updates
    # =========================================================================

    def update_committed_cost(self, project_id: int, amount_cents: int, op: str = OP_ADD) -> bool:
        """
        Atomically add to or subtract from the ledger's committed cost.

        Storage failures are logged and reported as False; the next
        recalculation restores the correct value.

        Raises:
            InvalidAmountError: If amount is not positive
            ValueError: If op is not 'add' or 'subtract'
        """
        if amount_cents is None or amount_cents <= 0:
            raise InvalidAmountError(amount_cents)
        if op not in (OP_ADD, OP_SUBTRACT):
            raise ValueError(f"Unknown committed cost operation '{op}'")

        try:
            with self.session.begin_nested():
                if self.finance_repo.get_for_project(project_id) is None:
                    self.get_project_finances(project_id)
                if op == OP_ADD:
                    rows = self.finance_repo.increment_committed(project_id, amount_cents)
                else:
                    rows = self.finance_repo.decrement_committed(project_id, amount_cents)
        except SQLAlchemyError:
            logger.exception(f"Committed cost {op} of {amount_cents} failed for project {project_id}")
            return False

        logger.info(f"Committed cost {op} {amount_cents} cents for project {project_id}")
        return rows == 1

    def try_commit(self, project_id: int, amount_cents: int) -> bool:
        """
        Increment committed cost only if capital still covers it.

        The check and the increment are the same UPDATE statement, so two
        concurrent commitments cannot both pass against the same balance.
        The ledger entry must already exist.

        Returns:
            True if the commitment was recorded
        """
        if amount_cents <= 0:
            raise InvalidAmountError(amount_cents)
        return self.finance_repo.try_increment_committed(project_id, amount_cents)
