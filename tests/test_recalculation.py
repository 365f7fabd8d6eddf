"""
Tests for the recalculation cascade.

Tests:
- Ledger snapshot from source records (loans drawn before equity)
- Phase committed cost and actual spend
- Idempotence and drift repair
- Background dispatcher: coalescing, failure isolation, periodic sweep
"""
import logging
import uuid

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from buildledger.models import (
    Base, ProjectFinance, Phase, Investor, ProjectStatus, enable_sqlite_savepoints,
)
from buildledger.domain.events import RecalculationDispatcher
from buildledger.domain.exceptions import ProjectNotFoundError
from buildledger.domain.services import FinancialRecalculationService
from conftest import (
    make_project, make_phase, fund_project, add_spend, make_order, make_bulk_order, make_material_request,
)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def project(db):
    return make_project(db)


@pytest.fixture
def service(db):
    return FinancialRecalculationService(db)


@pytest.fixture
def file_session_factory(tmp_path):
    """Thread-safe file database for the background dispatcher."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'ledger.db'}",
        connect_args={"check_same_thread": False},
    )
    enable_sqlite_savepoints(engine)
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False)
    engine.dispose()


@pytest.fixture
def recalc_dispatcher(file_session_factory):
    dispatcher = RecalculationDispatcher(session_factory=file_session_factory, max_workers=2)
    yield dispatcher
    dispatcher.shutdown(wait=True)


# =============================================================================
# Ledger snapshot
# =============================================================================

class TestProjectSnapshot:

    def test_loans_are_drawn_before_equity(self, db, project, service):
        fund_project(db, project, equity_cents=70000, loan_cents=30000)
        add_spend(db, project, materials_cents=50000)

        snapshot = service.compute_project_snapshot(project.id)

        assert snapshot["total_invested_cents"] == 100000
        assert snapshot["capital_balance_cents"] == 50000
        assert snapshot["loans_balance_cents"] == 0
        assert snapshot["equity_balance_cents"] == 50000

    def test_inactive_investors_excluded(self, db, project, service):
        investor = fund_project(db, project, equity_cents=70000)
        fund_project(db, project, loan_cents=5000, investor_name="Quay Bank")
        investor.status = "withdrawn"
        db.commit()

        snapshot = service.compute_project_snapshot(project.id)

        assert snapshot["total_invested_cents"] == 5000
        assert snapshot["investor_count"] == 1

    def test_committed_counts_committed_orders_only(self, db, project, service):
        make_order(db, project, token="a", status="order_accepted",
                   financial_status="committed", committed_cost_cents=4000)
        make_order(db, project, token="b")

        assert service.compute_project_snapshot(project.id)["committed_cost_cents"] == 4000

    def test_estimated_cost_from_approved_requests(self, db, project, service):
        make_material_request(db, project, estimated_cents=1200)
        pending = make_material_request(db, project, estimated_cents=900)
        pending.status = "draft"
        db.commit()

        assert service.compute_project_snapshot(project.id)["estimated_cost_cents"] == 1200


class TestRecalculateProjectFinances:

    def test_repairs_drifted_committed_cost(self, db, project, service):
        make_order(db, project, token="a", status="order_accepted",
                   financial_status="committed", committed_cost_cents=4000)
        finance = service.recalculate_project_finances(project.id)
        finance.committed_cost_cents = 999999
        db.commit()

        finance = service.recalculate_project_finances(project.id)
        db.commit()

        assert finance.committed_cost_cents == 4000

    def test_idempotent(self, db, project, service):
        fund_project(db, project, equity_cents=100000)
        add_spend(db, project, materials_cents=2500, labour_cents=500)

        first = dict(service.compute_project_snapshot(project.id))
        service.recalculate_project_finances(project.id)
        db.commit()
        service.recalculate_project_finances(project.id)
        db.commit()

        finance = db.query(ProjectFinance).filter(ProjectFinance.project_id == project.id).one()
        assert db.query(ProjectFinance).count() == 1
        for key, value in first.items():
            assert getattr(finance, key) == value

    def test_unknown_project(self, service):
        with pytest.raises(ProjectNotFoundError):
            service.recalculate_project_finances(4242)


class TestPhaseFinancials:

    def test_phase_totals(self, db, project, service):
        phase = make_phase(db, project)
        add_spend(db, project, materials_cents=1000, labour_cents=500, phase=phase)
        add_spend(db, project, expense_cents=700, phase=phase, expense_category="indirect")
        make_order(db, project, token="a", phase=phase, status="order_accepted",
                   financial_status="committed", committed_cost_cents=3000)

        changed = service.recalculate_phase_financials(project.id)
        db.commit()

        stored = db.query(Phase).filter(Phase.id == phase.id).populate_existing().one()
        assert changed == 1
        assert stored.committed_cost_cents == 3000
        # Indirect expenses are not charged to a phase
        assert stored.actual_spend_cents == 1500
        assert stored.remaining_cents == stored.allocated_budget_cents - 4500

    def test_bulk_lines_attributed_to_line_phase(self, db, project, service):
        foundation = make_phase(db, project, name="Foundation")
        framing = make_phase(db, project, name="Framing", sequence=1)
        order = make_bulk_order(db, project, [
            {"materialRequestId": 1, "unitCost": 100, "quantity": 10, "phaseId": framing.id},
            {"materialRequestId": 2, "unitCost": 100, "quantity": 5},
            {"materialRequestId": 3, "unitCost": 100, "quantity": 7},
        ], phase=foundation)
        materials = [dict(line) for line in order.materials]
        materials[0]["status"] = "accepted"
        materials[1]["status"] = "accepted"
        materials[2]["status"] = "rejected"
        order.materials = materials
        order.financial_status = "committed"
        order.committed_cost_cents = 1500
        db.commit()

        service.recalculate_phase_financials(project.id)
        db.commit()

        phases = {p.id: p for p in db.query(Phase).populate_existing().all()}
        assert phases[framing.id].committed_cost_cents == 1000
        assert phases[foundation.id].committed_cost_cents == 500

    def test_unchanged_phases_not_rewritten(self, db, project, service):
        make_phase(db, project)
        assert service.recalculate_phase_financials(project.id) == 0


# =============================================================================
# Background dispatcher
# =============================================================================

def _seed_project(session_factory, status=ProjectStatus.ACTIVE.value):
    session = session_factory()
    try:
        project = make_project(session, code=f"BG-{uuid.uuid4().hex[:6]}", status=status)
        fund_project(session, project, equity_cents=50000)
        add_spend(session, project, materials_cents=12000)
        return project.id
    finally:
        session.close()


def _finance(session_factory, project_id):
    session = session_factory()
    try:
        return session.query(ProjectFinance).filter(ProjectFinance.project_id == project_id).one_or_none()
    finally:
        session.close()


class TestRecalculationDispatcher:

    def test_dispatch_recalculates_in_background(self, file_session_factory, recalc_dispatcher):
        project_id = _seed_project(file_session_factory)

        recalc_dispatcher.dispatch(project_id)

        assert recalc_dispatcher.wait_idle(timeout=10) is True
        finance = _finance(file_session_factory, project_id)
        assert finance.total_invested_cents == 50000
        assert finance.total_used_cents == 12000

    def test_repeated_dispatches_coalesce(self, file_session_factory, recalc_dispatcher):
        project_id = _seed_project(file_session_factory)

        for _ in range(20):
            recalc_dispatcher.dispatch(project_id)

        assert recalc_dispatcher.wait_idle(timeout=10) is True
        assert recalc_dispatcher.is_running(project_id) is False
        assert _finance(file_session_factory, project_id).total_used_cents == 12000

    def test_failures_are_logged_not_raised(self, recalc_dispatcher, caplog):
        with caplog.at_level(logging.ERROR):
            recalc_dispatcher.dispatch(123456)
            assert recalc_dispatcher.wait_idle(timeout=10) is True

        assert "Background recalculation failed for project 123456" in caplog.text

    def test_sweep_skips_archived_projects(self, file_session_factory, recalc_dispatcher):
        active_id = _seed_project(file_session_factory)
        archived_id = _seed_project(file_session_factory, status=ProjectStatus.ARCHIVED.value)

        assert recalc_dispatcher.sweep() == 1
        recalc_dispatcher.wait_idle(timeout=10)

        assert _finance(file_session_factory, active_id) is not None
        assert _finance(file_session_factory, archived_id) is None

    def test_closed_dispatcher_drops_requests(self, file_session_factory):
        dispatcher = RecalculationDispatcher(session_factory=file_session_factory, max_workers=1)
        dispatcher.shutdown()
        project_id = _seed_project(file_session_factory)

        dispatcher.dispatch(project_id)

        assert dispatcher.is_running(project_id) is False
        assert _finance(file_session_factory, project_id) is None

    def test_sweep_job_is_scheduled(self, recalc_dispatcher):
        scheduler = recalc_dispatcher.start_sweep(interval_minutes=15)

        job = scheduler.get_job("ledger_sweep")
        assert job is not None
        assert recalc_dispatcher.start_sweep(interval_minutes=15) is scheduler
