"""
Shared fixtures: an in-memory database per test, recording collaborators
and small factories for projects, phases, capital, spend and orders.
"""
import uuid
from datetime import timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from buildledger.models import (
    Base, enable_sqlite_savepoints, utcnow,
    Project, Phase, PurchaseOrder, Investor, InvestorAllocation,
    Material, Expense, LabourEntry, MaterialRequest, OrderStatus,
)
from buildledger.infrastructure.collaborators import AuditSink, NotificationSink


# =============================================================================
# Recording collaborators
# =============================================================================

class RecordingAuditSink(AuditSink):
    def __init__(self):
        self.entries = []

    def _write(self, actor, action, entity_type, entity_id, changes, project_id):
        self.entries.append({
            "actor": actor,
            "action": action,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "changes": changes,
            "project_id": project_id,
        })

    def actions(self):
        return [entry["action"] for entry in self.entries]


class RecordingNotificationSink(NotificationSink):
    def __init__(self):
        self.sent = []

    def _send(self, user_id, title, message, context):
        self.sent.append({"user_id": user_id, "title": title, "message": message, "context": context})


class RecordingDispatcher:
    """Stands in for RecalculationDispatcher where only the request matters."""

    def __init__(self):
        self.dispatched = []

    def dispatch(self, project_id):
        self.dispatched.append(project_id)


# =============================================================================
# Database fixtures
# =============================================================================

@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_savepoints(engine)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def audit_sink():
    return RecordingAuditSink()


@pytest.fixture
def notification_sink():
    return RecordingNotificationSink()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


# =============================================================================
# Factories
# =============================================================================

def enhanced_budget(dcc=800000, pre=50000, indirect=50000, contingency=100000):
    """Enhanced budget document (currency units) whose components add up."""
    return {
        "total": dcc + pre + indirect + contingency,
        "directConstructionCosts": dcc,
        "preConstructionCosts": pre,
        "indirectCosts": indirect,
        "contingencyReserve": contingency,
    }


def make_project(db, budget=None, code=None, **kwargs):
    project = Project(
        uuid=str(uuid.uuid4()),
        name=kwargs.pop("name", "Riverside Apartments"),
        code=code or f"PRJ-{uuid.uuid4().hex[:8]}",
        budget=budget,
        **kwargs,
    )
    db.add(project)
    db.commit()
    return project


def make_phase(db, project, allocated_cents=0, name="Foundation", sequence=0, **kwargs):
    phase = Phase(
        project_id=project.id,
        name=name,
        sequence=sequence,
        allocated_budget_cents=allocated_cents,
        **kwargs,
    )
    db.add(phase)
    db.commit()
    return phase


def fund_project(db, project, equity_cents=0, loan_cents=0, investor_name="Harbor Capital"):
    investor = Investor(name=investor_name)
    db.add(investor)
    db.flush()
    if equity_cents:
        db.add(InvestorAllocation(
            investor_id=investor.id, project_id=project.id,
            amount_cents=equity_cents, investment_type="equity",
        ))
    if loan_cents:
        db.add(InvestorAllocation(
            investor_id=investor.id, project_id=project.id,
            amount_cents=loan_cents, investment_type="loan",
        ))
    db.commit()
    return investor


def add_spend(db, project, materials_cents=0, expense_cents=0, labour_cents=0,
              phase=None, expense_category="dcc"):
    phase_id = phase.id if phase else None
    if materials_cents:
        db.add(Material(project_id=project.id, phase_id=phase_id, name="Rebar",
                        total_cost_cents=materials_cents, status="approved"))
    if expense_cents:
        db.add(Expense(project_id=project.id, phase_id=phase_id, amount_cents=expense_cents,
                       cost_category=expense_category, status="paid"))
    if labour_cents:
        db.add(LabourEntry(project_id=project.id, phase_id=phase_id,
                           total_cost_cents=labour_cents, status="approved"))
    db.commit()


def make_material_request(db, project, name="Cement", phase=None, estimated_cents=0):
    request = MaterialRequest(
        project_id=project.id,
        phase_id=phase.id if phase else None,
        material_name=name,
        quantity=1,
        estimated_cost_cents=estimated_cents,
    )
    db.add(request)
    db.commit()
    return request


def make_order(db, project, token="tok-123", phase=None, quantity=10, unit_cost_cents=2500,
               expires_in=timedelta(days=7), status=OrderStatus.ORDER_SENT.value, **kwargs):
    order = PurchaseOrder(
        uuid=str(uuid.uuid4()),
        project_id=project.id,
        phase_id=phase.id if phase else None,
        purchase_order_number=kwargs.pop("purchase_order_number", f"PO-{uuid.uuid4().hex[:6]}"),
        supplier_name=kwargs.pop("supplier_name", "Acme Supply"),
        created_by=kwargs.pop("created_by", "buyer-1"),
        status=status,
        quantity_ordered=quantity,
        unit_cost_cents=unit_cost_cents,
        total_cost_cents=int(quantity * unit_cost_cents) if quantity and unit_cost_cents else 0,
        response_token=token,
        response_token_expires_at=utcnow() + expires_in if expires_in is not None else None,
        **kwargs,
    )
    db.add(order)
    db.commit()
    return order


def make_bulk_order(db, project, lines, token="bulk-tok", phase=None, **kwargs):
    """lines: list of dicts with materialRequestId, unitCost, quantity (and optional phaseId)."""
    materials = []
    for line in lines:
        entry = dict(line)
        entry.setdefault("materialName", f"Material {entry['materialRequestId']}")
        if entry.get("unitCost") and entry.get("quantity"):
            entry.setdefault("totalCost", int(entry["unitCost"] * entry["quantity"]))
        materials.append(entry)
    return make_order(
        db, project, token=token, phase=phase, quantity=None, unit_cost_cents=None,
        is_bulk_order=True, materials=materials, **kwargs,
    )
