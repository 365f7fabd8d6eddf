"""
Database models and SQLAlchemy setup for the construction finance engine.
All monetary values stored as integer cents to avoid float drift.
"""
import os
from datetime import datetime, timezone
from sqlalchemy import (
    create_engine, event, Column, Integer, String, Float, Boolean,
    DateTime, Text, JSON, ForeignKey, UniqueConstraint
)
from sqlalchemy.orm import declarative_base, sessionmaker, relationship
import enum

DATABASE_URL = os.environ.get("BUILDLEDGER_DATABASE_URL", "sqlite:///./buildledger.db")


def enable_sqlite_savepoints(engine):
    """
    Let SQLAlchemy own transaction boundaries on pysqlite so SAVEPOINTs
    (session.begin_nested) roll back correctly.
    """
    @event.listens_for(engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


if DATABASE_URL.startswith("sqlite"):
    engine = enable_sqlite_savepoints(
        create_engine(DATABASE_URL, connect_args={"check_same_thread": False})
    )
else:
    engine = create_engine(DATABASE_URL, pool_pre_ping=True)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class OrderStatus(enum.Enum):
    """Purchase-order settlement states."""
    ORDER_SENT = "order_sent"
    ORDER_MODIFIED = "order_modified"
    ORDER_ACCEPTED = "order_accepted"
    ORDER_REJECTED = "order_rejected"
    ORDER_PARTIALLY_RESPONDED = "order_partially_responded"


# A supplier token may only transition orders in these states
RESPONDABLE_STATUSES = (
    OrderStatus.ORDER_SENT.value,
    OrderStatus.ORDER_MODIFIED.value,
)


class FinancialStatus(enum.Enum):
    UNCOMMITTED = "uncommitted"
    COMMITTED = "committed"


class TransferStatus(enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class BudgetCategory(enum.Enum):
    """Top-level budget categories that transfers and expenses refer to."""
    DCC = "dcc"
    PRECONSTRUCTION = "preconstruction"
    INDIRECT = "indirect"
    CONTINGENCY = "contingency"


class ProjectStatus(enum.Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"


# Source-record statuses that count as spend
MATERIAL_SPEND_STATUSES = ("approved", "received")
EXPENSE_SPEND_STATUSES = ("approved", "paid")
LABOUR_SPEND_STATUSES = ("approved", "paid")


# =============================================================================
# Project
# =============================================================================

class Project(Base):
    """
    Top-level project entity.
    The budget is stored as the enhanced hierarchy document (camelCase keys).
    """
    __tablename__ = "projects"

    id = Column(Integer, primary_key=True, index=True)
    uuid = Column(String(36), unique=True, index=True, nullable=False)  # External UUID
    name = Column(String(200), nullable=False)
    code = Column(String(50), unique=True, index=True, nullable=False)
    status = Column(String(20), default=ProjectStatus.ACTIVE.value, index=True)
    budget = Column(JSON, nullable=True)
    budget_version = Column(Integer, nullable=False, default=0)  # Bumped on every budget write
    created_by = Column(String(64), nullable=True)
    archived_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    phases = relationship("Phase", back_populates="project")
    purchase_orders = relationship("PurchaseOrder", back_populates="project")
    finance = relationship("ProjectFinance", back_populates="project", uselist=False)


# =============================================================================
# Phase (holds a share of the project's Direct Construction Cost)
# =============================================================================

class Phase(Base):
    """
    Construction phase with its budget allocation.
    INVARIANT: Σ(Phase.allocated_budget_cents) <= project DCC
    """
    __tablename__ = "phases"

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey('projects.id'), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    phase_code = Column(String(50), nullable=True)
    sequence = Column(Integer, default=0)
    allocated_budget_cents = Column(Integer, nullable=False, default=0)
    committed_cost_cents = Column(Integer, nullable=False, default=0)
    actual_spend_cents = Column(Integer, nullable=False, default=0)
    deleted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    project = relationship("Project", back_populates="phases")

    @property
    def remaining_cents(self) -> int:
        return self.allocated_budget_cents - self.actual_spend_cents - self.committed_cost_cents


# =============================================================================
# Purchase Order (settled through the supplier response state machine)
# =============================================================================

class PurchaseOrder(Base):
    """
    Order sent to a supplier, transitioned once by a single-use response token.
    Bulk orders carry a materials array of
    {materialRequestId, materialName, phaseId, unitCost, quantity, totalCost}
    with costs in cents.
    """
    __tablename__ = "purchase_orders"

    id = Column(Integer, primary_key=True, index=True)
    uuid = Column(String(36), unique=True, index=True, nullable=False)
    project_id = Column(Integer, ForeignKey('projects.id'), nullable=False, index=True)
    phase_id = Column(Integer, ForeignKey('phases.id'), nullable=True, index=True)
    batch_id = Column(Integer, nullable=True, index=True)
    material_request_id = Column(Integer, ForeignKey('material_requests.id'), nullable=True)
    purchase_order_number = Column(String(50), nullable=False, index=True)
    supplier_name = Column(String(200), nullable=True)
    created_by = Column(String(64), nullable=True)
    status = Column(String(40), nullable=False, default=OrderStatus.ORDER_SENT.value, index=True)
    financial_status = Column(String(20), nullable=False, default=FinancialStatus.UNCOMMITTED.value)
    is_bulk_order = Column(Boolean, default=False)
    materials = Column(JSON, nullable=True)

    quantity_ordered = Column(Float, nullable=True)
    unit_cost_cents = Column(Integer, nullable=True)
    total_cost_cents = Column(Integer, nullable=False, default=0)
    committed_cost_cents = Column(Integer, nullable=False, default=0)
    delivery_date = Column(String(20), nullable=True)

    # Single-use capability token
    response_token = Column(String(128), nullable=True, index=True)
    response_token_expires_at = Column(DateTime, nullable=True)
    response_token_used_at = Column(DateTime, nullable=True)

    # Supplier response
    supplier_response = Column(String(20), nullable=True)  # accept, reject, modify, partial
    supplier_response_at = Column(DateTime, nullable=True)
    supplier_notes = Column(Text, nullable=True)
    supplier_modifications = Column(JSON, nullable=True)
    material_responses = Column(JSON, nullable=True)

    # Rejection assessment
    rejection_reason = Column(String(40), nullable=True)
    rejection_subcategory = Column(String(80), nullable=True)
    is_retryable = Column(Boolean, nullable=True)
    retry_recommendation = Column(String(200), nullable=True)
    retry_confidence = Column(Float, nullable=True)
    needs_reassignment = Column(Boolean, default=False)

    committed_at = Column(DateTime, nullable=True)
    deleted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    project = relationship("Project", back_populates="purchase_orders")


# =============================================================================
# Capital Ledger (materialized view, recomputable from source records)
# =============================================================================

class ProjectFinance(Base):
    """
    Cached per-project capital aggregate.
    capital_balance = total_invested - total_used
    available = max(0, total_invested - total_used - committed_cost)
    """
    __tablename__ = "project_finances"

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey('projects.id'), nullable=False, unique=True, index=True)
    total_invested_cents = Column(Integer, nullable=False, default=0)
    total_loans_cents = Column(Integer, nullable=False, default=0)
    total_equity_cents = Column(Integer, nullable=False, default=0)
    total_used_cents = Column(Integer, nullable=False, default=0)
    committed_cost_cents = Column(Integer, nullable=False, default=0)
    estimated_cost_cents = Column(Integer, nullable=False, default=0)
    capital_balance_cents = Column(Integer, nullable=False, default=0)
    loans_balance_cents = Column(Integer, nullable=False, default=0)
    equity_balance_cents = Column(Integer, nullable=False, default=0)
    investor_count = Column(Integer, nullable=False, default=0)
    last_recalculated_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    project = relationship("Project", back_populates="finance")

    @property
    def available_cents(self) -> int:
        return max(0, self.total_invested_cents - self.total_used_cents - self.committed_cost_cents)


# =============================================================================
# Source records (spend and capital)
# =============================================================================

class Investor(Base):
    __tablename__ = "investors"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False)
    status = Column(String(20), default="active", index=True)
    created_at = Column(DateTime, default=utcnow)

    allocations = relationship("InvestorAllocation", back_populates="investor")


class InvestorAllocation(Base):
    """Capital an investor has committed to a project."""
    __tablename__ = "investor_allocations"

    id = Column(Integer, primary_key=True, index=True)
    investor_id = Column(Integer, ForeignKey('investors.id'), nullable=False, index=True)
    project_id = Column(Integer, ForeignKey('projects.id'), nullable=False, index=True)
    amount_cents = Column(Integer, nullable=False, default=0)
    investment_type = Column(String(10), nullable=False, default="equity")  # equity, loan
    created_at = Column(DateTime, default=utcnow)

    investor = relationship("Investor", back_populates="allocations")

    __table_args__ = (
        UniqueConstraint('investor_id', 'project_id', 'investment_type', name='uq_investor_project_type'),
    )


class MaterialRequest(Base):
    """Request for materials that purchase orders fulfil."""
    __tablename__ = "material_requests"

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey('projects.id'), nullable=False, index=True)
    phase_id = Column(Integer, ForeignKey('phases.id'), nullable=True, index=True)
    material_name = Column(String(200), nullable=False)
    quantity = Column(Float, nullable=False, default=0)
    estimated_cost_cents = Column(Integer, nullable=False, default=0)
    status = Column(String(30), default="approved", index=True)
    needs_reassignment = Column(Boolean, default=False)
    reassignment_reason = Column(String(200), nullable=True)
    reassignment_flagged_at = Column(DateTime, nullable=True)
    deleted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class Material(Base):
    """Material delivered to site; approved/received materials count as spend."""
    __tablename__ = "materials"

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey('projects.id'), nullable=False, index=True)
    phase_id = Column(Integer, ForeignKey('phases.id'), nullable=True, index=True)
    purchase_order_id = Column(Integer, ForeignKey('purchase_orders.id'), nullable=True)
    name = Column(String(200), nullable=False)
    total_cost_cents = Column(Integer, nullable=False, default=0)
    status = Column(String(30), default="pending", index=True)
    deleted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class Expense(Base):
    __tablename__ = "expenses"

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey('projects.id'), nullable=False, index=True)
    phase_id = Column(Integer, ForeignKey('phases.id'), nullable=True, index=True)
    description = Column(String(500), nullable=True)
    amount_cents = Column(Integer, nullable=False, default=0)
    cost_category = Column(String(20), default=BudgetCategory.DCC.value, index=True)
    status = Column(String(30), default="pending", index=True)
    deleted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class LabourEntry(Base):
    __tablename__ = "labour_entries"

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey('projects.id'), nullable=False, index=True)
    phase_id = Column(Integer, ForeignKey('phases.id'), nullable=True, index=True)
    worker_name = Column(String(200), nullable=True)
    total_cost_cents = Column(Integer, nullable=False, default=0)
    status = Column(String(30), default="pending", index=True)
    deleted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)


# =============================================================================
# Budget Transfers
# =============================================================================

class BudgetTransfer(Base):
    """
    Movement of budget between top-level categories.
    INVARIANT: amount_cents <= remaining balance of from_category when approved
    """
    __tablename__ = "budget_transfers"

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey('projects.id'), nullable=False, index=True)
    from_category = Column(String(20), nullable=False)
    to_category = Column(String(20), nullable=False)
    amount_cents = Column(Integer, nullable=False)
    reason = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default=TransferStatus.PENDING.value, index=True)
    requested_by = Column(String(64), nullable=False)
    approved_by = Column(String(64), nullable=True)
    approval_notes = Column(Text, nullable=True)
    decided_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)


# =============================================================================
# Collaborator records
# =============================================================================

class AuditLog(Base):
    """Audit trail of financial mutations with before/after values."""
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    actor = Column(String(64), nullable=True)
    action = Column(String(50), nullable=False, index=True)
    entity_type = Column(String(50), nullable=False, index=True)
    entity_id = Column(String(64), nullable=False, index=True)
    project_id = Column(Integer, nullable=True, index=True)
    changes = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    title = Column(String(200), nullable=False)
    message = Column(Text, nullable=False)
    context = Column(JSON, nullable=True)
    is_read = Column(Boolean, default=False)
    created_at = Column(DateTime, default=utcnow)


class ScheduledReport(Base):
    __tablename__ = "scheduled_reports"

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey('projects.id'), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    cron = Column(String(50), nullable=True)
    created_at = Column(DateTime, default=utcnow)


def init_db():
    """Initialize the database and create all tables."""
    Base.metadata.create_all(bind=engine)


def get_db():
    """Database session dependency for FastAPI."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
