"""
Tests for the Purchase Order settlement state machine.

Tests:
- Accept: unit cost resolution, committed cost, capital checks
- Single-use response tokens (used, expired, invalid, wrong status)
- Reject: required notes, retry assessment, reassignment flags
- Modify: proposal stored for buyer approval
- Token (re)issue
"""
import pytest
from datetime import timedelta

from buildledger.models import (
    PurchaseOrder, ProjectFinance, Phase, MaterialRequest, OrderStatus, FinancialStatus, utcnow,
)
from buildledger.domain.entities.purchase_order import MaterialDecision, SupplierAction, SupplierResponse
from buildledger.domain.exceptions import OrderNotRespondableError, PurchaseOrderNotFoundError
from buildledger.domain.services import CapitalAvailability, CapitalLedgerService, PurchaseOrderSettlementService
from buildledger.infrastructure.repositories import PurchaseOrderRepository
from conftest import (
    make_project, make_phase, make_order, make_bulk_order, make_material_request, fund_project,
)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def project(db):
    return make_project(db)


@pytest.fixture
def service(db, dispatcher, audit_sink, notification_sink):
    return PurchaseOrderSettlementService(
        db,
        dispatcher=dispatcher,
        audit_sink=audit_sink,
        notification_sink=notification_sink,
        line_tolerance_cents=1,
    )


def accept(token="tok-123", **kwargs):
    return SupplierResponse(action=SupplierAction.ACCEPT, token=token, **kwargs)


def reject(token="tok-123", **kwargs):
    return SupplierResponse(action=SupplierAction.REJECT, token=token, **kwargs)


def modify(token="tok-123", **kwargs):
    return SupplierResponse(action=SupplierAction.MODIFY, token=token, **kwargs)


def reload_order(db, order_id):
    return db.query(PurchaseOrder).filter(PurchaseOrder.id == order_id).populate_existing().one()


def committed_on_ledger(db, project):
    finance = db.query(ProjectFinance).filter(
        ProjectFinance.project_id == project.id
    ).populate_existing().one_or_none()
    return finance.committed_cost_cents if finance else 0


# =============================================================================
# Accept
# =============================================================================

class TestAccept:

    def test_accept_with_unit_cost_override(self, db, project, service, dispatcher):
        """An order without a stored unit cost settles at the supplier's price."""
        order = make_order(db, project, quantity=10, unit_cost_cents=None)

        result = service.process_supplier_response(order.id, accept(unit_cost_cents=2500))

        assert result.success is True
        assert result.status == OrderStatus.ORDER_ACCEPTED.value
        assert result.total_cost_cents == 25000
        assert result.committed_cents == 25000

        stored = reload_order(db, order.id)
        assert stored.status == OrderStatus.ORDER_ACCEPTED.value
        assert stored.financial_status == FinancialStatus.COMMITTED.value
        assert stored.unit_cost_cents == 2500
        assert stored.total_cost_cents == 25000
        assert stored.committed_cost_cents == 25000
        assert stored.response_token_used_at is not None
        assert committed_on_ledger(db, project) == 25000
        assert dispatcher.dispatched == [project.id]

    def test_accept_uses_stored_unit_cost(self, db, project, service):
        order = make_order(db, project, quantity=4, unit_cost_cents=1250)

        result = service.process_supplier_response(order.id, accept())

        assert result.success is True
        assert result.total_cost_cents == 5000

    def test_accept_without_any_unit_cost(self, db, project, service):
        order = make_order(db, project, unit_cost_cents=None)

        result = service.process_supplier_response(order.id, accept())

        assert result.success is False
        assert result.error_code == "UNIT_COST_REQUIRED"
        assert reload_order(db, order.id).status == OrderStatus.ORDER_SENT.value

    def test_non_positive_override_rejected(self, db, project, service):
        order = make_order(db, project)

        result = service.process_supplier_response(order.id, accept(unit_cost_cents=0))

        assert result.success is False
        assert result.error_code == "INVALID_UNIT_COST"

    def test_accept_commits_to_phase(self, db, project, service):
        phase = make_phase(db, project)
        order = make_order(db, project, phase=phase, quantity=2, unit_cost_cents=5000)

        service.process_supplier_response(order.id, accept())

        stored = db.query(Phase).filter(Phase.id == phase.id).populate_existing().one()
        assert stored.committed_cost_cents == 10000

    def test_side_effects_after_commit(self, db, project, service, audit_sink, notification_sink):
        order = make_order(db, project, created_by="buyer-7")

        service.process_supplier_response(order.id, accept())

        assert audit_sink.actions() == ["PO_ACCEPTED"]
        assert audit_sink.entries[0]["changes"]["committedCost"] == 25000
        assert notification_sink.sent[0]["user_id"] == "buyer-7"
        assert notification_sink.sent[0]["context"]["status"] == OrderStatus.ORDER_ACCEPTED.value

    def test_unknown_order(self, service):
        result = service.process_supplier_response(9999, accept())

        assert result.success is False
        assert result.error_code == "ORDER_NOT_FOUND"


# =============================================================================
# Capital
# =============================================================================

class TestCapital:

    def test_insufficient_capital(self, db, project, service, dispatcher):
        """Invested 10,000 cannot cover an order of 15,000."""
        fund_project(db, project, equity_cents=10000)
        order = make_order(db, project, quantity=10, unit_cost_cents=1500)

        result = service.process_supplier_response(order.id, accept())

        assert result.success is False
        assert result.error_code == "INSUFFICIENT_CAPITAL"
        assert result.shortfall_cents == 5000
        assert result.available_cents == 10000

        stored = reload_order(db, order.id)
        assert stored.status == OrderStatus.ORDER_SENT.value
        assert stored.response_token_used_at is None
        assert committed_on_ledger(db, project) == 0
        assert dispatcher.dispatched == []

    def test_capital_not_set_is_a_warning(self, db, project, service):
        order = make_order(db, project, quantity=10, unit_cost_cents=1500)

        result = service.process_supplier_response(order.id, accept())

        assert result.success is True
        assert result.capital_not_set is True
        assert result.warnings

    def test_second_order_sees_first_commitment(self, db, project, service):
        fund_project(db, project, equity_cents=10000)
        first = make_order(db, project, token="first", quantity=1, unit_cost_cents=8000)
        second = make_order(db, project, token="second", quantity=1, unit_cost_cents=8000)

        assert service.process_supplier_response(first.id, accept(token="first")).success is True
        result = service.process_supplier_response(second.id, accept(token="second"))

        assert result.error_code == "INSUFFICIENT_CAPITAL"
        assert result.available_cents == 2000
        assert committed_on_ledger(db, project) == 8000

    def test_guarded_increment_catches_stale_check(self, db, project, service, monkeypatch):
        """If capital is committed between the check and the write, the write refuses."""
        fund_project(db, project, equity_cents=10000)
        ledger = CapitalLedgerService(db, max_age_seconds=300)
        ledger.get_project_finances(project.id)
        ledger.update_committed_cost(project.id, 8000)
        db.commit()
        order = make_order(db, project, quantity=1, unit_cost_cents=5000)

        monkeypatch.setattr(
            service.ledger,
            "validate_capital_availability",
            lambda project_id, amount: CapitalAvailability(True, amount, 10000),
        )
        result = service.process_supplier_response(order.id, accept())

        assert result.error_code == "INSUFFICIENT_CAPITAL"
        assert result.shortfall_cents == 3000
        stored = reload_order(db, order.id)
        assert stored.status == OrderStatus.ORDER_SENT.value
        assert stored.response_token_used_at is None
        assert committed_on_ledger(db, project) == 8000


# =============================================================================
# Response token
# =============================================================================

class TestResponseToken:

    def test_token_is_single_use(self, db, project, service, dispatcher):
        """Accepting twice with the same token commits exactly once."""
        order = make_order(db, project)

        first = service.process_supplier_response(order.id, accept())
        second = service.process_supplier_response(order.id, accept())

        assert first.success is True
        assert second.success is False
        assert second.error_code == "TOKEN_ALREADY_USED"
        assert committed_on_ledger(db, project) == 25000
        assert dispatcher.dispatched == [project.id]

    def test_expired_token(self, db, project, service):
        order = make_order(db, project, expires_in=timedelta(hours=-1))

        result = service.process_supplier_response(order.id, accept())

        assert result.error_code == "TOKEN_EXPIRED"
        assert reload_order(db, order.id).status == OrderStatus.ORDER_SENT.value

    def test_token_without_expiry(self, db, project, service):
        order = make_order(db, project, expires_in=None)

        assert service.process_supplier_response(order.id, accept()).success is True

    def test_wrong_token(self, db, project, service):
        order = make_order(db, project)

        result = service.process_supplier_response(order.id, accept(token="guess"))

        assert result.error_code == "INVALID_TOKEN"

    def test_settled_order_not_respondable(self, db, project, service):
        order = make_order(db, project, status=OrderStatus.ORDER_REJECTED.value)

        result = service.process_supplier_response(order.id, accept())

        assert result.error_code == "INVALID_ORDER_STATUS"

    def test_claim_is_conditional(self, db, project):
        """Only the first conditional claim on a token matches a row."""
        order = make_order(db, project)
        repo = PurchaseOrderRepository(db)
        values = {"status": OrderStatus.ORDER_ACCEPTED.value}

        now = utcnow()
        assert repo.claim_response(order.id, "tok-123", now, values) is True
        assert repo.claim_response(order.id, "tok-123", now, values) is False


# =============================================================================
# Reject
# =============================================================================

class TestReject:

    def test_reject_requires_notes(self, db, project, service, audit_sink):
        order = make_order(db, project)

        result = service.process_supplier_response(order.id, reject(supplier_notes="   "))

        assert result.success is False
        assert result.error_code == "REJECTION_NOTE_REQUIRED"
        stored = reload_order(db, order.id)
        assert stored.status == OrderStatus.ORDER_SENT.value
        assert stored.response_token_used_at is None
        assert audit_sink.entries == []

    def test_retryable_rejection_flags_request(self, db, project, service, dispatcher):
        request = make_material_request(db, project)
        order = make_order(db, project, material_request_id=request.id)

        result = service.process_supplier_response(order.id, reject(
            supplier_notes="Steel prices went up",
            rejection_reason="price_too_high",
            rejection_subcategory="material_costs_increased",
        ))

        assert result.success is True
        assert result.status == OrderStatus.ORDER_REJECTED.value
        assert result.is_retryable is True
        assert result.needs_reassignment is True

        stored = reload_order(db, order.id)
        assert stored.rejection_reason == "price_too_high"
        assert stored.financial_status == FinancialStatus.UNCOMMITTED.value
        flagged = db.query(MaterialRequest).filter(MaterialRequest.id == request.id).populate_existing().one()
        assert flagged.needs_reassignment is True
        # Nothing was committed, so no recalculation is needed
        assert dispatcher.dispatched == []

    def test_non_retryable_rejection(self, db, project, service):
        request = make_material_request(db, project)
        order = make_order(db, project, material_request_id=request.id)

        result = service.process_supplier_response(order.id, reject(
            supplier_notes="Discontinued", rejection_reason="unavailable",
        ))

        assert result.is_retryable is False
        flagged = db.query(MaterialRequest).filter(MaterialRequest.id == request.id).populate_existing().one()
        assert flagged.needs_reassignment is False

    def test_unknown_reason(self, db, project, service):
        order = make_order(db, project)

        result = service.process_supplier_response(order.id, reject(
            supplier_notes="No", rejection_reason="mood",
        ))

        assert result.error_code == "INVALID_REJECTION_REASON"


# =============================================================================
# Modify
# =============================================================================

class TestModify:

    def test_modification_awaits_buyer(self, db, project, service, dispatcher):
        order = make_order(db, project, quantity=10, unit_cost_cents=2500)

        result = service.process_supplier_response(order.id, modify(quantity=12, supplier_notes="Pallet size"))

        assert result.success is True
        assert result.status == OrderStatus.ORDER_MODIFIED.value
        assert result.total_cost_cents == 30000

        stored = reload_order(db, order.id)
        assert stored.status == OrderStatus.ORDER_MODIFIED.value
        assert stored.quantity_ordered == 10
        assert stored.supplier_modifications["quantity"] == 12
        assert stored.supplier_modifications["previous"]["quantity"] == 10
        assert stored.response_token_used_at is not None
        assert committed_on_ledger(db, project) == 0
        assert dispatcher.dispatched == []

    def test_modification_needs_a_change(self, db, project, service):
        order = make_order(db, project)

        result = service.process_supplier_response(order.id, modify(supplier_notes="Hmm"))

        assert result.error_code == "VALIDATION_ERROR"

    def test_modified_order_can_be_resent_and_accepted(self, db, project, service):
        order = make_order(db, project)
        service.process_supplier_response(order.id, modify(delivery_date="2026-12-01"))

        resent = service.issue_response_token(order.id, actor_id="buyer-1")
        result = service.process_supplier_response(order.id, accept(token=resent.response_token))

        assert result.success is True
        assert result.status == OrderStatus.ORDER_ACCEPTED.value


# =============================================================================
# Routing
# =============================================================================

class TestRouting:

    def test_bulk_order_requires_material_responses(self, db, project, service):
        order = make_bulk_order(db, project, [{"materialRequestId": 1, "unitCost": 100, "quantity": 1}])

        result = service.process_supplier_response(order.id, accept(token="bulk-tok"))

        assert result.error_code == "BULK_RESPONSE_REQUIRED"

    def test_material_responses_on_single_order(self, db, project, service):
        order = make_order(db, project)
        response = SupplierResponse(
            action=None, token="tok-123",
            material_responses=[MaterialDecision(material_request_id=1, action=SupplierAction.ACCEPT)],
        )

        result = service.process_supplier_response(order.id, response)

        assert result.error_code == "PARTIAL_RESPONSE_NOT_SUPPORTED"

    def test_missing_action(self, db, project, service):
        order = make_order(db, project)

        result = service.process_supplier_response(order.id, SupplierResponse(action=None, token="tok-123"))

        assert result.error_code == "INVALID_ACTION"


# =============================================================================
# Token issuance
# =============================================================================

class TestIssueResponseToken:

    def test_issue_replaces_token(self, db, project, service, audit_sink):
        order = make_order(db, project)

        issued = service.issue_response_token(order.id, ttl_hours=24, actor_id="buyer-1")

        assert issued.response_token != "tok-123"
        assert issued.response_token_used_at is None
        assert audit_sink.actions() == ["PO_SENT"]
        # The old link stops working
        result = service.process_supplier_response(order.id, accept())
        assert result.error_code == "INVALID_TOKEN"

    def test_settled_order_cannot_be_resent(self, db, project, service):
        order = make_order(db, project, status=OrderStatus.ORDER_ACCEPTED.value)

        with pytest.raises(OrderNotRespondableError):
            service.issue_response_token(order.id)

    def test_unknown_order(self, service):
        with pytest.raises(PurchaseOrderNotFoundError):
            service.issue_response_token(9999)
