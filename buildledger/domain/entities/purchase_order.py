"""
Purchase Order Entity - Supplier response values and the bulk response plan.

Settling a bulk order is split in two:
1. build_bulk_response_plan() validates every per-material decision and
   produces a plan without touching storage (all-or-nothing)
2. the settlement service applies the plan in a single transaction

Money is integer cents, quantities are floats.
"""
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Dict, List, Optional

from ...models import OrderStatus, RESPONDABLE_STATUSES
from ..exceptions import (
    InvalidResponseTokenError,
    ResponseTokenExpiredError,
    ResponseTokenUsedError,
    OrderNotRespondableError,
    UnitCostRequiredError,
    InvalidUnitCostError,
    InvalidQuantityError,
    InvalidSupplierActionError,
    UnknownMaterialLineError,
    DuplicateMaterialResponseError,
    MissingMaterialResponseError,
    InvalidOrderLinesError,
    InconsistentLineTotalError,
)
from .rejection_reason import assess_rejection


class SupplierAction(str, Enum):
    ACCEPT = "accept"
    REJECT = "reject"
    MODIFY = "modify"

    @classmethod
    def parse(cls, value) -> "SupplierAction":
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise InvalidSupplierActionError(value)


@dataclass
class MaterialDecision:
    """Supplier decision for one line of a bulk order."""

    material_request_id: object
    action: SupplierAction
    unit_cost_cents: Optional[int] = None
    quantity: Optional[float] = None
    notes: Optional[str] = None
    rejection_reason: Optional[str] = None
    rejection_subcategory: Optional[str] = None


@dataclass
class SupplierResponse:
    """A supplier's answer to an order, presented with its response token."""

    action: Optional[SupplierAction]
    token: str
    supplier_notes: Optional[str] = None
    unit_cost_cents: Optional[int] = None
    quantity: Optional[float] = None
    delivery_date: Optional[str] = None
    rejection_reason: Optional[str] = None
    rejection_subcategory: Optional[str] = None
    material_responses: List[MaterialDecision] = field(default_factory=list)


@dataclass
class BulkResponsePlan:
    """Validated outcome of a bulk response, ready to persist."""

    status: str
    materials: List[dict]
    material_responses: List[dict]
    accepted_total_cents: int
    order_total_cents: int
    phase_commitments: Dict[Optional[int], int]
    rejected_material_request_ids: List[object]
    accepted_count: int = 0
    rejected_count: int = 0
    modified_count: int = 0


def generate_response_token() -> str:
    return secrets.token_urlsafe(32)


def line_total_cents(unit_cost_cents: int, quantity: float) -> int:
    """unit cost x quantity, rounded half-up to whole cents."""
    total = Decimal(int(unit_cost_cents)) * Decimal(str(quantity))
    return int(total.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def resolve_unit_cost(override, fallback, subject: str = "order") -> int:
    """
    Resolve the unit cost to settle at.

    An explicit override must be positive; otherwise the stored unit cost
    is used and must be positive.

    Raises:
        InvalidUnitCostError: If the override is zero or negative
        UnitCostRequiredError: If neither value yields a positive cost
    """
    if override is not None:
        if int(override) <= 0:
            raise InvalidUnitCostError(override, subject)
        return int(override)
    if fallback is None or int(fallback) <= 0:
        raise UnitCostRequiredError(subject)
    return int(fallback)


def resolve_quantity(override, fallback, subject: str = "order") -> float:
    if override is not None:
        if float(override) <= 0:
            raise InvalidQuantityError(override, subject)
        return float(override)
    if fallback is None or float(fallback) <= 0:
        raise InvalidQuantityError(fallback, subject)
    return float(fallback)


def check_response_token(order, token: Optional[str], now: datetime) -> None:
    """
    Check every precondition for a supplier transition.

    The token must match, must not have been used, must not be expired,
    and the order must be waiting for a supplier response.
    """
    if not token or not order.response_token or not secrets.compare_digest(
        str(order.response_token), str(token)
    ):
        raise InvalidResponseTokenError(order.id)
    if order.response_token_used_at is not None:
        raise ResponseTokenUsedError(order.id, order.response_token_used_at)
    if order.response_token_expires_at is not None and now > order.response_token_expires_at:
        raise ResponseTokenExpiredError(order.id, order.response_token_expires_at)
    if order.status not in RESPONDABLE_STATUSES:
        raise OrderNotRespondableError(order.id, order.status)


def _line_key(material_request_id) -> str:
    return str(material_request_id)


def _index_lines(materials: Optional[List[dict]]) -> Dict[str, dict]:
    """
    Key order lines by material id.

    Raises:
        InvalidOrderLinesError: If a line has no material id or two lines share one
    """
    lines: Dict[str, dict] = {}
    unidentified = 0
    duplicates = []
    for line in materials or []:
        material_request_id = line.get("materialRequestId")
        if material_request_id is None or str(material_request_id).strip() == "":
            unidentified += 1
            continue
        key = _line_key(material_request_id)
        if key in lines:
            duplicates.append(material_request_id)
            continue
        lines[key] = line

    if unidentified:
        raise InvalidOrderLinesError(f"{unidentified} order line(s) have no material id")
    if duplicates:
        ids = ", ".join(str(m) for m in duplicates)
        raise InvalidOrderLinesError(f"Order lines share material ids: {ids}", duplicates)
    return lines


def build_bulk_response_plan(
    materials: List[dict],
    decisions: List[MaterialDecision],
    default_phase_id: Optional[int] = None,
    tolerance_cents: int = 1,
) -> BulkResponsePlan:
    """
    Validate per-material decisions and derive the rewritten order.

    Every line must receive exactly one decision. Accepted and modified
    lines need a positive unit cost and quantity; rejected lines keep
    their original values and are flagged for reassignment. Nothing is
    persisted here, so any error leaves the order untouched.

    Raises:
        ValidationError subclasses for unidentifiable order lines, unknown,
        duplicate or missing decisions, unresolvable unit costs, bad
        quantities or inconsistent totals
    """
    lines = _index_lines(materials)

    seen: Dict[str, MaterialDecision] = {}
    for decision in decisions:
        key = _line_key(decision.material_request_id)
        if key not in lines:
            raise UnknownMaterialLineError(decision.material_request_id)
        if key in seen:
            raise DuplicateMaterialResponseError(decision.material_request_id)
        seen[key] = decision

    missing = [lines[k].get("materialRequestId") for k in lines if k not in seen]
    if missing:
        raise MissingMaterialResponseError(missing)

    # Validation pass: resolve every cost before producing any output
    resolved = {}
    for key, decision in seen.items():
        line = lines[key]
        if decision.action == SupplierAction.REJECT:
            continue
        subject = f"material '{decision.material_request_id}'"
        unit_cost = resolve_unit_cost(decision.unit_cost_cents, line.get("unitCost"), subject)
        quantity = resolve_quantity(decision.quantity, line.get("quantity"), subject)
        resolved[key] = (unit_cost, quantity, line_total_cents(unit_cost, quantity))

    rewritten: List[dict] = []
    responses: List[dict] = []
    phase_commitments: Dict[Optional[int], int] = {}
    rejected_ids: List[object] = []
    accepted_total = 0
    order_total = 0
    counts = {SupplierAction.ACCEPT: 0, SupplierAction.REJECT: 0, SupplierAction.MODIFY: 0}

    for key, line in lines.items():
        decision = seen[key]
        counts[decision.action] += 1
        new_line = dict(line)
        response = {
            "materialRequestId": line.get("materialRequestId"),
            "action": decision.action.value,
            "notes": decision.notes,
        }

        if decision.action == SupplierAction.REJECT:
            assessment = assess_rejection(decision.rejection_reason, decision.rejection_subcategory)
            new_line.update({
                "status": "rejected",
                "needsReassignment": True,
                "rejectionReason": assessment.reason,
                "rejectionSubcategory": decision.rejection_subcategory,
            })
            response.update({
                "rejectionReason": assessment.reason,
                "rejectionSubcategory": decision.rejection_subcategory,
                "isRetryable": assessment.is_retryable,
                "retryRecommendation": assessment.recommendation,
                "needsReassignment": True,
            })
            rejected_ids.append(line.get("materialRequestId"))
        else:
            unit_cost, quantity, total = resolved[key]
            new_line.update({
                "status": "accepted" if decision.action == SupplierAction.ACCEPT else "modified",
                "unitCost": unit_cost,
                "quantity": quantity,
                "totalCost": total,
            })
            response.update({"unitCost": unit_cost, "quantity": quantity, "totalCost": total})
            order_total += total
            if decision.action == SupplierAction.ACCEPT:
                accepted_total += total
                phase_id = line.get("phaseId") or default_phase_id
                phase_commitments[phase_id] = phase_commitments.get(phase_id, 0) + total

        rewritten.append(new_line)
        responses.append(response)

    # Consistency guard over the rewritten array
    for line in rewritten:
        if line.get("status") == "rejected":
            continue
        expected = line_total_cents(line["unitCost"], line["quantity"])
        if abs(int(line["totalCost"]) - expected) > tolerance_cents:
            raise InconsistentLineTotalError(line.get("materialRequestId"), int(line["totalCost"]), expected)

    total_lines = len(rewritten)
    if counts[SupplierAction.ACCEPT] == total_lines:
        status = OrderStatus.ORDER_ACCEPTED.value
    elif counts[SupplierAction.REJECT] == total_lines:
        status = OrderStatus.ORDER_REJECTED.value
    else:
        status = OrderStatus.ORDER_PARTIALLY_RESPONDED.value

    return BulkResponsePlan(
        status=status,
        materials=rewritten,
        material_responses=responses,
        accepted_total_cents=accepted_total,
        order_total_cents=order_total,
        phase_commitments=phase_commitments,
        rejected_material_request_ids=rejected_ids,
        accepted_count=counts[SupplierAction.ACCEPT],
        rejected_count=counts[SupplierAction.REJECT],
        modified_count=counts[SupplierAction.MODIFY],
    )
