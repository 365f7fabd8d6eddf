"""
Domain Exceptions for the construction finance engine.

Custom exceptions enforcing business rules:
- Single-use supplier response tokens
- Capital availability against committed and used cost
- Budget hierarchy consistency and the phase allocation ceiling
- Safe project deletion
"""


class DomainError(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str, code: str = "DOMAIN_ERROR"):
        self.message = message
        self.code = code
        super().__init__(self.message)


# =============================================================================
# Not Found
# =============================================================================

class ProjectNotFoundError(DomainError):
    """Raised when a project cannot be found."""

    def __init__(self, project_id):
        super().__init__(f"Project with id '{project_id}' not found", code="PROJECT_NOT_FOUND")
        self.project_id = project_id


class PhaseNotFoundError(DomainError):
    """Raised when a phase cannot be found or has been deleted."""

    def __init__(self, phase_id):
        super().__init__(f"Phase with id '{phase_id}' not found", code="PHASE_NOT_FOUND")
        self.phase_id = phase_id


class PurchaseOrderNotFoundError(DomainError):
    """Raised when a purchase order cannot be found."""

    def __init__(self, order_id):
        super().__init__(f"Purchase order with id '{order_id}' not found", code="ORDER_NOT_FOUND")
        self.order_id = order_id


class BudgetTransferNotFoundError(DomainError):

    def __init__(self, transfer_id):
        super().__init__(f"Budget transfer with id '{transfer_id}' not found", code="TRANSFER_NOT_FOUND")
        self.transfer_id = transfer_id


# =============================================================================
# Response Token Exceptions
# =============================================================================

class InvalidResponseTokenError(DomainError):
    """Raised when the presented token does not match the order's token."""

    def __init__(self, order_id):
        super().__init__("Invalid response token", code="INVALID_TOKEN")
        self.order_id = order_id


class ResponseTokenExpiredError(DomainError):
    """Raised when the response token is past its expiry."""

    def __init__(self, order_id, expired_at):
        message = f"Response token expired at {expired_at.isoformat() if expired_at else 'unknown'}"
        super().__init__(message, code="TOKEN_EXPIRED")
        self.order_id = order_id
        self.expired_at = expired_at


class ResponseTokenUsedError(DomainError):
    """Raised when the response token has already transitioned the order."""

    def __init__(self, order_id, used_at):
        message = "This response link has already been used"
        super().__init__(message, code="TOKEN_ALREADY_USED")
        self.order_id = order_id
        self.used_at = used_at


# =============================================================================
# Purchase Order State Exceptions
# =============================================================================

class OrderNotRespondableError(DomainError):
    """Raised when the order's state does not accept a supplier response."""

    def __init__(self, order_id, status: str):
        message = f"Cannot respond to purchase order in status '{status}'"
        super().__init__(message, code="INVALID_ORDER_STATUS")
        self.order_id = order_id
        self.status = status


class BulkResponseRequiredError(DomainError):
    """Raised when a bulk order is answered without per-material decisions."""

    def __init__(self, order_id):
        message = "Bulk orders must be answered with a decision for each material"
        super().__init__(message, code="BULK_RESPONSE_REQUIRED")
        self.order_id = order_id


class PartialResponseNotSupportedError(DomainError):

    def __init__(self, order_id):
        message = "Per-material responses are only supported for bulk orders"
        super().__init__(message, code="PARTIAL_RESPONSE_NOT_SUPPORTED")
        self.order_id = order_id


class ConcurrencyError(DomainError):
    """Raised when a conditional update lost a race with another writer."""

    def __init__(self, entity_type: str, entity_id):
        message = f"{entity_type} '{entity_id}' was modified concurrently. Please retry."
        super().__init__(message, code="CONCURRENCY_ERROR")
        self.entity_type = entity_type
        self.entity_id = entity_id


# =============================================================================
# Validation Exceptions
# =============================================================================

class ValidationError(DomainError):
    """Raised when input validation fails."""

    def __init__(self, field: str, message: str, code: str = "VALIDATION_ERROR"):
        super().__init__(f"Validation failed for '{field}': {message}", code=code)
        self.field = field


class UnitCostRequiredError(ValidationError):
    """Raised when no positive unit cost can be resolved."""

    def __init__(self, subject: str = "order"):
        super().__init__(
            "unitCost",
            f"A positive unit cost is required to accept {subject}",
            code="UNIT_COST_REQUIRED",
        )
        self.subject = subject


class InvalidUnitCostError(ValidationError):

    def __init__(self, value, subject: str = "order"):
        super().__init__("unitCost", f"Unit cost for {subject} must be positive, got {value}",
                         code="INVALID_UNIT_COST")
        self.value = value


class InvalidQuantityError(ValidationError):

    def __init__(self, value, subject: str = "order"):
        super().__init__("quantity", f"Quantity for {subject} must be positive, got {value}",
                         code="INVALID_QUANTITY")
        self.value = value


class RejectionNoteRequiredError(ValidationError):
    """Raised when a rejection is submitted without supplier notes."""

    def __init__(self):
        super().__init__("supplierNotes", "A note explaining the rejection is required",
                         code="REJECTION_NOTE_REQUIRED")


class InvalidRejectionReasonError(ValidationError):

    def __init__(self, reason: str):
        super().__init__("rejectionReason", f"Unknown rejection reason '{reason}'",
                         code="INVALID_REJECTION_REASON")
        self.reason = reason


class InvalidSupplierActionError(ValidationError):

    def __init__(self, action):
        super().__init__("action", f"Unknown supplier action '{action}'", code="INVALID_ACTION")
        self.action = action


class UnknownMaterialLineError(ValidationError):
    """Raised when a bulk decision names a material that is not on the order."""

    def __init__(self, material_request_id):
        super().__init__(
            "materialResponses",
            f"Material '{material_request_id}' is not part of this order",
            code="UNKNOWN_MATERIAL",
        )
        self.material_request_id = material_request_id


class DuplicateMaterialResponseError(ValidationError):

    def __init__(self, material_request_id):
        super().__init__(
            "materialResponses",
            f"Material '{material_request_id}' has more than one decision",
            code="DUPLICATE_MATERIAL_RESPONSE",
        )
        self.material_request_id = material_request_id


class MissingMaterialResponseError(ValidationError):
    """Raised when a bulk response leaves order lines undecided."""

    def __init__(self, material_request_ids: list):
        ids = ", ".join(str(m) for m in material_request_ids)
        super().__init__("materialResponses", f"Missing decisions for materials: {ids}",
                         code="MISSING_MATERIAL_RESPONSE")
        self.material_request_ids = material_request_ids


class InvalidOrderLinesError(ValidationError):
    """Raised when a bulk order's own lines lack a unique material id."""

    def __init__(self, message: str, material_request_ids: list = None):
        super().__init__("materials", message, code="INVALID_ORDER_LINES")
        self.material_request_ids = material_request_ids or []


class InconsistentLineTotalError(ValidationError):
    """Raised when a line total disagrees with unit cost times quantity."""

    def __init__(self, material_request_id, total_cents: int, expected_cents: int):
        super().__init__(
            "materials",
            f"Line '{material_request_id}' total {total_cents:,} cents does not match "
            f"unit cost x quantity ({expected_cents:,} cents)",
            code="INCONSISTENT_LINE_TOTAL",
        )
        self.material_request_id = material_request_id
        self.total_cents = total_cents
        self.expected_cents = expected_cents


class InvalidAmountError(ValidationError):

    def __init__(self, amount):
        super().__init__("amount", f"Amount must be positive, got {amount}", code="INVALID_AMOUNT")
        self.amount = amount


# =============================================================================
# Capital Exceptions
# =============================================================================

class CapitalShortfallError(DomainError):
    """Raised when invested capital does not cover a new commitment."""

    def __init__(self, required: int, available: int):
        shortfall = max(0, required - available)
        message = (
            f"Insufficient capital. Required: {required:,} cents, "
            f"available: {available:,} cents, shortfall: {shortfall:,} cents"
        )
        super().__init__(message, code="INSUFFICIENT_CAPITAL")
        self.required = required
        self.available = available
        self.shortfall = shortfall


class CapitalRemovalError(DomainError):
    """Raised when removing capital would leave spend and commitments uncovered."""

    def __init__(self, amount: int, removable: int):
        message = (
            f"Cannot remove {amount:,} cents of capital. "
            f"At most {removable:,} cents is not backing used or committed cost"
        )
        super().__init__(message, code="CAPITAL_REMOVAL_BLOCKED")
        self.amount = amount
        self.removable = removable


# =============================================================================
# Budget Exceptions
# =============================================================================

class InvalidBudgetError(DomainError):
    """Raised when a budget fails validation."""

    def __init__(self, errors: list[str]):
        message = "Invalid budget: " + "; ".join(errors)
        super().__init__(message, code="INVALID_BUDGET")
        self.errors = errors


class DCCCeilingExceededError(DomainError):
    """Raised when phase allocations would exceed the Direct Construction Cost."""

    def __init__(self, total_allocated: int, dcc_amount: int, available: int):
        message = (
            f"Total phase allocations ({total_allocated:,} cents) would exceed "
            f"Direct Construction Cost ({dcc_amount:,} cents). "
            f"Available: {available:,} cents"
        )
        super().__init__(message, code="DCC_CEILING_EXCEEDED")
        self.total_allocated = total_allocated
        self.dcc_amount = dcc_amount
        self.available = available


class InvalidTransferError(DomainError):
    """Raised when a budget transfer breaks a transfer rule."""

    def __init__(self, message: str, code: str = "INVALID_TRANSFER"):
        super().__init__(message, code=code)


class InsufficientCategoryBalanceError(InvalidTransferError):

    def __init__(self, category: str, requested: int, available: int):
        super().__init__(
            f"Insufficient balance in '{category}'. Requested: {requested:,} cents, "
            f"available: {available:,} cents",
            code="INSUFFICIENT_CATEGORY_BALANCE",
        )
        self.category = category
        self.requested = requested
        self.available = available


class TransferNotPendingError(DomainError):

    def __init__(self, transfer_id, status: str):
        super().__init__(f"Budget transfer '{transfer_id}' is already {status}", code="TRANSFER_NOT_PENDING")
        self.transfer_id = transfer_id
        self.status = status


# =============================================================================
# Permission / Deletion Exceptions
# =============================================================================

class PermissionDeniedError(DomainError):

    def __init__(self, user_id, action: str):
        super().__init__(f"User '{user_id}' is not allowed to {action}", code="PERMISSION_DENIED")
        self.user_id = user_id
        self.action = action


class ProjectHasSpendingError(DomainError):
    """Raised when deleting a project that already has recorded spend."""

    def __init__(self, project_id, total_used: int):
        message = (
            f"Project '{project_id}' has {total_used:,} cents of recorded spending. "
            f"Archive the project instead, or force the deletion."
        )
        super().__init__(message, code="PROJECT_HAS_SPENDING")
        self.project_id = project_id
        self.total_used = total_used
