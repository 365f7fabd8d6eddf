"""
Budget Entity - Hierarchical project budget.

A project budget arrives in one of two shapes:
- legacy: flat {total, materials, labour, contingency}
- enhanced: Direct Construction Costs, Pre-Construction, Indirect and
  Contingency, each with a nested breakdown

Both shapes are modelled as dataclasses (Budget = LegacyBudget | EnhancedBudget)
so callers branch on the type instead of probing keys. Legacy budgets are
migrated with convert_legacy_to_enhanced() under an explicit
LegacyEstimationPolicy before they are persisted.

All functions here are pure; amounts are Decimal currency units.
"""
from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Dict, List, Optional, Tuple, Union

from ..exceptions import InvalidBudgetError


ZERO = Decimal("0.00")
CENT = Decimal("0.01")

MATERIAL_ITEMS = ("structural", "finishing", "mep", "specialty")
LABOUR_ITEMS = ("skilled", "unskilled", "supervisory", "specialized")
EQUIPMENT_ITEMS = ("rental", "purchase", "maintenance")
SUBCONTRACTOR_ITEMS = ("specializedTrades", "professionalServices")
PRE_CONSTRUCTION_ITEMS = ("landAcquisition", "legalRegulatory", "permitsApprovals", "sitePreparation")
INDIRECT_ITEMS = ("siteOverhead", "transportation", "utilities", "safetyCompliance")
CONTINGENCY_ITEMS = ("designContingency", "constructionContingency", "ownersReserve")

# Top-level categories addressable by budget transfers
CATEGORY_DCC = "dcc"
CATEGORY_PRECONSTRUCTION = "preconstruction"
CATEGORY_INDIRECT = "indirect"
CATEGORY_CONTINGENCY = "contingency"
CATEGORIES = (CATEGORY_DCC, CATEGORY_PRECONSTRUCTION, CATEGORY_INDIRECT, CATEGORY_CONTINGENCY)

DEFAULT_SHARES: Dict[str, Dict[str, str]] = {
    "materials": {"structural": "0.65", "finishing": "0.25", "mep": "0.08", "specialty": "0.02"},
    "labour": {"skilled": "0.60", "unskilled": "0.30", "supervisory": "0.08", "specialized": "0.02"},
    "equipment": {"rental": "0.70", "purchase": "0.20", "maintenance": "0.10"},
    "subcontractors": {"specializedTrades": "0.80", "professionalServices": "0.20"},
    "preConstruction": {
        "landAcquisition": "0.50", "legalRegulatory": "0.20",
        "permitsApprovals": "0.20", "sitePreparation": "0.10",
    },
    "indirect": {
        "siteOverhead": "0.40", "transportation": "0.30",
        "utilities": "0.20", "safetyCompliance": "0.10",
    },
    "contingency": {
        "designContingency": "0.20", "constructionContingency": "0.70", "ownersReserve": "0.10",
    },
}


def to_amount(value, field_name: str = "amount") -> Decimal:
    """Coerce a wire value (number, numeric string or None) to Decimal."""
    if value is None or value == "":
        return ZERO
    if isinstance(value, bool):
        raise InvalidBudgetError([f"{field_name} must be a number"])
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise InvalidBudgetError([f"{field_name} must be a number, got {value!r}"])


def quantize(amount: Decimal) -> Decimal:
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def to_cents(amount) -> int:
    """Currency units to integer cents."""
    return int((to_amount(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    return (Decimal(int(cents or 0)) / 100).quantize(CENT)


def _split(total: Decimal, shares: Dict[str, Decimal]) -> Dict[str, Decimal]:
    """Split total by shares, rounding to cents; the last item absorbs the remainder."""
    keys = list(shares)
    items = {}
    allocated = ZERO
    for key in keys[:-1]:
        items[key] = quantize(total * shares[key])
        allocated += items[key]
    if keys:
        items[keys[-1]] = quantize(total) - allocated
    return items


# =============================================================================
# Value types
# =============================================================================

@dataclass
class CategoryBreakdown:
    """A category total with its named sub-allocations."""

    total: Decimal = ZERO
    items: Dict[str, Decimal] = field(default_factory=dict)

    def items_sum(self) -> Decimal:
        return sum(self.items.values(), ZERO)

    def scaled_to(self, new_total: Decimal) -> "CategoryBreakdown":
        """Return a copy with items rescaled proportionally to a new total."""
        new_total = quantize(new_total)
        current = self.items_sum()
        if current <= 0:
            return CategoryBreakdown(total=new_total, items={k: ZERO for k in self.items})
        shares = {k: v / current for k, v in self.items.items()}
        return CategoryBreakdown(total=new_total, items=_split(new_total, shares))

    def to_dict(self) -> dict:
        data = {"total": float(self.total)}
        data.update({k: float(v) for k, v in self.items.items()})
        return data

    @classmethod
    def from_dict(cls, data, item_keys: Tuple[str, ...], path: str) -> "CategoryBreakdown":
        if data is None:
            return cls(total=ZERO, items={k: ZERO for k in item_keys})
        if not isinstance(data, dict):
            # A bare number stands for the category total
            return cls(total=to_amount(data, path), items={k: ZERO for k in item_keys})
        items = {k: to_amount(data.get(k), f"{path}.{k}") for k in item_keys}
        if data.get("total") is None:
            total = sum(items.values(), ZERO)
        else:
            total = to_amount(data.get("total"), f"{path}.total")
        return cls(total=total, items=items)


@dataclass
class DirectCosts:
    """Direct Construction Cost breakdown."""

    materials: CategoryBreakdown = field(default_factory=CategoryBreakdown)
    labour: CategoryBreakdown = field(default_factory=CategoryBreakdown)
    equipment: CategoryBreakdown = field(default_factory=CategoryBreakdown)
    subcontractors: CategoryBreakdown = field(default_factory=CategoryBreakdown)

    def total(self) -> Decimal:
        return (self.materials.total + self.labour.total
                + self.equipment.total + self.subcontractors.total)

    def categories(self) -> Dict[str, CategoryBreakdown]:
        return {
            "materials": self.materials,
            "labour": self.labour,
            "equipment": self.equipment,
            "subcontractors": self.subcontractors,
        }

    def scaled_to(self, new_total: Decimal) -> "DirectCosts":
        """Scale all four categories proportionally to a new DCC."""
        current = self.total()
        if current <= 0:
            return self
        factor = new_total / current
        materials = self.materials.scaled_to(self.materials.total * factor)
        labour = self.labour.scaled_to(self.labour.total * factor)
        equipment = self.equipment.scaled_to(self.equipment.total * factor)
        remainder = quantize(new_total) - materials.total - labour.total - equipment.total
        return DirectCosts(
            materials=materials,
            labour=labour,
            equipment=equipment,
            subcontractors=self.subcontractors.scaled_to(remainder),
        )

    def to_dict(self) -> dict:
        return {name: breakdown.to_dict() for name, breakdown in self.categories().items()}

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "DirectCosts":
        data = data or {}
        return cls(
            materials=CategoryBreakdown.from_dict(data.get("materials"), MATERIAL_ITEMS, "directCosts.materials"),
            labour=CategoryBreakdown.from_dict(data.get("labour"), LABOUR_ITEMS, "directCosts.labour"),
            equipment=CategoryBreakdown.from_dict(data.get("equipment"), EQUIPMENT_ITEMS, "directCosts.equipment"),
            subcontractors=CategoryBreakdown.from_dict(
                data.get("subcontractors"), SUBCONTRACTOR_ITEMS, "directCosts.subcontractors"
            ),
        )


@dataclass
class LegacyBudget:
    """Flat budget shape: total, materials, labour, contingency."""

    total: Optional[Decimal] = None
    materials: Decimal = ZERO
    labour: Decimal = ZERO
    contingency: Decimal = ZERO

    def to_dict(self) -> dict:
        data = {
            "materials": float(self.materials),
            "labour": float(self.labour),
            "contingency": float(self.contingency),
        }
        if self.total is not None:
            data["total"] = float(self.total)
        return data


@dataclass
class EnhancedBudget:
    """
    Hierarchical budget.

    INVARIANT: DCC + Pre-Construction + Indirect + Contingency == total
    (within tolerance)
    """

    total: Optional[Decimal] = None
    direct_construction_costs: Decimal = ZERO
    pre_construction_costs: Decimal = ZERO
    indirect_costs: Decimal = ZERO
    contingency_reserve: Decimal = ZERO
    direct_costs: DirectCosts = field(default_factory=DirectCosts)
    pre_construction: CategoryBreakdown = field(default_factory=CategoryBreakdown)
    indirect: CategoryBreakdown = field(default_factory=CategoryBreakdown)
    contingency: CategoryBreakdown = field(default_factory=CategoryBreakdown)

    @classmethod
    def empty(cls) -> "EnhancedBudget":
        return cls(
            total=ZERO,
            pre_construction=CategoryBreakdown(items={k: ZERO for k in PRE_CONSTRUCTION_ITEMS}),
            indirect=CategoryBreakdown(items={k: ZERO for k in INDIRECT_ITEMS}),
            contingency=CategoryBreakdown(items={k: ZERO for k in CONTINGENCY_ITEMS}),
            direct_costs=DirectCosts.from_dict(None),
        )

    def components_total(self) -> Decimal:
        return (self.direct_construction_costs + self.pre_construction_costs
                + self.indirect_costs + self.contingency_reserve)

    def category_amount(self, category: str) -> Decimal:
        """Top-level amount for a transfer category."""
        amounts = {
            CATEGORY_DCC: self.direct_construction_costs,
            CATEGORY_PRECONSTRUCTION: self.pre_construction_costs,
            CATEGORY_INDIRECT: self.indirect_costs,
            CATEGORY_CONTINGENCY: self.contingency_reserve,
        }
        if category not in amounts:
            raise InvalidBudgetError([f"Unknown budget category '{category}'"])
        return amounts[category]

    def with_category_amount(self, category: str, amount: Decimal) -> "EnhancedBudget":
        """
        Return a copy with one top-level category set to a new amount.

        The category's sub-allocations are rescaled proportionally; the
        budget total is left untouched.
        """
        amount = quantize(amount)
        if category == CATEGORY_DCC:
            return replace(self, direct_construction_costs=amount,
                           direct_costs=self.direct_costs.scaled_to(amount))
        if category == CATEGORY_PRECONSTRUCTION:
            return replace(self, pre_construction_costs=amount,
                           pre_construction=self.pre_construction.scaled_to(amount))
        if category == CATEGORY_INDIRECT:
            return replace(self, indirect_costs=amount, indirect=self.indirect.scaled_to(amount))
        if category == CATEGORY_CONTINGENCY:
            return replace(self, contingency_reserve=amount, contingency=self.contingency.scaled_to(amount))
        raise InvalidBudgetError([f"Unknown budget category '{category}'"])

    def to_dict(self) -> dict:
        return {
            "total": float(get_budget_total(self)),
            "directConstructionCosts": float(self.direct_construction_costs),
            "preConstructionCosts": float(self.pre_construction_costs),
            "indirectCosts": float(self.indirect_costs),
            "contingencyReserve": float(self.contingency_reserve),
            "directCosts": self.direct_costs.to_dict(),
            "preConstruction": self.pre_construction.to_dict(),
            "indirect": self.indirect.to_dict(),
            "contingency": self.contingency.to_dict(),
        }


Budget = Union[LegacyBudget, EnhancedBudget]


# =============================================================================
# Legacy estimation policy
# =============================================================================

@dataclass(frozen=True)
class LegacyEstimationPolicy:
    """
    Heuristic used to expand a flat legacy budget into the hierarchy.

    Pre-construction and indirect costs are estimated as a share of the
    total, DCC takes the remainder after contingency, and equipment and
    subcontractors are estimated as ratios of materials + labour.
    """

    pre_construction_pct: Decimal = Decimal("0.05")
    indirect_pct: Decimal = Decimal("0.05")
    equipment_ratio: Decimal = Decimal("0.10")
    subcontractors_ratio: Decimal = Decimal("0.05")
    shares: Dict[str, Dict[str, Decimal]] = field(
        default_factory=lambda: {
            group: {k: Decimal(v) for k, v in items.items()}
            for group, items in DEFAULT_SHARES.items()
        }
    )

    @classmethod
    def from_config(cls, config=None) -> "LegacyEstimationPolicy":
        """Build the policy from the budget.legacy_estimation config section."""
        if config is None:
            from ...config import get_config
            config = get_config()
        section = config.legacy_estimation
        defaults = cls()
        shares = {group: dict(items) for group, items in defaults.shares.items()}
        for group, items in (section.get("shares") or {}).items():
            shares[group] = {k: Decimal(str(v)) for k, v in items.items()}
        return cls(
            pre_construction_pct=Decimal(str(section.get("pre_construction_pct", defaults.pre_construction_pct))),
            indirect_pct=Decimal(str(section.get("indirect_pct", defaults.indirect_pct))),
            equipment_ratio=Decimal(str(section.get("equipment_ratio", defaults.equipment_ratio))),
            subcontractors_ratio=Decimal(str(section.get("subcontractors_ratio", defaults.subcontractors_ratio))),
            shares=shares,
        )

    def breakdown(self, group: str, total: Decimal) -> CategoryBreakdown:
        return CategoryBreakdown(total=quantize(total), items=_split(total, self.shares[group]))


# =============================================================================
# Tolerance
# =============================================================================

@dataclass(frozen=True)
class BudgetTolerance:
    """Allowed drift: max(absolute, relative * total)."""

    absolute: Decimal = Decimal("0.01")
    relative: Decimal = Decimal("0.01")

    @classmethod
    def from_config(cls, config=None) -> "BudgetTolerance":
        if config is None:
            from ...config import get_config
            config = get_config()
        return cls(
            absolute=Decimal(str(config.budget_tolerance_absolute)),
            relative=Decimal(str(config.budget_tolerance_relative)),
        )

    def for_total(self, total: Decimal) -> Decimal:
        return max(self.absolute, abs(total) * self.relative)


@dataclass
class BudgetValidationResult:
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@dataclass
class NormalizedBudget:
    """An enhanced budget ready to persist, plus what normalization did to it."""

    budget: EnhancedBudget
    converted: bool = False
    warnings: List[str] = field(default_factory=list)


# =============================================================================
# Operations
# =============================================================================

def is_enhanced(budget) -> bool:
    """Structural detection of the enhanced shape."""
    if isinstance(budget, EnhancedBudget):
        return True
    if isinstance(budget, LegacyBudget):
        return False
    if not isinstance(budget, dict):
        return False
    return "directCosts" in budget or "directConstructionCosts" in budget


def parse_budget(payload: Optional[dict]) -> Budget:
    """
    Parse a camelCase budget payload into its tagged shape.

    An empty or missing payload is an empty enhanced budget.

    Raises:
        InvalidBudgetError: If the payload is not a mapping or holds non-numeric amounts
    """
    if isinstance(payload, (LegacyBudget, EnhancedBudget)):
        return payload
    if not payload:
        return EnhancedBudget.empty()
    if not isinstance(payload, dict):
        raise InvalidBudgetError(["Budget must be an object"])

    if not is_enhanced(payload):
        total = payload.get("total")
        return LegacyBudget(
            total=None if total is None else to_amount(total, "total"),
            materials=to_amount(payload.get("materials"), "materials"),
            labour=to_amount(payload.get("labour"), "labour"),
            contingency=to_amount(payload.get("contingency"), "contingency"),
        )

    direct_costs = DirectCosts.from_dict(payload.get("directCosts"))
    pre_construction = CategoryBreakdown.from_dict(
        payload.get("preConstruction"), PRE_CONSTRUCTION_ITEMS, "preConstruction"
    )
    indirect = CategoryBreakdown.from_dict(payload.get("indirect"), INDIRECT_ITEMS, "indirect")
    contingency = CategoryBreakdown.from_dict(payload.get("contingency"), CONTINGENCY_ITEMS, "contingency")

    def top_level(key: str, fallback: Decimal) -> Decimal:
        value = payload.get(key)
        return fallback if value is None else to_amount(value, key)

    total = payload.get("total")
    return EnhancedBudget(
        total=None if total is None else to_amount(total, "total"),
        direct_construction_costs=top_level("directConstructionCosts", direct_costs.total()),
        pre_construction_costs=top_level("preConstructionCosts", pre_construction.total),
        indirect_costs=top_level("indirectCosts", indirect.total),
        contingency_reserve=top_level("contingencyReserve", contingency.total),
        direct_costs=direct_costs,
        pre_construction=pre_construction,
        indirect=indirect,
        contingency=contingency,
    )


def get_budget_total(budget) -> Decimal:
    """Return the declared total, or the sum of top-level components when absent."""
    if budget is None:
        return ZERO
    budget = parse_budget(budget)
    if budget.total is not None:
        return budget.total
    if isinstance(budget, EnhancedBudget):
        return budget.components_total()
    return budget.materials + budget.labour + budget.contingency


def convert_legacy_to_enhanced(
    legacy: LegacyBudget,
    policy: Optional[LegacyEstimationPolicy] = None,
) -> NormalizedBudget:
    """
    Expand a legacy budget into the enhanced hierarchy.

    The total is preserved. Pre-construction and indirect costs are
    estimated from the policy, DCC is what remains after contingency, and
    materials/labour/equipment/subcontractors are scaled proportionally to
    fit inside DCC. The estimate is reported as warnings, never blocked.
    """
    policy = policy or LegacyEstimationPolicy()
    total = quantize(get_budget_total(legacy))
    contingency = quantize(legacy.contingency)
    materials = legacy.materials
    labour = legacy.labour

    warnings = [
        f"Legacy budget converted: pre-construction estimated at "
        f"{(policy.pre_construction_pct * 100).normalize():f}% and indirect costs at "
        f"{(policy.indirect_pct * 100).normalize():f}% of total"
    ]

    pre_construction = quantize(total * policy.pre_construction_pct)
    indirect = quantize(total * policy.indirect_pct)
    remainder = total - pre_construction - indirect - contingency
    dcc = max(ZERO, remainder)
    if remainder < 0:
        warnings.append(
            "Contingency exceeds the budget left after pre-construction and indirect "
            "estimates; Direct Construction Cost set to 0"
        )

    materials_plus_labour = materials + labour
    equipment = materials_plus_labour * policy.equipment_ratio
    subcontractors = materials_plus_labour * policy.subcontractors_ratio
    estimated_dcc = materials_plus_labour + equipment + subcontractors

    if estimated_dcc > 0:
        factor = dcc / estimated_dcc
        if factor != 1:
            warnings.append(
                f"Materials, labour, equipment and subcontractor estimates scaled by "
                f"{factor:.4f} to fit Direct Construction Cost"
            )
        scaled_materials = quantize(materials * factor)
        scaled_labour = quantize(labour * factor)
        scaled_equipment = quantize(equipment * factor)
        scaled_subcontractors = dcc - scaled_materials - scaled_labour - scaled_equipment
    else:
        scaled_materials = scaled_labour = scaled_equipment = scaled_subcontractors = ZERO
        if dcc > 0:
            warnings.append("No materials or labour figures to derive a direct cost breakdown from")

    enhanced = EnhancedBudget(
        total=total,
        direct_construction_costs=dcc,
        pre_construction_costs=pre_construction,
        indirect_costs=indirect,
        contingency_reserve=contingency,
        direct_costs=DirectCosts(
            materials=policy.breakdown("materials", scaled_materials),
            labour=policy.breakdown("labour", scaled_labour),
            equipment=policy.breakdown("equipment", scaled_equipment),
            subcontractors=policy.breakdown("subcontractors", scaled_subcontractors),
        ),
        pre_construction=policy.breakdown("preConstruction", pre_construction),
        indirect=policy.breakdown("indirect", indirect),
        contingency=policy.breakdown("contingency", contingency),
    )
    return NormalizedBudget(budget=enhanced, converted=True, warnings=warnings)


def _negative_fields(data, path: str = "") -> List[str]:
    negatives = []
    for key, value in data.items():
        name = f"{path}.{key}" if path else key
        if isinstance(value, dict):
            negatives.extend(_negative_fields(value, name))
        elif isinstance(value, (int, float)) and value < 0:
            negatives.append(name)
    return negatives


def validate_budget(budget, tolerance: Optional[BudgetTolerance] = None) -> BudgetValidationResult:
    """
    Check a budget for negative amounts and hierarchy consistency.

    Top-level components that do not add up to the total are errors;
    sub-breakdowns that disagree with their category are warnings.
    """
    tolerance = tolerance or BudgetTolerance()
    try:
        budget = parse_budget(budget)
    except InvalidBudgetError as e:
        return BudgetValidationResult(is_valid=False, errors=list(e.errors))

    errors: List[str] = []
    warnings: List[str] = []

    for name in _negative_fields(budget.to_dict()):
        errors.append(f"{name} cannot be negative")

    if isinstance(budget, LegacyBudget):
        warnings.append("Budget uses the legacy structure and will be converted")
        total = get_budget_total(budget)
        parts = budget.materials + budget.labour + budget.contingency
        if budget.total is not None and parts > total + tolerance.for_total(total):
            errors.append(
                f"Materials, labour and contingency ({parts}) exceed total ({total})"
            )
        return BudgetValidationResult(is_valid=not errors, errors=errors, warnings=warnings)

    components = budget.components_total()
    if budget.total is not None:
        allowed = tolerance.for_total(budget.total)
        if abs(components - budget.total) > allowed:
            errors.append(
                f"Budget components ({components}) do not add up to total ({budget.total}); "
                f"allowed difference is {allowed}"
            )

    dcc_breakdown = budget.direct_costs.total()
    if dcc_breakdown > 0 and abs(dcc_breakdown - budget.direct_construction_costs) > tolerance.for_total(
        budget.direct_construction_costs
    ):
        warnings.append(
            f"Direct cost breakdown ({dcc_breakdown}) does not match "
            f"Direct Construction Costs ({budget.direct_construction_costs})"
        )

    sections = [
        ("preConstruction", budget.pre_construction, budget.pre_construction_costs),
        ("indirect", budget.indirect, budget.indirect_costs),
        ("contingency", budget.contingency, budget.contingency_reserve),
    ]
    for name, breakdown, declared in sections:
        if breakdown.total > 0 and abs(breakdown.total - declared) > tolerance.for_total(declared):
            warnings.append(f"{name}.total ({breakdown.total}) does not match its top-level amount ({declared})")
    for name, breakdown in list(budget.direct_costs.categories().items()) + [
        (name, breakdown) for name, breakdown, _ in sections
    ]:
        items_sum = breakdown.items_sum()
        if items_sum > 0 and abs(items_sum - breakdown.total) > tolerance.for_total(breakdown.total):
            warnings.append(f"{name} items ({items_sum}) do not add up to its total ({breakdown.total})")

    return BudgetValidationResult(is_valid=not errors, errors=errors, warnings=warnings)


def normalize_budget(
    payload,
    policy: Optional[LegacyEstimationPolicy] = None,
) -> NormalizedBudget:
    """Detect the payload shape and return it as an enhanced budget."""
    budget = parse_budget(payload)
    if isinstance(budget, LegacyBudget):
        return convert_legacy_to_enhanced(budget, policy)
    return NormalizedBudget(budget=budget)


def get_direct_construction_costs(budget, policy: Optional[LegacyEstimationPolicy] = None) -> Decimal:
    """DCC of a budget in either shape (legacy budgets go through the estimation policy)."""
    if budget is None:
        return ZERO
    return normalize_budget(budget, policy).budget.direct_construction_costs
