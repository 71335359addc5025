from __future__ import annotations

import copy
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Optional

from .discount_rules import (
    APPLIES_TO_VALUES,
    DISCOUNT_KINDS,
    Cap,
    DiscountRule,
    PricingValidationError,
    Threshold,
    Unlimited,
    is_cumulative,
)
from .rounding import RoundingPolicy, to_decimal


ZERO = Decimal("0")
HUNDRED = Decimal("100")


@dataclass
class AppliedRule:
    rule_id: Any
    rule_name: str
    discount_amount: Decimal
    remaining_cap: Optional[Decimal] = None


@dataclass
class CartLine:
    product_id: Any
    quantity: Decimal
    unit_price: Decimal
    category_id: Any = None
    # Undiscounted retail price; PERCENT rules always compute against this.
    reference_price: Optional[Decimal] = None
    line_discount: Decimal = ZERO
    tax: Decimal = ZERO
    total: Decimal = ZERO
    applied_rules: list = field(default_factory=list)
    sku: Optional[str] = None

    def __post_init__(self):
        for name in ("quantity", "unit_price", "line_discount", "tax", "total"):
            setattr(self, name, _decimal_field(getattr(self, name), name))
        if self.reference_price is not None:
            self.reference_price = _decimal_field(self.reference_price, "reference_price")

    @property
    def base_price(self) -> Decimal:
        return self.unit_price if self.reference_price is None else self.reference_price

    @property
    def gross(self) -> Decimal:
        return self.unit_price * self.quantity

    def recompute_total(self) -> None:
        self.total = self.gross - self.line_discount + self.tax


def _decimal_field(v, name: str) -> Decimal:
    try:
        return to_decimal(v)
    except (InvalidOperation, ValueError):
        raise PricingValidationError(f"{name} is invalid: {v!r}", field=name)


@dataclass
class RuleCapTracker:
    rule_id: Any
    used_quantity: Decimal
    remaining_quantity: Decimal


@dataclass
class PricingResult:
    lines: list
    applied_rules: list
    warnings: list


def build_cart_line(product: dict, quantity, unit_price=None, tax=0, sku: Optional[str] = None) -> CartLine:
    """
    Populate a cart line from a product lookup record ({id, category_id, retail_price, sku}).
    `unit_price` defaults to the retail price (i.e. the retail tier).
    """
    retail = product.get("retail_price")
    price = unit_price if unit_price is not None else retail
    if price is None:
        raise PricingValidationError(f"no price for product {product.get('id')!r}", field="unit_price")
    return CartLine(
        product_id=product.get("id"),
        category_id=product.get("category_id"),
        quantity=quantity,
        unit_price=price,
        reference_price=retail,
        tax=tax,
        sku=sku or product.get("sku"),
    )


def canonicalize_line(line: CartLine, product: Optional[dict]) -> CartLine:
    """
    Re-key a line onto the item master record (id, category, retail price) so
    rules resolved by SKU match it. Fields the caller sent are kept.
    """
    if not product:
        return line
    out = copy.deepcopy(line)
    out.product_id = product.get("id", out.product_id)
    if out.category_id is None:
        out.category_id = product.get("category_id")
    if out.reference_price is None and product.get("retail_price") is not None:
        out.reference_price = _decimal_field(product.get("retail_price"), "reference_price")
    out.sku = out.sku or product.get("sku")
    return out


def validate_lines(lines: Iterable[CartLine]) -> list[str]:
    """Reject what cannot be defaulted; return non-blocking warnings for what can."""
    warnings: list[str] = []
    for idx, ln in enumerate(lines or []):
        label = f"lines[{idx}]"
        if ln.product_id is None:
            raise PricingValidationError(f"{label}: product_id is required", field=f"{label}.product_id")
        if not ln.quantity.is_finite() or ln.quantity <= 0:
            raise PricingValidationError(f"{label}: quantity must be > 0", field=f"{label}.quantity")
        if not ln.unit_price.is_finite() or ln.unit_price < 0:
            raise PricingValidationError(f"{label}: unit_price must be >= 0", field=f"{label}.unit_price")
        if not ln.tax.is_finite() or ln.tax < 0:
            raise PricingValidationError(f"{label}: tax must be >= 0", field=f"{label}.tax")
        if ln.reference_price is None:
            warnings.append(f'Missing reference price for product "{ln.product_id}"; using unit price')
        elif not ln.reference_price.is_finite() or ln.reference_price < 0:
            raise PricingValidationError(f"{label}: reference_price must be >= 0", field=f"{label}.reference_price")
    return warnings


def _rule_problem(rule) -> Optional[str]:
    if not isinstance(rule, DiscountRule):
        return "not a discount rule"
    if rule.applies_to not in APPLIES_TO_VALUES:
        return f"unknown applies_to {rule.applies_to!r}"
    if rule.target_id is None:
        return "target_id is required"
    if isinstance(rule.priority, bool) or not isinstance(rule.priority, int):
        return f"priority must be an integer (got {rule.priority!r})"
    if rule.kind not in DISCOUNT_KINDS:
        return f"unknown type {rule.kind!r}"
    if not rule.value.is_finite() or rule.value < 0:
        return "value must be >= 0"
    if rule.kind == "PERCENT" and rule.value > HUNDRED:
        return "percent value must be between 0 and 100"
    gate = rule.quantity_gate
    if isinstance(gate, Cap):
        q = to_decimal(gate.quantity)
        if not q.is_finite() or q < 0:
            return "cap quantity must be >= 0"
    elif isinstance(gate, Threshold):
        q = to_decimal(gate.min_quantity)
        if not q.is_finite() or q <= 0:
            return "threshold quantity must be > 0"
    elif not isinstance(gate, Unlimited):
        return f"unknown quantity gate {gate!r}"
    return None


def _discount_per_unit(rule: DiscountRule, line: CartLine) -> Decimal:
    if rule.kind == "AMOUNT":
        return rule.value
    if rule.kind == "PERCENT":
        return line.base_price * rule.value / HUNDRED
    raise PricingValidationError(f"unknown type {rule.kind!r}", field="type")


def _apply_to_line(
    rule: DiscountRule,
    line: CartLine,
    qty: Decimal,
    policy: RoundingPolicy,
    remaining_cap: Optional[Decimal],
) -> Optional[AppliedRule]:
    base = line.base_price
    raw = min(_discount_per_unit(rule, line) * qty, base * qty)
    amount = policy.round(raw)
    # Accumulated discount never exceeds the charged value (reference or lower tier price).
    headroom = min(base, line.unit_price) * line.quantity - line.line_discount
    if amount > headroom:
        amount = headroom
    if amount <= 0:
        return None

    line.line_discount += amount
    rec = AppliedRule(rule_id=rule.id, rule_name=rule.name, discount_amount=amount, remaining_cap=remaining_cap)
    line.applied_rules.append(rec)
    line.recompute_total()
    return rec


def _allocate_threshold(rule: DiscountRule, gate: Threshold, targets: list, policy: RoundingPolicy) -> list[AppliedRule]:
    out = []
    min_qty = to_decimal(gate.min_quantity)
    for line in targets:
        # All-or-nothing: below the threshold gets nothing; at/above gets the full quantity.
        if line.quantity < min_qty:
            continue
        rec = _apply_to_line(rule, line, line.quantity, policy, None)
        if rec is not None:
            out.append(rec)
    return out


def _allocate_cumulative(
    rule: DiscountRule,
    targets: list,
    tracker: RuleCapTracker,
    policy: RoundingPolicy,
    warnings: list,
) -> list[AppliedRule]:
    out = []
    show_cap = isinstance(rule.quantity_gate, Cap)
    for pos, line in enumerate(targets):
        if tracker.remaining_quantity <= 0:
            break
        qty = min(line.quantity, tracker.remaining_quantity)
        remaining_after = tracker.remaining_quantity - qty
        rec = _apply_to_line(rule, line, qty, policy, remaining_after if show_cap else None)
        if rec is None:
            continue
        out.append(rec)
        tracker.used_quantity += qty
        tracker.remaining_quantity = remaining_after

        if tracker.remaining_quantity <= 0 and (qty < line.quantity or pos + 1 < len(targets)):
            warnings.append(f'Cap reached for rule "{rule.name}"')
            break
    return out


def apply_rules(lines: Iterable[CartLine], rules: Iterable[DiscountRule], policy: Optional[RoundingPolicy] = None) -> PricingResult:
    """
    One pricing pass.

    Works on copies of `lines`: automatic discounts are reset and fully
    recomputed from `rules`, applied by ascending priority (ties keep input
    order), so repeated passes never stack. Rules that cannot be evaluated
    are skipped with a warning.
    Raises PricingValidationError for lines that cannot be priced.
    """
    policy = policy or RoundingPolicy()
    work = [copy.deepcopy(ln) for ln in (lines or [])]
    warnings = validate_lines(work)

    for line in work:
        line.line_discount = ZERO
        line.applied_rules = []
        line.recompute_total()

    usable: list[DiscountRule] = []
    for rule in rules or []:
        problem = _rule_problem(rule)
        if problem:
            name = getattr(rule, "name", None) or getattr(rule, "id", None)
            warnings.append(f'Skipped rule "{name}": {problem}')
            continue
        usable.append(rule)
    usable.sort(key=lambda r: r.priority)

    # One tracker per cumulative rule, keyed by position so duplicate ids never share a pool.
    trackers: dict[int, RuleCapTracker] = {}
    for idx, rule in enumerate(usable):
        gate = rule.quantity_gate
        if not is_cumulative(gate):
            continue
        if isinstance(gate, Cap):
            pool = to_decimal(gate.quantity)
        else:
            pool = sum((ln.quantity for ln in work if rule.targets(ln.product_id, ln.category_id)), ZERO)
        trackers[idx] = RuleCapTracker(rule_id=rule.id, used_quantity=ZERO, remaining_quantity=pool)

    applied: list[AppliedRule] = []
    for idx, rule in enumerate(usable):
        targets = [ln for ln in work if rule.targets(ln.product_id, ln.category_id)]
        if not targets:
            continue
        gate = rule.quantity_gate
        if isinstance(gate, Threshold):
            applied.extend(_allocate_threshold(rule, gate, targets, policy))
        else:
            applied.extend(_allocate_cumulative(rule, targets, trackers[idx], policy, warnings))

    return PricingResult(lines=work, applied_rules=applied, warnings=warnings)
