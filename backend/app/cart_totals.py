from __future__ import annotations

from dataclasses import dataclass, replace
from decimal import Decimal, InvalidOperation
from typing import Iterable, Literal, Optional

from .discount_rules import PricingValidationError
from .pricing_settings import PricingSettings
from .rounding import RoundingPolicy, to_decimal


ZERO = Decimal("0")
HUNDRED = Decimal("100")


@dataclass(frozen=True)
class CartTotals:
    gross: Decimal
    item_discounts: Decimal
    manual_discount: Decimal
    tax: Decimal
    net: Decimal

    def as_dict(self) -> dict:
        return {
            "gross": self.gross,
            "item_discounts": self.item_discounts,
            "manual_discount": self.manual_discount,
            "tax": self.tax,
            "net": self.net,
        }


@dataclass(frozen=True)
class ManualDiscount:
    kind: Literal["AMOUNT", "PERCENT"]
    value: Decimal

    def __post_init__(self):
        try:
            object.__setattr__(self, "value", to_decimal(self.value))
        except (InvalidOperation, ValueError):
            raise PricingValidationError(f"manual discount value is invalid: {self.value!r}", field="manual_discount.value")


def _net(gross: Decimal, item_discounts: Decimal, manual_discount: Decimal, tax: Decimal) -> Decimal:
    return gross - item_discounts - manual_discount + tax


def compute_totals(lines: Iterable, policy: Optional[RoundingPolicy] = None) -> CartTotals:
    """
    Sum at full precision across lines, round each aggregate once.
    `net` is derived from the rounded aggregates so the displayed figures add up.
    """
    policy = policy or RoundingPolicy()
    gross = ZERO
    item_discounts = ZERO
    tax = ZERO
    for ln in lines or []:
        gross += ln.unit_price * ln.quantity
        item_discounts += ln.line_discount
        tax += ln.tax

    gross = policy.round(gross)
    item_discounts = policy.round(item_discounts)
    tax = policy.round(tax)
    return CartTotals(
        gross=gross,
        item_discounts=item_discounts,
        manual_discount=ZERO,
        tax=tax,
        net=_net(gross, item_discounts, ZERO, tax),
    )


def apply_manual_discount(
    totals: CartTotals,
    manual: ManualDiscount,
    policy: Optional[RoundingPolicy] = None,
    pricing: Optional[PricingSettings] = None,
) -> CartTotals:
    """
    Cart-level discount on top of rule discounts. Returns new totals; lines are untouched.

    PERCENT is taken off `gross` (not the discounted subtotal). The amount is
    clamped to `max_discount_percent` of gross and, unless negative totals are
    allowed, to `gross - item_discounts`, so `net >= tax`.
    """
    pricing = pricing or PricingSettings()
    policy = policy or pricing.policy

    if manual.kind not in ("AMOUNT", "PERCENT"):
        raise PricingValidationError(f"manual discount type must be AMOUNT or PERCENT (got {manual.kind!r})", field="manual_discount.kind")
    if not manual.value.is_finite() or manual.value < 0:
        raise PricingValidationError("manual discount value must be >= 0", field="manual_discount.value")

    # Policy ceiling: never more than max_discount_percent of gross, whatever was requested.
    max_amount = totals.gross * pricing.max_discount_percent / HUNDRED
    if manual.kind == "PERCENT":
        amount = totals.gross * manual.value / HUNDRED
    else:
        amount = manual.value
    if amount > max_amount:
        amount = max_amount

    amount = policy.round(amount)
    if not pricing.allow_negative_totals:
        ceiling = totals.gross - totals.item_discounts
        if ceiling < 0:
            ceiling = ZERO
        if amount > ceiling:
            amount = ceiling

    return replace(
        totals,
        manual_discount=amount,
        net=_net(totals.gross, totals.item_discounts, amount, totals.tax),
    )
