from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from .cart_totals import CartTotals, ManualDiscount, apply_manual_discount, compute_totals
from .discount_engine import CartLine, apply_rules
from .discount_rules import DiscountRule
from .pricing_settings import PricingSettings


@dataclass
class CartPricing:
    lines: list
    applied_rules: list
    warnings: list
    totals: CartTotals


def price_cart(
    lines: Iterable[CartLine],
    rules: Iterable[DiscountRule],
    pricing: Optional[PricingSettings] = None,
    manual: Optional[ManualDiscount] = None,
) -> CartPricing:
    """Rule allocation, totals, then the optional manual overlay, in that order."""
    pricing = pricing or PricingSettings()
    policy = pricing.policy
    result = apply_rules(lines, rules, policy)
    totals = compute_totals(result.lines, policy)
    if manual is not None and manual.value != 0:
        totals = apply_manual_discount(totals, manual, policy, pricing)
    return CartPricing(
        lines=result.lines,
        applied_rules=result.applied_rules,
        warnings=result.warnings,
        totals=totals,
    )


def preview_rule(rule: DiscountRule, mock_lines: Iterable[CartLine], pricing: Optional[PricingSettings] = None) -> CartPricing:
    """
    Run a single (possibly draft) rule against a mock cart.
    Window and active flag are not checked here (only the selector looks at them).
    """
    return price_cart(mock_lines, [rule], pricing)
