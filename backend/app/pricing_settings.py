from __future__ import annotations

import json
from dataclasses import dataclass, replace
from decimal import Decimal, InvalidOperation

from .config import settings
from .rounding import RoundingMode, RoundingPolicy, normalize_rounding_mode, to_decimal


@dataclass(frozen=True)
class PricingSettings:
    rounding_mode: RoundingMode = "NEAREST_1"
    max_discount_percent: Decimal = Decimal("100")
    allow_negative_totals: bool = False

    @property
    def policy(self) -> RoundingPolicy:
        return RoundingPolicy(mode=self.rounding_mode)


def _truthy(raw) -> bool:
    if isinstance(raw, bool):
        return raw
    return str(raw or "").strip().lower() in {"1", "true", "yes", "on"}


def _percent_or(raw, default: Decimal) -> Decimal:
    try:
        v = to_decimal(raw)
    except (InvalidOperation, ValueError):
        return default
    if not v.is_finite() or v < 0 or v > 100:
        return default
    return v


def default_pricing_settings() -> PricingSettings:
    return PricingSettings(
        rounding_mode=normalize_rounding_mode(settings.pricing_rounding_mode),
        max_discount_percent=_percent_or(settings.pricing_max_discount_percent, Decimal("100")),
        allow_negative_totals=_truthy(settings.pricing_allow_negative_totals),
    )


def pricing_settings_from_json(obj: dict, base: PricingSettings) -> PricingSettings:
    """Overlay a `company_settings.value_json` object; bad values keep the base value."""
    out = base
    if not isinstance(obj, dict):
        return out
    if obj.get("rounding_mode") is not None:
        out = replace(out, rounding_mode=normalize_rounding_mode(obj.get("rounding_mode")))
    if obj.get("max_discount_percent") is not None:
        out = replace(out, max_discount_percent=_percent_or(obj.get("max_discount_percent"), out.max_discount_percent))
    if obj.get("allow_negative_totals") is not None:
        out = replace(out, allow_negative_totals=_truthy(obj.get("allow_negative_totals")))
    return out


def load_pricing_settings(cur, company_id: str) -> PricingSettings:
    """
    Company pricing policy, stored in `company_settings.key='pricing'`:
      {"rounding_mode": "NEAREST_HALF", "max_discount_percent": 20, "allow_negative_totals": false}
    Missing/malformed rows fall back to the process defaults.
    """
    cur.execute(
        """
        SELECT value_json
        FROM company_settings
        WHERE company_id = %s AND key = 'pricing'
        LIMIT 1
        """,
        (company_id,),
    )
    row = cur.fetchone()
    base = default_pricing_settings()
    if not row:
        return base

    raw = row.get("value_json")
    obj = {}
    if isinstance(raw, dict):
        obj = raw
    elif isinstance(raw, str):
        try:
            parsed = json.loads(raw)
            if isinstance(parsed, dict):
                obj = parsed
        except ValueError:
            obj = {}
    return pricing_settings_from_json(obj, base)
