from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_UP
from typing import Literal, Optional


RoundingMode = Literal["NEAREST_1", "NEAREST_HALF", "NEAREST_TENTH", "FLOOR", "CEIL"]

DEFAULT_ROUNDING_MODE: RoundingMode = "NEAREST_1"

ONE = Decimal("1")
TWO = Decimal("2")
TEN = Decimal("10")

# Older POS clients stored the step size in the mode name.
_MODE_ALIASES = {
    "NEAREST_1": "NEAREST_1",
    "NEAREST_HALF": "NEAREST_HALF",
    "NEAREST_0_50": "NEAREST_HALF",
    "NEAREST_0_5": "NEAREST_HALF",
    "NEAREST_TENTH": "NEAREST_TENTH",
    "NEAREST_0_10": "NEAREST_TENTH",
    "NEAREST_0_1": "NEAREST_TENTH",
    "FLOOR": "FLOOR",
    "CEIL": "CEIL",
    "CEILING": "CEIL",
}


def to_decimal(v) -> Decimal:
    if isinstance(v, Decimal):
        return v
    if v is None:
        return Decimal("0")
    return Decimal(str(v))


def normalize_rounding_mode(raw: Optional[str]) -> RoundingMode:
    key = str(raw or "").strip().upper().replace("-", "_").replace(".", "_")
    return _MODE_ALIASES.get(key, DEFAULT_ROUNDING_MODE)  # type: ignore[return-value]


def _steps(amount: Decimal, per_unit: Decimal) -> Decimal:
    return (amount * per_unit).quantize(ONE, rounding=ROUND_HALF_UP) / per_unit


def round_amount(amount, mode: Optional[str] = None) -> Decimal:
    """
    Round a money amount per rounding mode.

    Unknown/blank modes use NEAREST_1 so a settings gap never blocks a sale.
    Half-way values round away from zero (same as the ledger's ROUND_HALF_UP).
    """
    v = to_decimal(amount)
    if not v.is_finite():
        return v
    m = normalize_rounding_mode(mode)
    if m == "NEAREST_HALF":
        out = _steps(v, TWO)
    elif m == "NEAREST_TENTH":
        out = _steps(v, TEN)
    elif m == "FLOOR":
        out = v.quantize(ONE, rounding=ROUND_FLOOR)
    elif m == "CEIL":
        out = v.quantize(ONE, rounding=ROUND_CEILING)
    else:
        out = v.quantize(ONE, rounding=ROUND_HALF_UP)
    # Keep -0 out of API payloads.
    return out + Decimal("0")


@dataclass(frozen=True)
class RoundingPolicy:
    mode: RoundingMode = DEFAULT_ROUNDING_MODE

    @classmethod
    def from_setting(cls, raw: Optional[str]) -> "RoundingPolicy":
        return cls(mode=normalize_rounding_mode(raw))

    def round(self, amount) -> Decimal:
        return round_amount(amount, self.mode)
