from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BeforeValidator


def _to_upper_str(v):
    if v is None:
        return v
    return str(v).strip().upper()


def _to_lower_str(v):
    if v is None:
        return v
    return str(v).strip().lower()


# Canonical codes mirror the CHECK constraints in `backend/db/migrations/001_discount_rules.sql`.
AppliesTo = Annotated[Literal["PRODUCT", "CATEGORY"], BeforeValidator(_to_upper_str)]
DiscountKind = Annotated[Literal["AMOUNT", "PERCENT"], BeforeValidator(_to_upper_str)]
GateMode = Annotated[Literal["threshold", "cap"], BeforeValidator(_to_lower_str)]
