import pytest
from pydantic import BaseModel, ValidationError

from backend.app.validation import AppliesTo, DiscountKind, GateMode


class _M(BaseModel):
    applies_to: AppliesTo
    kind: DiscountKind
    gate_mode: GateMode


def test_validation_types_normalize_case():
    m = _M(applies_to=" product ", kind="percent", gate_mode="CAP")
    assert m.applies_to == "PRODUCT"
    assert m.kind == "PERCENT"
    assert m.gate_mode == "cap"


def test_unknown_codes_are_rejected():
    with pytest.raises(ValidationError):
        _M(applies_to="BRAND", kind="AMOUNT", gate_mode="threshold")
    with pytest.raises(ValidationError):
        _M(applies_to="CATEGORY", kind="BOGO", gate_mode="threshold")
    with pytest.raises(ValidationError):
        _M(applies_to="CATEGORY", kind="AMOUNT", gate_mode="per_line")
