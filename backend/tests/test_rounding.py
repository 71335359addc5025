from decimal import Decimal

import pytest

from backend.app.rounding import RoundingPolicy, normalize_rounding_mode, round_amount, to_decimal


@pytest.mark.parametrize(
    "mode,amount,expected",
    [
        ("NEAREST_1", "2.5", "3"),
        ("NEAREST_1", "2.49", "2"),
        ("NEAREST_HALF", "2.2", "2"),
        ("NEAREST_HALF", "2.3", "2.5"),
        ("NEAREST_HALF", "2.75", "3"),
        ("NEAREST_TENTH", "1.26", "1.3"),
        ("NEAREST_TENTH", "1.24", "1.2"),
        ("FLOOR", "2.9", "2"),
        ("CEIL", "2.1", "3"),
    ],
)
def test_round_amount_modes(mode, amount, expected):
    assert round_amount(Decimal(amount), mode) == Decimal(expected)


def test_half_way_values_round_away_from_zero():
    assert round_amount(Decimal("-2.5"), "NEAREST_1") == Decimal("-3")
    assert round_amount(Decimal("-0.25"), "NEAREST_HALF") == Decimal("-0.5")


def test_negative_zero_is_normalized():
    out = round_amount(Decimal("-0.2"), "NEAREST_1")
    assert out == 0
    assert not out.is_signed()


def test_non_finite_values_pass_through():
    assert round_amount(Decimal("NaN"), "NEAREST_1").is_nan()
    assert round_amount(Decimal("Infinity"), "FLOOR") == Decimal("Infinity")


def test_unknown_and_blank_modes_fall_back_to_nearest_1():
    assert normalize_rounding_mode(None) == "NEAREST_1"
    assert normalize_rounding_mode("") == "NEAREST_1"
    assert normalize_rounding_mode("BANKERS") == "NEAREST_1"
    assert round_amount(Decimal("2.5"), "BANKERS") == Decimal("3")


def test_legacy_mode_names_are_accepted():
    assert normalize_rounding_mode("nearest_0_50") == "NEAREST_HALF"
    assert normalize_rounding_mode("NEAREST-0.5") == "NEAREST_HALF"
    assert normalize_rounding_mode("NEAREST_0_10") == "NEAREST_TENTH"
    assert normalize_rounding_mode("ceiling") == "CEIL"


def test_policy_from_setting():
    p = RoundingPolicy.from_setting(" floor ")
    assert p.mode == "FLOOR"
    assert p.round(Decimal("9.99")) == Decimal("9")
    assert RoundingPolicy().round("1.5") == Decimal("2")


def test_to_decimal():
    assert to_decimal(None) == Decimal("0")
    assert to_decimal(0.1) == Decimal("0.1")
    d = Decimal("1.25")
    assert to_decimal(d) is d
