import json
from decimal import Decimal

from backend.app import pricing_settings as ps
from backend.app.pricing_settings import PricingSettings, load_pricing_settings, pricing_settings_from_json


class _FakeCursor:
    def __init__(self, row=None):
        self.row = row
        self.executed = []

    def execute(self, sql, params=None):
        text = " ".join(str(sql or "").lower().split())
        if "from company_settings" not in text:
            raise AssertionError(f"unexpected SQL in test cursor: {text}")
        self.executed.append((text, params))

    def fetchone(self):
        return self.row


def _env_defaults(monkeypatch, mode="NEAREST_1", max_pct="100", allow_neg="false"):
    monkeypatch.setattr(ps.settings, "pricing_rounding_mode", mode)
    monkeypatch.setattr(ps.settings, "pricing_max_discount_percent", max_pct)
    monkeypatch.setattr(ps.settings, "pricing_allow_negative_totals", allow_neg)


def test_defaults_come_from_environment(monkeypatch):
    _env_defaults(monkeypatch, mode="nearest_0_50", max_pct="25", allow_neg="yes")
    out = ps.default_pricing_settings()
    assert out == PricingSettings(rounding_mode="NEAREST_HALF", max_discount_percent=Decimal("25"), allow_negative_totals=True)


def test_bad_environment_values_fall_back(monkeypatch):
    _env_defaults(monkeypatch, mode="whatever", max_pct="lots", allow_neg="")
    out = ps.default_pricing_settings()
    assert out == PricingSettings()


def test_missing_company_row_uses_defaults(monkeypatch):
    _env_defaults(monkeypatch, mode="FLOOR")
    cur = _FakeCursor(row=None)
    out = load_pricing_settings(cur, "c1")
    assert out.rounding_mode == "FLOOR"
    assert cur.executed[0][1] == ("c1",)


def test_company_row_overrides_defaults(monkeypatch):
    _env_defaults(monkeypatch)
    cur = _FakeCursor(row={"value_json": {"rounding_mode": "CEIL", "max_discount_percent": 15}})
    out = load_pricing_settings(cur, "c1")
    assert out.rounding_mode == "CEIL"
    assert out.max_discount_percent == Decimal("15")
    assert out.allow_negative_totals is False
    assert out.policy.round(Decimal("1.1")) == Decimal("2")


def test_company_row_stored_as_text(monkeypatch):
    _env_defaults(monkeypatch)
    cur = _FakeCursor(row={"value_json": json.dumps({"allow_negative_totals": True})})
    assert load_pricing_settings(cur, "c1").allow_negative_totals is True


def test_malformed_company_row_is_ignored(monkeypatch):
    _env_defaults(monkeypatch)
    assert load_pricing_settings(_FakeCursor(row={"value_json": "{not json"}), "c1") == PricingSettings()
    assert load_pricing_settings(_FakeCursor(row={"value_json": "[1, 2]"}), "c1") == PricingSettings()


def test_out_of_range_percent_keeps_base():
    base = PricingSettings(max_discount_percent=Decimal("30"))
    assert pricing_settings_from_json({"max_discount_percent": 150}, base).max_discount_percent == Decimal("30")
    assert pricing_settings_from_json({"max_discount_percent": -1}, base).max_discount_percent == Decimal("30")
    assert pricing_settings_from_json("nope", base) is base
