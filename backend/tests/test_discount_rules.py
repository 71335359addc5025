from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from backend.app.discount_engine import CartLine, apply_rules, canonicalize_line
from backend.app.discount_rules import (
    EPOCH,
    FAR_FUTURE,
    Cap,
    DiscountRule,
    InMemoryRuleRepository,
    PricingValidationError,
    Threshold,
    Unlimited,
    parse_instant,
    quantity_gate_from_legacy,
    resolve_rules_for_lines,
    rule_from_row,
    select_effective_rules,
)


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _row(**over):
    row = {
        "id": "r1",
        "name": "Ten off",
        "applies_to": "PRODUCT",
        "target_id": "item-1",
        "type": "AMOUNT",
        "value": Decimal("10"),
        "max_qty_or_weight": None,
        "gate_mode": None,
        "active_from": None,
        "active_to": None,
        "priority": 0,
        "active": True,
        "reason_required": False,
    }
    row.update(over)
    return row


def _rule(rule_id, priority=0, **over):
    fields = dict(
        id=rule_id,
        name=f"rule {rule_id}",
        applies_to="PRODUCT",
        target_id="item-1",
        kind="AMOUNT",
        value=Decimal("1"),
        priority=priority,
    )
    fields.update(over)
    return DiscountRule(**fields)


def test_legacy_gate_mapping():
    assert quantity_gate_from_legacy(None) == Unlimited()
    assert quantity_gate_from_legacy("") == Unlimited()
    assert quantity_gate_from_legacy(0) == Unlimited()
    assert quantity_gate_from_legacy(Decimal("5")) == Threshold(Decimal("5"))
    assert quantity_gate_from_legacy("3", gate_mode=" CAP ") == Cap(Decimal("3"))
    # A zero pool stays unlimited even for migrated cap rows.
    assert quantity_gate_from_legacy(0, gate_mode="cap") == Unlimited()


def test_legacy_gate_rejects_negative_and_garbage():
    with pytest.raises(PricingValidationError) as ex:
        quantity_gate_from_legacy(-1)
    assert ex.value.field == "max_qty_or_weight"
    with pytest.raises(PricingValidationError):
        quantity_gate_from_legacy("lots")


def test_rule_from_row_normalizes_codes():
    rule = rule_from_row(_row(applies_to="category", type="percent", value="5", priority="2"))
    assert rule.applies_to == "CATEGORY"
    assert rule.kind == "PERCENT"
    assert rule.value == Decimal("5")
    assert rule.priority == 2
    assert rule.quantity_gate == Unlimited()
    assert rule.active is True


def test_rule_from_row_accepts_kind_alias():
    row = _row()
    del row["type"]
    row["kind"] = "amount"
    assert rule_from_row(row).kind == "AMOUNT"


@pytest.mark.parametrize(
    "over,field",
    [
        ({"applies_to": "BRAND"}, "applies_to"),
        ({"type": "BOGO"}, "type"),
        ({"target_id": None}, "target_id"),
        ({"value": Decimal("-1")}, "value"),
        ({"value": "ten"}, "value"),
        ({"type": "PERCENT", "value": Decimal("101")}, "value"),
        ({"priority": "high"}, "priority"),
    ],
)
def test_rule_from_row_rejects_malformed_rows(over, field):
    with pytest.raises(PricingValidationError) as ex:
        rule_from_row(_row(**over))
    assert ex.value.field == field


def test_window_bounds_default_to_open_ended():
    rule = rule_from_row(_row(active_from="not a date", active_to=""))
    assert rule.active_from == EPOCH
    assert rule.active_to == FAR_FUTURE


def test_date_only_active_to_is_inclusive():
    rule = rule_from_row(_row(active_from="2026-03-01", active_to="2026-03-01"))
    assert rule.active_from == datetime(2026, 3, 1, tzinfo=timezone.utc)
    assert rule.is_effective(datetime(2026, 3, 1, 23, 59, tzinfo=timezone.utc))
    assert not rule.is_effective(datetime(2026, 3, 2, 0, 0, 1, tzinfo=timezone.utc))


def test_parse_instant_naive_datetimes_are_utc():
    assert parse_instant(datetime(2026, 1, 1, 8, 0), EPOCH) == datetime(2026, 1, 1, 8, 0, tzinfo=timezone.utc)
    assert parse_instant("2026-01-01T08:00:00Z", EPOCH) == datetime(2026, 1, 1, 8, 0, tzinfo=timezone.utc)
    assert parse_instant(date(2026, 1, 1), EPOCH, end_of_day=True).hour == 23
    assert parse_instant(None, FAR_FUTURE) == FAR_FUTURE


def test_selector_filters_inactive_out_of_window_and_untargeted():
    rows = [
        _row(id="ok"),
        _row(id="off", active=False),
        _row(id="future", active_from="2026-04-01"),
        _row(id="expired", active_to="2026-02-01"),
        _row(id="other", target_id="item-2"),
    ]
    rules = select_effective_rules(rows, ["item-1"], [], NOW)
    assert [r.id for r in rules] == ["ok"]


def test_selector_sorts_by_priority_and_keeps_ties_in_repository_order():
    rules = [_rule("b", 5), _rule("a", 1), _rule("c", 5), _rule("d", 0)]
    out = select_effective_rules(rules, ["item-1"], [], NOW)
    assert [r.id for r in out] == ["d", "a", "b", "c"]


def test_selector_uses_exact_identifier_equality():
    rules = [_rule("numeric", target_id=1)]
    assert select_effective_rules(rules, ["1"], [], NOW) == []
    assert [r.id for r in select_effective_rules(rules, [1], [], NOW)] == ["numeric"]


def test_selector_matches_categories():
    rules = [_rule("cat", applies_to="CATEGORY", target_id="cat-b")]
    assert [r.id for r in select_effective_rules(rules, ["item-9"], ["cat-b"], NOW)] == ["cat"]
    assert select_effective_rules(rules, ["cat-b"], [], NOW) == []


def test_selector_skips_malformed_rows_with_warning():
    warnings = []
    rows = [_row(id="bad", name="Broken", type="BOGO"), _row(id="good")]
    rules = select_effective_rules(rows, ["item-1"], [], NOW, warnings=warnings)
    assert [r.id for r in rules] == ["good"]
    assert len(warnings) == 1
    assert warnings[0].startswith('Skipped rule "Broken":')


def test_targets_raises_on_unknown_applies_to():
    rule = _rule("x", applies_to="BRAND")
    with pytest.raises(PricingValidationError):
        rule.targets("item-1", None)


def test_in_memory_repository_lists_only_active_rules():
    repo = InMemoryRuleRepository([_row(id="on"), _row(id="off", active=False), _rule("obj")])
    ids = [r["id"] if isinstance(r, dict) else r.id for r in repo.list_active_rules()]
    assert ids == ["on", "obj"]


def test_resolve_prefers_direct_matches():
    repo = InMemoryRuleRepository([_row(id="direct")])
    lines = [CartLine(product_id="item-1", quantity=1, unit_price=10, sku="SKU1")]
    assert [r.id for r in resolve_rules_for_lines(repo, lines, NOW)] == ["direct"]


def test_resolve_falls_back_to_sku_lookup_for_mismatched_ids():
    products = [{"id": "item-1", "sku": "SKU1", "category_id": "cat-a", "retail_price": Decimal("100")}]
    repo = InMemoryRuleRepository([_row(id="by-sku"), _row(id="unrelated", target_id="item-7")], products)
    line = CartLine(product_id="legacy-42", quantity=2, unit_price=100, sku=" SKU1 ")

    rules = resolve_rules_for_lines(repo, [line], NOW)
    assert [r.id for r in rules] == ["by-sku"]

    canon = canonicalize_line(line, repo.get_product_by_sku("SKU1"))
    res = apply_rules([canon], rules)
    assert res.lines[0].product_id == "item-1"
    assert res.lines[0].line_discount == Decimal("20")


def test_resolve_without_skus_returns_nothing():
    repo = InMemoryRuleRepository([_row(target_id="item-7")])
    lines = [CartLine(product_id="item-1", quantity=1, unit_price=10)]
    assert resolve_rules_for_lines(repo, lines, NOW) == []
