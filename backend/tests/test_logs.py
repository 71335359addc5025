import json
from decimal import Decimal

from backend.app.logs import json_log


def test_json_log_writes_one_structured_line_to_stderr(capsys):
    json_log("warning", "discounts.rule.skipped", rule_id="r1")
    err = capsys.readouterr().err
    lines = [ln for ln in err.splitlines() if ln.strip()]
    assert len(lines) == 1
    rec = json.loads(lines[0])
    assert rec["level"] == "warning"
    assert rec["event"] == "discounts.rule.skipped"
    assert rec["rule_id"] == "r1"
    assert "ts" in rec


def test_json_log_stringifies_non_json_values(capsys):
    json_log("info", "discounts.price_cart", total=Decimal("1.50"))
    rec = json.loads(capsys.readouterr().err.strip())
    assert rec["total"] == "1.50"


def test_selector_skip_is_logged(capsys):
    from backend.app.discount_rules import select_effective_rules

    select_effective_rules([{"id": "bad", "name": "Broken", "applies_to": "BRAND"}], [], [])
    rec = json.loads(capsys.readouterr().err.strip())
    assert rec["event"] == "discounts.rule.skipped"
    assert rec["field"] == "applies_to"
