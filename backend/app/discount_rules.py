from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Optional, Protocol, Union

from .logs import json_log
from .rounding import to_decimal


EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
FAR_FUTURE = datetime.max.replace(tzinfo=timezone.utc)

APPLIES_TO_VALUES = ("PRODUCT", "CATEGORY")
DISCOUNT_KINDS = ("AMOUNT", "PERCENT")


class PricingValidationError(ValueError):
    """Structurally invalid pricing input that cannot be defaulted."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


@dataclass(frozen=True)
class Unlimited:
    """Cumulative-cap mode with no explicit pool: bounded by scanned quantity only."""


@dataclass(frozen=True)
class Cap:
    """Cumulative-cap mode: at most `quantity` units across all target lines."""

    quantity: Decimal


@dataclass(frozen=True)
class Threshold:
    """All-or-nothing: a line qualifies (for its full quantity) only when qty >= min_quantity."""

    min_quantity: Decimal


QuantityGate = Union[Unlimited, Cap, Threshold]


def quantity_gate_from_legacy(raw, gate_mode: Optional[str] = None) -> QuantityGate:
    """
    Map the stored `max_qty_or_weight` column onto a gate:
    - NULL / 0 -> Unlimited (cumulative-cap engine, no explicit pool)
    - > 0      -> Threshold, or Cap when the row was migrated with gate_mode='cap'
    """
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return Unlimited()
    try:
        q = to_decimal(raw)
    except (InvalidOperation, ValueError):
        raise PricingValidationError(f"max_qty_or_weight is invalid: {raw!r}", field="max_qty_or_weight")
    if not q.is_finite() or q < 0:
        raise PricingValidationError("max_qty_or_weight must be >= 0", field="max_qty_or_weight")
    if q == 0:
        return Unlimited()
    if str(gate_mode or "").strip().lower() == "cap":
        return Cap(q)
    return Threshold(q)


def is_cumulative(gate: QuantityGate) -> bool:
    return isinstance(gate, (Unlimited, Cap))


@dataclass(frozen=True)
class DiscountRule:
    id: Any
    name: str
    applies_to: str
    target_id: Any
    kind: str
    value: Decimal
    priority: int = 0
    quantity_gate: QuantityGate = field(default_factory=Unlimited)
    active_from: datetime = EPOCH
    active_to: datetime = FAR_FUTURE
    active: bool = True
    reason_required: bool = False

    def __post_init__(self):
        object.__setattr__(self, "value", to_decimal(self.value))

    def is_effective(self, now: datetime) -> bool:
        return bool(self.active) and self.active_from <= as_utc(now) <= self.active_to

    def targets(self, product_id, category_id) -> bool:
        if self.applies_to == "PRODUCT":
            return product_id == self.target_id
        if self.applies_to == "CATEGORY":
            return category_id == self.target_id
        raise PricingValidationError(f"unknown applies_to {self.applies_to!r}", field="applies_to")


def as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_instant(v, fallback: datetime, *, end_of_day: bool = False) -> datetime:
    # Reporting/import paths have produced blank and garbage dates; treat them as open-ended.
    if v is None:
        return fallback
    if isinstance(v, datetime):
        return as_utc(v)
    if isinstance(v, date):
        return datetime.combine(v, time.max if end_of_day else time.min, tzinfo=timezone.utc)
    raw = str(v).strip()
    if not raw:
        return fallback
    try:
        if len(raw) == 10:
            return parse_instant(date.fromisoformat(raw), fallback, end_of_day=end_of_day)
        return as_utc(datetime.fromisoformat(raw.replace("Z", "+00:00")))
    except ValueError:
        return fallback


def rule_from_row(row: dict) -> DiscountRule:
    """
    Build a rule from a repository row (or an API payload).

    Accepts `type` or `kind` for the discount kind. Bad window dates never fail;
    a bad kind/target/value does.
    """
    applies_to = str(row.get("applies_to") or "").strip().upper()
    if applies_to not in APPLIES_TO_VALUES:
        raise PricingValidationError(f"applies_to must be PRODUCT or CATEGORY (got {row.get('applies_to')!r})", field="applies_to")
    kind = str(row.get("type") or row.get("kind") or "").strip().upper()
    if kind not in DISCOUNT_KINDS:
        raise PricingValidationError(f"type must be AMOUNT or PERCENT (got {row.get('type') or row.get('kind')!r})", field="type")
    if row.get("target_id") is None:
        raise PricingValidationError("target_id is required", field="target_id")
    try:
        value = to_decimal(row.get("value"))
    except (InvalidOperation, ValueError):
        raise PricingValidationError(f"value is invalid: {row.get('value')!r}", field="value")
    if not value.is_finite() or value < 0:
        raise PricingValidationError("value must be >= 0", field="value")
    if kind == "PERCENT" and value > 100:
        raise PricingValidationError("percent value must be between 0 and 100", field="value")
    try:
        priority = int(row.get("priority") or 0)
    except (TypeError, ValueError):
        raise PricingValidationError(f"priority is invalid: {row.get('priority')!r}", field="priority")

    active = row.get("active")
    return DiscountRule(
        id=row.get("id"),
        name=str(row.get("name") or ""),
        applies_to=applies_to,
        target_id=row.get("target_id"),
        kind=kind,
        value=value,
        priority=priority,
        quantity_gate=quantity_gate_from_legacy(row.get("max_qty_or_weight"), row.get("gate_mode")),
        active_from=parse_instant(row.get("active_from"), EPOCH),
        active_to=parse_instant(row.get("active_to"), FAR_FUTURE, end_of_day=True),
        active=True if active is None else bool(active),
        reason_required=bool(row.get("reason_required") or False),
    )


def select_effective_rules(
    rules: Iterable[Union[DiscountRule, dict]],
    cart_product_ids: Iterable,
    cart_category_ids: Iterable,
    now: Optional[datetime] = None,
    *,
    warnings: Optional[list] = None,
    match_targets: bool = True,
) -> list[DiscountRule]:
    """
    Active + in-window + targeting something in the cart, sorted by priority.

    `sorted` is stable, so equal priorities keep repository order. Rows that
    cannot be turned into a rule are skipped and noted in `warnings`.
    `match_targets=False` trusts the caller (e.g. rows already resolved by SKU).
    """
    at = as_utc(now or datetime.now(timezone.utc))
    product_ids = set(cart_product_ids or [])
    category_ids = set(cart_category_ids or [])

    kept: list[DiscountRule] = []
    for r in rules or []:
        if isinstance(r, DiscountRule):
            rule = r
        else:
            try:
                rule = rule_from_row(r)
            except PricingValidationError as ex:
                json_log("warning", "discounts.rule.skipped", rule_id=r.get("id"), field=ex.field, error=str(ex))
                if warnings is not None:
                    warnings.append(f'Skipped rule "{r.get("name") or r.get("id")}": {ex}')
                continue
        if not rule.is_effective(at):
            continue
        if not match_targets:
            kept.append(rule)
        elif rule.applies_to == "PRODUCT" and rule.target_id in product_ids:
            kept.append(rule)
        elif rule.applies_to == "CATEGORY" and rule.target_id in category_ids:
            kept.append(rule)
    return sorted(kept, key=lambda x: x.priority)


class RuleRepository(Protocol):
    def list_active_rules(self) -> list: ...

    def list_rules_by_skus(self, skus: list[str]) -> list: ...


class ProductLookup(Protocol):
    def get_product_by_sku(self, sku: str) -> Optional[dict]: ...

    def get_product_by_id(self, product_id) -> Optional[dict]: ...


def resolve_rules_for_lines(repo: RuleRepository, lines, now: Optional[datetime] = None, *, warnings: Optional[list] = None) -> list[DiscountRule]:
    """
    Direct id match first. If nothing matches and the lines carry SKUs, ask the
    repository by SKU (covers upstream id/format mismatches). The repository has
    already done the targeting there, so only the window/active filter and the
    priority sort are applied. Lines must carry item-master ids for the engine
    to match those rules (see `canonicalize_line`).
    """
    product_ids = [ln.product_id for ln in lines]
    category_ids = [ln.category_id for ln in lines if ln.category_id is not None]
    rules = select_effective_rules(repo.list_active_rules(), product_ids, category_ids, now, warnings=warnings)
    if rules:
        return rules
    skus = sorted({str(ln.sku).strip() for ln in lines if getattr(ln, "sku", None) and str(ln.sku).strip()})
    if not skus:
        return []
    # Malformed rows were already noted by the direct pass.
    return select_effective_rules(repo.list_rules_by_skus(skus), [], [], now, match_targets=False)


class InMemoryRuleRepository:
    """Rules held in memory (previews, tests, offline POS caches)."""

    def __init__(self, rules: Iterable[Union[DiscountRule, dict]], products: Optional[Iterable[dict]] = None):
        self._rules = list(rules or [])
        self._products = list(products or [])

    @staticmethod
    def _field(r, name):
        return getattr(r, name) if isinstance(r, DiscountRule) else r.get(name)

    def list_active_rules(self) -> list:
        out = []
        for r in self._rules:
            active = self._field(r, "active")
            if active is None or bool(active):
                out.append(r)
        return out

    def list_rules_by_skus(self, skus: list[str]) -> list:
        wanted = {str(s).strip() for s in (skus or [])}
        prods = [p for p in self._products if str(p.get("sku") or "").strip() in wanted]
        product_ids = {p.get("id") for p in prods}
        category_ids = {p.get("category_id") for p in prods if p.get("category_id") is not None}
        out = []
        for r in self.list_active_rules():
            applies_to = str(self._field(r, "applies_to") or "").upper()
            target = self._field(r, "target_id")
            if (applies_to == "PRODUCT" and target in product_ids) or (applies_to == "CATEGORY" and target in category_ids):
                out.append(r)
        return out

    def get_product_by_sku(self, sku: str) -> Optional[dict]:
        s = str(sku or "").strip()
        return next((p for p in self._products if str(p.get("sku") or "").strip() == s), None)

    def get_product_by_id(self, product_id) -> Optional[dict]:
        return next((p for p in self._products if p.get("id") == product_id), None)


_RULE_COLUMNS = """
    r.id::text AS id, r.name, r.priority, r.applies_to, r.target_id, r.type,
    r.value, r.max_qty_or_weight, r.gate_mode, r.active_from, r.active_to,
    r.active, r.reason_required
"""


class PgRuleRepository:
    """
    Reads `discount_rules` through a psycopg cursor (dict_row).
    The caller owns the connection and has already set company context.
    """

    def __init__(self, cur, company_id: str):
        self.cur = cur
        self.company_id = company_id

    def list_active_rules(self) -> list:
        self.cur.execute(
            f"""
            SELECT {_RULE_COLUMNS}
            FROM discount_rules r
            WHERE r.company_id = %s AND r.active = true
            ORDER BY r.priority, r.created_at, r.id
            """,
            (self.company_id,),
        )
        return self.cur.fetchall() or []

    def list_rules_by_skus(self, skus: list[str]) -> list:
        skus = [s for s in (skus or []) if s]
        if not skus:
            return []
        self.cur.execute(
            f"""
            SELECT {_RULE_COLUMNS}
            FROM discount_rules r
            WHERE r.company_id = %s
              AND r.active = true
              AND (
                (r.applies_to = 'PRODUCT' AND r.target_id IN (
                    SELECT i.id::text FROM items i WHERE i.company_id = %s AND i.sku = ANY(%s)
                ))
                OR
                (r.applies_to = 'CATEGORY' AND r.target_id IN (
                    SELECT i.category_id::text FROM items i
                    WHERE i.company_id = %s AND i.sku = ANY(%s) AND i.category_id IS NOT NULL
                ))
              )
            ORDER BY r.priority, r.created_at, r.id
            """,
            (self.company_id, self.company_id, skus, self.company_id, skus),
        )
        return self.cur.fetchall() or []


class PgProductLookup:
    """Item id/category/retail price for populating cart lines."""

    _SQL = """
        SELECT i.id::text AS id, i.sku, i.category_id::text AS category_id,
               p.price_usd AS retail_price
        FROM items i
        LEFT JOIN LATERAL (
            SELECT price_usd
            FROM item_prices ip
            WHERE ip.item_id = i.id
              AND ip.effective_from <= CURRENT_DATE
              AND (ip.effective_to IS NULL OR ip.effective_to >= CURRENT_DATE)
            ORDER BY ip.effective_from DESC, ip.created_at DESC
            LIMIT 1
        ) p ON true
        WHERE i.company_id = %s AND {where}
        LIMIT 1
    """

    def __init__(self, cur, company_id: str):
        self.cur = cur
        self.company_id = company_id

    def get_product_by_sku(self, sku: str) -> Optional[dict]:
        self.cur.execute(self._SQL.format(where="i.sku = %s"), (self.company_id, sku))
        return self.cur.fetchone()

    def get_product_by_id(self, product_id) -> Optional[dict]:
        self.cur.execute(self._SQL.format(where="i.id::text = %s"), (self.company_id, str(product_id)))
        return self.cur.fetchone()
