import json
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from ..cart_pricing import CartPricing, preview_rule, price_cart
from ..cart_totals import ManualDiscount
from ..db import get_conn, set_company_context
from ..deps import get_company_id, require_permission, get_current_user
from ..discount_engine import CartLine, canonicalize_line
from ..discount_rules import PgProductLookup, PgRuleRepository, resolve_rules_for_lines, rule_from_row
from ..logs import json_log
from ..pricing_settings import load_pricing_settings
from ..validation import AppliesTo, DiscountKind, GateMode

router = APIRouter(prefix="/discounts", tags=["discounts"])


class DiscountRuleIn(BaseModel):
    name: str
    applies_to: AppliesTo
    target_id: str
    type: DiscountKind
    value: Decimal
    max_qty_or_weight: Optional[Decimal] = None
    gate_mode: GateMode = "threshold"
    active_from: Optional[datetime] = None
    active_to: Optional[datetime] = None
    priority: int = 0
    reason_required: bool = False
    active: bool = True


class DiscountRuleUpdate(BaseModel):
    name: Optional[str] = None
    applies_to: Optional[AppliesTo] = None
    target_id: Optional[str] = None
    type: Optional[DiscountKind] = None
    value: Optional[Decimal] = None
    max_qty_or_weight: Optional[Decimal] = None
    gate_mode: Optional[GateMode] = None
    active_from: Optional[datetime] = None
    active_to: Optional[datetime] = None
    priority: Optional[int] = None
    reason_required: Optional[bool] = None
    active: Optional[bool] = None


class CartLineIn(BaseModel):
    product_id: str
    sku: Optional[str] = None
    category_id: Optional[str] = None
    quantity: Decimal
    unit_price: Optional[Decimal] = None
    reference_price: Optional[Decimal] = None
    tax: Decimal = Decimal("0")


class ManualDiscountIn(BaseModel):
    type: DiscountKind
    value: Decimal


class PriceCartIn(BaseModel):
    lines: List[CartLineIn]
    manual_discount: Optional[ManualDiscountIn] = None
    now: Optional[datetime] = None


class RulePreviewIn(BaseModel):
    rule: DiscountRuleIn
    lines: List[CartLineIn]


def _validate_rule_fields(patch: dict):
    if "name" in patch and not (patch["name"] or "").strip():
        raise HTTPException(status_code=400, detail="name is required")
    if "target_id" in patch and not (patch["target_id"] or "").strip():
        raise HTTPException(status_code=400, detail="target_id is required")
    value = patch.get("value")
    if value is not None:
        if value < 0:
            raise HTTPException(status_code=400, detail="value must be >= 0")
        if patch.get("type") == "PERCENT" and value > 100:
            raise HTTPException(status_code=400, detail="percent value must be between 0 and 100")
    gate = patch.get("max_qty_or_weight")
    if gate is not None and gate < 0:
        raise HTTPException(status_code=400, detail="max_qty_or_weight must be >= 0")
    start, end = patch.get("active_from"), patch.get("active_to")
    if start and end and end < start:
        raise HTTPException(status_code=400, detail="active_to cannot be before active_from")


def _lines_from_payload(lines: List[CartLineIn], lookup) -> List[CartLine]:
    """
    Build engine lines, re-keyed onto the item master (by id, then SKU) so rule
    targets match. Missing category/reference/unit prices come from the master.
    """
    if not lines:
        raise HTTPException(status_code=400, detail="lines are required")
    out: List[CartLine] = []
    for idx, ln in enumerate(lines):
        sku = (ln.sku or "").strip() or None
        product = lookup.get_product_by_id(ln.product_id)
        if product is None and sku:
            product = lookup.get_product_by_sku(sku)
        unit_price = ln.unit_price
        if unit_price is None and product is not None:
            unit_price = product.get("retail_price")
        if unit_price is None:
            if product is None:
                raise HTTPException(status_code=404, detail=f"lines[{idx}]: product not found")
            raise HTTPException(status_code=400, detail=f"lines[{idx}]: unit_price is required (no retail price on file)")
        line = CartLine(
            product_id=ln.product_id,
            category_id=ln.category_id,
            quantity=ln.quantity,
            unit_price=unit_price,
            reference_price=ln.reference_price,
            tax=ln.tax,
            sku=sku,
        )
        out.append(canonicalize_line(line, product))
    return out


def _applied_rule_out(a) -> dict:
    return {
        "rule_id": a.rule_id,
        "rule_name": a.rule_name,
        "discount_amount": a.discount_amount,
        "remaining_cap": a.remaining_cap,
    }


def _pricing_out(res: CartPricing) -> dict:
    return {
        "lines": [
            {
                "product_id": ln.product_id,
                "sku": ln.sku,
                "category_id": ln.category_id,
                "quantity": ln.quantity,
                "unit_price": ln.unit_price,
                "reference_price": ln.reference_price,
                "line_discount": ln.line_discount,
                "tax": ln.tax,
                "total": ln.total,
                "applied_rules": [_applied_rule_out(a) for a in ln.applied_rules],
            }
            for ln in res.lines
        ],
        "applied_rules": [_applied_rule_out(a) for a in res.applied_rules],
        "warnings": list(res.warnings),
        "totals": res.totals.as_dict(),
    }


@router.get("/rules", dependencies=[Depends(require_permission("discounts:read"))])
def list_rules(company_id: str = Depends(get_company_id)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, name, applies_to, target_id, type, value, max_qty_or_weight, gate_mode,
                       active_from, active_to, priority, reason_required, active, created_at, updated_at
                FROM discount_rules
                WHERE company_id = %s
                ORDER BY active DESC, priority, created_at, id
                """,
                (company_id,),
            )
            return {"rules": cur.fetchall()}


@router.post("/rules", dependencies=[Depends(require_permission("discounts:write"))])
def create_rule(data: DiscountRuleIn, company_id: str = Depends(get_company_id), user=Depends(get_current_user)):
    payload = data.model_dump()
    _validate_rule_fields(payload)
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO discount_rules
                      (id, company_id, name, applies_to, target_id, type, value, max_qty_or_weight, gate_mode,
                       active_from, active_to, priority, reason_required, active)
                    VALUES
                      (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING id
                    """,
                    (
                        company_id,
                        data.name.strip(),
                        data.applies_to,
                        data.target_id.strip(),
                        data.type,
                        data.value,
                        data.max_qty_or_weight,
                        data.gate_mode,
                        data.active_from,
                        data.active_to,
                        data.priority,
                        data.reason_required,
                        data.active,
                    ),
                )
                rid = cur.fetchone()["id"]
                cur.execute(
                    """
                    INSERT INTO audit_logs (id, company_id, user_id, action, entity_type, entity_id, details)
                    VALUES (gen_random_uuid(), %s, %s, 'discount_rule_create', 'discount_rule', %s, %s::jsonb)
                    """,
                    (company_id, user["user_id"], rid, json.dumps(payload, default=str)),
                )
                return {"id": rid}


@router.patch("/rules/{rule_id}", dependencies=[Depends(require_permission("discounts:write"))])
def update_rule(rule_id: str, data: DiscountRuleUpdate, company_id: str = Depends(get_company_id), user=Depends(get_current_user)):
    patch = data.model_dump(exclude_none=True)
    if not patch:
        return {"ok": True}
    for k in ("name", "target_id"):
        if k in patch:
            patch[k] = (patch[k] or "").strip()
    _validate_rule_fields(patch)
    fields = []
    params = []
    for k, v in patch.items():
        fields.append(f"{k} = %s")
        params.append(v)
    params.extend([company_id, rule_id])
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    UPDATE discount_rules
                    SET {', '.join(fields)}, updated_at = now()
                    WHERE company_id = %s AND id = %s
                    RETURNING id
                    """,
                    params,
                )
                if not cur.fetchone():
                    raise HTTPException(status_code=404, detail="discount rule not found")
                cur.execute(
                    """
                    INSERT INTO audit_logs (id, company_id, user_id, action, entity_type, entity_id, details)
                    VALUES (gen_random_uuid(), %s, %s, 'discount_rule_update', 'discount_rule', %s, %s::jsonb)
                    """,
                    (company_id, user["user_id"], rule_id, json.dumps(patch, default=str)),
                )
                return {"ok": True}


@router.post("/price-cart", dependencies=[Depends(require_permission("discounts:read"))])
def price_cart_endpoint(data: PriceCartIn, company_id: str = Depends(get_company_id)):
    """
    Price a cart with the company's effective rules and pricing policy.
    Read-only: nothing is persisted; checkout posts the returned figures.
    """
    now = data.now or datetime.now(timezone.utc)
    manual = None
    if data.manual_discount is not None:
        manual = ManualDiscount(kind=data.manual_discount.type, value=data.manual_discount.value)
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            lines = _lines_from_payload(data.lines, PgProductLookup(cur, company_id))
            pricing = load_pricing_settings(cur, company_id)
            warnings: list = []
            rules = resolve_rules_for_lines(PgRuleRepository(cur, company_id), lines, now, warnings=warnings)

    res = price_cart(lines, rules, pricing, manual)
    res.warnings = warnings + res.warnings
    json_log(
        "info",
        "discounts.price_cart",
        company_id=company_id,
        lines=len(lines),
        rules=len(rules),
        applied=len(res.applied_rules),
        warnings=len(res.warnings),
    )
    return _pricing_out(res)


@router.post("/rules/preview", dependencies=[Depends(require_permission("discounts:read"))])
def preview_rule_endpoint(data: RulePreviewIn, company_id: str = Depends(get_company_id)):
    payload = data.rule.model_dump()
    _validate_rule_fields(payload)
    rule = rule_from_row({**payload, "id": "preview"})
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            lines = _lines_from_payload(data.lines, PgProductLookup(cur, company_id))
            pricing = load_pricing_settings(cur, company_id)
    return _pricing_out(preview_rule(rule, lines, pricing))
