from __future__ import annotations
from datetime import datetime
from .time_utils import parse_iso_datetime

from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import Boolean, Integer, String, Text, DateTime
from sqlalchemy.orm import DeclarativeMeta

from .errors import ValidationError
from .models.inventory import ADJUSTMENT_REASONS
from .models.sales import PAYMENT_METHODS


# Maximum price: 9,999,999.99 (999,999,999 cents)
MAX_PRICE_CENTS = 999_999_999
MAX_LINE_QUANTITY = 100_000


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Central policy layer:
    - writable_fields: what clients are allowed to set (security boundary)
    - required_on_create: fields required for POST
    """
    writable_fields: set[str]
    required_on_create: set[str] = None  # type: ignore


def _columns_by_key(model: DeclarativeMeta) -> dict[str, Any]:
    mapper = model.__mapper__
    return {c.key: c for c in mapper.columns}


def _coerce_int(key: str, value: Any) -> int:
    # bool is an int subclass; never accept it as a number
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{key} must be an integer")
        if 'e' in stripped.lower():
            raise ValidationError(f"{key} must be a plain integer (scientific notation not allowed)")
        if '.' in stripped:
            raise ValidationError(f"{key} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{key} must be an integer")
    if isinstance(value, float):
        raise ValidationError(f"{key} must be an integer, not a decimal")
    raise ValidationError(f"{key} must be an integer")


def _coerce_value(col, value: Any):
    coltype = col.type

    if value is None:
        return None

    if isinstance(coltype, Integer):
        return _coerce_int(col.key, value)

    if isinstance(coltype, Boolean):
        if isinstance(value, bool):
            return value
        raise ValidationError(f"{col.key} must be a boolean")

    # Datetimes (accept ISO-8601 strings; normalize to UTC)
    if isinstance(coltype, DateTime):
        if isinstance(value, datetime):
            return value
        if isinstance(value, str):
            try:
                dt = parse_iso_datetime(value)
            except ValueError:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime")
            if dt is None:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime")
            return dt
        raise ValidationError(f"{col.key} must be a datetime")

    if isinstance(coltype, (String, Text)):
        return str(value).strip()

    return value


def validate_payload(
    *,
    model: DeclarativeMeta,
    payload: dict,
    policy: ModelValidationPolicy,
    partial: bool,
) -> dict:
    """
    Validates + normalizes incoming JSON against:
    - SQLAlchemy column metadata (nullable, type, String length)
    - a policy allowlist (writable_fields)
    - required_on_create (if partial=False)
    Returns a cleaned patch dict with only writable fields.
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    required = policy.required_on_create or set()
    if not partial:
        missing = sorted(f for f in required if f not in payload)
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    cols = _columns_by_key(model)

    for k in payload.keys():
        if k not in policy.writable_fields:
            raise ValidationError(f"Field not allowed: {k}")
        if k not in cols:
            raise ValidationError(f"Unknown field: {k}")

    patch: dict = {}

    for k, raw in payload.items():
        col = cols[k]

        if raw is None:
            if not col.nullable:
                raise ValidationError(f"{k} cannot be null")
            patch[k] = None
            continue

        val = _coerce_value(col, raw)

        if isinstance(col.type, (String, Text)) and not col.nullable:
            if isinstance(val, str) and val == "":
                raise ValidationError(f"{k} cannot be blank")

        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                raise ValidationError(f"{k} exceeds max length {col.type.length}")

        patch[k] = val

    return patch


def enforce_rules_product(patch: dict) -> None:
    """Price rules not captured by column metadata. Shared by products and variants."""
    for key in ("price_cents", "cost_price_cents"):
        if key in patch and patch[key] is not None:
            price = patch[key]
            if price < 0:
                raise ValidationError(f"{key} must be >= 0")
            if price > MAX_PRICE_CENTS:
                raise ValidationError(f"{key} cannot exceed {MAX_PRICE_CENTS}")
    if "min_stock_level" in patch and patch["min_stock_level"] is not None:
        if patch["min_stock_level"] < 0:
            raise ValidationError("min_stock_level must be >= 0")


# =============================================================================
# Sale / refund / adjustment payloads
# =============================================================================

@dataclass(frozen=True)
class SaleLineRequest:
    quantity: int
    product_id: int | None = None
    variant_id: int | None = None
    unit_price_cents: int | None = None
    discount_cents: int = 0


@dataclass(frozen=True)
class SaleRequest:
    items: list[SaleLineRequest]
    payment_method: str
    customer_id: int | None = None
    loyalty_points_used: int = 0
    discount_cents: int = 0
    notes: str | None = None
    # Client-computed totals, checked against the server's figures
    subtotal_cents: int | None = None
    tax_cents: int | None = None
    total_cents: int | None = None


@dataclass(frozen=True)
class RefundLineRequest:
    sale_item_id: int
    quantity: int


@dataclass(frozen=True)
class RefundRequest:
    refund_method: str | None = None
    reason: str | None = None
    items: list[RefundLineRequest] | None = None


@dataclass(frozen=True)
class AdjustmentRequest:
    quantity_change: int
    reason: str
    product_id: int | None = None
    variant_id: int | None = None
    note: str | None = None


@dataclass
class _Collector:
    """Accumulates field errors so a single 400 can list all of them."""
    errors: list = field(default_factory=list)

    def add(self, path: str, message: str) -> None:
        self.errors.append({"field": path, "message": message})

    def int_field(self, data: dict, key: str, path: str, *, required: bool = False,
                  minimum: int | None = None, maximum: int | None = None) -> int | None:
        if key not in data or data[key] is None:
            if required:
                self.add(path, "is required")
            return None
        try:
            value = _coerce_int(path, data[key])
        except ValidationError as e:
            self.add(path, e.message)
            return None
        if minimum is not None and value < minimum:
            self.add(path, f"must be >= {minimum}")
            return None
        if maximum is not None and value > maximum:
            self.add(path, f"must be <= {maximum}")
            return None
        return value

    def raise_if_any(self, message: str) -> None:
        if self.errors:
            raise ValidationError(message, self.errors)


def _require_object(payload: Any) -> dict:
    if payload is None:
        raise ValidationError("Request body is required")
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    return payload


def _parse_target(c: _Collector, raw: dict, path: str) -> tuple[int | None, int | None]:
    product_id = c.int_field(raw, "product_id", f"{path}.product_id", minimum=1)
    variant_id = c.int_field(raw, "variant_id", f"{path}.variant_id", minimum=1)
    has_product = raw.get("product_id") is not None
    has_variant = raw.get("variant_id") is not None
    if has_product == has_variant:
        c.add(path, "exactly one of product_id or variant_id is required")
    return product_id, variant_id


def parse_cart_lines(raw_items: Any, *, max_lines: int, c: _Collector | None = None) -> list[SaleLineRequest]:
    own = c is None
    c = c or _Collector()
    lines: list[SaleLineRequest] = []

    if not isinstance(raw_items, list) or not raw_items:
        c.add("items", "must be a non-empty list")
    elif len(raw_items) > max_lines:
        c.add("items", f"cannot contain more than {max_lines} lines")
    else:
        for idx, raw in enumerate(raw_items):
            path = f"items[{idx}]"
            if not isinstance(raw, dict):
                c.add(path, "must be an object")
                continue
            before = len(c.errors)
            product_id, variant_id = _parse_target(c, raw, path)
            quantity = c.int_field(raw, "quantity", f"{path}.quantity", required=True,
                                   minimum=1, maximum=MAX_LINE_QUANTITY)
            unit_price = c.int_field(raw, "unit_price_cents", f"{path}.unit_price_cents",
                                     minimum=0, maximum=MAX_PRICE_CENTS)
            discount = c.int_field(raw, "discount_cents", f"{path}.discount_cents", minimum=0)
            if len(c.errors) == before:
                lines.append(SaleLineRequest(
                    quantity=quantity,
                    product_id=product_id,
                    variant_id=variant_id,
                    unit_price_cents=unit_price,
                    discount_cents=discount or 0,
                ))

    if own:
        c.raise_if_any("Invalid cart")
    return lines


def parse_sale_request(payload: Any, *, max_lines: int) -> SaleRequest:
    """Shape-check a sale body. Business rules (stock, prices, points) are checked later."""
    data = _require_object(payload)
    c = _Collector()

    items = parse_cart_lines(data.get("items"), max_lines=max_lines, c=c)

    payment_method = data.get("payment_method")
    if not isinstance(payment_method, str) or not payment_method.strip():
        c.add("payment_method", "is required")
        payment_method = ""
    else:
        payment_method = payment_method.strip().upper()
        if payment_method not in PAYMENT_METHODS:
            c.add("payment_method", f"must be one of {', '.join(PAYMENT_METHODS)}")

    customer_id = c.int_field(data, "customer_id", "customer_id", minimum=1)
    points = c.int_field(data, "loyalty_points_used", "loyalty_points_used", minimum=0)
    discount = c.int_field(data, "discount_cents", "discount_cents", minimum=0)
    subtotal = c.int_field(data, "subtotal_cents", "subtotal_cents", minimum=0)
    tax = c.int_field(data, "tax_cents", "tax_cents", minimum=0)
    total = c.int_field(data, "total_cents", "total_cents", minimum=0)

    notes = data.get("notes")
    if notes is not None and not isinstance(notes, str):
        c.add("notes", "must be a string")
        notes = None

    c.raise_if_any("Invalid sale request")

    return SaleRequest(
        items=items,
        payment_method=payment_method,
        customer_id=customer_id,
        loyalty_points_used=points or 0,
        discount_cents=discount or 0,
        notes=notes.strip() if notes else None,
        subtotal_cents=subtotal,
        tax_cents=tax,
        total_cents=total,
    )


def parse_refund_request(payload: Any) -> RefundRequest:
    data = payload if payload is not None else {}
    if not isinstance(data, dict):
        raise ValidationError("Invalid JSON payload")
    c = _Collector()

    refund_method = data.get("refund_method")
    if refund_method is not None:
        if not isinstance(refund_method, str) or refund_method.strip().upper() not in PAYMENT_METHODS:
            c.add("refund_method", f"must be one of {', '.join(PAYMENT_METHODS)}")
            refund_method = None
        else:
            refund_method = refund_method.strip().upper()

    reason = data.get("reason")
    if reason is not None and not isinstance(reason, str):
        c.add("reason", "must be a string")
        reason = None

    items = None
    raw_items = data.get("items")
    if raw_items is not None:
        if not isinstance(raw_items, list) or not raw_items:
            c.add("items", "must be a non-empty list when provided")
        else:
            items = []
            seen: set[int] = set()
            for idx, raw in enumerate(raw_items):
                path = f"items[{idx}]"
                if not isinstance(raw, dict):
                    c.add(path, "must be an object")
                    continue
                item_id = c.int_field(raw, "sale_item_id", f"{path}.sale_item_id", required=True, minimum=1)
                qty = c.int_field(raw, "quantity", f"{path}.quantity", required=True, minimum=1)
                if item_id is not None and item_id in seen:
                    c.add(f"{path}.sale_item_id", "is duplicated")
                    continue
                if item_id is not None and qty is not None:
                    seen.add(item_id)
                    items.append(RefundLineRequest(sale_item_id=item_id, quantity=qty))

    c.raise_if_any("Invalid refund request")
    return RefundRequest(
        refund_method=refund_method,
        reason=reason.strip() if reason else None,
        items=items,
    )


def parse_adjustment(payload: Any, *, path: str = "") -> AdjustmentRequest:
    data = _require_object(payload)
    c = _Collector()
    prefix = f"{path}." if path else ""

    product_id, variant_id = _parse_target(c, data, path or "target")
    quantity_change = c.int_field(data, "quantity_change", f"{prefix}quantity_change", required=True)
    if quantity_change == 0:
        c.add(f"{prefix}quantity_change", "must be non-zero")

    reason = data.get("reason")
    if not isinstance(reason, str) or reason.strip().upper() not in ADJUSTMENT_REASONS:
        c.add(f"{prefix}reason", f"must be one of {', '.join(ADJUSTMENT_REASONS)}")
        reason = ""
    else:
        reason = reason.strip().upper()

    note = data.get("note")
    if note is not None and not isinstance(note, str):
        c.add(f"{prefix}note", "must be a string")
        note = None
    elif note is not None and len(note) > 500:
        c.add(f"{prefix}note", "exceeds max length 500")

    c.raise_if_any("Invalid stock adjustment")
    return AdjustmentRequest(
        quantity_change=quantity_change,
        reason=reason,
        product_id=product_id,
        variant_id=variant_id,
        note=note.strip() if note else None,
    )
