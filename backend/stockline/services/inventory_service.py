# Overview: Manual and bulk stock adjustments plus inventory read models (low stock, product detail).

from __future__ import annotations

from dataclasses import dataclass

from flask import current_app

from ..errors import DomainError, NotFoundError, ValidationError
from ..extensions import db
from ..models import Product, StockAdjustment, Variant
from ..validation import AdjustmentRequest, parse_adjustment
from . import notification_service
from .concurrency import run_in_transaction
from .ledger_service import list_adjustments, record_adjustment
from .stock_service import StockChange, StockTarget, apply_delta


MAX_BULK_ADJUSTMENTS = 100


@dataclass
class AdjustmentResult:
    change: StockChange
    adjustment: StockAdjustment

    def to_dict(self) -> dict:
        return {
            "adjustment": self.adjustment.to_dict(),
            "product_id": self.change.product_id,
            "variant_id": self.change.variant_id,
            "previous_stock": self.change.previous_stock,
            "new_stock": self.change.new_stock,
            "low_stock": self.change.is_low_stock,
        }


def adjust_inventory(req: AdjustmentRequest, actor_user_id: int | None) -> AdjustmentResult:
    """Apply one manual adjustment (stock change + ledger row) atomically."""
    target = StockTarget(product_id=req.product_id, variant_id=req.variant_id)

    def _op() -> tuple[AdjustmentResult, list[int]]:
        change = apply_delta(target, req.quantity_change, req.reason)
        adjustment_id = record_adjustment(
            StockTarget(product_id=change.product_id, variant_id=change.variant_id),
            change.quantity_change,
            change.previous_stock,
            change.new_stock,
            req.reason,
            note=req.note,
            actor_user_id=actor_user_id,
        )
        events = notification_service.stock_events(
            change, reason=req.reason, adjustment_id=adjustment_id,
        )
        adjustment = db.session.get(StockAdjustment, adjustment_id)
        return AdjustmentResult(change=change, adjustment=adjustment), [e.id for e in events]

    try:
        result, event_ids = run_in_transaction(_op, description="adjust inventory")
    except DomainError as exc:
        current_app.logger.warning(
            "Stock adjustment on %s rejected: %s", target.describe(), exc.message,
        )
        raise

    current_app.logger.info(
        "Stock adjusted: %s %+d (%s) -> %s",
        target.describe(), req.quantity_change, req.reason, result.change.new_stock,
    )
    notification_service.dispatch_events(event_ids)
    return result


def bulk_adjust(entries: list, actor_user_id: int | None) -> dict:
    """
    Apply many adjustments, each in its own transaction.

    A failing entry does not undo the others; it is reported in errors with
    its index.
    """
    if not isinstance(entries, list) or not entries:
        raise ValidationError("adjustments must be a non-empty list")
    if len(entries) > MAX_BULK_ADJUSTMENTS:
        raise ValidationError(f"adjustments cannot contain more than {MAX_BULK_ADJUSTMENTS} entries")

    results: list[dict] = []
    errors: list[dict] = []
    for idx, raw in enumerate(entries):
        try:
            req = parse_adjustment(raw, path=f"adjustments[{idx}]")
            result = adjust_inventory(req, actor_user_id)
        except DomainError as exc:
            errors.append({
                "index": idx,
                "error": exc.message,
                "details": exc.details,
                "status_code": exc.status_code,
            })
            continue
        results.append({"index": idx, **result.to_dict()})

    return {
        "results": results,
        "errors": errors,
        "success_count": len(results),
        "error_count": len(errors),
    }


def list_low_stock() -> dict:
    """Active products without variants, and active variants, at or below their minimum."""
    products = (
        db.session.query(Product)
        .filter(
            Product.is_active.is_(True),
            ~Product.variants.any(),
            Product.stock_quantity <= Product.min_stock_level,
        )
        .order_by(Product.stock_quantity.asc(), Product.name.asc())
        .all()
    )
    variants = (
        db.session.query(Variant)
        .join(Product, Product.id == Variant.product_id)
        .filter(
            Variant.is_active.is_(True),
            Product.is_active.is_(True),
            Variant.stock_quantity <= Variant.min_stock_level,
        )
        .order_by(Variant.stock_quantity.asc(), Variant.name.asc())
        .all()
    )
    return {
        "products": [p.to_dict() for p in products],
        "variants": [v.to_dict() for v in variants],
        "count": len(products) + len(variants),
    }


def get_product_inventory(product_id: int) -> dict:
    product = db.session.get(Product, product_id)
    if not product:
        raise NotFoundError("Product not found")
    recent, _ = list_adjustments(product_id=product_id, limit=10)
    return {
        "product": product.to_dict(include_variants=True),
        "recent_adjustments": [a.to_dict() for a in recent],
        "low_stock": product.stock_quantity <= product.min_stock_level,
    }
