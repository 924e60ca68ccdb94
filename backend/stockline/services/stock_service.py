# Overview: Stock mutator; applies signed deltas to product/variant stock and keeps product aggregates in sync.

"""
Stock Mutator

All stock changes go through apply_delta(). It never commits: callers own
the transaction, and pair every call with a ledger write
(ledger_service.record_adjustment) in the same unit of work.

INVARIANTS:
- stock_quantity >= 0 for every product and variant (no clamping; an
  underflow raises InsufficientStockError)
- a product with variants holds the sum of its ACTIVE variants' stock and
  is never targeted directly
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import func

from ..errors import InsufficientStockError, LineItemError, ValidationError
from ..extensions import db
from ..models import Product, Variant
from ..models.inventory import ADJUSTMENT_REASONS
from .concurrency import lock_for_update


@dataclass(frozen=True)
class StockTarget:
    """Exactly one of product_id / variant_id."""
    product_id: int | None = None
    variant_id: int | None = None

    def validate(self) -> None:
        if (self.product_id is None) == (self.variant_id is None):
            raise ValidationError("Exactly one of product_id or variant_id is required")

    def describe(self) -> str:
        if self.variant_id is not None:
            return f"variant {self.variant_id}"
        return f"product {self.product_id}"


@dataclass(frozen=True)
class StockChange:
    product_id: int
    variant_id: int | None
    previous_stock: int
    new_stock: int
    min_stock_level: int

    @property
    def quantity_change(self) -> int:
        return self.new_stock - self.previous_stock

    @property
    def is_low_stock(self) -> bool:
        return self.new_stock <= self.min_stock_level


def product_has_variants(product_id: int) -> bool:
    return db.session.query(Variant.id).filter(Variant.product_id == product_id).first() is not None


def recompute_product_stock(product: Product) -> int:
    """
    Rewrite a variant-bearing product's stock as the sum of its active variants.

    Products without variants keep their own stock untouched.
    """
    if not product_has_variants(product.id):
        return product.stock_quantity

    total = (
        db.session.query(func.coalesce(func.sum(Variant.stock_quantity), 0))
        .filter(Variant.product_id == product.id, Variant.is_active.is_(True))
        .scalar()
    )
    product.stock_quantity = int(total)
    return product.stock_quantity


def _locked_product(product_id: int) -> Product | None:
    return lock_for_update(db.session.query(Product).filter(Product.id == product_id)).first()


def _locked_variant(variant_id: int) -> Variant | None:
    return lock_for_update(db.session.query(Variant).filter(Variant.id == variant_id)).first()


def apply_delta(target: StockTarget, delta: int, reason: str) -> StockChange:
    """
    Apply a signed stock delta to a product or variant row.

    Raises:
        ValidationError: malformed target, zero delta or unknown reason
        LineItemError: target missing, or a product that has variants
        InsufficientStockError: the delta would take stock below zero
    """
    target.validate()
    if reason not in ADJUSTMENT_REASONS:
        raise ValidationError(f"Unknown adjustment reason: {reason}")
    if delta == 0:
        raise ValidationError("Stock delta must be non-zero")

    if target.variant_id is not None:
        variant = _locked_variant(target.variant_id)
        if variant is None:
            raise LineItemError(f"Variant {target.variant_id} not found")

        previous = variant.stock_quantity
        new = previous + delta
        if new < 0:
            raise InsufficientStockError(
                f"Insufficient stock for {variant.sku}",
                product_id=variant.product_id,
                variant_id=variant.id,
                available=previous,
                requested=-delta,
            )
        variant.stock_quantity = new

        product = _locked_product(variant.product_id)
        recompute_product_stock(product)

        return StockChange(
            product_id=variant.product_id,
            variant_id=variant.id,
            previous_stock=previous,
            new_stock=new,
            min_stock_level=variant.min_stock_level,
        )

    product = _locked_product(target.product_id)
    if product is None:
        raise LineItemError(f"Product {target.product_id} not found")
    if product_has_variants(product.id):
        raise LineItemError(
            f"Product {product.sku} has variants; adjust a variant instead",
            sku=product.sku,
        )

    previous = product.stock_quantity
    new = previous + delta
    if new < 0:
        raise InsufficientStockError(
            f"Insufficient stock for {product.sku}",
            product_id=product.id,
            available=previous,
            requested=-delta,
        )
    product.stock_quantity = new

    return StockChange(
        product_id=product.id,
        variant_id=None,
        previous_stock=previous,
        new_stock=new,
        min_stock_level=product.min_stock_level,
    )
