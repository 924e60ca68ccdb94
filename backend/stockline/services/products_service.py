# backend/stockline/services/products_service.py
"""
Product catalogue: products and their variants.

Stock is never written through this module's update paths. Initial stock on
create goes through the stock mutator and is recorded as a PURCHASE ledger
row, like any other receipt of goods.
"""
from __future__ import annotations

import json

from sqlalchemy import or_

from ..errors import ConflictError, NotFoundError, ValidationError
from ..extensions import db
from ..models import Product, Sale, SaleItem, Variant
from ..validation import ModelValidationPolicy, enforce_rules_product
from .concurrency import lock_for_update, run_in_transaction
from .ledger_service import record_adjustment
from .stock_service import StockTarget, apply_delta, product_has_variants, recompute_product_stock


PRODUCT_CREATE_POLICY = ModelValidationPolicy(
    writable_fields={
        "sku", "barcode", "name", "description", "category", "brand",
        "price_cents", "cost_price_cents", "stock_quantity", "min_stock_level", "is_active",
    },
    required_on_create={"sku", "name", "price_cents"},
)
PRODUCT_UPDATE_POLICY = ModelValidationPolicy(
    writable_fields=PRODUCT_CREATE_POLICY.writable_fields - {"stock_quantity"},
)
VARIANT_CREATE_POLICY = ModelValidationPolicy(
    writable_fields={"sku", "name", "price_cents", "stock_quantity", "min_stock_level", "is_active"},
    required_on_create={"sku", "name"},
)
VARIANT_UPDATE_POLICY = ModelValidationPolicy(
    writable_fields=VARIANT_CREATE_POLICY.writable_fields - {"stock_quantity"},
)


def _sku_taken(sku: str, *, product_id: int | None = None, variant_id: int | None = None) -> bool:
    product_q = db.session.query(Product.id).filter(Product.sku == sku)
    if product_id is not None:
        product_q = product_q.filter(Product.id != product_id)
    variant_q = db.session.query(Variant.id).filter(Variant.sku == sku)
    if variant_id is not None:
        variant_q = variant_q.filter(Variant.id != variant_id)
    return product_q.first() is not None or variant_q.first() is not None


def _has_refundable_product_lines(product_id: int) -> bool:
    """True while a COMPLETED sale still has unrefunded units sold against the product row itself."""
    row = (
        db.session.query(SaleItem.id)
        .join(Sale, Sale.id == SaleItem.sale_id)
        .filter(
            Sale.status == "COMPLETED",
            SaleItem.product_id == product_id,
            SaleItem.variant_id.is_(None),
            SaleItem.quantity > SaleItem.refunded_quantity,
        )
        .first()
    )
    return row is not None


def _check_product_identifiers(patch: dict, product_id: int | None = None) -> None:
    if patch.get("sku") and _sku_taken(patch["sku"], product_id=product_id):
        raise ConflictError(f"SKU already exists: {patch['sku']}")
    barcode = patch.get("barcode")
    if barcode:
        q = db.session.query(Product.id).filter(Product.barcode == barcode)
        if product_id is not None:
            q = q.filter(Product.id != product_id)
        if q.first() is not None:
            raise ConflictError(f"Barcode already exists: {barcode}")


def _initial_stock(patch: dict) -> int:
    initial = patch.pop("stock_quantity", 0) or 0
    if initial < 0:
        raise ValidationError("stock_quantity must be >= 0")
    return initial


def list_products(
    *,
    search: str | None = None,
    category: str | None = None,
    include_inactive: bool = False,
    page: int | None = None,
    per_page: int | None = None,
) -> dict:
    """Product listing with optional search and pagination (all items when page is None)."""
    base_query = db.session.query(Product)
    if not include_inactive:
        base_query = base_query.filter(Product.is_active.is_(True))
    if category:
        base_query = base_query.filter(Product.category == category)
    if search:
        like = f"%{search.strip()}%"
        base_query = base_query.filter(or_(
            Product.name.ilike(like),
            Product.sku.ilike(like),
            Product.barcode.ilike(like),
            Product.description.ilike(like),
        ))
    base_query = base_query.order_by(Product.name.asc(), Product.id.asc())

    if page is None:
        products = base_query.all()
        return {
            "items": [p.to_dict() for p in products],
            "count": len(products),
        }

    per_page = min(per_page or 20, 100)
    page = max(page, 1)

    total = base_query.count()
    total_pages = (total + per_page - 1) // per_page if total > 0 else 1

    products = base_query.offset((page - 1) * per_page).limit(per_page).all()

    return {
        "items": [p.to_dict() for p in products],
        "count": len(products),
        "pagination": {
            "page": page,
            "per_page": per_page,
            "total": total,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        },
    }


def get_product(product_id: int) -> Product:
    product = db.session.get(Product, product_id)
    if not product:
        raise NotFoundError("Product not found")
    return product


def create_product(*, patch: dict, actor_user_id: int | None = None) -> Product:
    enforce_rules_product(patch)
    initial = _initial_stock(patch)

    def _op() -> Product:
        _check_product_identifiers(patch)
        product = Product(**patch, stock_quantity=0)
        db.session.add(product)
        db.session.flush()
        if initial:
            change = apply_delta(StockTarget(product_id=product.id), initial, "PURCHASE")
            record_adjustment(
                StockTarget(product_id=product.id),
                change.quantity_change,
                change.previous_stock,
                change.new_stock,
                "PURCHASE",
                note="Initial stock",
                actor_user_id=actor_user_id,
            )
        return product

    return run_in_transaction(_op, description="create product")


def update_product(product_id: int, patch: dict) -> Product:
    enforce_rules_product(patch)

    def _op() -> Product:
        product = lock_for_update(db.session.query(Product).filter(Product.id == product_id)).first()
        if not product:
            raise NotFoundError("Product not found")
        _check_product_identifiers(patch, product_id=product.id)
        for k, v in patch.items():
            setattr(product, k, v)
        return product

    return run_in_transaction(_op, description="update product")


def _attributes_json(attributes) -> str | None:
    if attributes is None:
        return None
    if not isinstance(attributes, dict):
        raise ValidationError("attributes must be an object")
    return json.dumps(attributes, sort_keys=True)


def create_variant(
    product_id: int,
    *,
    patch: dict,
    attributes: dict | None = None,
    actor_user_id: int | None = None,
) -> Variant:
    """
    Add a variant to a product. Its initial stock is a PURCHASE ledger row
    and the product's stock becomes the sum of its active variants.
    """
    enforce_rules_product(patch)
    initial = _initial_stock(patch)
    attributes_json = _attributes_json(attributes)

    def _op() -> Variant:
        product = lock_for_update(db.session.query(Product).filter(Product.id == product_id)).first()
        if not product:
            raise NotFoundError("Product not found")
        if not product_has_variants(product.id) and product.stock_quantity > 0:
            raise ConflictError(
                f"Product {product.sku} holds {product.stock_quantity} units of its own stock; "
                "adjust it to zero before adding variants"
            )
        if not product_has_variants(product.id) and _has_refundable_product_lines(product.id):
            raise ConflictError(
                f"Product {product.sku} has sales that can still be refunded; "
                "variants can be added once they are settled"
            )
        if _sku_taken(patch["sku"]):
            raise ConflictError(f"SKU already exists: {patch['sku']}")

        variant = Variant(product_id=product.id, attributes=attributes_json, stock_quantity=0, **patch)
        db.session.add(variant)
        db.session.flush()
        recompute_product_stock(product)

        if initial:
            change = apply_delta(StockTarget(variant_id=variant.id), initial, "PURCHASE")
            record_adjustment(
                StockTarget(product_id=product.id, variant_id=variant.id),
                change.quantity_change,
                change.previous_stock,
                change.new_stock,
                "PURCHASE",
                note="Initial stock",
                actor_user_id=actor_user_id,
            )
        return variant

    return run_in_transaction(_op, description="create variant")


def update_variant(variant_id: int, *, patch: dict, attributes=None, set_attributes: bool = False) -> Variant:
    """Update a variant; activating or deactivating it re-derives the parent's stock."""
    enforce_rules_product(patch)
    attributes_json = _attributes_json(attributes) if set_attributes else None

    def _op() -> Variant:
        variant = lock_for_update(db.session.query(Variant).filter(Variant.id == variant_id)).first()
        if not variant:
            raise NotFoundError("Variant not found")
        if patch.get("sku") and _sku_taken(patch["sku"], variant_id=variant.id):
            raise ConflictError(f"SKU already exists: {patch['sku']}")

        was_active = variant.is_active
        for k, v in patch.items():
            setattr(variant, k, v)
        if set_attributes:
            variant.attributes = attributes_json

        if variant.is_active != was_active:
            product = lock_for_update(
                db.session.query(Product).filter(Product.id == variant.product_id)
            ).first()
            recompute_product_stock(product)
        return variant

    return run_in_transaction(_op, description="update variant")
