# Overview: Stock ledger writer; appends immutable StockAdjustment rows and serves history queries.

from __future__ import annotations

from datetime import datetime

from sqlalchemy.exc import OperationalError, SQLAlchemyError

from ..errors import PersistenceError, ValidationError
from ..extensions import db
from ..models import Product, StockAdjustment, Variant
from ..models.inventory import ADJUSTMENT_REASONS
from ..time_utils import utcnow
from .stock_service import StockTarget


def record_adjustment(
    target: StockTarget,
    delta: int,
    previous_stock: int,
    new_stock: int,
    reason: str,
    note: str | None = None,
    actor_user_id: int | None = None,
    sale_id: int | None = None,
) -> int:
    """
    Append one ledger row and return its id. Flushes, never commits.

    target may name the variant alone (the product is resolved from it) or
    both ids, in which case the variant must belong to the product.
    """
    if new_stock != previous_stock + delta:
        raise ValidationError(
            "Ledger entry is inconsistent: new_stock must equal previous_stock + quantity_change",
            {"previous_stock": previous_stock, "quantity_change": delta, "new_stock": new_stock},
        )
    if new_stock < 0:
        raise ValidationError("Ledger entry cannot record negative stock", {"new_stock": new_stock})
    if reason not in ADJUSTMENT_REASONS:
        raise ValidationError(f"Unknown adjustment reason: {reason}")

    product_id = target.product_id
    if target.variant_id is not None:
        variant = db.session.get(Variant, target.variant_id)
        if variant is None:
            raise PersistenceError(f"Ledger target variant {target.variant_id} does not exist")
        if product_id is not None and variant.product_id != product_id:
            raise PersistenceError(
                f"Variant {variant.id} does not belong to product {product_id}"
            )
        product_id = variant.product_id

    if product_id is None or db.session.get(Product, product_id) is None:
        raise PersistenceError(f"Ledger target product {product_id} does not exist")

    entry = StockAdjustment(
        product_id=product_id,
        variant_id=target.variant_id,
        quantity_change=delta,
        previous_stock=previous_stock,
        new_stock=new_stock,
        reason=reason,
        note=note,
        actor_user_id=actor_user_id,
        sale_id=sale_id,
        occurred_at=utcnow(),
    )
    db.session.add(entry)
    try:
        db.session.flush()
    except OperationalError:
        raise
    except SQLAlchemyError as exc:
        raise PersistenceError("Failed to write stock adjustment") from exc
    return entry.id


def link_to_sale(adjustment_ids: list[int], sale_id: int) -> None:
    """Attach ledger rows written before the sale row existed to that sale."""
    if not adjustment_ids:
        return
    (
        db.session.query(StockAdjustment)
        .filter(StockAdjustment.id.in_(adjustment_ids))
        .update({StockAdjustment.sale_id: sale_id}, synchronize_session=False)
    )


def list_adjustments(
    *,
    product_id: int | None = None,
    variant_id: int | None = None,
    reason: str | None = None,
    sale_id: int | None = None,
    from_date: datetime | None = None,
    to_date: datetime | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[StockAdjustment], int]:
    """Newest first. Returns (rows, total) for pagination."""
    query = db.session.query(StockAdjustment)

    if product_id is not None:
        query = query.filter(StockAdjustment.product_id == product_id)
    if variant_id is not None:
        query = query.filter(StockAdjustment.variant_id == variant_id)
    if reason:
        query = query.filter(StockAdjustment.reason == reason)
    if sale_id is not None:
        query = query.filter(StockAdjustment.sale_id == sale_id)
    if from_date:
        query = query.filter(StockAdjustment.occurred_at >= from_date)
    if to_date:
        query = query.filter(StockAdjustment.occurred_at <= to_date)

    total = query.count()

    if offset < 0:
        offset = 0
    if limit < 1:
        limit = 1
    if limit > 500:
        limit = 500

    rows = (
        query.order_by(StockAdjustment.occurred_at.desc(), StockAdjustment.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return rows, total
