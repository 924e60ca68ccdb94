"""
Stock mutator and ledger writer tests.

Verifies:
- Deltas apply to products and variants, never below zero
- Variant changes keep the parent product's aggregate in sync
- Ledger rows are consistent and reject bad targets
"""

import pytest

from stockline.errors import (
    InsufficientStockError,
    LineItemError,
    PersistenceError,
    ValidationError,
)
from stockline.extensions import db
from stockline.models import Product, StockAdjustment, Variant
from stockline.services.concurrency import run_in_transaction
from stockline.services.ledger_service import list_adjustments, record_adjustment
from stockline.services.stock_service import StockTarget, apply_delta


def _apply(target, delta, reason="ADJUSTMENT"):
    return run_in_transaction(lambda: apply_delta(target, delta, reason), description="test delta")


# =============================================================================
# STOCK MUTATOR
# =============================================================================


class TestApplyDelta:

    def test_decrements_product_stock(self, make_product):
        product = make_product(stock_quantity=5)

        change = _apply(StockTarget(product_id=product.id), -2, "SALE")

        assert change.previous_stock == 5
        assert change.new_stock == 3
        assert change.quantity_change == -2
        assert db.session.get(Product, product.id).stock_quantity == 3

    def test_increments_product_stock(self, make_product):
        product = make_product(stock_quantity=0)

        change = _apply(StockTarget(product_id=product.id), 12, "PURCHASE")

        assert change.new_stock == 12
        assert db.session.get(Product, product.id).stock_quantity == 12

    def test_underflow_raises_and_leaves_stock(self, make_product):
        product = make_product(stock_quantity=1)

        with pytest.raises(InsufficientStockError) as exc:
            _apply(StockTarget(product_id=product.id), -2, "SALE")

        assert exc.value.available == 1
        assert exc.value.requested == 2
        assert exc.value.status_code == 409
        assert db.session.get(Product, product.id).stock_quantity == 1

    def test_exact_depletion_allowed(self, make_product):
        product = make_product(stock_quantity=3, min_stock_level=1)

        change = _apply(StockTarget(product_id=product.id), -3, "SALE")

        assert change.new_stock == 0
        assert change.is_low_stock

    def test_zero_delta_rejected(self, make_product):
        product = make_product(stock_quantity=3)
        with pytest.raises(ValidationError):
            _apply(StockTarget(product_id=product.id), 0)

    def test_unknown_reason_rejected(self, make_product):
        product = make_product(stock_quantity=3)
        with pytest.raises(ValidationError):
            _apply(StockTarget(product_id=product.id), 1, "GIFTED")

    @pytest.mark.parametrize("target", [StockTarget(), StockTarget(product_id=1, variant_id=1)])
    def test_target_needs_exactly_one_id(self, db_session, target):
        with pytest.raises(ValidationError):
            _apply(target, 1)

    def test_missing_product(self, db_session):
        with pytest.raises(LineItemError):
            _apply(StockTarget(product_id=999999), 1)

    def test_product_with_variants_not_directly_adjustable(self, make_product, make_variant):
        product = make_product(sku="TEE")
        make_variant(product, stock_quantity=4)

        with pytest.raises(LineItemError) as exc:
            _apply(StockTarget(product_id=product.id), 1)
        assert exc.value.sku == "TEE"


class TestVariantAggregate:

    def test_variant_change_recomputes_parent(self, make_product, make_variant):
        product = make_product(sku="TEE")
        small = make_variant(product, stock_quantity=4)
        make_variant(product, stock_quantity=6)
        assert db.session.get(Product, product.id).stock_quantity == 10

        change = _apply(StockTarget(variant_id=small.id), -3, "SALE")

        assert change.product_id == product.id
        assert change.variant_id == small.id
        assert db.session.get(Variant, small.id).stock_quantity == 1
        assert db.session.get(Product, product.id).stock_quantity == 7

    def test_inactive_variants_excluded_from_aggregate(self, make_product, make_variant):
        product = make_product(sku="MUG")
        active = make_variant(product, stock_quantity=2)
        make_variant(product, stock_quantity=50, is_active=False)

        _apply(StockTarget(variant_id=active.id), 1, "PURCHASE")

        assert db.session.get(Product, product.id).stock_quantity == 3

    def test_variant_underflow(self, make_product, make_variant):
        product = make_product(sku="CAP")
        variant = make_variant(product, stock_quantity=1)

        with pytest.raises(InsufficientStockError) as exc:
            _apply(StockTarget(variant_id=variant.id), -5, "SALE")

        assert exc.value.variant_id == variant.id
        assert db.session.get(Variant, variant.id).stock_quantity == 1
        assert db.session.get(Product, product.id).stock_quantity == 1


# =============================================================================
# LEDGER WRITER
# =============================================================================


class TestRecordAdjustment:

    def test_writes_consistent_row(self, make_product, cashier_user):
        product = make_product(stock_quantity=5)

        adjustment_id = run_in_transaction(
            lambda: record_adjustment(
                StockTarget(product_id=product.id), -2, 5, 3, "SALE",
                note="counter sale", actor_user_id=cashier_user.id,
            ),
            description="test ledger",
        )

        row = db.session.get(StockAdjustment, adjustment_id)
        assert row.product_id == product.id
        assert row.variant_id is None
        assert row.quantity_change == -2
        assert row.previous_stock == 5
        assert row.new_stock == 3
        assert row.reason == "SALE"
        assert row.actor_user_id == cashier_user.id
        assert row.occurred_at is not None

    def test_variant_only_target_resolves_product(self, make_product, make_variant):
        product = make_product(sku="TEE")
        variant = make_variant(product, stock_quantity=0)

        adjustment_id = run_in_transaction(
            lambda: record_adjustment(StockTarget(variant_id=variant.id), 4, 0, 4, "PURCHASE"),
            description="test ledger",
        )

        row = db.session.get(StockAdjustment, adjustment_id)
        assert row.product_id == product.id
        assert row.variant_id == variant.id

    def test_inconsistent_entry_rejected(self, make_product):
        product = make_product(stock_quantity=5)
        with pytest.raises(ValidationError):
            record_adjustment(StockTarget(product_id=product.id), -2, 5, 4, "SALE")
        db.session.rollback()
        assert db.session.query(StockAdjustment).count() == 0

    def test_negative_result_rejected(self, make_product):
        product = make_product(stock_quantity=0)
        with pytest.raises(ValidationError):
            record_adjustment(StockTarget(product_id=product.id), -1, 0, -1, "SALE")

    def test_missing_product_is_persistence_error(self, db_session):
        with pytest.raises(PersistenceError):
            record_adjustment(StockTarget(product_id=424242), 1, 0, 1, "PURCHASE")
        db.session.rollback()

    def test_variant_of_other_product_rejected(self, make_product, make_variant):
        first = make_product(sku="A")
        second = make_product(sku="B")
        variant = make_variant(first)

        with pytest.raises(PersistenceError):
            record_adjustment(
                StockTarget(product_id=second.id, variant_id=variant.id), 1, 0, 1, "PURCHASE",
            )
        db.session.rollback()


class TestListAdjustments:

    def test_filters_and_orders_newest_first(self, make_product):
        product = make_product(stock_quantity=0)
        other = make_product(stock_quantity=0)
        _apply(StockTarget(product_id=product.id), 5, "PURCHASE")
        _apply(StockTarget(product_id=other.id), 1, "PURCHASE")
        run_in_transaction(
            lambda: record_adjustment(StockTarget(product_id=product.id), 5, 0, 5, "PURCHASE"),
            description="test ledger",
        )
        run_in_transaction(
            lambda: record_adjustment(StockTarget(product_id=product.id), -1, 5, 4, "DAMAGED"),
            description="test ledger",
        )

        rows, total = list_adjustments(product_id=product.id)
        assert total == 2
        assert [r.reason for r in rows] == ["DAMAGED", "PURCHASE"]

        rows, total = list_adjustments(reason="DAMAGED")
        assert total == 1
        assert rows[0].quantity_change == -1

    def test_limit_is_capped(self, db_session):
        rows, total = list_adjustments(limit=10_000)
        assert rows == []
        assert total == 0
