"""
Inventory adjustment, catalogue and customer reward tests.
"""

from datetime import timedelta

import pytest

from stockline.errors import (
    ConflictError,
    InsufficientLoyaltyPointsError,
    InsufficientStockError,
    ValidationError,
)
from stockline.extensions import db
from stockline.models import Customer, LoyaltyReward, Product, StockAdjustment
from stockline.services import customer_service, inventory_service, loyalty_service, products_service
from stockline.services.concurrency import run_in_transaction
from stockline.services.document_service import next_invoice_number, next_sequence_number
from stockline.time_utils import utcnow
from stockline.validation import AdjustmentRequest


# =============================================================================
# MANUAL ADJUSTMENTS
# =============================================================================


class TestAdjustInventory:

    def test_adjustment_writes_ledger_and_event(self, make_product, manager_user, relay):
        product = make_product(stock_quantity=10, min_stock_level=2)

        result = inventory_service.adjust_inventory(
            AdjustmentRequest(quantity_change=-8, reason="DAMAGED", product_id=product.id, note="water"),
            manager_user.id,
        )

        assert result.change.new_stock == 2
        assert result.to_dict()["low_stock"] is True
        assert result.adjustment.reason == "DAMAGED"
        assert result.adjustment.note == "water"
        assert db.session.get(Product, product.id).stock_quantity == 2
        assert [name for name, _ in relay.events()] == ["inventoryUpdated", "lowStockAlert"]

    def test_underflow_rejected_without_ledger_row(self, make_product, manager_user):
        product = make_product(stock_quantity=1)

        with pytest.raises(InsufficientStockError):
            inventory_service.adjust_inventory(
                AdjustmentRequest(quantity_change=-2, reason="ADJUSTMENT", product_id=product.id),
                manager_user.id,
            )

        assert db.session.query(StockAdjustment).count() == 0
        assert db.session.get(Product, product.id).stock_quantity == 1

    def test_bulk_adjust_reports_each_entry(self, make_product, manager_user):
        product = make_product(stock_quantity=1)

        result = inventory_service.bulk_adjust(
            [
                {"product_id": product.id, "quantity_change": 4, "reason": "purchase"},
                {"product_id": product.id, "quantity_change": -50, "reason": "ADJUSTMENT"},
                {"product_id": product.id, "quantity_change": 0, "reason": "ADJUSTMENT"},
            ],
            manager_user.id,
        )

        assert result["success_count"] == 1
        assert result["error_count"] == 2
        assert [e["index"] for e in result["errors"]] == [1, 2]
        assert result["errors"][0]["status_code"] == 409
        assert result["errors"][1]["status_code"] == 400
        assert db.session.get(Product, product.id).stock_quantity == 5

    def test_bulk_adjust_requires_entries(self, db_session):
        with pytest.raises(ValidationError):
            inventory_service.bulk_adjust([], None)

    def test_low_stock_lists_products_and_variants(self, make_product, make_variant):
        make_product(sku="LOW", stock_quantity=1, min_stock_level=5)
        make_product(sku="FINE", stock_quantity=50, min_stock_level=5)
        parent = make_product(sku="TEE")
        make_variant(parent, sku="TEE-S", stock_quantity=0, min_stock_level=1)
        make_variant(parent, sku="TEE-L", stock_quantity=9, min_stock_level=1)

        result = inventory_service.list_low_stock()

        assert [p["sku"] for p in result["products"]] == ["LOW"]
        assert [v["sku"] for v in result["variants"]] == ["TEE-S"]
        assert result["count"] == 2


# =============================================================================
# CATALOGUE
# =============================================================================


class TestProducts:

    def test_initial_stock_is_a_purchase_row(self, manager_user):
        product = products_service.create_product(
            patch={"sku": "NEW-1", "name": "New", "price_cents": 1500, "stock_quantity": 12},
            actor_user_id=manager_user.id,
        )

        assert product.stock_quantity == 12
        row = db.session.query(StockAdjustment).one()
        assert row.reason == "PURCHASE"
        assert (row.previous_stock, row.new_stock) == (0, 12)
        assert row.note == "Initial stock"

    def test_duplicate_sku_rejected_across_variants(self, make_product, make_variant):
        parent = make_product(sku="TEE")
        make_variant(parent, sku="TEE-RED")

        with pytest.raises(ConflictError):
            products_service.create_product(patch={"sku": "TEE-RED", "name": "Clash", "price_cents": 1})

    def test_negative_price_rejected(self, db_session):
        with pytest.raises(ValidationError):
            products_service.create_product(patch={"sku": "NEG", "name": "Neg", "price_cents": -1})

    def test_variant_creation_rebuilds_aggregate(self, make_product, manager_user):
        parent = make_product(sku="HAT", stock_quantity=0)

        products_service.create_variant(
            parent.id,
            patch={"sku": "HAT-S", "name": "Hat S", "stock_quantity": 3},
            attributes={"size": "S"},
            actor_user_id=manager_user.id,
        )
        variant = products_service.create_variant(
            parent.id,
            patch={"sku": "HAT-L", "name": "Hat L", "stock_quantity": 2},
            actor_user_id=manager_user.id,
        )

        assert db.session.get(Product, parent.id).stock_quantity == 5
        assert variant.to_dict()["effective_price_cents"] == parent.price_cents

        products_service.update_variant(variant.id, patch={"is_active": False})
        assert db.session.get(Product, parent.id).stock_quantity == 3

    def test_variant_on_stocked_product_conflicts(self, make_product):
        parent = make_product(sku="BAG", stock_quantity=4)

        with pytest.raises(ConflictError):
            products_service.create_variant(parent.id, patch={"sku": "BAG-1", "name": "Bag 1"})

    def test_list_products_pagination(self, make_product):
        for _ in range(3):
            make_product()

        page = products_service.list_products(page=1, per_page=2)

        assert page["count"] == 2
        assert page["pagination"]["total"] == 3
        assert page["pagination"]["has_next"] is True


# =============================================================================
# CUSTOMERS / REWARDS
# =============================================================================


class TestCustomersAndRewards:

    def test_email_is_unique_case_insensitive(self, db_session):
        customer_service.create_customer(patch={"first_name": "A", "last_name": "B", "email": "Ada@Shop.test"})

        with pytest.raises(ConflictError):
            customer_service.create_customer(patch={"first_name": "C", "last_name": "D", "email": "ada@shop.test"})

    def test_create_and_redeem_reward(self, make_customer):
        customer = make_customer(loyalty_points=500)

        reward = loyalty_service.create_reward(
            customer_id=customer.id, points_used=300, reward_type="DISCOUNT", reward_value=300,
        )
        assert db.session.get(Customer, customer.id).loyalty_points == 200

        redeemed = loyalty_service.redeem_reward(customer_id=customer.id, reward_id=reward.id)
        assert redeemed.is_redeemed is True
        assert redeemed.redeemed_at is not None

        with pytest.raises(ConflictError):
            loyalty_service.redeem_reward(customer_id=customer.id, reward_id=reward.id)

    def test_reward_cannot_overdraw(self, make_customer):
        customer = make_customer(loyalty_points=10)

        with pytest.raises(InsufficientLoyaltyPointsError):
            loyalty_service.create_reward(
                customer_id=customer.id, points_used=11, reward_type="GIFT", reward_value=0,
            )
        assert db.session.get(Customer, customer.id).loyalty_points == 10
        assert db.session.query(LoyaltyReward).count() == 0

    def test_expired_reward_not_redeemable(self, make_customer):
        customer = make_customer(loyalty_points=100)
        reward = loyalty_service.create_reward(
            customer_id=customer.id, points_used=100, reward_type="GIFT", reward_value=0,
            expires_at=utcnow() - timedelta(days=1),
        )

        with pytest.raises(ConflictError):
            loyalty_service.redeem_reward(customer_id=customer.id, reward_id=reward.id)


# =============================================================================
# DOCUMENT SEQUENCES
# =============================================================================


class TestDocumentSequences:

    def test_numbers_are_per_key(self, db_session):
        def _take(key):
            return run_in_transaction(
                lambda: next_sequence_number(document_type="INVOICE", sequence_key=key),
                description="take number",
            )

        assert [_take("20260101"), _take("20260101"), _take("20260102")] == [1, 2, 1]

    def test_invoice_format(self, db_session):
        now = utcnow().replace(year=2026, month=3, day=7)
        number = run_in_transaction(
            lambda: next_invoice_number(prefix="INV", now=now),
            description="take invoice",
        )
        assert number == "INV-20260307-001"

    def test_rolled_back_number_is_reused(self, db_session):
        def _aborted():
            next_sequence_number(document_type="INVOICE", sequence_key="K")
            raise RuntimeError("abort")

        with pytest.raises(RuntimeError):
            run_in_transaction(_aborted, description="aborted")

        number = run_in_transaction(
            lambda: next_sequence_number(document_type="INVOICE", sequence_key="K"),
            description="take number",
        )
        assert number == 1
