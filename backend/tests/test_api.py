"""
HTTP API tests for sales, inventory, catalogue, customers and health.
"""

from sqlalchemy.exc import IntegrityError, OperationalError

from stockline.extensions import db
from stockline.models import OutboxEvent, Product, Sale, StockAdjustment
from stockline.services import notification_service, sales_service
from stockline.time_utils import day_key


# =============================================================================
# SALES
# =============================================================================


class TestSalesApi:

    def test_complete_sale(self, client, cashier_headers, make_product):
        product = make_product(sku="COFFEE", price_cents=1000, stock_quantity=5)

        resp = client.post(
            "/api/sales",
            json={
                "items": [{"product_id": product.id, "quantity": 2, "unit_price_cents": 1000}],
                "payment_method": "cash",
                "total_cents": 2160,
            },
            headers=cashier_headers,
        )

        assert resp.status_code == 201, resp.json
        body = resp.json
        assert body["sale"]["subtotal_cents"] == 2000
        assert body["sale"]["tax_cents"] == 160
        assert body["sale"]["total_cents"] == 2160
        assert body["sale"]["payment_method"] == "CASH"
        assert body["sale"]["invoice_number"] == f"INV-{day_key()}-001"
        assert body["items"][0]["sku"] == "COFFEE"
        assert body["loyalty"]["points_earned"] == 0
        assert body["receipt"]["cashier"] == "Cashier"
        assert body["receipt"]["items"][0]["quantity"] == 2
        assert db.session.get(Product, product.id).stock_quantity == 3

    def test_insufficient_stock_is_409(self, client, cashier_headers, make_product):
        product = make_product(stock_quantity=1)

        resp = client.post(
            "/api/sales",
            json={"items": [{"product_id": product.id, "quantity": 2}], "payment_method": "CASH"},
            headers=cashier_headers,
        )

        assert resp.status_code == 409
        assert resp.json["details"]["available"] == 1
        assert resp.json["details"]["requested"] == 2
        assert db.session.query(Sale).count() == 0

    def test_insufficient_points_is_422(self, client, cashier_headers, make_product, make_customer):
        product = make_product(stock_quantity=5)
        customer = make_customer(loyalty_points=50)

        resp = client.post(
            "/api/sales",
            json={
                "items": [{"product_id": product.id, "quantity": 1}],
                "payment_method": "CARD",
                "customer_id": customer.id,
                "loyalty_points_used": 100,
            },
            headers=cashier_headers,
        )

        assert resp.status_code == 422
        assert resp.json["details"] == {"balance": 50, "requested": 100}
        assert db.session.get(Product, product.id).stock_quantity == 5

    def test_malformed_request_lists_fields(self, client, cashier_headers, db_session):
        resp = client.post(
            "/api/sales",
            json={
                "items": [{"product_id": 1, "variant_id": 2, "quantity": 0}],
                "payment_method": "BARTER",
            },
            headers=cashier_headers,
        )

        assert resp.status_code == 400
        fields = {d["field"] for d in resp.json["details"]}
        assert {"items[0]", "items[0].quantity", "payment_method"} <= fields

    def test_inactive_product_is_422(self, client, cashier_headers, make_product):
        product = make_product(sku="GONE", stock_quantity=5, is_active=False)

        resp = client.post(
            "/api/sales",
            json={"items": [{"product_id": product.id, "quantity": 1}], "payment_method": "CASH"},
            headers=cashier_headers,
        )

        assert resp.status_code == 422
        assert "GONE" in resp.json["error"]

    def test_refund_and_receipt(self, client, cashier_headers, manager_headers, make_product):
        product = make_product(stock_quantity=5)
        sale = client.post(
            "/api/sales",
            json={"items": [{"product_id": product.id, "quantity": 2}], "payment_method": "CARD"},
            headers=cashier_headers,
        ).json["sale"]

        resp = client.post(
            f"/api/sales/{sale['id']}/refund",
            json={"reason": "changed mind"},
            headers=manager_headers,
        )
        assert resp.status_code == 200
        assert resp.json["sale"]["status"] == "REFUNDED"
        assert resp.json["items"][0]["refunded_quantity"] == 2
        assert db.session.get(Product, product.id).stock_quantity == 5

        again = client.post(f"/api/sales/{sale['id']}/refund", json={}, headers=manager_headers)
        assert again.status_code == 409

        receipt = client.get(f"/api/sales/{sale['id']}/receipt", headers=cashier_headers)
        assert receipt.status_code == 200
        assert receipt.json["receipt"]["status"] == "REFUNDED"
        assert receipt.json["receipt"]["refund_amount_cents"] == sale["total_cents"]

    def test_unknown_sale_is_404(self, client, cashier_headers, db_session):
        assert client.get("/api/sales/999999", headers=cashier_headers).status_code == 404

    def test_list_sales_filters(self, client, cashier_headers, make_product):
        product = make_product(stock_quantity=5)
        for method in ("CASH", "CARD"):
            client.post(
                "/api/sales",
                json={"items": [{"product_id": product.id, "quantity": 1}], "payment_method": method},
                headers=cashier_headers,
            )

        resp = client.get("/api/sales?payment_method=card", headers=cashier_headers)

        assert resp.status_code == 200
        assert resp.json["total"] == 1
        assert resp.json["items"][0]["payment_method"] == "CARD"

    def test_validate_cart_writes_nothing(self, client, cashier_headers, make_product):
        product = make_product(price_cents=300, stock_quantity=2)

        resp = client.post(
            "/api/sales/cart/validate",
            json={"items": [{"product_id": product.id, "quantity": 3}]},
            headers=cashier_headers,
        )

        assert resp.status_code == 200
        assert resp.json["valid"] is False
        assert resp.json["items"][0]["available_stock"] == 2
        assert db.session.get(Product, product.id).stock_quantity == 2


# =============================================================================
# INVENTORY
# =============================================================================


class TestInventoryApi:

    def test_adjust_and_history(self, client, cashier_headers, make_product):
        product = make_product(stock_quantity=4)

        resp = client.patch(
            "/api/inventory/adjust",
            json={"product_id": product.id, "quantity_change": 6, "reason": "PURCHASE", "note": "delivery"},
            headers=cashier_headers,
        )
        assert resp.status_code == 200
        assert resp.json["previous_stock"] == 4
        assert resp.json["new_stock"] == 10

        history = client.get(f"/api/inventory/history?product_id={product.id}", headers=cashier_headers)
        assert history.status_code == 200
        assert history.json["total"] == 1
        assert history.json["items"][0]["note"] == "delivery"

    def test_adjust_rejects_both_targets(self, client, cashier_headers, make_product):
        product = make_product(stock_quantity=4)

        resp = client.patch(
            "/api/inventory/adjust",
            json={"product_id": product.id, "variant_id": 1, "quantity_change": 1, "reason": "PURCHASE"},
            headers=cashier_headers,
        )

        assert resp.status_code == 400
        assert db.session.query(StockAdjustment).count() == 0

    def test_adjust_underflow_is_409(self, client, cashier_headers, make_product):
        product = make_product(stock_quantity=1)

        resp = client.patch(
            "/api/inventory/adjust",
            json={"product_id": product.id, "quantity_change": -3, "reason": "DAMAGED"},
            headers=cashier_headers,
        )

        assert resp.status_code == 409

    def test_bulk_adjust(self, client, manager_headers, make_product):
        product = make_product(stock_quantity=0)

        resp = client.post(
            "/api/inventory/bulk-adjust",
            json={"adjustments": [
                {"product_id": product.id, "quantity_change": 5, "reason": "PURCHASE"},
                {"product_id": product.id, "quantity_change": -9, "reason": "ADJUSTMENT"},
            ]},
            headers=manager_headers,
        )

        assert resp.status_code == 200
        assert resp.json["success_count"] == 1
        assert resp.json["errors"][0]["index"] == 1

    def test_product_inventory(self, client, cashier_headers, make_product):
        product = make_product(stock_quantity=0, min_stock_level=1)

        resp = client.get(f"/api/inventory/product/{product.id}", headers=cashier_headers)

        assert resp.status_code == 200
        assert resp.json["low_stock"] is True
        assert resp.json["recent_adjustments"] == []


# =============================================================================
# CATALOGUE / CUSTOMERS / HEALTH
# =============================================================================


class TestCatalogueApi:

    def test_variant_lifecycle(self, client, manager_headers, make_product):
        product = make_product(sku="SOCK", stock_quantity=0)

        created = client.post(
            f"/api/products/{product.id}/variants",
            json={"sku": "SOCK-BLUE", "name": "Blue sock", "stock_quantity": 7, "attributes": {"color": "blue"}},
            headers=manager_headers,
        )
        assert created.status_code == 201
        assert created.json["variant"]["attributes"] == {"color": "blue"}
        assert created.json["product"]["stock_quantity"] == 7

        variant_id = created.json["variant"]["id"]
        patched = client.patch(
            f"/api/products/variants/{variant_id}",
            json={"is_active": False},
            headers=manager_headers,
        )
        assert patched.status_code == 200
        assert patched.json["product"]["stock_quantity"] == 0

    def test_stock_not_writable_on_update(self, client, manager_headers, make_product):
        product = make_product(stock_quantity=3)

        resp = client.put(
            f"/api/products/{product.id}",
            json={"stock_quantity": 100},
            headers=manager_headers,
        )

        assert resp.status_code == 400
        assert db.session.get(Product, product.id).stock_quantity == 3


class TestCustomersApi:

    def test_create_and_loyalty(self, client, cashier_headers, manager_headers):
        created = client.post(
            "/api/customers",
            json={"first_name": "Grace", "last_name": "Hopper", "email": "grace@shop.test"},
            headers=cashier_headers,
        )
        assert created.status_code == 201
        customer_id = created.json["customer"]["id"]

        loyalty = client.get(f"/api/customers/{customer_id}/loyalty", headers=cashier_headers)
        assert loyalty.status_code == 200
        assert loyalty.json == {"customer_id": customer_id, "loyalty_points": 0, "rewards": []}

        reward = client.post(
            f"/api/customers/{customer_id}/loyalty",
            json={"points_used": 10, "reward_type": "GIFT"},
            headers=manager_headers,
        )
        assert reward.status_code == 422

    def test_loyalty_points_not_writable(self, client, cashier_headers, make_customer):
        customer = make_customer()
        resp = client.put(
            f"/api/customers/{customer.id}",
            json={"loyalty_points": 9999},
            headers=cashier_headers,
        )
        assert resp.status_code == 400


class TestHealth:

    def test_healthy(self, client, db_session):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json["checks"]["database"]["status"] == "healthy"
        assert resp.json["checks"]["outbox"]["details"]["pending_events"] == 0


# =============================================================================
# STORAGE FAILURES
# =============================================================================


class TestStorageFailures:

    def test_failed_commit_is_generic_500(self, client, cashier_headers, make_product, monkeypatch):
        product = make_product(stock_quantity=5)

        def broken_invoice(**kwargs):
            raise IntegrityError("INSERT INTO document_sequences", {}, Exception("UNIQUE constraint failed"))

        monkeypatch.setattr(sales_service, "next_invoice_number", broken_invoice)

        resp = client.post(
            "/api/sales",
            json={"items": [{"product_id": product.id, "quantity": 2}], "payment_method": "CASH"},
            headers=cashier_headers,
        )

        assert resp.status_code == 500
        assert resp.json == {"error": "Internal server error", "message": "Failed to complete sale"}
        assert "UNIQUE" not in resp.get_data(as_text=True)
        assert db.session.get(Product, product.id).stock_quantity == 5
        assert db.session.query(StockAdjustment).count() == 0
        assert db.session.query(Sale).count() == 0
        assert db.session.query(OutboxEvent).count() == 0

    def test_dispatch_failure_after_commit_keeps_201(self, client, cashier_headers, make_product, monkeypatch):
        product = make_product(stock_quantity=5)

        def broken_load(event_ids):
            raise OperationalError("SELECT outbox_events", {}, Exception("disk I/O error"))

        monkeypatch.setattr(notification_service, "_undispatched", broken_load)

        resp = client.post(
            "/api/sales",
            json={"items": [{"product_id": product.id, "quantity": 1}], "payment_method": "CASH"},
            headers=cashier_headers,
        )

        assert resp.status_code == 201, resp.json
        assert db.session.get(Product, product.id).stock_quantity == 4
        assert db.session.query(Sale).count() == 1
        assert notification_service.pending_count() == 2
