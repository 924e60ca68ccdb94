"""
Report tests: sales summary, inventory position and top products.
"""

import pytest

from stockline.services import inventory_service
from stockline.services.sales_service import complete_sale, refund_sale
from stockline.time_utils import utcnow
from stockline.validation import AdjustmentRequest, SaleLineRequest, SaleRequest


@pytest.fixture
def trading_day(make_product, make_customer, cashier_user, manager_user):
    """Two completed sales and one refunded sale."""
    coffee = make_product(sku="COFFEE", name="Coffee", category="Drinks",
                          price_cents=1000, cost_price_cents=400, stock_quantity=10)
    bagel = make_product(sku="BAGEL", name="Bagel", category="Food",
                         price_cents=500, cost_price_cents=200, stock_quantity=10, min_stock_level=2)
    customer = make_customer(first_name="Grace", last_name="Hopper")

    complete_sale(SaleRequest(
        items=[SaleLineRequest(quantity=2, product_id=coffee.id)],
        payment_method="CASH",
    ), cashier_user.id)
    complete_sale(SaleRequest(
        items=[SaleLineRequest(quantity=1, product_id=bagel.id), SaleLineRequest(quantity=1, product_id=coffee.id)],
        payment_method="CARD",
        customer_id=customer.id,
    ), cashier_user.id)
    refunded = complete_sale(SaleRequest(
        items=[SaleLineRequest(quantity=1, product_id=bagel.id)],
        payment_method="CASH",
    ), cashier_user.id).sale
    refund_sale(refunded.id, manager_user.id)

    return {"coffee": coffee, "bagel": bagel, "customer": customer}


# =============================================================================
# SALES REPORT
# =============================================================================


class TestSalesReport:

    def test_summary_and_breakdowns(self, client, manager_headers, trading_day):
        resp = client.get("/api/reports/sales?period=today", headers=manager_headers)

        assert resp.status_code == 200, resp.json
        summary = resp.json["summary"]
        assert summary["sales_count"] == 2
        assert summary["revenue_cents"] == 3780
        assert summary["tax_cents"] == 280
        assert summary["items_sold"] == 4
        assert summary["average_order_cents"] == 1890
        assert summary["refund_count"] == 1
        assert summary["refunded_cents"] == 540

        assert resp.json["by_period"] == [{
            "period": utcnow().strftime("%Y-%m-%d"),
            "sales_count": 2,
            "revenue_cents": 3780,
            "discount_cents": 0,
        }]
        assert resp.json["by_payment_method"] == [
            {"payment_method": "CARD", "sales_count": 1, "revenue_cents": 1620},
            {"payment_method": "CASH", "sales_count": 1, "revenue_cents": 2160},
        ]
        top = resp.json["top_products"]
        assert [(p["sku"], p["quantity_sold"], p["revenue_cents"]) for p in top] == [
            ("COFFEE", 3, 3000),
            ("BAGEL", 1, 500),
        ]
        assert resp.json["top_customers"][0]["name"] == "Grace Hopper"
        assert resp.json["top_customers"][0]["total_spent_cents"] == 1620

    def test_filters(self, client, manager_headers, trading_day):
        cash = client.get("/api/reports/sales?payment_method=cash", headers=manager_headers)
        customer = client.get(
            f"/api/reports/sales?customer_id={trading_day['customer'].id}", headers=manager_headers,
        )

        assert cash.json["summary"]["sales_count"] == 1
        assert cash.json["summary"]["revenue_cents"] == 2160
        assert customer.json["summary"]["sales_count"] == 1

    def test_explicit_range_outside_sales(self, client, manager_headers, trading_day):
        resp = client.get("/api/reports/sales?start=2020-01-01&end=2020-01-31", headers=manager_headers)

        assert resp.status_code == 200
        assert resp.json["summary"]["sales_count"] == 0
        assert resp.json["summary"]["average_order_cents"] == 0
        assert resp.json["end"] == "2020-01-31T23:59:59Z"

    @pytest.mark.parametrize("query", [
        "start=not-a-date",
        "start=2026-02-01&end=2026-01-01",
        "group_by=hour",
        "period=decade",
        "payment_method=BARTER",
    ])
    def test_invalid_parameters(self, client, manager_headers, query):
        resp = client.get(f"/api/reports/sales?{query}", headers=manager_headers)
        assert resp.status_code == 400

    def test_cashier_denied(self, client, cashier_headers):
        resp = client.get("/api/reports/sales", headers=cashier_headers)
        assert resp.status_code == 403


# =============================================================================
# INVENTORY REPORT
# =============================================================================


class TestInventoryReport:

    def test_overview_and_filters(self, client, manager_headers, manager_user, make_product):
        empty = make_product(sku="EMPTY", name="Empty", category="Misc", cost_price_cents=100)
        stocked = make_product(sku="FULL", name="Full", category="Tools",
                               cost_price_cents=300, stock_quantity=5, min_stock_level=2)
        make_product(sku="GONE", name="Gone", stock_quantity=50, is_active=False)
        inventory_service.adjust_inventory(
            AdjustmentRequest(quantity_change=3, reason="PURCHASE", product_id=stocked.id),
            manager_user.id,
        )

        resp = client.get("/api/reports/inventory", headers=manager_headers)

        assert resp.status_code == 200
        assert resp.json["overview"] == {
            "total_products": 2,
            "total_units": 8,
            "total_value_cents": 2400,
            "out_of_stock_count": 1,
            "low_stock_count": 1,
        }
        assert [(c["category"], c["total_units"]) for c in resp.json["by_category"]] == [("Misc", 0), ("Tools", 8)]
        assert [p["sku"] for p in resp.json["products"]] == ["EMPTY", "FULL"]
        assert len(resp.json["recent_movements"]) == 1
        assert resp.json["recent_movements"][0]["quantity_change"] == 3

        low = client.get("/api/reports/inventory?stock_level=low", headers=manager_headers)
        assert [p["id"] for p in low.json["products"]] == [empty.id]

        by_value = client.get("/api/reports/inventory?sort_by=value&sort_order=desc", headers=manager_headers)
        assert by_value.json["products"][0]["value_cents"] == 2400

        searched = client.get("/api/reports/inventory?q=ful", headers=manager_headers)
        assert [p["sku"] for p in searched.json["products"]] == ["FULL"]

    def test_invalid_stock_level(self, client, manager_headers):
        resp = client.get("/api/reports/inventory?stock_level=some", headers=manager_headers)
        assert resp.status_code == 400


# =============================================================================
# TOP PRODUCTS
# =============================================================================


class TestTopProducts:

    def test_ranked_by_quantity(self, client, manager_headers, trading_day):
        resp = client.get("/api/reports/top-products?period=week&sort_by=quantity&limit=1", headers=manager_headers)

        assert resp.status_code == 200
        [coffee] = resp.json["products"]
        assert coffee["sku"] == "COFFEE"
        assert coffee["quantity_sold"] == 3
        assert coffee["order_count"] == 2
        assert coffee["average_order_cents"] == 1500
        assert coffee["current_stock"] == 7
        assert resp.json["categories"] == [
            {"category": "Drinks", "quantity_sold": 3, "revenue_cents": 3000},
            {"category": "Food", "quantity_sold": 1, "revenue_cents": 500},
        ]

    def test_category_filter(self, client, manager_headers, trading_day):
        resp = client.get("/api/reports/top-products?category=Food", headers=manager_headers)
        assert [p["sku"] for p in resp.json["products"]] == ["BAGEL"]

    def test_limit_bounds(self, client, manager_headers, db_session):
        resp = client.get("/api/reports/top-products?limit=0", headers=manager_headers)
        assert resp.status_code == 400
