# Overview: Flask API routes for sales, inventory and product-performance reports.

from flask import Blueprint, request, current_app

from ..errors import DomainError
from ..services import reporting_service
from ..decorators import require_auth, require_role, MANAGER_ROLES


reports_bp = Blueprint("reports", __name__, url_prefix="/api/reports")


@reports_bp.get("/sales")
@require_auth
@require_role(*MANAGER_ROLES)
def sales_report():
    """
    Query params: start, end (ISO-8601) or period (today, yesterday, week,
    month, quarter, year; default month), group_by (day, week, month),
    payment_method, cashier_id, customer_id.
    """
    try:
        report = reporting_service.sales_report(
            start=request.args.get("start"),
            end=request.args.get("end"),
            period=request.args.get("period"),
            group_by=request.args.get("group_by", "day"),
            payment_method=request.args.get("payment_method"),
            cashier_user_id=request.args.get("cashier_id", type=int),
            customer_id=request.args.get("customer_id", type=int),
        )
        return report, 200
    except DomainError as e:
        return e.to_dict(), e.status_code
    except Exception:
        current_app.logger.exception("Failed to build sales report")
        return {"error": "Internal server error"}, 500


@reports_bp.get("/inventory")
@require_auth
@require_role(*MANAGER_ROLES)
def inventory_report():
    """Query params: category, stock_level (low, out), q, sort_by, sort_order."""
    try:
        report = reporting_service.inventory_report(
            category=request.args.get("category"),
            stock_level=request.args.get("stock_level"),
            search=request.args.get("q"),
            sort_by=request.args.get("sort_by", "stock_quantity"),
            sort_order=request.args.get("sort_order", "asc"),
        )
        return report, 200
    except DomainError as e:
        return e.to_dict(), e.status_code
    except Exception:
        current_app.logger.exception("Failed to build inventory report")
        return {"error": "Internal server error"}, 500


@reports_bp.get("/top-products")
@require_auth
@require_role(*MANAGER_ROLES)
def top_products_report():
    """Query params: start, end or period, sort_by (revenue, quantity), category, limit."""
    try:
        report = reporting_service.top_products(
            start=request.args.get("start"),
            end=request.args.get("end"),
            period=request.args.get("period"),
            sort_by=request.args.get("sort_by", "revenue"),
            category=request.args.get("category"),
            limit=request.args.get("limit", default=20, type=int),
        )
        return report, 200
    except DomainError as e:
        return e.to_dict(), e.status_code
    except Exception:
        current_app.logger.exception("Failed to build top products report")
        return {"error": "Internal server error"}, 500
