# Overview: Flask API routes for sales; completion, refunds, receipts, cart validation.

# backend/stockline/routes/sales.py
"""
Sales API routes

POST /api/sales completes a sale in one transaction. The request carries
what the cashier rang up; prices and totals are recomputed server-side.
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import DomainError, ValidationError
from ..models.sales import PAYMENT_METHODS, SALE_STATUSES
from ..services import sales_service
from ..time_utils import parse_iso_datetime
from ..validation import parse_cart_lines, parse_refund_request, parse_sale_request
from ..decorators import require_auth, require_role, MANAGER_ROLES, STAFF_ROLES


sales_bp = Blueprint("sales", __name__, url_prefix="/api/sales")


@sales_bp.post("")
@require_auth
@require_role(*STAFF_ROLES)
def complete_sale_route():
    """
    Complete a sale.

    Returns 201 {sale, items, loyalty, receipt}.
    """
    try:
        req = parse_sale_request(
            request.get_json(silent=True),
            max_lines=int(current_app.config["MAX_CART_LINES"]),
        )
        result = sales_service.complete_sale(req, g.current_user.id)
        return jsonify(result.to_dict()), 201

    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to complete sale")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.get("")
@require_auth
def list_sales_route():
    """
    Query params: from, to (ISO-8601), customer_id, cashier_user_id,
    payment_method, status, min_total_cents, max_total_cents, limit, offset.
    """
    try:
        try:
            from_date = parse_iso_datetime(request.args.get("from"))
            to_date = parse_iso_datetime(request.args.get("to"))
        except ValueError:
            raise ValidationError("from/to must be ISO-8601 datetimes")

        payment_method = (request.args.get("payment_method") or "").upper() or None
        if payment_method and payment_method not in PAYMENT_METHODS:
            raise ValidationError(f"payment_method must be one of {', '.join(PAYMENT_METHODS)}")
        status = (request.args.get("status") or "").upper() or None
        if status and status not in SALE_STATUSES:
            raise ValidationError(f"status must be one of {', '.join(SALE_STATUSES)}")

        limit = request.args.get("limit", default=50, type=int)
        offset = request.args.get("offset", default=0, type=int)
        rows, total = sales_service.list_sales(
            from_date=from_date,
            to_date=to_date,
            customer_id=request.args.get("customer_id", type=int),
            cashier_user_id=request.args.get("cashier_user_id", type=int),
            payment_method=payment_method,
            status=status,
            min_total_cents=request.args.get("min_total_cents", type=int),
            max_total_cents=request.args.get("max_total_cents", type=int),
            limit=limit,
            offset=offset,
        )
        return jsonify({
            "items": [s.to_dict() for s in rows],
            "count": len(rows),
            "total": total,
            "limit": limit,
            "offset": offset,
        }), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code


@sales_bp.get("/<int:sale_id>")
@require_auth
def get_sale_route(sale_id: int):
    try:
        sale = sales_service.get_sale(sale_id)
        return jsonify({"sale": sale.to_dict(), "items": [i.to_dict() for i in sale.items]}), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code


@sales_bp.post("/<int:sale_id>/refund")
@require_auth
@require_role(*MANAGER_ROLES)
def refund_sale_route(sale_id: int):
    """
    Refund a completed sale.

    Body (all optional): {refund_method, reason, items: [{sale_item_id, quantity}]}.
    Without items every line is refunded in full.
    """
    try:
        req = parse_refund_request(request.get_json(silent=True))
        sale = sales_service.refund_sale(
            sale_id,
            g.current_user.id,
            items=req.items,
            refund_method=req.refund_method,
            reason=req.reason,
        )
        return jsonify({"sale": sale.to_dict(), "items": [i.to_dict() for i in sale.items]}), 200

    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to refund sale %s", sale_id)
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.get("/<int:sale_id>/receipt")
@require_auth
def receipt_route(sale_id: int):
    try:
        sale = sales_service.get_sale(sale_id)
        return jsonify({"receipt": sales_service.build_receipt(sale)}), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code


@sales_bp.post("/cart/validate")
@require_auth
def validate_cart_route():
    """Body: {items: [...], discount_cents?}. Reports stock and prices without writing."""
    try:
        data = request.get_json(silent=True) or {}
        lines = parse_cart_lines(
            data.get("items"),
            max_lines=int(current_app.config["MAX_CART_LINES"]),
        )
        discount = data.get("discount_cents") or 0
        if not isinstance(discount, int) or isinstance(discount, bool) or discount < 0:
            raise ValidationError("discount_cents must be a non-negative integer")
        return jsonify(sales_service.validate_cart(lines, discount_cents=discount)), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
