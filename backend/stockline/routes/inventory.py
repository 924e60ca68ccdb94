# Overview: Flask API routes for inventory adjustments and stock queries.

# backend/stockline/routes/inventory.py
from flask import Blueprint, request, g, current_app

from ..errors import DomainError, ValidationError
from ..services import inventory_service, ledger_service
from ..models.inventory import ADJUSTMENT_REASONS
from ..time_utils import parse_iso_datetime
from ..validation import parse_adjustment
from ..decorators import require_auth, require_role, MANAGER_ROLES, STAFF_ROLES

inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")


@inventory_bp.patch("/adjust")
@require_auth
@require_role(*STAFF_ROLES)
def adjust_route():
    """
    Body: {product_id | variant_id, quantity_change, reason, note?}

    quantity_change is signed; reason is one of the adjustment reasons.
    """
    try:
        req = parse_adjustment(request.get_json(silent=True))
        result = inventory_service.adjust_inventory(req, g.current_user.id)
        return result.to_dict(), 200
    except DomainError as e:
        return e.to_dict(), e.status_code
    except Exception:
        current_app.logger.exception("Failed to adjust inventory")
        return {"error": "Internal server error"}, 500


@inventory_bp.post("/bulk-adjust")
@require_auth
@require_role(*MANAGER_ROLES)
def bulk_adjust_route():
    """
    Body: {adjustments: [...]} with the same entry shape as /adjust.

    Each entry commits on its own; failures are listed in "errors".
    """
    try:
        data = request.get_json(silent=True) or {}
        result = inventory_service.bulk_adjust(data.get("adjustments"), g.current_user.id)
        return result, 200
    except DomainError as e:
        return e.to_dict(), e.status_code
    except Exception:
        current_app.logger.exception("Failed to bulk adjust inventory")
        return {"error": "Internal server error"}, 500


@inventory_bp.get("/low-stock")
@require_auth
def low_stock_route():
    return inventory_service.list_low_stock()


@inventory_bp.get("/history")
@require_auth
def history_route():
    """
    Query params: product_id, variant_id, reason, sale_id, from, to (ISO-8601),
    limit (default 50, max 500), offset.
    """
    try:
        reason = request.args.get("reason")
        if reason:
            reason = reason.upper()
            if reason not in ADJUSTMENT_REASONS:
                raise ValidationError(f"reason must be one of {', '.join(ADJUSTMENT_REASONS)}")
        try:
            from_date = parse_iso_datetime(request.args.get("from"))
            to_date = parse_iso_datetime(request.args.get("to"))
        except ValueError:
            raise ValidationError("from/to must be ISO-8601 datetimes")

        limit = request.args.get("limit", default=50, type=int)
        offset = request.args.get("offset", default=0, type=int)
        rows, total = ledger_service.list_adjustments(
            product_id=request.args.get("product_id", type=int),
            variant_id=request.args.get("variant_id", type=int),
            reason=reason,
            sale_id=request.args.get("sale_id", type=int),
            from_date=from_date,
            to_date=to_date,
            limit=limit,
            offset=offset,
        )
        return {
            "items": [r.to_dict() for r in rows],
            "count": len(rows),
            "total": total,
            "limit": limit,
            "offset": offset,
        }
    except DomainError as e:
        return e.to_dict(), e.status_code


@inventory_bp.get("/product/<int:product_id>")
@require_auth
def product_inventory_route(product_id: int):
    try:
        return inventory_service.get_product_inventory(product_id)
    except DomainError as e:
        return e.to_dict(), e.status_code
