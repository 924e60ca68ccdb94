# Overview: Flask API routes for customers and their loyalty rewards.

# backend/stockline/routes/customers.py
from flask import Blueprint, request, current_app

from ..errors import DomainError, ValidationError
from ..models import Customer
from ..services import customer_service, loyalty_service
from ..time_utils import parse_iso_datetime
from ..validation import validate_payload
from ..decorators import require_auth, require_role, MANAGER_ROLES, STAFF_ROLES

customers_bp = Blueprint("customers", __name__, url_prefix="/api/customers")


@customers_bp.get("")
@require_auth
def list_customers():
    """Query params: q (name, email, phone), include_inactive, limit, offset."""
    limit = request.args.get("limit", default=50, type=int)
    offset = request.args.get("offset", default=0, type=int)
    rows, total = customer_service.list_customers(
        search=request.args.get("q"),
        include_inactive=request.args.get("include_inactive", "").lower() == "true",
        limit=limit,
        offset=offset,
    )
    return {
        "items": [c.to_dict() for c in rows],
        "count": len(rows),
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@customers_bp.post("")
@require_auth
@require_role(*STAFF_ROLES)
def create_customer():
    try:
        patch = validate_payload(
            model=Customer,
            payload=request.get_json(silent=True),
            policy=customer_service.CUSTOMER_CREATE_POLICY,
            partial=False,
        )
        customer = customer_service.create_customer(patch=patch)
        return {"customer": customer.to_dict()}, 201
    except DomainError as e:
        return e.to_dict(), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create customer")
        return {"error": "Internal server error"}, 500


@customers_bp.get("/<int:customer_id>")
@require_auth
def get_customer(customer_id: int):
    try:
        return {"customer": customer_service.get_customer(customer_id).to_dict()}
    except DomainError as e:
        return e.to_dict(), e.status_code


@customers_bp.put("/<int:customer_id>")
@require_auth
@require_role(*STAFF_ROLES)
def update_customer(customer_id: int):
    try:
        patch = validate_payload(
            model=Customer,
            payload=request.get_json(silent=True),
            policy=customer_service.CUSTOMER_UPDATE_POLICY,
            partial=True,
        )
        customer = customer_service.update_customer(customer_id, patch=patch)
        return {"customer": customer.to_dict()}
    except DomainError as e:
        return e.to_dict(), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update customer %s", customer_id)
        return {"error": "Internal server error"}, 500


@customers_bp.get("/<int:customer_id>/loyalty")
@require_auth
def list_loyalty(customer_id: int):
    try:
        customer, rewards = loyalty_service.list_rewards(customer_id)
        return {
            "customer_id": customer.id,
            "loyalty_points": customer.loyalty_points,
            "rewards": [r.to_dict() for r in rewards],
        }
    except DomainError as e:
        return e.to_dict(), e.status_code


def _int_field(data: dict, key: str, default=None):
    value = data.get(key, default)
    if value is None or isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{key} must be an integer")
    return value


@customers_bp.post("/<int:customer_id>/loyalty")
@require_auth
@require_role(*MANAGER_ROLES)
def create_loyalty_reward(customer_id: int):
    """Body: {points_used, reward_type, reward_value?, description?, expires_at?}."""
    try:
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            raise ValidationError("Invalid JSON payload")
        try:
            expires_at = parse_iso_datetime(data.get("expires_at"))
        except (ValueError, AttributeError):
            raise ValidationError("expires_at must be an ISO-8601 datetime")
        reward = loyalty_service.create_reward(
            customer_id=customer_id,
            points_used=_int_field(data, "points_used"),
            reward_type=str(data.get("reward_type") or "").upper(),
            reward_value=_int_field(data, "reward_value", 0),
            description=data.get("description"),
            expires_at=expires_at,
        )
        return {"reward": reward.to_dict(), "loyalty_points": reward.customer.loyalty_points}, 201
    except DomainError as e:
        return e.to_dict(), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create reward for customer %s", customer_id)
        return {"error": "Internal server error"}, 500


@customers_bp.patch("/<int:customer_id>/loyalty/<int:reward_id>")
@require_auth
@require_role(*STAFF_ROLES)
def redeem_loyalty_reward(customer_id: int, reward_id: int):
    try:
        reward = loyalty_service.redeem_reward(customer_id=customer_id, reward_id=reward_id)
        return {"reward": reward.to_dict()}
    except DomainError as e:
        return e.to_dict(), e.status_code
    except Exception:
        current_app.logger.exception("Failed to redeem reward %s", reward_id)
        return {"error": "Internal server error"}, 500
