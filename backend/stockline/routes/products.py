# Overview: Flask API routes for the product catalogue; parses input and returns JSON responses.

# backend/stockline/routes/products.py
"""
Product and variant management.

Reads are open to any authenticated user; writes require ADMIN or MANAGER.
Stock is not writable here except as initial stock on create; use the
inventory routes to adjust it.
"""
from flask import Blueprint, request, g, current_app

from ..errors import DomainError
from ..services import products_service
from ..models import Product, Variant
from ..validation import validate_payload
from ..decorators import require_auth, require_role, MANAGER_ROLES

products_bp = Blueprint("products", __name__, url_prefix="/api/products")


@products_bp.get("")
@require_auth
def list_products():
    """
    Query params:
    - q: search in name, SKU, barcode, description
    - category: exact category
    - include_inactive: "true" to include inactive products
    - page / per_page: pagination (all items when page is omitted)
    """
    return products_service.list_products(
        search=request.args.get("q"),
        category=request.args.get("category"),
        include_inactive=request.args.get("include_inactive", "").lower() == "true",
        page=request.args.get("page", type=int),
        per_page=request.args.get("per_page", type=int),
    )


@products_bp.post("")
@require_auth
@require_role(*MANAGER_ROLES)
def create_product():
    try:
        patch = validate_payload(
            model=Product,
            payload=request.get_json(silent=True),
            policy=products_service.PRODUCT_CREATE_POLICY,
            partial=False,
        )
        product = products_service.create_product(patch=patch, actor_user_id=g.current_user.id)
        return {"product": product.to_dict(include_variants=True)}, 201
    except DomainError as e:
        return e.to_dict(), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create product")
        return {"error": "Internal server error"}, 500


@products_bp.get("/<int:product_id>")
@require_auth
def get_product(product_id: int):
    try:
        product = products_service.get_product(product_id)
        return {"product": product.to_dict(include_variants=True)}
    except DomainError as e:
        return e.to_dict(), e.status_code


@products_bp.put("/<int:product_id>")
@require_auth
@require_role(*MANAGER_ROLES)
def update_product(product_id: int):
    try:
        patch = validate_payload(
            model=Product,
            payload=request.get_json(silent=True),
            policy=products_service.PRODUCT_UPDATE_POLICY,
            partial=True,
        )
        product = products_service.update_product(product_id, patch)
        return {"product": product.to_dict(include_variants=True)}
    except DomainError as e:
        return e.to_dict(), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update product %s", product_id)
        return {"error": "Internal server error"}, 500


def _split_attributes(payload):
    if not isinstance(payload, dict):
        return payload, None, False
    payload = dict(payload)
    has_attributes = "attributes" in payload
    attributes = payload.pop("attributes", None)
    return payload, attributes, has_attributes


@products_bp.post("/<int:product_id>/variants")
@require_auth
@require_role(*MANAGER_ROLES)
def create_variant(product_id: int):
    try:
        payload, attributes, _ = _split_attributes(request.get_json(silent=True))
        patch = validate_payload(
            model=Variant,
            payload=payload,
            policy=products_service.VARIANT_CREATE_POLICY,
            partial=False,
        )
        variant = products_service.create_variant(
            product_id,
            patch=patch,
            attributes=attributes,
            actor_user_id=g.current_user.id,
        )
        return {"variant": variant.to_dict(), "product": variant.product.to_dict()}, 201
    except DomainError as e:
        return e.to_dict(), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create variant for product %s", product_id)
        return {"error": "Internal server error"}, 500


@products_bp.patch("/variants/<int:variant_id>")
@require_auth
@require_role(*MANAGER_ROLES)
def update_variant(variant_id: int):
    try:
        payload, attributes, has_attributes = _split_attributes(request.get_json(silent=True))
        patch = validate_payload(
            model=Variant,
            payload=payload,
            policy=products_service.VARIANT_UPDATE_POLICY,
            partial=True,
        )
        variant = products_service.update_variant(
            variant_id,
            patch=patch,
            attributes=attributes,
            set_attributes=has_attributes,
        )
        return {"variant": variant.to_dict(), "product": variant.product.to_dict()}
    except DomainError as e:
        return e.to_dict(), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update variant %s", variant_id)
        return {"error": "Internal server error"}, 500
