# Overview: Domain error taxonomy shared by services and routes.

"""
Every error a service raises on purpose derives from DomainError and carries
the HTTP status the routes answer with. Anything else reaching a route is an
unexpected failure and is rendered as a generic 500.
"""

from __future__ import annotations


class DomainError(Exception):
    status_code = 400

    def __init__(self, message: str, details: list | dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details if details is not None else []

    def to_dict(self) -> dict:
        return {"error": self.message, "details": self.details}


class ValidationError(DomainError):
    """400-level input problem, raised before any mutation."""
    status_code = 400


class NotFoundError(DomainError):
    status_code = 404


class ForbiddenError(DomainError):
    """Authenticated, but not allowed to act on this record."""
    status_code = 403


class ConflictError(DomainError):
    """409-level business rule conflict (e.g., duplicate SKU)."""
    status_code = 409


class LineItemError(DomainError):
    """Referenced product/variant is missing, inactive or not sellable."""
    status_code = 422

    def __init__(self, message: str, sku: str | None = None, details: list | dict | None = None):
        super().__init__(message, details)
        self.sku = sku


class InsufficientStockError(DomainError):
    """Applying a delta would drive stock below zero."""
    status_code = 409

    def __init__(
        self,
        message: str,
        *,
        product_id: int | None = None,
        variant_id: int | None = None,
        available: int | None = None,
        requested: int | None = None,
    ):
        super().__init__(message, {
            "product_id": product_id,
            "variant_id": variant_id,
            "available": available,
            "requested": requested,
        })
        self.product_id = product_id
        self.variant_id = variant_id
        self.available = available
        self.requested = requested


class InsufficientLoyaltyPointsError(DomainError):
    status_code = 422

    def __init__(self, message: str, *, balance: int, requested: int):
        super().__init__(message, {"balance": balance, "requested": requested})
        self.balance = balance
        self.requested = requested


class SaleNotFoundError(NotFoundError):
    pass


class SaleStateError(DomainError):
    """Sale is in a status that does not allow the requested transition."""
    status_code = 409


class PersistenceError(DomainError):
    """Underlying storage failure. Messages never carry driver detail."""
    status_code = 500

    def to_dict(self) -> dict:
        return {"error": "Internal server error", "message": self.message}
