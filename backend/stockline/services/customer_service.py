# Overview: Customer master data operations.

from __future__ import annotations

from sqlalchemy import func, or_

from ..errors import ConflictError, NotFoundError
from ..extensions import db
from ..models import Customer
from ..validation import ModelValidationPolicy
from .concurrency import lock_for_update, run_in_transaction


CUSTOMER_CREATE_POLICY = ModelValidationPolicy(
    writable_fields={"first_name", "last_name", "email", "phone", "is_active"},
    required_on_create={"first_name", "last_name"},
)
# Points and spend aggregates are only written by sales and rewards
CUSTOMER_UPDATE_POLICY = CUSTOMER_CREATE_POLICY


def _normalize_email(patch: dict) -> None:
    if patch.get("email"):
        patch["email"] = patch["email"].lower()
    elif "email" in patch:
        patch["email"] = None


def _check_email(email: str | None, customer_id: int | None = None) -> None:
    if not email:
        return
    q = db.session.query(Customer.id).filter(func.lower(Customer.email) == email)
    if customer_id is not None:
        q = q.filter(Customer.id != customer_id)
    if q.first() is not None:
        raise ConflictError(f"Email already in use: {email}")


def create_customer(*, patch: dict) -> Customer:
    _normalize_email(patch)

    def _op() -> Customer:
        _check_email(patch.get("email"))
        customer = Customer(**patch, loyalty_points=0, total_spent_cents=0, total_visits=0)
        db.session.add(customer)
        db.session.flush()
        return customer

    return run_in_transaction(_op, description="create customer")


def update_customer(customer_id: int, *, patch: dict) -> Customer:
    _normalize_email(patch)

    def _op() -> Customer:
        customer = lock_for_update(db.session.query(Customer).filter(Customer.id == customer_id)).first()
        if not customer:
            raise NotFoundError("Customer not found")
        _check_email(patch.get("email"), customer_id=customer.id)
        for k, v in patch.items():
            setattr(customer, k, v)
        return customer

    return run_in_transaction(_op, description="update customer")


def get_customer(customer_id: int) -> Customer:
    customer = db.session.get(Customer, customer_id)
    if not customer:
        raise NotFoundError("Customer not found")
    return customer


def list_customers(
    *,
    search: str | None = None,
    include_inactive: bool = False,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[Customer], int]:
    query = db.session.query(Customer)
    if not include_inactive:
        query = query.filter(Customer.is_active.is_(True))
    if search:
        like = f"%{search.strip()}%"
        query = query.filter(or_(
            Customer.first_name.ilike(like),
            Customer.last_name.ilike(like),
            Customer.email.ilike(like),
            Customer.phone.ilike(like),
        ))

    total = query.count()
    limit = max(1, min(limit, 200))
    offset = max(offset, 0)

    rows = (
        query.order_by(Customer.last_name.asc(), Customer.first_name.asc(), Customer.id.asc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return rows, total
