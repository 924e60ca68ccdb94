"""
Sales Service - sale completion and refunds

complete_sale() is one all-or-nothing unit of work:

    VALIDATING -> PRICING -> RESERVING_STOCK -> LEDGER_WRITE
        -> LOYALTY_SETTLE -> PERSIST_SALE -> COMMITTED

Any failure rolls the whole transaction back (no stock change, no ledger
row, no points, no sale) and is logged with the stage it failed in.
Notifications go out only after commit, through the outbox.

Prices are never taken from the client. Client-sent unit prices and totals
are compared against the server's figures and rejected when they drift by
more than PRICE_TOLERANCE_CENTS.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime

from flask import current_app

from ..errors import (
    DomainError,
    InsufficientLoyaltyPointsError,
    SaleNotFoundError,
    SaleStateError,
    ValidationError,
)
from ..extensions import db
from ..models import Customer, LoyaltyReward, Sale, SaleItem
from ..time_utils import to_utc_z, utcnow
from ..validation import RefundLineRequest, SaleLineRequest, SaleRequest
from . import notification_service
from .concurrency import lock_for_update, run_in_transaction
from .document_service import next_invoice_number
from .ledger_service import link_to_sale, record_adjustment
from .loyalty_service import (
    LoyaltyPolicy,
    LoyaltySettlement,
    earned_reward,
    points_discount_cents,
    settle,
)
from .pricing_service import (
    check_client_figures,
    compute_tax,
    price_lines,
    resolve_line,
)
from .stock_service import StockTarget, apply_delta


VALIDATING = "VALIDATING"
PRICING = "PRICING"
RESERVING_STOCK = "RESERVING_STOCK"
LEDGER_WRITE = "LEDGER_WRITE"
LOYALTY_SETTLE = "LOYALTY_SETTLE"
PERSIST_SALE = "PERSIST_SALE"
COMMITTED = "COMMITTED"


@dataclass
class _StageTracker:
    current: str = VALIDATING
    history: list[str] = field(default_factory=list)

    def enter(self, stage: str) -> None:
        self.current = stage
        self.history.append(stage)


@dataclass
class SaleResult:
    sale: Sale
    loyalty: LoyaltySettlement
    event_ids: list[int]

    def to_dict(self) -> dict:
        return {
            "sale": self.sale.to_dict(),
            "items": [item.to_dict() for item in self.sale.items],
            "loyalty": self.loyalty.to_dict(),
            "receipt": build_receipt(self.sale),
        }


def _load_customer(customer_id: int) -> Customer:
    customer = lock_for_update(
        db.session.query(Customer).filter(Customer.id == customer_id)
    ).first()
    if not customer or not customer.is_active:
        raise ValidationError(
            "Customer not found or inactive",
            [{"field": "customer_id", "message": f"customer {customer_id} is not an active customer"}],
        )
    return customer


def complete_sale(request: SaleRequest, cashier_user_id: int) -> SaleResult:
    """
    Complete a sale atomically and dispatch its events after commit.

    Raises ValidationError, LineItemError, InsufficientStockError,
    InsufficientLoyaltyPointsError or PersistenceError; on any of them
    nothing has been written.
    """
    cfg = current_app.config
    policy = LoyaltyPolicy.from_config(cfg)
    stage = _StageTracker()

    def _op() -> SaleResult:
        stage.enter(VALIDATING)
        points_requested = request.loyalty_points_used
        if points_requested and request.customer_id is None:
            raise ValidationError(
                "Loyalty points can only be redeemed for a customer",
                [{"field": "loyalty_points_used", "message": "requires customer_id"}],
            )

        resolved = [resolve_line(line) for line in request.items]

        customer = None
        if request.customer_id is not None:
            customer = _load_customer(request.customer_id)
            if points_requested > customer.loyalty_points:
                raise InsufficientLoyaltyPointsError(
                    f"Insufficient loyalty points: balance {customer.loyalty_points}, "
                    f"requested {points_requested}",
                    balance=customer.loyalty_points,
                    requested=points_requested,
                )

        stage.enter(PRICING)
        summary = price_lines(
            resolved,
            tax_rate_bps=int(cfg["TAX_RATE_BPS"]),
            sale_discount_cents=request.discount_cents,
            points_discount_cents=points_discount_cents(points_requested, policy),
        )
        check_client_figures(
            summary,
            subtotal_cents=request.subtotal_cents,
            tax_cents=request.tax_cents,
            total_cents=request.total_cents,
            tolerance_cents=int(cfg["PRICE_TOLERANCE_CENTS"]),
        )

        stage.enter(RESERVING_STOCK)
        changes = [apply_delta(p.line.target, -p.quantity, "SALE") for p in summary.lines]

        stage.enter(LEDGER_WRITE)
        adjustment_ids = [
            record_adjustment(
                StockTarget(product_id=c.product_id, variant_id=c.variant_id),
                c.quantity_change,
                c.previous_stock,
                c.new_stock,
                "SALE",
                actor_user_id=cashier_user_id,
            )
            for c in changes
        ]

        stage.enter(LOYALTY_SETTLE)
        now = utcnow()
        settlement = settle(customer, summary.total_before_points_cents, points_requested, policy)
        reward = None
        if customer is not None:
            customer.loyalty_points = settlement.new_balance
            customer.total_spent_cents = (customer.total_spent_cents or 0) + summary.total_cents
            customer.total_visits = (customer.total_visits or 0) + 1
            customer.last_visit_at = now
            if settlement.points_earned > 0:
                reward = earned_reward(customer.id, settlement.points_earned, policy, now)
                db.session.add(reward)

        stage.enter(PERSIST_SALE)
        invoice_number = next_invoice_number(prefix=cfg["INVOICE_PREFIX"], now=now)
        sale = Sale(
            invoice_number=invoice_number,
            customer_id=customer.id if customer else None,
            cashier_user_id=cashier_user_id,
            subtotal_cents=summary.subtotal_cents,
            tax_cents=summary.tax_cents,
            discount_cents=summary.discount_cents,
            loyalty_discount_cents=summary.points_discount_cents,
            total_cents=summary.total_cents,
            payment_method=request.payment_method,
            status="COMPLETED",
            notes=request.notes,
            sale_date=now,
        )
        db.session.add(sale)
        db.session.flush()

        for p in summary.lines:
            db.session.add(SaleItem(
                sale_id=sale.id,
                product_id=p.line.product.id,
                variant_id=p.line.variant.id if p.line.variant else None,
                quantity=p.quantity,
                unit_price_cents=p.unit_price_cents,
                discount_cents=p.discount_cents,
                total_price_cents=p.total_price_cents,
                refunded_quantity=0,
            ))

        link_to_sale(adjustment_ids, sale.id)
        if reward is not None:
            reward.sale_id = sale.id
            reward.description = f"Points earned from sale {invoice_number}"

        events = [notification_service.enqueue_event(notification_service.SALE_COMPLETED, {
            "sale_id": sale.id,
            "invoice_number": invoice_number,
            "total_cents": sale.total_cents,
            "customer_id": sale.customer_id,
        })]
        for change, adjustment_id in zip(changes, adjustment_ids):
            events.extend(notification_service.stock_events(
                change, reason="SALE", sale_id=sale.id, adjustment_id=adjustment_id,
            ))

        db.session.flush()
        return SaleResult(sale=sale, loyalty=settlement, event_ids=[e.id for e in events])

    try:
        result = run_in_transaction(_op, description="complete sale")
    except DomainError as exc:
        current_app.logger.warning(
            "Sale aborted at %s: %s: %s",
            stage.current, type(exc).__name__, exc.message,
        )
        raise

    stage.enter(COMMITTED)
    current_app.logger.info(
        "Sale completed: invoice=%s total_cents=%s lines=%s cashier=%s",
        result.sale.invoice_number, result.sale.total_cents,
        len(request.items), cashier_user_id,
    )
    notification_service.dispatch_events(result.event_ids)
    return result


def _refund_plan(sale: Sale, items: list[RefundLineRequest] | None) -> list[tuple[SaleItem, int]]:
    if items is None:
        return [
            (item, item.quantity - item.refunded_quantity)
            for item in sale.items
            if item.quantity - item.refunded_quantity > 0
        ]

    by_id = {item.id: item for item in sale.items}
    plan: list[tuple[SaleItem, int]] = []
    errors: list[dict] = []
    for idx, req in enumerate(items):
        item = by_id.get(req.sale_item_id)
        if item is None:
            errors.append({
                "field": f"items[{idx}].sale_item_id",
                "message": f"sale item {req.sale_item_id} is not part of this sale",
            })
            continue
        remaining = item.quantity - item.refunded_quantity
        if req.quantity > remaining:
            errors.append({
                "field": f"items[{idx}].quantity",
                "message": f"only {remaining} left to refund",
            })
            continue
        plan.append((item, req.quantity))
    if errors:
        raise ValidationError("Invalid refund items", errors)
    return plan


def _refund_amount(sale: Sale, plan: list[tuple[SaleItem, int]], full: bool) -> int:
    if full:
        return sale.total_cents
    if sale.subtotal_cents <= 0:
        return 0
    refunded_lines = sum(item.total_price_cents * qty // item.quantity for item, qty in plan)
    # share of the amount paid, rounded half up
    return (sale.total_cents * refunded_lines * 2 + sale.subtotal_cents) // (2 * sale.subtotal_cents)


def refund_sale(
    sale_id: int,
    actor_user_id: int,
    *,
    items: list[RefundLineRequest] | None = None,
    refund_method: str | None = None,
    reason: str | None = None,
) -> Sale:
    """
    Refund a COMPLETED sale: restore stock with RETURN ledger rows and mark it REFUNDED.

    items=None refunds every line in full. Loyalty points are not reversed.
    """
    def _op() -> tuple[Sale, list[int]]:
        sale = lock_for_update(db.session.query(Sale).filter(Sale.id == sale_id)).first()
        if not sale:
            raise SaleNotFoundError("Sale not found")
        if sale.status != "COMPLETED":
            raise SaleStateError(
                f"Sale {sale.invoice_number} is {sale.status} and cannot be refunded"
            )

        plan = _refund_plan(sale, items)
        if not plan:
            raise SaleStateError(f"Sale {sale.invoice_number} has nothing left to refund")

        planned = {item.id: qty for item, qty in plan}
        full = all(
            item.refunded_quantity + planned.get(item.id, 0) == item.quantity
            for item in sale.items
        )
        amount = _refund_amount(sale, plan, full)

        event_ids: list[int] = []
        for item, qty in plan:
            target = (
                StockTarget(variant_id=item.variant_id)
                if item.variant_id is not None
                else StockTarget(product_id=item.product_id)
            )
            change = apply_delta(target, qty, "RETURN")
            adjustment_id = record_adjustment(
                StockTarget(product_id=change.product_id, variant_id=change.variant_id),
                change.quantity_change,
                change.previous_stock,
                change.new_stock,
                "RETURN",
                note=f"Refund of {sale.invoice_number}",
                actor_user_id=actor_user_id,
                sale_id=sale.id,
            )
            item.refunded_quantity += qty
            event_ids.extend(e.id for e in notification_service.stock_events(
                change, reason="RETURN", sale_id=sale.id, adjustment_id=adjustment_id,
            ))

        method = refund_method or sale.payment_method
        now = utcnow()
        sale.status = "REFUNDED"
        sale.refunded_at = now
        sale.refunded_by_user_id = actor_user_id
        sale.refund_amount_cents = amount
        sale.refund_method = method

        note = f"Refunded {amount} cents via {method}"
        if reason:
            note = f"{note}: {reason}"
        sale.notes = f"{sale.notes}\n{note}" if sale.notes else note

        event_ids.append(notification_service.enqueue_event(notification_service.REFUND_PROCESSED, {
            "sale_id": sale.id,
            "invoice_number": sale.invoice_number,
            "refund_amount_cents": amount,
            "refund_method": method,
        }).id)

        db.session.flush()
        return sale, event_ids

    try:
        sale, event_ids = run_in_transaction(_op, description="refund sale")
    except DomainError as exc:
        current_app.logger.warning("Refund of sale %s aborted: %s", sale_id, exc.message)
        raise

    current_app.logger.info(
        "Sale refunded: invoice=%s amount_cents=%s actor=%s",
        sale.invoice_number, sale.refund_amount_cents, actor_user_id,
    )
    notification_service.dispatch_events(event_ids)
    return sale


# =============================================================================
# Read-side operations
# =============================================================================

def _stock_key(resolved) -> tuple[int, int | None]:
    return (resolved.product.id, resolved.variant.id if resolved.variant else None)


def validate_cart(lines: list[SaleLineRequest], *, discount_cents: int = 0) -> dict:
    """Price a cart and report availability per line. Writes nothing."""
    resolved_lines: list[tuple[SaleLineRequest, object]] = []
    demand: dict[tuple[int, int | None], int] = defaultdict(int)
    for req in lines:
        try:
            resolved = resolve_line(req)
        except DomainError as exc:
            resolved_lines.append((req, exc))
            continue
        resolved_lines.append((req, resolved))
        demand[_stock_key(resolved)] += req.quantity

    results: list[dict] = []
    subtotal = 0
    valid = True

    for idx, (req, resolved) in enumerate(resolved_lines):
        row = {
            "index": idx,
            "product_id": req.product_id,
            "variant_id": req.variant_id,
            "quantity": req.quantity,
        }
        if isinstance(resolved, DomainError):
            row.update({"valid": False, "error": resolved.message})
            results.append(row)
            valid = False
            continue

        unit = resolved.unit_price_cents
        gross = unit * req.quantity
        available = resolved.available_stock
        requested = demand[_stock_key(resolved)]
        in_stock = available >= requested
        row.update({
            "product_id": resolved.product.id,
            "sku": resolved.sku,
            "name": resolved.name,
            "available_stock": available,
            "in_stock": in_stock,
            "unit_price_cents": unit,
            "discount_cents": req.discount_cents,
            "line_total_cents": max(gross - req.discount_cents, 0),
            "valid": in_stock and req.discount_cents <= gross,
        })
        if req.discount_cents > gross:
            row["error"] = "discount exceeds line amount"
        elif not in_stock:
            row["error"] = f"only {available} in stock, {requested} requested in this cart"
        valid = valid and row["valid"]
        subtotal += row["line_total_cents"]
        results.append(row)

    tax = compute_tax(subtotal, int(current_app.config["TAX_RATE_BPS"]))
    total = max(subtotal + tax - discount_cents, 0)
    return {
        "valid": valid,
        "items": results,
        "summary": {
            "subtotal_cents": subtotal,
            "tax_cents": tax,
            "discount_cents": discount_cents,
            "total_cents": total,
        },
    }


def get_sale(sale_id: int) -> Sale:
    sale = db.session.get(Sale, sale_id)
    if not sale:
        raise SaleNotFoundError("Sale not found")
    return sale


def list_sales(
    *,
    from_date: datetime | None = None,
    to_date: datetime | None = None,
    customer_id: int | None = None,
    cashier_user_id: int | None = None,
    payment_method: str | None = None,
    status: str | None = None,
    min_total_cents: int | None = None,
    max_total_cents: int | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[Sale], int]:
    query = db.session.query(Sale)

    if from_date:
        query = query.filter(Sale.sale_date >= from_date)
    if to_date:
        query = query.filter(Sale.sale_date <= to_date)
    if customer_id is not None:
        query = query.filter(Sale.customer_id == customer_id)
    if cashier_user_id is not None:
        query = query.filter(Sale.cashier_user_id == cashier_user_id)
    if payment_method:
        query = query.filter(Sale.payment_method == payment_method)
    if status:
        query = query.filter(Sale.status == status)
    if min_total_cents is not None:
        query = query.filter(Sale.total_cents >= min_total_cents)
    if max_total_cents is not None:
        query = query.filter(Sale.total_cents <= max_total_cents)

    total = query.count()

    if offset < 0:
        offset = 0
    if limit < 1:
        limit = 1
    if limit > 200:
        limit = 200

    rows = query.order_by(Sale.sale_date.desc(), Sale.id.desc()).offset(offset).limit(limit).all()
    return rows, total


def build_receipt(sale: Sale) -> dict:
    earned = (
        db.session.query(LoyaltyReward.reward_value)
        .filter(LoyaltyReward.sale_id == sale.id, LoyaltyReward.reward_type == "POINTS")
        .scalar()
    )
    customer = sale.customer
    return {
        "invoice_number": sale.invoice_number,
        "date": to_utc_z(sale.sale_date),
        "cashier": sale.cashier.display_name if sale.cashier else None,
        "customer": (
            {
                "id": customer.id,
                "name": f"{customer.first_name} {customer.last_name}",
                "loyalty_points": customer.loyalty_points,
            }
            if customer else None
        ),
        "items": [
            {
                "sku": item["sku"],
                "name": item["name"],
                "quantity": item["quantity"],
                "unit_price_cents": item["unit_price_cents"],
                "discount_cents": item["discount_cents"],
                "total_price_cents": item["total_price_cents"],
            }
            for item in (i.to_dict() for i in sale.items)
        ],
        "subtotal_cents": sale.subtotal_cents,
        "tax_cents": sale.tax_cents,
        "discount_cents": sale.discount_cents,
        "loyalty_discount_cents": sale.loyalty_discount_cents,
        "total_cents": sale.total_cents,
        "payment_method": sale.payment_method,
        "status": sale.status,
        "points_earned": earned or 0,
        "refund_amount_cents": sale.refund_amount_cents,
    }
