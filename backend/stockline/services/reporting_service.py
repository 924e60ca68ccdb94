# Overview: Read-only reports over sales, sale items and stock; sales summary, inventory, top products.

from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import case, func, or_

from ..errors import ValidationError
from ..extensions import db
from ..models import Customer, Product, Sale, SaleItem, StockAdjustment
from ..models.sales import PAYMENT_METHODS
from ..time_utils import parse_iso_datetime, to_utc_z, utcnow
from .inventory_service import list_low_stock


class ReportError(ValidationError):
    """Raised when report parameters are invalid."""
    pass


GROUP_FORMATS = {
    "day": "%Y-%m-%d",
    "week": "%Y-W%W",
    "month": "%Y-%m",
}
PERIOD_DAYS = {"week": 7, "month": 30, "quarter": 90, "year": 365}
PERIODS = ("today", "yesterday", *PERIOD_DAYS)
INVENTORY_SORTS = ("stock_quantity", "value", "name", "category")
STOCK_LEVELS = ("low", "out")
RECENT_MOVEMENT_DAYS = 7


def _parse_bound(value: str | None, name: str, *, end_of_day: bool) -> datetime | None:
    try:
        dt = parse_iso_datetime(value) if value else None
    except ValueError:
        raise ReportError(f"{name} must be an ISO-8601 date or datetime")
    # a bare date as the upper bound covers that whole day
    if dt is not None and end_of_day and "T" not in value.strip():
        dt = dt + timedelta(days=1) - timedelta(microseconds=1)
    return dt


def period_range(period: str, now: datetime | None = None) -> tuple[datetime, datetime]:
    now = now or utcnow()
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if period == "today":
        return midnight, now
    if period == "yesterday":
        return midnight - timedelta(days=1), midnight - timedelta(microseconds=1)
    if period in PERIOD_DAYS:
        return now - timedelta(days=PERIOD_DAYS[period]), now
    raise ReportError(f"period must be one of {', '.join(PERIODS)}")


def resolve_range(
    start: str | None,
    end: str | None,
    period: str | None = None,
    default_period: str = "month",
) -> tuple[datetime, datetime]:
    """Explicit start/end win over period; either bound may be left open."""
    if start or end:
        start_dt = _parse_bound(start, "start", end_of_day=False)
        end_dt = _parse_bound(end, "end", end_of_day=True)
        if start_dt and end_dt and end_dt < start_dt:
            raise ReportError("end must not be before start")
        return start_dt or datetime(1970, 1, 1), end_dt or utcnow()
    return period_range(period or default_period)


def _round_div(numerator: int, denominator: int) -> int:
    if not denominator:
        return 0
    return (numerator * 2 + denominator) // (2 * denominator)


def _completed_sale_filters(
    start_dt: datetime,
    end_dt: datetime,
    *,
    payment_method: str | None = None,
    cashier_user_id: int | None = None,
    customer_id: int | None = None,
) -> list:
    conds = [
        Sale.status == "COMPLETED",
        Sale.sale_date >= start_dt,
        Sale.sale_date <= end_dt,
    ]
    if payment_method:
        method = payment_method.upper()
        if method not in PAYMENT_METHODS:
            raise ReportError(f"payment_method must be one of {', '.join(PAYMENT_METHODS)}")
        conds.append(Sale.payment_method == method)
    if cashier_user_id is not None:
        conds.append(Sale.cashier_user_id == cashier_user_id)
    if customer_id is not None:
        conds.append(Sale.customer_id == customer_id)
    return conds


def _product_performance(conds: list, *, limit: int, sort_by: str, category: str | None = None) -> list[dict]:
    quantity_sold = func.coalesce(func.sum(SaleItem.quantity), 0)
    revenue = func.coalesce(func.sum(SaleItem.total_price_cents), 0)
    order_count = func.count(func.distinct(SaleItem.sale_id))

    query = (
        db.session.query(
            Product.id.label("product_id"),
            Product.sku,
            Product.name,
            Product.category,
            quantity_sold.label("quantity_sold"),
            revenue.label("revenue_cents"),
            order_count.label("order_count"),
        )
        .join(SaleItem, SaleItem.product_id == Product.id)
        .join(Sale, Sale.id == SaleItem.sale_id)
        .filter(*conds)
    )
    if category:
        query = query.filter(Product.category == category)

    ranked = quantity_sold if sort_by == "quantity" else revenue
    rows = (
        query.group_by(Product.id, Product.sku, Product.name, Product.category)
        .order_by(ranked.desc(), Product.id.asc())
        .limit(limit)
        .all()
    )
    return [
        {
            "product_id": row.product_id,
            "sku": row.sku,
            "name": row.name,
            "category": row.category,
            "quantity_sold": int(row.quantity_sold or 0),
            "revenue_cents": int(row.revenue_cents or 0),
            "order_count": int(row.order_count or 0),
        }
        for row in rows
    ]


def sales_report(
    *,
    start: str | None = None,
    end: str | None = None,
    period: str | None = None,
    group_by: str = "day",
    payment_method: str | None = None,
    cashier_user_id: int | None = None,
    customer_id: int | None = None,
    top_limit: int = 10,
) -> dict:
    """
    Totals over COMPLETED sales in a date range.

    Refunded sales are left out of revenue and reported separately.
    """
    if group_by not in GROUP_FORMATS:
        raise ReportError(f"group_by must be one of {', '.join(GROUP_FORMATS)}")
    start_dt, end_dt = resolve_range(start, end, period)
    conds = _completed_sale_filters(
        start_dt, end_dt,
        payment_method=payment_method,
        cashier_user_id=cashier_user_id,
        customer_id=customer_id,
    )

    totals = db.session.query(
        func.count(Sale.id),
        func.coalesce(func.sum(Sale.total_cents), 0),
        func.coalesce(func.sum(Sale.tax_cents), 0),
        func.coalesce(func.sum(Sale.discount_cents), 0),
        func.coalesce(func.sum(Sale.loyalty_discount_cents), 0),
    ).filter(*conds).one()
    sales_count, revenue, tax, discounts, loyalty_discounts = (int(v or 0) for v in totals)

    items_sold = int(
        db.session.query(func.coalesce(func.sum(SaleItem.quantity), 0))
        .join(Sale, Sale.id == SaleItem.sale_id)
        .filter(*conds)
        .scalar() or 0
    )

    refunds = db.session.query(
        func.count(Sale.id),
        func.coalesce(func.sum(Sale.refund_amount_cents), 0),
    ).filter(
        Sale.status == "REFUNDED",
        Sale.refunded_at >= start_dt,
        Sale.refunded_at <= end_dt,
    ).one()

    period_expr = func.strftime(GROUP_FORMATS[group_by], Sale.sale_date)
    by_period = (
        db.session.query(
            period_expr.label("period"),
            func.count(Sale.id).label("sales_count"),
            func.coalesce(func.sum(Sale.total_cents), 0).label("revenue_cents"),
            func.coalesce(func.sum(Sale.discount_cents), 0).label("discount_cents"),
        )
        .filter(*conds)
        .group_by("period")
        .order_by("period")
        .all()
    )

    by_payment = (
        db.session.query(
            Sale.payment_method,
            func.count(Sale.id).label("sales_count"),
            func.coalesce(func.sum(Sale.total_cents), 0).label("revenue_cents"),
        )
        .filter(*conds)
        .group_by(Sale.payment_method)
        .order_by(Sale.payment_method.asc())
        .all()
    )

    customer_spend = func.coalesce(func.sum(Sale.total_cents), 0)
    top_customers = (
        db.session.query(
            Customer.id,
            Customer.first_name,
            Customer.last_name,
            Customer.email,
            func.count(Sale.id).label("sales_count"),
            customer_spend.label("total_spent_cents"),
        )
        .join(Sale, Sale.customer_id == Customer.id)
        .filter(*conds)
        .group_by(Customer.id, Customer.first_name, Customer.last_name, Customer.email)
        .order_by(customer_spend.desc(), Customer.id.asc())
        .limit(top_limit)
        .all()
    )

    return {
        "start": to_utc_z(start_dt),
        "end": to_utc_z(end_dt),
        "group_by": group_by,
        "summary": {
            "sales_count": sales_count,
            "revenue_cents": revenue,
            "tax_cents": tax,
            "discount_cents": discounts,
            "loyalty_discount_cents": loyalty_discounts,
            "items_sold": items_sold,
            "average_order_cents": _round_div(revenue, sales_count),
            "refund_count": int(refunds[0] or 0),
            "refunded_cents": int(refunds[1] or 0),
        },
        "by_period": [
            {
                "period": row.period,
                "sales_count": int(row.sales_count or 0),
                "revenue_cents": int(row.revenue_cents or 0),
                "discount_cents": int(row.discount_cents or 0),
            }
            for row in by_period
        ],
        "by_payment_method": [
            {
                "payment_method": row.payment_method,
                "sales_count": int(row.sales_count or 0),
                "revenue_cents": int(row.revenue_cents or 0),
            }
            for row in by_payment
        ],
        "top_products": _product_performance(conds, limit=top_limit, sort_by="revenue"),
        "top_customers": [
            {
                "customer_id": row.id,
                "name": f"{row.first_name} {row.last_name}",
                "email": row.email,
                "sales_count": int(row.sales_count or 0),
                "total_spent_cents": int(row.total_spent_cents or 0),
            }
            for row in top_customers
        ],
    }


def _stock_value(product: Product) -> int:
    return product.stock_quantity * (product.cost_price_cents or 0)


def inventory_report(
    *,
    category: str | None = None,
    stock_level: str | None = None,
    search: str | None = None,
    sort_by: str = "stock_quantity",
    sort_order: str = "asc",
    limit: int = 100,
) -> dict:
    """
    Stock position of active products, valued at cost.

    A product with variants reports the sum of its active variants, which is
    what its stock_quantity already holds.
    """
    if stock_level and stock_level not in STOCK_LEVELS:
        raise ReportError(f"stock_level must be one of {', '.join(STOCK_LEVELS)}")
    if sort_by not in INVENTORY_SORTS:
        raise ReportError(f"sort_by must be one of {', '.join(INVENTORY_SORTS)}")
    if sort_order not in ("asc", "desc"):
        raise ReportError("sort_order must be asc or desc")

    active = Product.is_active.is_(True)
    value_expr = Product.stock_quantity * func.coalesce(Product.cost_price_cents, 0)

    overview = db.session.query(
        func.count(Product.id),
        func.coalesce(func.sum(Product.stock_quantity), 0),
        func.coalesce(func.sum(value_expr), 0),
        func.coalesce(func.sum(case((Product.stock_quantity == 0, 1), else_=0)), 0),
    ).filter(active).one()

    low_stock = list_low_stock()

    by_category = (
        db.session.query(
            Product.category,
            func.count(Product.id).label("product_count"),
            func.coalesce(func.sum(Product.stock_quantity), 0).label("total_units"),
            func.coalesce(func.sum(value_expr), 0).label("value_cents"),
        )
        .filter(active)
        .group_by(Product.category)
        .order_by(Product.category.asc())
        .all()
    )

    query = db.session.query(Product).filter(active)
    if category:
        query = query.filter(Product.category == category)
    if search:
        like = f"%{search.strip()}%"
        query = query.filter(or_(Product.name.ilike(like), Product.sku.ilike(like)))
    if stock_level == "low":
        query = query.filter(Product.stock_quantity <= Product.min_stock_level)
    elif stock_level == "out":
        query = query.filter(Product.stock_quantity == 0)

    sort_col = {
        "stock_quantity": Product.stock_quantity,
        "value": value_expr,
        "name": Product.name,
        "category": Product.category,
    }[sort_by]
    ordered = sort_col.desc() if sort_order == "desc" else sort_col.asc()
    products = query.order_by(ordered, Product.id.asc()).limit(limit).all()

    since = utcnow() - timedelta(days=RECENT_MOVEMENT_DAYS)
    movements = (
        db.session.query(StockAdjustment)
        .filter(StockAdjustment.occurred_at >= since)
        .order_by(StockAdjustment.occurred_at.desc(), StockAdjustment.id.desc())
        .limit(50)
        .all()
    )

    return {
        "overview": {
            "total_products": int(overview[0] or 0),
            "total_units": int(overview[1] or 0),
            "total_value_cents": int(overview[2] or 0),
            "out_of_stock_count": int(overview[3] or 0),
            "low_stock_count": low_stock["count"],
        },
        "by_category": [
            {
                "category": row.category or "Uncategorized",
                "product_count": int(row.product_count or 0),
                "total_units": int(row.total_units or 0),
                "value_cents": int(row.value_cents or 0),
            }
            for row in by_category
        ],
        "products": [
            {
                "id": p.id,
                "sku": p.sku,
                "name": p.name,
                "category": p.category,
                "stock_quantity": p.stock_quantity,
                "min_stock_level": p.min_stock_level,
                "cost_price_cents": p.cost_price_cents,
                "value_cents": _stock_value(p),
                "low_stock": p.stock_quantity <= p.min_stock_level,
            }
            for p in products
        ],
        "low_stock": low_stock,
        "recent_movements": [m.to_dict() for m in movements],
    }


def top_products(
    *,
    start: str | None = None,
    end: str | None = None,
    period: str | None = None,
    sort_by: str = "revenue",
    category: str | None = None,
    limit: int = 20,
) -> dict:
    """Best sellers by revenue or quantity over COMPLETED sales, with current stock."""
    if sort_by not in ("revenue", "quantity"):
        raise ReportError("sort_by must be revenue or quantity")
    if limit < 1 or limit > 100:
        raise ReportError("limit must be between 1 and 100")
    start_dt, end_dt = resolve_range(start, end, period)
    conds = _completed_sale_filters(start_dt, end_dt)

    rows = _product_performance(conds, limit=limit, sort_by=sort_by, category=category)
    products = {
        p.id: p
        for p in db.session.query(Product).filter(Product.id.in_([r["product_id"] for r in rows])).all()
    }
    for row in rows:
        product = products[row["product_id"]]
        row["current_stock"] = product.stock_quantity
        row["min_stock_level"] = product.min_stock_level
        row["price_cents"] = product.price_cents
        row["average_order_cents"] = _round_div(row["revenue_cents"], row["order_count"])
        row["variants"] = [
            {"id": v.id, "sku": v.sku, "name": v.name, "stock_quantity": v.stock_quantity}
            for v in product.variants
            if v.is_active
        ]

    category_revenue = func.coalesce(func.sum(SaleItem.total_price_cents), 0)
    categories = (
        db.session.query(
            Product.category,
            func.coalesce(func.sum(SaleItem.quantity), 0).label("quantity_sold"),
            category_revenue.label("revenue_cents"),
        )
        .join(SaleItem, SaleItem.product_id == Product.id)
        .join(Sale, Sale.id == SaleItem.sale_id)
        .filter(*conds)
        .group_by(Product.category)
        .order_by(category_revenue.desc())
        .all()
    )

    return {
        "start": to_utc_z(start_dt),
        "end": to_utc_z(end_dt),
        "sort_by": sort_by,
        "products": rows,
        "categories": [
            {
                "category": row.category or "Uncategorized",
                "quantity_sold": int(row.quantity_sold or 0),
                "revenue_cents": int(row.revenue_cents or 0),
            }
            for row in categories
        ],
    }
