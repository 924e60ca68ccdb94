# Overview: Server-side cart pricing; resolves sellable lines, computes totals and checks client figures.

from __future__ import annotations

from dataclasses import dataclass

from ..errors import LineItemError, ValidationError
from ..extensions import db
from ..models import Product, Variant
from ..validation import SaleLineRequest
from .stock_service import StockTarget, product_has_variants


@dataclass(frozen=True)
class ResolvedLine:
    request: SaleLineRequest
    product: Product
    variant: Variant | None

    @property
    def sku(self) -> str:
        return self.variant.sku if self.variant else self.product.sku

    @property
    def name(self) -> str:
        return self.variant.name if self.variant else self.product.name

    @property
    def target(self) -> StockTarget:
        if self.variant is not None:
            return StockTarget(variant_id=self.variant.id)
        return StockTarget(product_id=self.product.id)

    @property
    def available_stock(self) -> int:
        return self.variant.stock_quantity if self.variant else self.product.stock_quantity

    @property
    def unit_price_cents(self) -> int:
        if self.variant is not None:
            return self.variant.effective_price_cents
        return self.product.price_cents


@dataclass(frozen=True)
class PricedLine:
    line: ResolvedLine
    quantity: int
    unit_price_cents: int
    discount_cents: int
    total_price_cents: int


@dataclass(frozen=True)
class PriceSummary:
    lines: list[PricedLine]
    subtotal_cents: int
    tax_cents: int
    sale_discount_cents: int
    points_discount_cents: int

    @property
    def discount_cents(self) -> int:
        return self.sale_discount_cents + self.points_discount_cents

    @property
    def total_before_points_cents(self) -> int:
        return self.subtotal_cents + self.tax_cents - self.sale_discount_cents

    @property
    def total_cents(self) -> int:
        return self.subtotal_cents + self.tax_cents - self.discount_cents

    def to_dict(self) -> dict:
        return {
            "subtotal_cents": self.subtotal_cents,
            "tax_cents": self.tax_cents,
            "discount_cents": self.discount_cents,
            "loyalty_discount_cents": self.points_discount_cents,
            "total_cents": self.total_cents,
        }


def compute_tax(subtotal_cents: int, rate_bps: int) -> int:
    """subtotal * rate, rounded half up to the cent. rate_bps: 800 = 8%."""
    return (subtotal_cents * rate_bps + 5000) // 10000


def resolve_line(req: SaleLineRequest) -> ResolvedLine:
    """
    Load the product/variant a cart line refers to and check it is sellable.

    Raises LineItemError naming the SKU (or the id when no row exists).
    """
    if req.variant_id is not None:
        variant = db.session.get(Variant, req.variant_id)
        if variant is None:
            raise LineItemError(f"Variant {req.variant_id} not found")
        if not variant.is_active:
            raise LineItemError(f"Variant {variant.sku} is inactive", sku=variant.sku)
        product = variant.product
        if not product.is_active:
            raise LineItemError(f"Product {product.sku} is inactive", sku=variant.sku)
        return ResolvedLine(request=req, product=product, variant=variant)

    product = db.session.get(Product, req.product_id)
    if product is None:
        raise LineItemError(f"Product {req.product_id} not found")
    if not product.is_active:
        raise LineItemError(f"Product {product.sku} is inactive", sku=product.sku)
    if product_has_variants(product.id):
        raise LineItemError(
            f"Product {product.sku} has variants; sell a specific variant",
            sku=product.sku,
        )
    return ResolvedLine(request=req, product=product, variant=None)


def price_lines(
    lines: list[ResolvedLine],
    *,
    tax_rate_bps: int,
    sale_discount_cents: int = 0,
    points_discount_cents: int = 0,
) -> PriceSummary:
    priced: list[PricedLine] = []
    errors: list[dict] = []

    for idx, line in enumerate(lines):
        unit = line.unit_price_cents
        qty = line.request.quantity
        gross = unit * qty
        discount = line.request.discount_cents
        if discount > gross:
            errors.append({
                "field": f"items[{idx}].discount_cents",
                "message": f"discount exceeds line amount {gross}",
            })
            continue
        priced.append(PricedLine(
            line=line,
            quantity=qty,
            unit_price_cents=unit,
            discount_cents=discount,
            total_price_cents=gross - discount,
        ))

    if errors:
        raise ValidationError("Invalid discounts", errors)

    subtotal = sum(p.total_price_cents for p in priced)
    tax = compute_tax(subtotal, tax_rate_bps)

    if sale_discount_cents + points_discount_cents > subtotal + tax:
        raise ValidationError(
            "Discounts exceed the sale amount",
            [{
                "field": "discount_cents",
                "message": f"discounts total {sale_discount_cents + points_discount_cents}, "
                           f"sale amount {subtotal + tax}",
            }],
        )

    return PriceSummary(
        lines=priced,
        subtotal_cents=subtotal,
        tax_cents=tax,
        sale_discount_cents=sale_discount_cents,
        points_discount_cents=points_discount_cents,
    )


def check_client_figures(
    summary: PriceSummary,
    *,
    subtotal_cents: int | None,
    tax_cents: int | None,
    total_cents: int | None,
    tolerance_cents: int,
) -> None:
    """
    Client prices and totals are hints. Any that differ from the server's
    figures by more than tolerance_cents are reported together.
    """
    mismatches: list[dict] = []

    def _check(field: str, client: int | None, server: int) -> None:
        if client is not None and abs(client - server) > tolerance_cents:
            mismatches.append({"field": field, "client": client, "server": server})

    for idx, p in enumerate(summary.lines):
        _check(f"items[{idx}].unit_price_cents", p.line.request.unit_price_cents, p.unit_price_cents)
    _check("subtotal_cents", subtotal_cents, summary.subtotal_cents)
    _check("tax_cents", tax_cents, summary.tax_cents)
    _check("total_cents", total_cents, summary.total_cents)

    if mismatches:
        raise ValidationError("Client prices do not match server prices", mismatches)
