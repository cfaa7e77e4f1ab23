from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from order_engine.errors import InvalidPromoCode, ProductNotFound, ValidationFailed
from order_engine.models import Coupon, Product
from order_engine.stock import StockLine

logger = structlog.get_logger(__name__)

CENTS = Decimal("0.01")


@dataclass
class PricedLine:
    product_id: str
    quantity: int
    size: Optional[str]
    unit_price: Decimal

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass
class Totals:
    lines: List[PricedLine]
    subtotal: Decimal
    discount_amount: Decimal
    shipping_cost: Decimal
    total_amount: Decimal
    coupon: Optional[Coupon] = None


async def price_lines(db: AsyncSession, lines: Iterable[StockLine]) -> List[PricedLine]:
    """Price every line from the catalog. Client-sent prices never reach here."""
    priced = []
    for line in lines:
        if line.quantity < 1:
            raise ValidationFailed("Quantity must be at least 1")
        product = await db.get(Product, line.product_id)
        if product is None or not product.active:
            raise ProductNotFound(f"Product not found: {line.product_id}")

        if product.has_sizes:
            bucket = product.find_size(line.size)
            if bucket is None:
                raise ValidationFailed(
                    f"Size {line.size or '(none)'} is not available for {product.name}"
                )
            # Store the catalog's spelling of the size label.
            priced.append(PricedLine(product.id, line.quantity, bucket.size, Decimal(bucket.price)))
        else:
            priced.append(PricedLine(product.id, line.quantity, line.size, Decimal(product.price)))
    return priced


async def resolve_coupon(db: AsyncSession, code: Optional[str], subtotal: Decimal, now: datetime):
    if not code or not code.strip():
        return None, Decimal("0.00")

    normalized = code.strip().upper()
    result = await db.execute(select(Coupon).where(func.upper(Coupon.code) == normalized))
    coupon = result.scalar_one_or_none()
    if coupon is None or not coupon.is_available(now):
        raise InvalidPromoCode(f"Promo code {normalized} is invalid or expired")
    if subtotal < Decimal(coupon.min_order):
        raise InvalidPromoCode(
            f"Minimum order amount of {Decimal(coupon.min_order).quantize(CENTS)} required for {normalized}"
        )
    return coupon, coupon.calculate_discount(subtotal)


async def reprice_order(db: AsyncSession, order, shipping_cost: Decimal) -> Totals:
    """Price an existing order's lines again from the current catalog.

    The promo code was validated and counted at admission; its discount is
    recalculated for the new subtotal without re-checking usage limits.
    """
    lines = [StockLine(item.product_id, item.quantity, item.size) for item in order.items]
    priced = await price_lines(db, lines)
    subtotal = sum((line.line_total for line in priced), Decimal("0")).quantize(CENTS)

    coupon = None
    discount = Decimal("0.00")
    if order.promo_code:
        coupon = await db.get(Coupon, order.promo_code)
        if coupon is not None:
            discount = coupon.calculate_discount(subtotal)
        else:
            discount = min(Decimal(order.discount_amount), subtotal).quantize(CENTS)

    shipping = Decimal(shipping_cost).quantize(CENTS)
    total = (subtotal - discount + shipping).quantize(CENTS)
    return Totals(priced, subtotal, discount, shipping, total, coupon)


async def compute_totals(
    db: AsyncSession,
    lines: Iterable[StockLine],
    shipping_cost: Decimal,
    now: datetime,
    promo_code: Optional[str] = None,
) -> Totals:
    priced = await price_lines(db, lines)
    subtotal = sum((line.line_total for line in priced), Decimal("0")).quantize(CENTS)
    coupon, discount = await resolve_coupon(db, promo_code, subtotal, now)
    shipping = Decimal(shipping_cost).quantize(CENTS)
    total = (subtotal - discount + shipping).quantize(CENTS)
    if total <= 0:
        raise ValidationFailed("Order total must be greater than zero")
    return Totals(priced, subtotal, discount, shipping, total, coupon)
