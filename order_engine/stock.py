"""Stock mutation for order lines.

Every decrement of product or size-bucket stock goes through `reduce_stock`.
Nothing here commits; callers own the transaction so the decrement and the
order's `stock_reduced` flag land together.
"""
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from order_engine.errors import InsufficientStock, ProductNotFound, ValidationFailed
from order_engine.models import Order, Product

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class StockLine:
    product_id: str
    quantity: int
    size: Optional[str] = None


def _group_lines(lines: Iterable[StockLine]) -> List[StockLine]:
    # Duplicate product/size lines are checked against their combined quantity.
    grouped: Dict[Tuple[str, Optional[str]], StockLine] = {}
    for line in lines:
        key = (line.product_id, line.size.strip().upper() if line.size else None)
        if key in grouped:
            prev = grouped[key]
            grouped[key] = StockLine(prev.product_id, prev.quantity + line.quantity, prev.size)
        else:
            grouped[key] = line
    return list(grouped.values())


def _available(product: Product, size: Optional[str]) -> Optional[int]:
    """Quantity on hand for the line, or None when the size is not sold."""
    if product.has_sizes:
        bucket = product.find_size(size)
        return bucket.stock_quantity if bucket is not None else None
    return product.stock_quantity


def refresh_stock_flags(product: Product) -> None:
    if product.has_sizes:
        for bucket in product.sizes:
            bucket.in_stock = bucket.stock_quantity > 0
        product.stock_quantity = sum(b.stock_quantity for b in product.sizes)
        product.in_stock = any(b.in_stock for b in product.sizes)
    else:
        product.in_stock = product.stock_quantity > 0


async def _load_products(db: AsyncSession, lines: List[StockLine]) -> Dict[str, Optional[Product]]:
    products = {}
    for line in lines:
        if line.product_id not in products:
            products[line.product_id] = await db.get(Product, line.product_id)
    return products


async def check_stock_availability(db: AsyncSession, lines: Iterable[StockLine]) -> None:
    """Raise on the first line that cannot be fulfilled; never writes."""
    grouped = _group_lines(lines)
    products = await _load_products(db, grouped)
    for line in grouped:
        product = products[line.product_id]
        if product is None or not product.active:
            raise ProductNotFound(f"Product not found: {line.product_id}")
        available = _available(product, line.size)
        if available is None:
            raise ValidationFailed(f"Size {line.size} is not available for {product.name}")
        if available < line.quantity:
            raise InsufficientStock(product.id, line.size, available, line.quantity, product.name)


async def reduce_stock(db: AsyncSession, lines: Iterable[StockLine], strict: bool = True) -> List[StockLine]:
    """Decrement stock for `lines`.

    Strict mode validates every line before the first write and raises, so a
    short line leaves all stock untouched. Lenient mode skips lines that are
    missing or short and returns only the lines it applied.
    """
    grouped = _group_lines(lines)
    if strict:
        await check_stock_availability(db, grouped)

    products = await _load_products(db, grouped)
    applied = []
    for line in grouped:
        product = products[line.product_id]
        if product is None:
            logger.warning("stock_line_skipped", product_id=line.product_id, reason="product_missing")
            continue
        available = _available(product, line.size)
        if available is None or available < line.quantity:
            logger.warning(
                "stock_line_skipped",
                product_id=product.id,
                size=line.size,
                available=available,
                requested=line.quantity,
                reason="insufficient_stock" if available is not None else "unknown_size",
            )
            continue

        if product.has_sizes:
            bucket = product.find_size(line.size)
            bucket.stock_quantity -= line.quantity
        else:
            product.stock_quantity -= line.quantity
        refresh_stock_flags(product)
        applied.append(line)
        logger.info(
            "stock_reduced",
            product_id=product.id,
            size=line.size,
            quantity=line.quantity,
            remaining=product.stock_quantity,
        )
    return applied


def order_stock_lines(order: Order) -> List[StockLine]:
    return [StockLine(item.product_id, item.quantity, item.size) for item in order.items]


async def reduce_order_stock(db: AsyncSession, order: Order, strict: bool = False) -> bool:
    """Reduce stock for an order at most once. Returns False when already reduced."""
    if order.stock_reduced:
        logger.info("stock_already_reduced", order_id=order.id)
        return False
    await reduce_stock(db, order_stock_lines(order), strict=strict)
    order.stock_reduced = True
    return True
