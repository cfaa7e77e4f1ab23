from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from order_engine.config import Settings
from order_engine.errors import ConcurrentUpdate, Forbidden, OrderNotFound
from order_engine.messaging import EventPublisher
from order_engine.models import (
    CartItem,
    Order,
    OrderItem,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    User,
    utcnow,
)
from order_engine.pricing import compute_totals
from order_engine.schemas import OrderCreate
from order_engine.stock import (
    StockLine,
    check_stock_availability,
    order_stock_lines,
    reduce_order_stock,
)

logger = structlog.get_logger(__name__)


async def load_order(db: AsyncSession, order_id: str, refresh: bool = False) -> Order:
    order = await db.get(Order, order_id, populate_existing=refresh)
    if order is None:
        raise OrderNotFound(f"Order not found: {order_id}")
    return order


async def load_order_for(db: AsyncSession, order_id: str, user: User) -> Order:
    order = await load_order(db, order_id)
    if order.user_id != user.id and not user.is_admin:
        raise Forbidden("Not allowed to access this order")
    return order


async def create_order(
    db: AsyncSession,
    user: User,
    order_data: OrderCreate,
    settings: Settings,
    notifier: Optional[EventPublisher] = None,
    now: Optional[datetime] = None,
) -> Order:
    """Admit an order with server-computed totals.

    COD orders reduce stock strictly inside the same transaction as the
    insert and go straight to Processing. Prepaid orders only check
    availability; stock moves when the payment succeeds.
    """
    now = now or utcnow()
    user_id = user.id
    lines = [StockLine(item.product_id, item.quantity, item.size) for item in order_data.items]

    try:
        totals = await compute_totals(
            db, lines, settings.shipping_cost, now, promo_code=order_data.promo_code
        )

        order = Order(
            user_id=user_id,
            shipping_address=order_data.shipping_address.model_dump(),
            payment_method=order_data.payment_method,
            payment_status=PaymentStatus.PENDING,
            order_status=OrderStatus.PENDING,
            delivery_status=OrderStatus.PENDING,
            payment_gateway=order_data.payment_gateway
            if order_data.payment_method is PaymentMethod.PREPAID
            else None,
            subtotal=totals.subtotal,
            discount_amount=totals.discount_amount,
            shipping_cost=totals.shipping_cost,
            total_amount=totals.total_amount,
            promo_code=totals.coupon.code if totals.coupon else None,
            stock_reduced=False,
            created_at=now,
            updated_at=now,
            items=[
                OrderItem(
                    product_id=line.product_id,
                    quantity=line.quantity,
                    size=line.size,
                    unit_price=line.unit_price,
                )
                for line in totals.lines
            ],
            attempts=[],
        )

        if order.payment_method is PaymentMethod.COD:
            await reduce_order_stock(db, order, strict=True)
            order.order_status = OrderStatus.PROCESSING
        else:
            await check_stock_availability(db, order_stock_lines(order))

        if totals.coupon is not None:
            totals.coupon.used_count += 1

        await db.execute(delete(CartItem).where(CartItem.user_id == user_id))
        db.add(order)
        await db.commit()
    except StaleDataError:
        await db.rollback()
        logger.warning("order_admission_conflict", user_id=user_id)
        raise ConcurrentUpdate("Stock changed while placing the order. Please try again.")

    logger.info(
        "order_created",
        order_id=order.id,
        user_id=user_id,
        payment_method=order.payment_method.value,
        total_amount=str(order.total_amount),
        stock_reduced=order.stock_reduced,
    )

    if notifier is not None:
        await notifier.send_admin_order_alert(order, user)
        if order.payment_method is PaymentMethod.COD:
            await notifier.send_order_confirmation(order, user)
    return order
