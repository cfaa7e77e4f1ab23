from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from order_engine.admission import load_order
from order_engine.errors import ConcurrentUpdate, Forbidden, ValidationFailed
from order_engine.messaging import EventPublisher
from order_engine.models import (
    AttemptStatus,
    FailureReason,
    Order,
    OrderStatus,
    OutcomeSource,
    PaymentMethod,
    PaymentStatus,
    User,
    utcnow,
)
from order_engine.reconciliation import ApplyResult, apply_payment_outcome
from order_engine.schemas import AdminStatusUpdate

logger = structlog.get_logger(__name__)

DELIVERY_TIMESTAMPS = {
    OrderStatus.SHIPPED: "shipped_at",
    OrderStatus.OUT_FOR_DELIVERY: "out_for_delivery_at",
    OrderStatus.DELIVERED: "delivered_at",
}


def _pending_attempt(order: Order):
    attempt = order.current_attempt
    if attempt is not None and attempt.status is AttemptStatus.PENDING:
        return attempt
    return None


async def _apply_payment_status(db: AsyncSession, order: Order, status: PaymentStatus, now: datetime):
    if status is order.payment_status:
        return None
    if order.payment_status is PaymentStatus.PAID:
        raise ValidationFailed("A paid order cannot change its payment status")

    if status is PaymentStatus.PAID:
        return await apply_payment_outcome(
            db, order, _pending_attempt(order), AttemptStatus.SUCCESS, OutcomeSource.ADMIN, now
        )
    if status is PaymentStatus.FAILED:
        if order.payment_method is not PaymentMethod.PREPAID:
            raise ValidationFailed("Only prepaid orders can be marked as failed")
        return await apply_payment_outcome(
            db,
            order,
            _pending_attempt(order),
            AttemptStatus.FAILED,
            OutcomeSource.ADMIN,
            now,
            failure_reason=FailureReason.ADMIN_MARKED_FAILED,
        )
    if status is PaymentStatus.PENDING:
        order.payment_status = PaymentStatus.PENDING
        order.failure_reason = None
        return None
    raise ValidationFailed(f"Payment status {status.value} cannot be set manually")


def _apply_fields(order: Order, update: AdminStatusUpdate, now: datetime) -> None:
    if update.order_status is not None:
        order.order_status = update.order_status

    if update.delivery_status is not None:
        order.delivery_status = update.delivery_status
        stamp = DELIVERY_TIMESTAMPS.get(update.delivery_status)
        if stamp and getattr(order, stamp) is None:
            setattr(order, stamp, now)
        if update.order_status is None:
            order.order_status = update.delivery_status

    if update.tracking_number is not None:
        order.tracking_number = update.tracking_number or None
    if update.courier_name is not None:
        order.courier_name = update.courier_name or None


async def update_order_status(
    db: AsyncSession,
    order_id: str,
    update: AdminStatusUpdate,
    admin: User,
    notifier: Optional[EventPublisher] = None,
    now: Optional[datetime] = None,
) -> Order:
    """Manual order, delivery and payment status changes.

    A manual "Paid" goes through the same outcome path as a webhook, so stock
    is reduced at most once however many signals arrive. Stock is never
    restored here. When another writer bumps the order's version first, the
    update is re-applied once to the reloaded row.
    """
    if not admin.is_admin:
        raise Forbidden("Admin access required")
    now = now or utcnow()
    admin_id = admin.id
    order = await load_order(db, order_id)

    for tries in range(2):
        try:
            result = None
            if update.payment_status is not None:
                result = await _apply_payment_status(db, order, update.payment_status, now)
            _apply_fields(order, update, now)
            await db.commit()
            break
        except StaleDataError:
            await db.rollback()
            logger.warning("admin_status_conflict", order_id=order_id, tries=tries + 1)
            order = await db.get(Order, order_id, populate_existing=True)
    else:
        raise ConcurrentUpdate("Order was updated concurrently. Please reload and try again.")

    logger.info(
        "admin_status_updated",
        order_id=order.id,
        admin_id=admin_id,
        order_status=order.order_status.value,
        delivery_status=order.delivery_status.value,
        payment_status=order.payment_status.value,
        payment_result=result.value if result else None,
    )
    if result is ApplyResult.SUCCESS_APPLIED and notifier is not None:
        await notifier.send_order_confirmation(order, await db.get(User, order.user_id))
    return order
