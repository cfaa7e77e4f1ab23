import math
from datetime import datetime, timedelta
from typing import Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from order_engine.config import Settings
from order_engine.errors import (
    ConcurrentUpdate,
    OrderAlreadyPaid,
    RetryNotAllowed,
    RetryRateLimited,
    ValidationFailed,
)
from order_engine.gateways import Customer, GatewayRegistry, build_gateway_ref
from order_engine.models import (
    AttemptStatus,
    Order,
    OrderStatus,
    OutcomeSource,
    PaymentAttempt,
    PaymentAttemptEvent,
    PaymentMethod,
    PaymentStatus,
    User,
    utcnow,
)
from order_engine.pricing import reprice_order
from order_engine.schemas import PaymentSessionRead

logger = structlog.get_logger(__name__)


def _customer(order: Order, user: Optional[User]) -> Customer:
    shipping = order.shipping_address or {}
    if user is None:
        return Customer(order.user_id, shipping.get("name") or "Customer", None, shipping.get("phone"))
    return Customer(user.id, user.name, user.email, user.phone or shipping.get("phone"))


async def initiate_payment_session(
    db: AsyncSession,
    order: Order,
    registry: GatewayRegistry,
    settings: Settings,
    user: Optional[User] = None,
    gateway=None,
    now: Optional[datetime] = None,
    source: OutcomeSource = OutcomeSource.SESSION,
) -> PaymentSessionRead:
    """Open a new payment attempt with the chosen gateway.

    The payable amount is recomputed from the catalog. The order is written
    only after the provider returned a session, so a failed provider call
    leaves it exactly as it was.
    """
    now = now or utcnow()
    if order.payment_status is PaymentStatus.PAID:
        raise OrderAlreadyPaid("Order is already paid")
    if order.payment_method is not PaymentMethod.PREPAID:
        raise ValidationFailed("Payment sessions are only available for prepaid orders")
    if order.order_status is OrderStatus.CANCELLED:
        raise RetryNotAllowed("Order is cancelled")

    adapter = registry.get(gateway or order.payment_gateway or settings.default_gateway)
    totals = await reprice_order(db, order, settings.shipping_cost)

    attempt_number = order.next_attempt_number
    ref = build_gateway_ref(settings.gateway_ref_prefix, order.id, attempt_number)
    session = await adapter.create_session(totals.total_amount, ref, _customer(order, user))

    for previous in order.pending_attempts:
        previous.record(AttemptStatus.CANCELLED, source, now, reason="superseded")

    attempt = PaymentAttempt(
        attempt_number=attempt_number,
        gateway=adapter.gateway,
        gateway_order_ref=ref,
        provider_order_id=session.provider_order_id,
        session_handle=session.session_handle,
        amount=totals.total_amount,
        initiated_at=now,
        events=[PaymentAttemptEvent(status=AttemptStatus.PENDING, source=source, recorded_at=now)],
    )
    order.attempts.append(attempt)

    for item, line in zip(order.items, totals.lines):
        if item.unit_price != line.unit_price:
            item.unit_price = line.unit_price
    order.subtotal = totals.subtotal
    order.discount_amount = totals.discount_amount
    order.shipping_cost = totals.shipping_cost
    order.total_amount = totals.total_amount
    order.payment_gateway = adapter.gateway
    order.payment_status = PaymentStatus.PENDING
    order.failure_reason = None
    order.payment_initiated_at = now
    order.last_payment_attempt_at = now
    order.last_verified_at = None

    order_id = order.id
    try:
        await db.commit()
    except (StaleDataError, IntegrityError):
        await db.rollback()
        await db.get(Order, order_id, populate_existing=True)
        logger.warning("payment_session_conflict", order_id=order_id, attempt=attempt_number)
        raise ConcurrentUpdate("Order was updated concurrently. Please try again.")

    logger.info(
        "payment_session_started",
        order_id=order.id,
        attempt=attempt_number,
        gateway=adapter.name,
        gateway_order_ref=ref,
        amount=str(totals.total_amount),
    )
    return PaymentSessionRead(
        order_id=order.id,
        gateway=adapter.gateway,
        attempt_number=attempt_number,
        gateway_order_ref=ref,
        provider_order_id=session.provider_order_id,
        session_handle=session.session_handle,
        redirect_url=session.redirect_url,
        client_payload=session.client_payload,
        amount=totals.total_amount,
        currency=settings.currency,
    )


async def retry_payment(
    db: AsyncSession,
    order: Order,
    registry: GatewayRegistry,
    settings: Settings,
    user: Optional[User] = None,
    gateway=None,
    now: Optional[datetime] = None,
) -> PaymentSessionRead:
    now = now or utcnow()
    if order.payment_status is PaymentStatus.PAID:
        raise RetryNotAllowed("Order is already paid")
    if order.order_status is OrderStatus.CANCELLED:
        raise RetryNotAllowed("Order is cancelled")
    if order.payment_method is not PaymentMethod.PREPAID:
        raise RetryNotAllowed("Only prepaid orders can retry payment")

    cooldown = timedelta(seconds=settings.retry_cooldown_seconds)
    latest = order.latest_attempt
    if latest is not None and now - latest.initiated_at < cooldown:
        remaining = cooldown - (now - latest.initiated_at)
        retry_after = max(1, math.ceil(remaining.total_seconds()))
        logger.info("payment_retry_rate_limited", order_id=order.id, retry_after=retry_after)
        raise RetryRateLimited(retry_after)

    try:
        return await initiate_payment_session(
            db, order, registry, settings, user=user, gateway=gateway, now=now, source=OutcomeSource.RETRY
        )
    except ConcurrentUpdate:
        raise RetryRateLimited(settings.retry_cooldown_seconds)
