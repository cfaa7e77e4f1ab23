"""Client-side checkout confirmation.

Razorpay Checkout returns a signed `order_id|payment_id` pair to the browser
once a payment is authorized. The client forwards it here and, once the
signature checks out, it counts as a Success signal for the attempt that owns
that Razorpay order.
"""
from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from order_engine.errors import SignatureInvalid, ValidationFailed
from order_engine.gateways import GatewayRegistry
from order_engine.messaging import EventPublisher
from order_engine.models import AttemptStatus, Order, OutcomeSource, PaymentGateway, PaymentMethod, utcnow
from order_engine.reconciliation import ApplyResult, settle_outcome
from order_engine.schemas import RazorpayCheckoutConfirm

logger = structlog.get_logger(__name__)


async def confirm_razorpay_checkout(
    db: AsyncSession,
    order: Order,
    confirmation: RazorpayCheckoutConfirm,
    registry: GatewayRegistry,
    notifier: Optional[EventPublisher] = None,
    now: Optional[datetime] = None,
) -> ApplyResult:
    if order.payment_method is not PaymentMethod.PREPAID:
        raise ValidationFailed("Only prepaid orders take online payment")

    adapter = registry.get(PaymentGateway.RAZORPAY)
    if not adapter.verify_checkout_signature(
        confirmation.razorpay_order_id, confirmation.razorpay_payment_id, confirmation.razorpay_signature
    ):
        logger.warning(
            "checkout_signature_invalid", order_id=order.id, provider_order_id=confirmation.razorpay_order_id
        )
        raise SignatureInvalid("Invalid Razorpay payment signature")

    attempt = next(
        (
            a
            for a in order.attempts
            if a.gateway is PaymentGateway.RAZORPAY and a.provider_order_id == confirmation.razorpay_order_id
        ),
        None,
    )
    if attempt is None:
        raise ValidationFailed("Razorpay order does not belong to this order")

    attempt_number = attempt.attempt_number
    result = await settle_outcome(
        db,
        order,
        attempt,
        AttemptStatus.SUCCESS,
        OutcomeSource.CHECKOUT,
        now or utcnow(),
        notifier,
        provider_payment_id=confirmation.razorpay_payment_id,
    )
    logger.info(
        "checkout_confirmed",
        order_id=order.id,
        attempt=attempt_number,
        provider_payment_id=confirmation.razorpay_payment_id,
        result=result.value,
    )
    return result
