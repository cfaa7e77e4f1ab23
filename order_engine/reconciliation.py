"""Applying payment outcomes to orders.

Webhooks, client polls and the admin override all funnel through
`apply_payment_outcome`, which reads the current status before writing so a
repeated signal is a no-op. `settle_outcome` commits; the `version` column
on Order and Product turns a lost race into a rollback, after which the
signal is re-applied to the fresh row.
"""
import enum
from datetime import datetime, timedelta
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from order_engine.config import Settings
from order_engine.errors import GatewayError
from order_engine.gateways import GatewayRegistry
from order_engine.messaging import EventPublisher
from order_engine.models import (
    AttemptStatus,
    FailureReason,
    Order,
    OrderStatus,
    OutcomeSource,
    PaymentAttempt,
    PaymentMethod,
    PaymentStatus,
    User,
    utcnow,
)
from order_engine.schemas import PaymentStatusRead
from order_engine.stock import reduce_order_stock

logger = structlog.get_logger(__name__)


class ApplyResult(str, enum.Enum):
    SUCCESS_APPLIED = "success_applied"
    FAILURE_APPLIED = "failure_applied"
    ALREADY_PAID = "already_paid"
    STALE_ATTEMPT = "stale_attempt"
    NOT_CURRENT = "not_current"
    PENDING = "pending"
    UNCHANGED = "unchanged"
    CONFLICT = "conflict"


FAILURE_REASONS = {
    AttemptStatus.FAILED: FailureReason.PAYMENT_FAILED,
    AttemptStatus.EXPIRED: FailureReason.SESSION_EXPIRED,
    AttemptStatus.CANCELLED: FailureReason.PAYMENT_CANCELLED,
}


def can_retry(order: Order) -> bool:
    return (
        order.payment_method is PaymentMethod.PREPAID
        and order.payment_status is not PaymentStatus.PAID
        and order.order_status is not OrderStatus.CANCELLED
    )


def status_view(order: Order, next_allowed_check_at: Optional[datetime] = None) -> PaymentStatusRead:
    return PaymentStatusRead(
        order_id=order.id,
        order_status=order.order_status,
        payment_status=order.payment_status,
        failure_reason=order.failure_reason,
        payment_gateway=order.payment_gateway,
        can_retry=can_retry(order),
        next_allowed_check_at=next_allowed_check_at,
    )


async def apply_payment_outcome(
    db: AsyncSession,
    order: Order,
    attempt: Optional[PaymentAttempt],
    outcome: AttemptStatus,
    source: OutcomeSource,
    now: Optional[datetime] = None,
    provider_payment_id: Optional[str] = None,
    failure_reason: Optional[FailureReason] = None,
) -> ApplyResult:
    """Apply one outcome signal to `order` without committing.

    `attempt` is the attempt the signal refers to. Signals for a superseded
    attempt, or for one already Cancelled or Failed, change nothing. A
    Success on an Expired attempt is still accepted while it is the latest.
    """
    now = now or utcnow()
    log = logger.bind(
        order_id=order.id,
        attempt=attempt.attempt_number if attempt else None,
        outcome=outcome.value,
        source=source.value,
    )

    if order.payment_status is PaymentStatus.PAID:
        log.info("payment_outcome_noop", reason="already_paid")
        return ApplyResult.ALREADY_PAID

    if attempt is not None:
        if attempt is not order.latest_attempt:
            log.info("payment_outcome_noop", reason="superseded_attempt")
            return ApplyResult.NOT_CURRENT
        if attempt.status in (AttemptStatus.CANCELLED, AttemptStatus.FAILED):
            log.info("payment_outcome_noop", reason="stale_attempt", attempt_status=attempt.status.value)
            return ApplyResult.STALE_ATTEMPT

    if outcome is AttemptStatus.PENDING:
        return ApplyResult.PENDING

    if outcome is AttemptStatus.SUCCESS:
        if attempt is not None and attempt.status is not AttemptStatus.SUCCESS:
            attempt.record(AttemptStatus.SUCCESS, source, now)
        order.payment_status = PaymentStatus.PAID
        order.failure_reason = None
        order.paid_at = now
        if provider_payment_id:
            order.payment_id = provider_payment_id
        if order.order_status is OrderStatus.PENDING:
            order.order_status = OrderStatus.PROCESSING
        await reduce_order_stock(db, order, strict=False)
        log.info("payment_marked_paid", provider_payment_id=provider_payment_id)
        return ApplyResult.SUCCESS_APPLIED

    reason = failure_reason or FAILURE_REASONS[outcome]
    if attempt is not None:
        if attempt.status is not AttemptStatus.PENDING and order.payment_status is PaymentStatus.FAILED:
            return ApplyResult.UNCHANGED
        if attempt.status is AttemptStatus.PENDING:
            attempt.record(outcome, source, now, reason=reason.value)
    elif order.payment_status is PaymentStatus.FAILED:
        return ApplyResult.UNCHANGED

    order.payment_status = PaymentStatus.FAILED
    order.failure_reason = reason
    log.info("payment_marked_failed", failure_reason=reason.value)
    return ApplyResult.FAILURE_APPLIED


async def settle_outcome(
    db: AsyncSession,
    order: Order,
    attempt: Optional[PaymentAttempt],
    outcome: AttemptStatus,
    source: OutcomeSource,
    now: Optional[datetime] = None,
    notifier: Optional[EventPublisher] = None,
    provider_payment_id: Optional[str] = None,
    failure_reason: Optional[FailureReason] = None,
    verified_at: Optional[datetime] = None,
) -> ApplyResult:
    """Apply one outcome signal and commit it.

    A version conflict, whether raised by an autoflush inside the apply or by
    the commit, rolls the write back. The signal is then applied once more to
    the reloaded order, so a Success that lost to a concurrent Paid becomes
    ALREADY_PAID and one that lost to a failure or timeout still lands.
    """
    order_id = order.id
    attempt_number = attempt.attempt_number if attempt is not None else None
    for tries in range(2):
        try:
            if verified_at is not None:
                order.last_verified_at = verified_at
            result = await apply_payment_outcome(
                db,
                order,
                attempt,
                outcome,
                source,
                now,
                provider_payment_id=provider_payment_id,
                failure_reason=failure_reason,
            )
            await db.commit()
            break
        except StaleDataError:
            await db.rollback()
            logger.warning("payment_outcome_conflict", order_id=order_id, outcome=outcome.value, tries=tries + 1)
            order = await db.get(Order, order_id, populate_existing=True)
            if attempt_number is not None:
                attempt = order.find_attempt(attempt_number)
    else:
        return ApplyResult.CONFLICT

    if result is ApplyResult.SUCCESS_APPLIED and notifier is not None:
        user = await db.get(User, order.user_id)
        await notifier.send_order_confirmation(order, user)
    return result


async def get_payment_status(
    db: AsyncSession,
    order: Order,
    registry: GatewayRegistry,
    settings: Settings,
    notifier: Optional[EventPublisher] = None,
    now: Optional[datetime] = None,
) -> PaymentStatusRead:
    """Normalized payment status for a polling client.

    Pending prepaid orders past the pending window fail with reason Timeout.
    Otherwise the provider is asked at most once per throttle window.
    """
    now = now or utcnow()
    if order.payment_status is PaymentStatus.PAID:
        return status_view(order)
    if order.payment_method is not PaymentMethod.PREPAID or order.payment_status is not PaymentStatus.PENDING:
        return status_view(order)

    started = order.last_payment_attempt_at or order.created_at
    if now - started > timedelta(seconds=settings.pending_timeout_seconds):
        attempt = order.current_attempt
        if attempt is not None and attempt.status is not AttemptStatus.PENDING:
            attempt = None
        result = await settle_outcome(
            db,
            order,
            attempt,
            AttemptStatus.EXPIRED,
            OutcomeSource.TIMEOUT,
            now,
            notifier,
            failure_reason=FailureReason.TIMEOUT,
        )
        logger.info(
            "payment_timed_out", order_id=order.id, pending_since=started.isoformat(), result=result.value
        )
        return status_view(order)

    attempt = order.current_attempt
    if attempt is None or attempt.status is not AttemptStatus.PENDING or not attempt.provider_order_id:
        return status_view(order)

    throttle = timedelta(seconds=settings.verify_throttle_seconds)
    if order.last_verified_at is not None and now - order.last_verified_at < throttle:
        return status_view(order, next_allowed_check_at=order.last_verified_at + throttle)

    adapter = registry.get(attempt.gateway)
    try:
        verified = await adapter.verify_status(attempt.provider_order_id)
    except GatewayError as exc:
        logger.warning(
            "payment_verification_failed",
            order_id=order.id,
            gateway=attempt.gateway.value,
            error=exc.message,
        )
        return status_view(order)

    result = await settle_outcome(
        db,
        order,
        attempt,
        verified.outcome,
        OutcomeSource.POLL,
        now,
        notifier,
        provider_payment_id=verified.provider_payment_id,
        verified_at=now,
    )
    logger.info("payment_verified", order_id=order.id, result=result.value)
    return status_view(order, next_allowed_check_at=now + throttle)
