from datetime import datetime
from typing import Mapping, Optional, Tuple

import structlog
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from order_engine.errors import SignatureInvalid
from order_engine.gateways import (
    GatewayRegistry,
    MalformedPayload,
    WebhookNotification,
    parse_gateway_ref,
)
from order_engine.messaging import EventPublisher
from order_engine.models import (
    AttemptStatus,
    Order,
    OutcomeSource,
    PaymentAttempt,
    PaymentStatus,
    utcnow,
)
from order_engine.reconciliation import ApplyResult, settle_outcome

logger = structlog.get_logger(__name__)


async def resolve_attempt(
    db: AsyncSession, notification: WebhookNotification
) -> Tuple[Optional[Order], Optional[PaymentAttempt]]:
    """Find the order and attempt a notification refers to.

    Direct reference match first, then the order id and attempt number
    embedded in our own reference format.
    """
    conditions = []
    if notification.gateway_order_ref:
        conditions.append(PaymentAttempt.gateway_order_ref == notification.gateway_order_ref)
    if notification.provider_order_id:
        conditions.append(PaymentAttempt.provider_order_id == notification.provider_order_id)

    if conditions:
        result = await db.execute(select(PaymentAttempt).where(or_(*conditions)).limit(1))
        matched = result.scalar_one_or_none()
        if matched is not None:
            order = await db.get(Order, matched.order_id)
            return order, order.find_attempt(matched.attempt_number)

    for ref in (notification.gateway_order_ref, notification.provider_order_id):
        decoded = parse_gateway_ref(ref)
        if decoded is None:
            continue
        order_id, attempt_number = decoded
        order = await db.get(Order, order_id)
        if order is not None:
            return order, order.find_attempt(attempt_number)
    return None, None


async def ingest_webhook(
    db: AsyncSession,
    gateway: str,
    raw_body: bytes,
    headers: Mapping[str, str],
    registry: GatewayRegistry,
    notifier: Optional[EventPublisher] = None,
    now: Optional[datetime] = None,
) -> str:
    """Authenticate and apply one provider notification.

    Only a bad signature is surfaced to the caller; every other outcome,
    including processing errors, is logged and acknowledged.
    """
    adapter = registry.get(gateway)
    lowered = {k.lower(): v for k, v in headers.items()}
    signature = lowered.get(adapter.signature_header.lower())
    if not adapter.verify_webhook_signature(raw_body, signature):
        logger.warning("webhook_signature_invalid", gateway=adapter.name, has_signature=bool(signature))
        raise SignatureInvalid(f"Invalid {adapter.name} webhook signature")

    try:
        notification = adapter.parse_webhook(raw_body)
    except MalformedPayload as exc:
        logger.warning("webhook_malformed", gateway=adapter.name, error=str(exc))
        return "malformed"

    try:
        return await _apply_notification(db, adapter, notification, notifier, now or utcnow())
    except Exception:
        logger.exception(
            "webhook_processing_failed",
            gateway=adapter.name,
            gateway_order_ref=notification.gateway_order_ref,
        )
        await db.rollback()
        return "error"


async def _apply_notification(db, adapter, notification, notifier, now) -> str:
    log = logger.bind(
        gateway=adapter.name,
        gateway_order_ref=notification.gateway_order_ref,
        provider_order_id=notification.provider_order_id,
        webhook_event=notification.event,
    )
    order, attempt = await resolve_attempt(db, notification)
    if order is None:
        log.info("webhook_order_not_found")
        return "order_not_found"
    if attempt is None or attempt.gateway is not adapter.gateway:
        log.info("webhook_attempt_not_found", order_id=order.id)
        return ApplyResult.STALE_ATTEMPT.value

    outcome = notification.outcome
    payment_id = notification.provider_payment_id
    actionable = (
        order.payment_status is not PaymentStatus.PAID
        and attempt is order.latest_attempt
        and attempt.status not in (AttemptStatus.CANCELLED, AttemptStatus.FAILED)
    )
    if adapter.webhook_is_hint and actionable:
        verified = await adapter.verify_status(attempt.provider_order_id)
        log.info("webhook_outcome_verified", hinted=outcome.value, verified=verified.outcome.value)
        outcome = verified.outcome
        payment_id = verified.provider_payment_id or payment_id

    attempt_number = attempt.attempt_number
    result = await settle_outcome(
        db, order, attempt, outcome, OutcomeSource.WEBHOOK, now, notifier, provider_payment_id=payment_id
    )
    log.info("webhook_applied", order_id=order.id, attempt=attempt_number, result=result.value)
    return result.value
