import hashlib
import hmac
import json
from decimal import Decimal
from typing import Dict, Optional

import structlog

from order_engine.errors import GatewayRejected
from order_engine.gateways.base import (
    Customer,
    GatewaySession,
    MalformedPayload,
    PaymentGatewayAdapter,
    PaymentOutcome,
    StatusResult,
    WebhookNotification,
    parse_gateway_ref,
    payload_object,
    payload_text,
)
from order_engine.logs import mask_secret
from order_engine.models import PaymentGateway

logger = structlog.get_logger(__name__)

ORDER_STATUS_OUTCOMES = {
    "PAID": PaymentOutcome.SUCCESS,
    "ACTIVE": PaymentOutcome.PENDING,
    "EXPIRED": PaymentOutcome.EXPIRED,
    "TERMINATED": PaymentOutcome.CANCELLED,
    "TERMINATION_REQUESTED": PaymentOutcome.CANCELLED,
}

PAYMENT_STATUS_OUTCOMES = {
    "SUCCESS": PaymentOutcome.SUCCESS,
    "FAILED": PaymentOutcome.FAILED,
    "USER_DROPPED": PaymentOutcome.CANCELLED,
    "CANCELLED": PaymentOutcome.CANCELLED,
    "PENDING": PaymentOutcome.PENDING,
    "NOT_ATTEMPTED": PaymentOutcome.PENDING,
}


class CashfreeAdapter(PaymentGatewayAdapter):
    gateway = PaymentGateway.CASHFREE
    signature_header = "x-webhook-signature"

    @property
    def config(self):
        return self.settings.cashfree

    @property
    def configured(self) -> bool:
        return self.config.configured

    def credential_hints(self) -> Dict[str, str]:
        return {
            "client_id": mask_secret(self.config.client_id),
            "client_secret": mask_secret(self.config.client_secret),
            "environment": self.config.environment,
        }

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-client-id": self.config.client_id,
            "x-client-secret": self.config.client_secret,
            "x-api-version": self.config.api_version,
        }

    async def _create_session(self, amount: Decimal, order_ref: str, customer: Customer) -> GatewaySession:
        decoded = parse_gateway_ref(order_ref)
        order_id = decoded[0] if decoded else order_ref
        body = {
            "order_id": order_ref,
            # Cashfree takes major units with two decimals.
            "order_amount": float(amount),
            "order_currency": self.settings.currency,
            "customer_details": {
                "customer_id": customer.user_id,
                "customer_name": customer.name,
                "customer_email": customer.email,
                "customer_phone": customer.phone or "9999999999",
            },
            "order_meta": {
                "return_url": self.config.return_url.format(order_id=order_id),
                "notify_url": self.config.notify_url,
            },
        }
        response = await self.request(
            "POST", f"{self.config.base_url}/orders", json=body, headers=self._headers()
        )
        data = self.json_body(response)
        session_id = data.get("payment_session_id")
        if not session_id:
            raise GatewayRejected(self.name, "response is missing payment_session_id")
        return GatewaySession(
            session_handle=session_id,
            provider_order_id=data.get("order_id") or order_ref,
            client_payload={
                "payment_session_id": session_id,
                "environment": self.config.environment,
            },
        )

    async def verify_status(self, provider_order_id: str) -> StatusResult:
        self.ensure_configured()
        response = await self.request(
            "GET",
            f"{self.config.base_url}/orders/{provider_order_id}",
            headers=self._headers(),
            idempotent=True,
        )
        data = self.json_body(response)
        status = (data.get("order_status") or "").upper()
        outcome = ORDER_STATUS_OUTCOMES.get(status, PaymentOutcome.PENDING)
        logger.info(
            "cashfree_status_checked",
            provider_order_id=provider_order_id,
            order_status=status,
            outcome=outcome.value,
        )
        return StatusResult(outcome, None, status)

    def verify_webhook_signature(self, raw_body: bytes, signature_header: Optional[str]) -> bool:
        secret = self.config.webhook_secret
        if not secret or not signature_header:
            return False
        expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature_header.strip())

    def parse_webhook(self, raw_body: bytes) -> WebhookNotification:
        try:
            body = json.loads(raw_body)
        except ValueError as exc:
            raise MalformedPayload("body is not JSON") from exc
        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, dict):
            raise MalformedPayload("missing data")
        order = payload_object(data, "order")
        payment = payload_object(data, "payment")
        ref = payload_text(order, "order_id")
        if not ref:
            raise MalformedPayload("missing data.order.order_id")
        status = (payload_text(payment, "payment_status") or "").upper()
        return WebhookNotification(
            gateway_order_ref=ref,
            provider_order_id=ref,
            provider_payment_id=payload_text(payment, "cf_payment_id"),
            outcome=PAYMENT_STATUS_OUTCOMES.get(status, PaymentOutcome.PENDING),
            event=payload_text(body, "type"),
        )
