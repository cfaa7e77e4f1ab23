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
    to_minor_units,
)
from order_engine.logs import mask_secret
from order_engine.models import PaymentGateway

logger = structlog.get_logger(__name__)

EVENT_OUTCOMES = {
    "payment.captured": PaymentOutcome.SUCCESS,
    "order.paid": PaymentOutcome.SUCCESS,
    "payment.failed": PaymentOutcome.FAILED,
    "payment.authorized": PaymentOutcome.PENDING,
}


class RazorpayAdapter(PaymentGatewayAdapter):
    """Card-network gateway.

    Razorpay assigns its own order id (`order_...`); our reference travels as
    the receipt. Webhooks are signed with a webhook secret that is distinct
    from the API key secret.
    """

    gateway = PaymentGateway.RAZORPAY
    signature_header = "X-Razorpay-Signature"

    @property
    def config(self):
        return self.settings.razorpay

    @property
    def configured(self) -> bool:
        return self.config.configured

    def credential_hints(self) -> Dict[str, str]:
        return {
            "key_id": mask_secret(self.config.key_id, visible=8),
            "key_secret": mask_secret(self.config.key_secret),
        }

    @property
    def auth(self):
        return (self.config.key_id, self.config.key_secret)

    async def _create_session(self, amount: Decimal, order_ref: str, customer: Customer) -> GatewaySession:
        decoded = parse_gateway_ref(order_ref)
        body = {
            "amount": to_minor_units(amount),
            "currency": self.settings.currency,
            "receipt": order_ref,
            "notes": {
                "order_id": decoded[0] if decoded else order_ref,
                "attempt": str(decoded[1]) if decoded else "",
                "user_id": customer.user_id,
            },
        }
        response = await self.request("POST", f"{self.config.base_url}/orders", json=body, auth=self.auth)
        data = self.json_body(response)
        provider_order_id = data.get("id")
        if not provider_order_id:
            raise GatewayRejected(self.name, "response is missing the order id")
        return GatewaySession(
            session_handle=provider_order_id,
            provider_order_id=provider_order_id,
            client_payload={
                "key_id": self.config.key_id,
                "razorpay_order_id": provider_order_id,
                "amount": data.get("amount", body["amount"]),
                "currency": data.get("currency", self.settings.currency),
                "prefill": {"name": customer.name, "email": customer.email, "contact": customer.phone},
            },
        )

    async def verify_status(self, provider_order_id: str) -> StatusResult:
        self.ensure_configured()
        response = await self.request(
            "GET", f"{self.config.base_url}/orders/{provider_order_id}", auth=self.auth, idempotent=True
        )
        data = self.json_body(response)
        status = (data.get("status") or "").lower()
        if status == "paid":
            outcome, payment_id = PaymentOutcome.SUCCESS, None
        elif status == "attempted":
            outcome, payment_id = await self._attempted_outcome(provider_order_id)
        else:
            outcome, payment_id = PaymentOutcome.PENDING, None
        logger.info(
            "razorpay_status_checked",
            provider_order_id=provider_order_id,
            order_status=status,
            outcome=outcome.value,
        )
        return StatusResult(outcome, payment_id, status)

    async def _attempted_outcome(self, provider_order_id: str):
        response = await self.request(
            "GET",
            f"{self.config.base_url}/orders/{provider_order_id}/payments",
            auth=self.auth,
            idempotent=True,
        )
        payments = self.json_body(response).get("items") or []
        for payment in payments:
            if payment.get("status") == "captured":
                return PaymentOutcome.SUCCESS, payment.get("id")
        if any(p.get("status") in ("created", "authorized") for p in payments):
            return PaymentOutcome.PENDING, None
        if payments:
            return PaymentOutcome.FAILED, payments[0].get("id")
        return PaymentOutcome.PENDING, None

    def verify_webhook_signature(self, raw_body: bytes, signature_header: Optional[str]) -> bool:
        secret = self.config.webhook_secret
        if not secret or not signature_header:
            return False
        expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature_header.strip())

    def verify_checkout_signature(self, provider_order_id: str, payment_id: str, signature: Optional[str]) -> bool:
        """Check the signature Razorpay Checkout hands the client after payment.

        It is an HMAC-SHA256 of `order_id|payment_id` keyed with the API key
        secret, not the webhook secret.
        """
        secret = self.config.key_secret
        if not secret or not signature or not provider_order_id or not payment_id:
            return False
        message = f"{provider_order_id}|{payment_id}".encode("utf-8")
        expected = hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature.strip())

    def parse_webhook(self, raw_body: bytes) -> WebhookNotification:
        try:
            body = json.loads(raw_body)
        except ValueError as exc:
            raise MalformedPayload("body is not JSON") from exc
        if not isinstance(body, dict) or "event" not in body:
            raise MalformedPayload("missing event")

        event = payload_text(body, "event")
        payload = payload_object(body, "payload")
        payment = payload_object(payload_object(payload, "payment"), "entity")
        order = payload_object(payload_object(payload, "order"), "entity")
        provider_order_id = payload_text(payment, "order_id") or payload_text(order, "id")
        if not provider_order_id:
            raise MalformedPayload("missing order id")
        return WebhookNotification(
            gateway_order_ref=payload_text(order, "receipt"),
            provider_order_id=provider_order_id,
            provider_payment_id=payload_text(payment, "id"),
            outcome=EVENT_OUTCOMES.get(event, PaymentOutcome.PENDING),
            event=event,
        )
