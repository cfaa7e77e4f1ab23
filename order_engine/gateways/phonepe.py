import base64
import hashlib
import hmac
import json
from decimal import Decimal
from typing import Any, Dict, Optional

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
    payload_object,
    payload_text,
    to_minor_units,
)
from order_engine.logs import mask_secret
from order_engine.models import PaymentGateway

logger = structlog.get_logger(__name__)

PAY_ENDPOINT = "/pg/v1/pay"

CODE_OUTCOMES = {
    "PAYMENT_SUCCESS": PaymentOutcome.SUCCESS,
    "PAYMENT_PENDING": PaymentOutcome.PENDING,
    "PAYMENT_INITIATED": PaymentOutcome.PENDING,
    "PAYMENT_ERROR": PaymentOutcome.FAILED,
    "PAYMENT_DECLINED": PaymentOutcome.FAILED,
    "TIMED_OUT": PaymentOutcome.EXPIRED,
    "PAYMENT_CANCELLED": PaymentOutcome.CANCELLED,
}

STATE_OUTCOMES = {
    "COMPLETED": PaymentOutcome.SUCCESS,
    "SUCCESS": PaymentOutcome.SUCCESS,
    "PENDING": PaymentOutcome.PENDING,
    "FAILED": PaymentOutcome.FAILED,
}


def x_verify(payload: str, key: str, index: str) -> str:
    return hashlib.sha256((payload + key).encode("utf-8")).hexdigest() + "###" + index


def _decode_response(encoded: str) -> Dict[str, Any]:
    try:
        data = json.loads(base64.b64decode(encoded).decode("utf-8"))
    except (ValueError, UnicodeDecodeError) as exc:
        raise MalformedPayload("response is not base64 JSON") from exc
    if not isinstance(data, dict):
        raise MalformedPayload("response is not a JSON object")
    return data


def map_outcome(code: Optional[str], state: Optional[str]) -> PaymentOutcome:
    if code and code.upper() in CODE_OUTCOMES:
        return CODE_OUTCOMES[code.upper()]
    if state and state.upper() in STATE_OUTCOMES:
        return STATE_OUTCOMES[state.upper()]
    return PaymentOutcome.PENDING


class PhonePeAdapter(PaymentGatewayAdapter):
    """Redirect/checksum gateway.

    Requests are signed with the API salt key; server callbacks are signed
    with a separate callback key. Callbacks only hint that something changed,
    the status API decides the outcome.
    """

    gateway = PaymentGateway.PHONEPE
    signature_header = "X-VERIFY"
    webhook_is_hint = True

    @property
    def config(self):
        return self.settings.phonepe

    @property
    def configured(self) -> bool:
        return self.config.configured

    def credential_hints(self) -> Dict[str, str]:
        return {
            "merchant_id": mask_secret(self.config.merchant_id),
            "salt_key": mask_secret(self.config.salt_key),
            "salt_index": self.config.salt_index,
        }

    async def _create_session(self, amount: Decimal, order_ref: str, customer: Customer) -> GatewaySession:
        payload = {
            "merchantId": self.config.merchant_id,
            "merchantTransactionId": order_ref,
            "merchantUserId": f"MUID{customer.user_id}"[:36],
            "amount": to_minor_units(amount),
            "redirectUrl": self.config.redirect_url,
            "redirectMode": "REDIRECT",
            "callbackUrl": self.config.callback_url,
            "mobileNumber": customer.phone,
            "paymentInstrument": {"type": "PAY_PAGE"},
        }
        encoded = base64.b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")
        headers = {
            "Content-Type": "application/json",
            "X-VERIFY": x_verify(encoded + PAY_ENDPOINT, self.config.salt_key, self.config.salt_index),
            "X-MERCHANT-ID": self.config.merchant_id,
        }
        response = await self.request(
            "POST", self.config.base_url + PAY_ENDPOINT, json={"request": encoded}, headers=headers
        )
        data = self.json_body(response)
        if isinstance(data.get("response"), str):
            try:
                data = _decode_response(data["response"])
            except MalformedPayload as exc:
                raise GatewayRejected(self.name, str(exc)) from exc

        if data.get("success") is False:
            raise GatewayRejected(self.name, data.get("message") or data.get("code") or "payment not created")
        redirect = ((data.get("data") or {}).get("instrumentResponse") or {}).get("redirectInfo") or {}
        url = redirect.get("url")
        if not url:
            raise GatewayRejected(self.name, "response is missing the redirect URL")
        return GatewaySession(
            session_handle=url,
            provider_order_id=order_ref,
            redirect_url=url,
            client_payload={"redirect_url": url},
        )

    async def verify_status(self, provider_order_id: str) -> StatusResult:
        self.ensure_configured()
        endpoint = f"/pg/v1/status/{self.config.merchant_id}/{provider_order_id}"
        headers = {
            "Content-Type": "application/json",
            "X-VERIFY": x_verify(endpoint, self.config.salt_key, self.config.salt_index),
            "X-MERCHANT-ID": self.config.merchant_id,
        }
        response = await self.request("GET", self.config.base_url + endpoint, headers=headers, idempotent=True)
        data = self.json_body(response)
        details = data.get("data") or {}
        outcome = map_outcome(data.get("code"), details.get("state"))
        logger.info(
            "phonepe_status_checked",
            provider_order_id=provider_order_id,
            code=data.get("code"),
            state=details.get("state"),
            outcome=outcome.value,
        )
        return StatusResult(outcome, details.get("transactionId"), data.get("code"))

    def verify_webhook_signature(self, raw_body: bytes, signature_header: Optional[str]) -> bool:
        key = self.config.callback_salt_key
        if not key or not signature_header:
            return False
        try:
            body = json.loads(raw_body)
        except ValueError:
            return False
        encoded = body.get("response") if isinstance(body, dict) else None
        if not isinstance(encoded, str):
            return False
        expected = x_verify(encoded, key, self.config.callback_salt_index)
        return hmac.compare_digest(expected, signature_header.strip())

    def parse_webhook(self, raw_body: bytes) -> WebhookNotification:
        try:
            body = json.loads(raw_body)
        except ValueError as exc:
            raise MalformedPayload("body is not JSON") from exc
        if not isinstance(body, dict) or not isinstance(body.get("response"), str):
            raise MalformedPayload("missing response field")
        data = _decode_response(body["response"])
        details = payload_object(data, "data")
        ref = payload_text(details, "merchantTransactionId")
        if not ref:
            raise MalformedPayload("missing merchantTransactionId")
        code = payload_text(data, "code")
        return WebhookNotification(
            gateway_order_ref=ref,
            provider_order_id=ref,
            provider_payment_id=payload_text(details, "transactionId"),
            outcome=map_outcome(code, payload_text(details, "state")),
            event=code,
        )
