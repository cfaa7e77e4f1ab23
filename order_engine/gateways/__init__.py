from typing import Dict, Optional, Union

import httpx

from order_engine.config import Settings
from order_engine.errors import GatewayNotFound
from order_engine.gateways.base import (
    Customer,
    GatewaySession,
    MalformedPayload,
    PaymentGatewayAdapter,
    PaymentOutcome,
    StatusResult,
    WebhookNotification,
    build_gateway_ref,
    parse_gateway_ref,
)
from order_engine.gateways.cashfree import CashfreeAdapter
from order_engine.gateways.phonepe import PhonePeAdapter
from order_engine.gateways.razorpay import RazorpayAdapter
from order_engine.models import PaymentGateway

ADAPTERS = (PhonePeAdapter, CashfreeAdapter, RazorpayAdapter)


class GatewayRegistry:
    """Adapters keyed by gateway, selected by the order's `payment_gateway`."""

    def __init__(self, adapters: Dict[PaymentGateway, PaymentGatewayAdapter]):
        self.adapters = adapters

    @classmethod
    def from_settings(cls, client: httpx.AsyncClient, settings: Settings) -> "GatewayRegistry":
        return cls({adapter.gateway: adapter(client, settings) for adapter in ADAPTERS})

    def get(self, gateway: Union[PaymentGateway, str, None]) -> PaymentGatewayAdapter:
        resolved = self.resolve(gateway)
        if resolved is None or resolved not in self.adapters:
            raise GatewayNotFound(f"Unknown payment gateway: {gateway}")
        return self.adapters[resolved]

    @staticmethod
    def resolve(gateway: Union[PaymentGateway, str, None]) -> Optional[PaymentGateway]:
        if isinstance(gateway, PaymentGateway):
            return gateway
        if not gateway:
            return None
        for member in PaymentGateway:
            if member.value.lower() == str(gateway).strip().lower():
                return member
        return None


__all__ = [
    "Customer",
    "GatewayRegistry",
    "GatewaySession",
    "MalformedPayload",
    "PaymentGatewayAdapter",
    "PaymentOutcome",
    "StatusResult",
    "WebhookNotification",
    "build_gateway_ref",
    "parse_gateway_ref",
    "CashfreeAdapter",
    "PhonePeAdapter",
    "RazorpayAdapter",
]
