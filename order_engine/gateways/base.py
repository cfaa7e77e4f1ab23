import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from order_engine.config import Settings
from order_engine.errors import (
    AmountUnitMismatch,
    GatewayAuthFailed,
    GatewayNotConfigured,
    GatewayRejected,
    GatewayUnavailable,
    InvalidAmount,
)
from order_engine.models import AttemptStatus, PaymentGateway

logger = structlog.get_logger(__name__)

# A verified provider outcome uses the same vocabulary as attempt status.
PaymentOutcome = AttemptStatus

REF_PATTERN = re.compile(r"^(?P<prefix>[A-Za-z0-9]+)_(?P<order_id>[0-9a-f]{32})_(?P<attempt>\d+)$")


def build_gateway_ref(prefix: str, order_id: str, attempt_number: int) -> str:
    return f"{prefix}_{order_id}_{attempt_number}"


def parse_gateway_ref(ref: Optional[str]) -> Optional[Tuple[str, int]]:
    """Decode `(order_id, attempt_number)` from a gateway reference."""
    if not ref:
        return None
    match = REF_PATTERN.match(ref.strip())
    if not match:
        return None
    return match.group("order_id"), int(match.group("attempt"))


@dataclass
class Customer:
    user_id: str
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None


@dataclass
class GatewaySession:
    session_handle: Optional[str]
    provider_order_id: str
    redirect_url: Optional[str] = None
    client_payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class StatusResult:
    outcome: PaymentOutcome
    provider_payment_id: Optional[str] = None
    raw_status: Optional[str] = None


@dataclass
class WebhookNotification:
    gateway_order_ref: Optional[str]
    provider_order_id: Optional[str]
    provider_payment_id: Optional[str]
    outcome: PaymentOutcome
    event: Optional[str] = None


class MalformedPayload(ValueError):
    pass


def payload_object(container: Dict[str, Any], key: str) -> Dict[str, Any]:
    """`container[key]` as a JSON object; a missing or null value reads as empty."""
    value = container.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise MalformedPayload(f"{key} is not an object")
    return value


def payload_text(container: Dict[str, Any], key: str) -> Optional[str]:
    value = container.get(key)
    if value is None or isinstance(value, str):
        return value
    # Provider ids are sometimes numeric.
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    raise MalformedPayload(f"{key} is not a string")


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.2, max=2),
    retry=retry_if_exception_type(httpx.TransportError),
    reraise=True,
)
async def send_idempotent(client: httpx.AsyncClient, method: str, url: str, **kwargs) -> httpx.Response:
    return await client.request(method, url, **kwargs)


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1")))


class PaymentGatewayAdapter(ABC):
    """Common contract for the payment providers.

    `create_session` runs the amount guards before any network I/O. Provider
    failures are translated into the `GatewayError` family here, so callers
    never see httpx exceptions.
    """

    gateway: PaymentGateway
    signature_header: str
    # Push notifications that must be confirmed against the status API.
    webhook_is_hint = False

    def __init__(self, client: httpx.AsyncClient, settings: Settings):
        self.client = client
        self.settings = settings

    @property
    @abstractmethod
    def configured(self) -> bool:
        ...

    @abstractmethod
    def credential_hints(self) -> Dict[str, str]:
        ...

    @abstractmethod
    async def _create_session(self, amount: Decimal, order_ref: str, customer: Customer) -> GatewaySession:
        ...

    @abstractmethod
    async def verify_status(self, provider_order_id: str) -> StatusResult:
        ...

    @abstractmethod
    def verify_webhook_signature(self, raw_body: bytes, signature_header: Optional[str]) -> bool:
        ...

    @abstractmethod
    def parse_webhook(self, raw_body: bytes) -> WebhookNotification:
        ...

    @property
    def name(self) -> str:
        return self.gateway.value

    def check_amount(self, amount: Decimal) -> Decimal:
        amount = Decimal(amount)
        threshold = self.settings.amount_unit_mismatch_threshold
        ceiling = self.settings.gateway_max_amount
        if amount <= 0:
            raise InvalidAmount(f"Invalid payment amount: {amount}")
        # A total already multiplied into minor units lands back in range once divided.
        if amount % 100 == 0 and amount > threshold and 1 <= amount / 100 <= threshold:
            logger.error(
                "amount_unit_mismatch",
                gateway=self.name,
                amount=str(amount),
                divided=str(amount / 100),
            )
            raise AmountUnitMismatch(
                f"Amount {amount} looks like minor units; refusing to send it to {self.name}"
            )
        if amount > ceiling:
            raise InvalidAmount(f"Payment amount {amount} exceeds the limit of {ceiling}")
        return amount

    def ensure_configured(self):
        if not self.configured:
            logger.error("gateway_not_configured", gateway=self.name, **self.credential_hints())
            raise GatewayNotConfigured(self.name, "credentials are not configured")

    async def create_session(self, amount: Decimal, order_ref: str, customer: Customer) -> GatewaySession:
        amount = self.check_amount(amount)
        self.ensure_configured()
        session = await self._create_session(amount, order_ref, customer)
        if not session.provider_order_id or not (session.session_handle or session.redirect_url):
            raise GatewayRejected(self.name, "session response is missing its handle")
        logger.info(
            "gateway_session_created",
            gateway=self.name,
            order_ref=order_ref,
            provider_order_id=session.provider_order_id,
            amount=str(amount),
        )
        return session

    async def request(self, method: str, url: str, idempotent: bool = False, **kwargs) -> httpx.Response:
        kwargs.setdefault("timeout", self.settings.gateway_timeout_seconds)
        try:
            if idempotent:
                response = await send_idempotent(self.client, method, url, **kwargs)
            else:
                response = await self.client.request(method, url, **kwargs)
        except httpx.TransportError as exc:
            logger.error("gateway_unreachable", gateway=self.name, url=url, error=repr(exc))
            raise GatewayUnavailable(self.name, "provider is unreachable") from exc

        if response.status_code in (401, 403):
            logger.error(
                "gateway_auth_failed",
                gateway=self.name,
                status_code=response.status_code,
                **self.credential_hints(),
            )
            raise GatewayAuthFailed(self.name, "provider rejected the credentials")
        if response.status_code >= 500:
            logger.error("gateway_server_error", gateway=self.name, status_code=response.status_code)
            raise GatewayUnavailable(self.name, f"provider returned {response.status_code}")
        if response.status_code >= 400:
            logger.error(
                "gateway_request_rejected",
                gateway=self.name,
                status_code=response.status_code,
                body=response.text[:500],
            )
            raise GatewayRejected(self.name, f"provider returned {response.status_code}")
        return response

    def json_body(self, response: httpx.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError as exc:
            raise GatewayRejected(self.name, "provider returned a malformed response") from exc
        if not isinstance(data, dict):
            raise GatewayRejected(self.name, "provider returned a malformed response")
        return data
