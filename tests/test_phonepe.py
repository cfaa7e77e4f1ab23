import base64
import hashlib
import json
from decimal import Decimal

import httpx
import pytest

from order_engine.errors import GatewayAuthFailed, GatewayRejected, GatewayUnavailable
from order_engine.gateways import Customer, MalformedPayload, PaymentOutcome, PhonePeAdapter, build_gateway_ref
from order_engine.gateways.phonepe import map_outcome, x_verify

ORDER_ID = "0123456789abcdef0123456789abcdef"
REF = build_gateway_ref("OZ", ORDER_ID, 1)


def encode(data):
    return base64.b64encode(json.dumps(data).encode("utf-8")).decode("ascii")


def callback_body(code="PAYMENT_SUCCESS", state="COMPLETED", ref=REF):
    response = encode(
        {
            "success": code == "PAYMENT_SUCCESS",
            "code": code,
            "data": {"merchantTransactionId": ref, "transactionId": "T2401", "state": state},
        }
    )
    return response, json.dumps({"response": response}).encode("utf-8")


@pytest.mark.asyncio
async def test_create_session_signs_request_and_returns_redirect(settings):
    """
    Test case 1: The pay request carries a base64 payload signed with the API salt.
    """
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "success": True,
                "code": "PAYMENT_INITIATED",
                "data": {"instrumentResponse": {"redirectInfo": {"url": "https://pay.phonepe.test/abc"}}},
            },
        )

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        adapter = PhonePeAdapter(client, settings)
        session = await adapter.create_session(Decimal("499.00"), REF, Customer("user-1", "Asha", None, "9876543210"))

    encoded = seen["body"]["request"]
    payload = json.loads(base64.b64decode(encoded))
    assert seen["url"] == "https://phonepe.test/apis/hermes/pg/v1/pay"
    assert payload["amount"] == 49900
    assert payload["merchantTransactionId"] == REF
    expected = hashlib.sha256((encoded + "/pg/v1/pay" + "salt-key-123").encode()).hexdigest() + "###1"
    assert seen["headers"]["X-VERIFY"] == expected
    assert session.redirect_url == "https://pay.phonepe.test/abc"
    assert session.session_handle == session.redirect_url
    assert session.provider_order_id == REF


@pytest.mark.asyncio
async def test_create_session_rejected_by_provider(settings):
    def handler(request):
        return httpx.Response(200, json={"success": False, "code": "BAD_REQUEST", "message": "Invalid amount"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(GatewayRejected):
            await PhonePeAdapter(client, settings).create_session(Decimal("499"), REF, Customer("user-1", "Asha"))


@pytest.mark.asyncio
async def test_auth_failure_is_reported_as_such(settings):
    def handler(request):
        return httpx.Response(401, json={"code": "UNAUTHORIZED"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(GatewayAuthFailed):
            await PhonePeAdapter(client, settings).create_session(Decimal("499"), REF, Customer("user-1", "Asha"))


@pytest.mark.asyncio
async def test_verify_status_maps_completed_payment(settings):
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["verify"] = request.headers["X-VERIFY"]
        return httpx.Response(
            200,
            json={"code": "PAYMENT_SUCCESS", "data": {"state": "COMPLETED", "transactionId": "T2401"}},
        )

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        result = await PhonePeAdapter(client, settings).verify_status(REF)

    endpoint = f"/pg/v1/status/MERCHANTUAT/{REF}"
    assert seen["path"] == "/apis/hermes" + endpoint
    assert seen["verify"] == x_verify(endpoint, "salt-key-123", "1")
    assert result.outcome is PaymentOutcome.SUCCESS
    assert result.provider_payment_id == "T2401"


@pytest.mark.asyncio
async def test_verify_status_retries_transport_errors(settings):
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ConnectError("connection refused", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(GatewayUnavailable):
            await PhonePeAdapter(client, settings).verify_status(REF)

    assert len(calls) == 3


def test_callback_signature_uses_callback_key(settings):
    """
    Test case 2: Only the callback key validates a callback, never the API salt.
    """
    adapter = PhonePeAdapter(client=None, settings=settings)
    response, raw = callback_body()

    assert adapter.verify_webhook_signature(raw, x_verify(response, "callback-key-456", "2")) is True
    assert adapter.verify_webhook_signature(raw, x_verify(response, "salt-key-123", "1")) is False
    assert adapter.verify_webhook_signature(raw, None) is False
    assert adapter.verify_webhook_signature(b"not json", "anything") is False


def test_callback_rejected_when_callback_key_missing(settings):
    settings.phonepe.callback_salt_key = None
    adapter = PhonePeAdapter(client=None, settings=settings)
    response, raw = callback_body()

    assert adapter.verify_webhook_signature(raw, x_verify(response, "salt-key-123", "1")) is False


def test_parse_callback(settings):
    adapter = PhonePeAdapter(client=None, settings=settings)
    _, raw = callback_body(code="PAYMENT_ERROR", state="FAILED")

    notification = adapter.parse_webhook(raw)

    assert notification.gateway_order_ref == REF
    assert notification.provider_payment_id == "T2401"
    assert notification.outcome is PaymentOutcome.FAILED

    with pytest.raises(MalformedPayload):
        adapter.parse_webhook(json.dumps({"response": "%%%"}).encode())


@pytest.mark.parametrize(
    "code,state,expected",
    [
        ("PAYMENT_SUCCESS", None, PaymentOutcome.SUCCESS),
        ("PAYMENT_PENDING", "PENDING", PaymentOutcome.PENDING),
        ("PAYMENT_DECLINED", None, PaymentOutcome.FAILED),
        ("TIMED_OUT", None, PaymentOutcome.EXPIRED),
        (None, "COMPLETED", PaymentOutcome.SUCCESS),
        ("SOMETHING_NEW", None, PaymentOutcome.PENDING),
    ],
)
def test_map_outcome(code, state, expected):
    assert map_outcome(code, state) is expected


@pytest.mark.parametrize(
    "decoded",
    [
        {"code": "PAYMENT_SUCCESS", "data": "OZ_x_1"},
        {"code": "PAYMENT_SUCCESS", "data": {"merchantTransactionId": {"id": REF}}},
        {"code": ["PAYMENT_SUCCESS"], "data": {"merchantTransactionId": REF}},
        {"code": "PAYMENT_SUCCESS", "data": {"merchantTransactionId": REF, "state": True}},
    ],
)
def test_parse_callback_rejects_irregular_shapes(settings, decoded):
    raw = json.dumps({"response": encode(decoded)}).encode("utf-8")

    with pytest.raises(MalformedPayload):
        PhonePeAdapter(client=None, settings=settings).parse_webhook(raw)
