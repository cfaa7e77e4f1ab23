from decimal import Decimal

import httpx
import pytest

from order_engine.errors import (
    AmountUnitMismatch,
    GatewayNotConfigured,
    GatewayNotFound,
    InvalidAmount,
)
from order_engine.gateways import (
    CashfreeAdapter,
    Customer,
    GatewayRegistry,
    PhonePeAdapter,
    RazorpayAdapter,
    build_gateway_ref,
    parse_gateway_ref,
)
from order_engine.gateways.base import to_minor_units
from order_engine.models import PaymentGateway

ORDER_ID = "0123456789abcdef0123456789abcdef"


def unreachable(request):
    raise AssertionError(f"unexpected request to {request.url}")


@pytest.mark.parametrize(
    "amount",
    [Decimal("499.00"), Decimal("1"), Decimal("100000"), Decimal("99999.99"), Decimal("250000.50")],
)
def test_plausible_amounts_pass_the_guards(settings, amount):
    adapter = CashfreeAdapter(client=None, settings=settings)

    assert adapter.check_amount(amount) == amount


@pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-10"), Decimal("1000000.50")])
def test_out_of_range_amounts_are_rejected(settings, amount):
    adapter = RazorpayAdapter(client=None, settings=settings)

    with pytest.raises(InvalidAmount):
        adapter.check_amount(amount)


@pytest.mark.parametrize("amount", [Decimal("150000"), Decimal("9999900")])
def test_amounts_already_in_minor_units_are_refused(settings, amount):
    """
    Test case 1: 1500 rupees sent as 150000 paise would charge the customer 100x.
    """
    adapter = PhonePeAdapter(client=None, settings=settings)

    with pytest.raises(AmountUnitMismatch):
        adapter.check_amount(amount)


def test_round_amount_below_threshold_is_a_real_total(settings):
    adapter = PhonePeAdapter(client=None, settings=settings)

    assert adapter.check_amount(Decimal("49900")) == Decimal("49900")


@pytest.mark.asyncio
async def test_guard_failure_makes_no_network_call(settings):
    async with httpx.AsyncClient(transport=httpx.MockTransport(unreachable)) as client:
        adapter = CashfreeAdapter(client, settings)
        with pytest.raises(AmountUnitMismatch):
            await adapter.create_session(Decimal("250000"), build_gateway_ref("OZ", ORDER_ID, 1), Customer("u", "U"))


@pytest.mark.asyncio
async def test_unconfigured_gateway_fails_before_calling_out(settings):
    settings.razorpay.key_secret = None
    async with httpx.AsyncClient(transport=httpx.MockTransport(unreachable)) as client:
        adapter = RazorpayAdapter(client, settings)
        assert adapter.configured is False
        with pytest.raises(GatewayNotConfigured):
            await adapter.create_session(Decimal("499"), build_gateway_ref("OZ", ORDER_ID, 1), Customer("u", "U"))


def test_gateway_ref_round_trip_and_rejects():
    ref = build_gateway_ref("OZ", ORDER_ID, 3)

    assert ref == f"OZ_{ORDER_ID}_3"
    assert parse_gateway_ref(ref) == (ORDER_ID, 3)
    assert parse_gateway_ref(None) is None
    assert parse_gateway_ref("order_NkX1abc") is None
    assert parse_gateway_ref(f"OZ_{ORDER_ID}") is None


def test_to_minor_units_rounds_to_paise():
    assert to_minor_units(Decimal("499.00")) == 49900
    assert to_minor_units(Decimal("0.10")) == 10
    assert to_minor_units(Decimal("1299.995")) == 130000


@pytest.mark.asyncio
async def test_registry_resolves_gateways_case_insensitively(settings):
    async with httpx.AsyncClient(transport=httpx.MockTransport(unreachable)) as client:
        registry = GatewayRegistry.from_settings(client, settings)

    assert isinstance(registry.get("phonepe"), PhonePeAdapter)
    assert isinstance(registry.get(" Cashfree "), CashfreeAdapter)
    assert isinstance(registry.get(PaymentGateway.RAZORPAY), RazorpayAdapter)
    with pytest.raises(GatewayNotFound):
        registry.get("paypal")
    with pytest.raises(GatewayNotFound):
        registry.get(None)
