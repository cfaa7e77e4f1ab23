import hashlib
import hmac
from datetime import timedelta

import httpx
import pytest
import pytest_asyncio

from order_engine.checkout import confirm_razorpay_checkout
from order_engine.errors import SignatureInvalid, ValidationFailed
from order_engine.gateways import GatewayRegistry, RazorpayAdapter
from order_engine.models import AttemptStatus, OutcomeSource, PaymentGateway, PaymentStatus, utcnow
from order_engine.reconciliation import ApplyResult
from order_engine.schemas import RazorpayCheckoutConfirm
from order_engine.sessions import initiate_payment_session


@pytest_asyncio.fixture
async def razorpay_registry(settings):
    created = []

    def handler(request):
        created.append(request)
        return httpx.Response(200, json={"id": f"order_R{len(created)}", "currency": "INR"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        yield GatewayRegistry({PaymentGateway.RAZORPAY: RazorpayAdapter(client, settings)})


def signed(provider_order_id, payment_id="pay_R1", secret=b"rzp-secret"):
    signature = hmac.new(secret, f"{provider_order_id}|{payment_id}".encode(), hashlib.sha256).hexdigest()
    return RazorpayCheckoutConfirm(
        razorpay_order_id=provider_order_id,
        razorpay_payment_id=payment_id,
        razorpay_signature=signature,
    )


async def razorpay_order(db, make_product, place_order, registry, settings):
    tee = await make_product("prod-tee", price="499.00", stock=5)
    order = await place_order(gateway="Razorpay")
    session = await initiate_payment_session(db, order, registry, settings)
    return tee, order, session


@pytest.mark.asyncio
async def test_signed_checkout_marks_order_paid(
    db, make_product, place_order, razorpay_registry, settings, notifier
):
    """
    Test case 1: A valid checkout signature pays the order and reduces stock once.
    """
    tee, order, session = await razorpay_order(db, make_product, place_order, razorpay_registry, settings)

    first = await confirm_razorpay_checkout(
        db, order, signed(session.provider_order_id), razorpay_registry, notifier
    )
    second = await confirm_razorpay_checkout(
        db, order, signed(session.provider_order_id), razorpay_registry, notifier
    )

    assert session.provider_order_id == "order_R1"
    assert first is ApplyResult.SUCCESS_APPLIED
    assert second is ApplyResult.ALREADY_PAID
    assert order.payment_status is PaymentStatus.PAID
    assert order.payment_id == "pay_R1"
    assert order.attempts[0].status is AttemptStatus.SUCCESS
    assert order.attempts[0].events[-1].source is OutcomeSource.CHECKOUT
    assert tee.stock_quantity == 3
    notifier.send_order_confirmation.assert_awaited_once()


@pytest.mark.asyncio
async def test_bad_checkout_signature_changes_nothing(db, make_product, place_order, razorpay_registry, settings):
    tee, order, session = await razorpay_order(db, make_product, place_order, razorpay_registry, settings)

    with pytest.raises(SignatureInvalid):
        await confirm_razorpay_checkout(
            db, order, signed(session.provider_order_id, secret=b"rzp-webhook-secret"), razorpay_registry
        )

    assert order.payment_status is PaymentStatus.PENDING
    assert tee.stock_quantity == 5


@pytest.mark.asyncio
async def test_checkout_for_foreign_razorpay_order(db, make_product, place_order, razorpay_registry, settings):
    _, order, _ = await razorpay_order(db, make_product, place_order, razorpay_registry, settings)

    with pytest.raises(ValidationFailed):
        await confirm_razorpay_checkout(db, order, signed("order_someone_else"), razorpay_registry)
    assert order.payment_status is PaymentStatus.PENDING


@pytest.mark.asyncio
async def test_checkout_for_superseded_attempt_is_ignored(
    db, make_product, place_order, razorpay_registry, settings
):
    """
    Test case 2: After a retry, the first attempt's checkout result no longer counts.
    """
    t0 = utcnow()
    tee = await make_product("prod-tee", price="499.00", stock=5)
    order = await place_order(gateway="Razorpay")
    first = await initiate_payment_session(db, order, razorpay_registry, settings, now=t0)
    await initiate_payment_session(db, order, razorpay_registry, settings, now=t0 + timedelta(seconds=30))

    result = await confirm_razorpay_checkout(db, order, signed(first.provider_order_id), razorpay_registry)

    assert result is ApplyResult.NOT_CURRENT
    assert order.payment_status is PaymentStatus.PENDING
    assert tee.stock_quantity == 5


@pytest.mark.asyncio
async def test_cod_order_has_no_checkout(db, make_product, place_order, razorpay_registry):
    await make_product("prod-tee", stock=5)
    order = await place_order(method="COD")

    with pytest.raises(ValidationFailed):
        await confirm_razorpay_checkout(db, order, signed("order_R1"), razorpay_registry)
