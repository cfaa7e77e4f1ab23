"""Two sessions racing on one order.

These run against a file-backed SQLite database so each session has its own
connection and sees the other's commits only through the version check.
"""
from datetime import timedelta
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from order_engine.admin import update_order_status
from order_engine.admission import create_order, load_order
from order_engine.database import Base
from order_engine.gateways import PaymentOutcome, StatusResult
from order_engine.models import (
    AttemptStatus,
    FailureReason,
    OutcomeSource,
    PaymentStatus,
    Product,
    User,
    utcnow,
)
from order_engine.reconciliation import get_payment_status
from order_engine.schemas import AdminStatusUpdate, OrderCreate
from order_engine.sessions import initiate_payment_session
from order_engine.webhooks import ingest_webhook

SIGNED = {"X-Test-Signature": "valid"}


@pytest_asyncio.fixture
async def file_sessions(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/orders.db")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(engine, expire_on_commit=False)
    yield factory
    await engine.dispose()


@pytest_asyncio.fixture
async def pending_order(file_sessions, registry, settings, shipping):
    """A prepaid order with one pending Cashfree attempt, committed."""
    t0 = utcnow()
    async with file_sessions() as setup:
        customer = User(id="user-1", name="Asha Rao", email="asha@example.com")
        admin = User(id="admin-1", name="Store Admin", is_admin=True)
        tee = Product(id="prod-tee", name="Tee", price=Decimal("499.00"), stock_quantity=5, in_stock=True)
        setup.add_all([customer, admin, tee])
        await setup.commit()
        order = await create_order(
            setup,
            customer,
            OrderCreate.model_validate(
                {
                    "items": [{"product_id": "prod-tee", "quantity": 2}],
                    "shipping_address": shipping,
                    "payment_method": "Prepaid",
                    "payment_gateway": "Cashfree",
                }
            ),
            settings,
        )
        session = await initiate_payment_session(setup, order, registry, settings, now=t0)
    return order.id, session.gateway_order_ref, t0


async def stored(file_sessions, order_id):
    async with file_sessions() as fresh:
        order = await load_order(fresh, order_id)
        product = await fresh.get(Product, "prod-tee")
        return order, product.stock_quantity


@pytest.mark.asyncio
async def test_poll_losing_to_webhook_success_is_a_no_op(
    file_sessions, pending_order, registry, settings, fake_adapter, webhook_body
):
    """
    Test case 1: Two Paid signals from different sessions give one commit and one no-op.
    """
    order_id, ref, t0 = pending_order
    async with file_sessions() as poller, file_sessions() as receiver:
        stale = await load_order(poller, order_id)

        applied = await ingest_webhook(receiver, "Cashfree", webhook_body(ref, "Success", "cf-1"), SIGNED, registry)
        fake_adapter.status = StatusResult(PaymentOutcome.SUCCESS, "cf-2")
        status = await get_payment_status(poller, stale, registry, settings, now=t0 + timedelta(minutes=1))

    assert applied == "success_applied"
    assert status.payment_status is PaymentStatus.PAID
    order, stock = await stored(file_sessions, order_id)
    assert order.payment_status is PaymentStatus.PAID
    assert order.payment_id == "cf-1"
    assert stock == 3


@pytest.mark.asyncio
async def test_webhook_success_after_concurrent_timeout_still_lands(
    file_sessions, pending_order, registry, settings, webhook_body
):
    """
    Test case 2: A captured payment that loses the race to a timeout is re-applied, not dropped.
    """
    order_id, ref, t0 = pending_order
    async with file_sessions() as poller, file_sessions() as receiver:
        await load_order(receiver, order_id)
        timing_out = await load_order(poller, order_id)

        timed_out = await get_payment_status(poller, timing_out, registry, settings, now=t0 + timedelta(minutes=21))
        result = await ingest_webhook(receiver, "Cashfree", webhook_body(ref, "Success", "cf-9"), SIGNED, registry)

    assert timed_out.failure_reason is FailureReason.TIMEOUT
    assert result == "success_applied"
    order, stock = await stored(file_sessions, order_id)
    assert order.payment_status is PaymentStatus.PAID
    assert order.failure_reason is None
    assert order.payment_id == "cf-9"
    assert order.stock_reduced is True
    assert [e.status for e in order.attempts[0].events] == [
        AttemptStatus.PENDING,
        AttemptStatus.EXPIRED,
        AttemptStatus.SUCCESS,
    ]
    assert stock == 3


@pytest.mark.asyncio
async def test_admin_paid_losing_to_webhook_is_a_no_op(
    file_sessions, pending_order, registry, webhook_body
):
    order_id, ref, _ = pending_order
    async with file_sessions() as console, file_sessions() as receiver:
        admin = await console.get(User, "admin-1")
        await load_order(console, order_id)

        await ingest_webhook(receiver, "Cashfree", webhook_body(ref, "Success"), SIGNED, registry)
        updated = await update_order_status(
            console, order_id, AdminStatusUpdate(payment_status="Paid", tracking_number="AWB9"), admin
        )

    assert updated.payment_status is PaymentStatus.PAID
    assert updated.tracking_number == "AWB9"
    order, stock = await stored(file_sessions, order_id)
    assert order.tracking_number == "AWB9"
    assert order.attempts[0].events[-1].source is OutcomeSource.WEBHOOK
    assert stock == 3
