import json
import os
from decimal import Decimal
from unittest.mock import AsyncMock

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from order_engine.admission import create_order
from order_engine.config import CashfreeSettings, PhonePeSettings, RazorpaySettings, Settings
from order_engine.database import Base
from order_engine.gateways import (
    GatewayRegistry,
    GatewaySession,
    MalformedPayload,
    PaymentGatewayAdapter,
    PaymentOutcome,
    StatusResult,
    WebhookNotification,
)
from order_engine.messaging import EventPublisher
from order_engine.models import PaymentGateway, Product, ProductSize, User
from order_engine.schemas import OrderCreate
from order_engine.stock import refresh_stock_flags


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite+aiosqlite://",
        log_json=False,
        default_gateway="Cashfree",
        phonepe=PhonePeSettings(
            merchant_id="MERCHANTUAT",
            salt_key="salt-key-123",
            salt_index="1",
            callback_salt_key="callback-key-456",
            callback_salt_index="2",
            base_url="https://phonepe.test/apis/hermes",
        ),
        cashfree=CashfreeSettings(
            client_id="cf-client",
            client_secret="cf-secret",
            webhook_secret="cf-webhook-secret",
            environment="sandbox",
        ),
        razorpay=RazorpaySettings(
            key_id="rzp_test_key",
            key_secret="rzp-secret",
            webhook_secret="rzp-webhook-secret",
            base_url="https://razorpay.test/v1",
        ),
    )


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def user(db):
    customer = User(id="user-1", name="Asha Rao", email="asha@example.com", phone="9876543210")
    db.add(customer)
    await db.commit()
    return customer


@pytest_asyncio.fixture
async def admin_user(db):
    admin = User(id="admin-1", name="Store Admin", email="admin@example.com", is_admin=True)
    db.add(admin)
    await db.commit()
    return admin


@pytest.fixture
def make_product(db):
    async def _make(product_id, price="100.00", stock=10, sizes=None, active=True):
        product = Product(
            id=product_id,
            name=product_id.replace("-", " ").title(),
            price=Decimal(price),
            stock_quantity=stock,
            active=active,
            sizes=[
                ProductSize(size=label, price=Decimal(size_price), stock_quantity=qty)
                for label, size_price, qty in (sizes or [])
            ],
        )
        refresh_stock_flags(product)
        db.add(product)
        await db.commit()
        return product

    return _make


@pytest.fixture
def shipping():
    return {
        "name": "Asha Rao",
        "phone": "9876543210",
        "address": "12 MG Road",
        "city": "Bengaluru",
        "state": "Karnataka",
        "pincode": "560001",
    }


class FakeAdapter(PaymentGatewayAdapter):
    """In-memory provider: sessions always succeed, status is whatever the test sets."""

    gateway = PaymentGateway.CASHFREE
    signature_header = "X-Test-Signature"

    def __init__(self, settings, gateway=PaymentGateway.CASHFREE, webhook_is_hint=False):
        super().__init__(client=None, settings=settings)
        self.gateway = gateway
        self.webhook_is_hint = webhook_is_hint
        self.status = StatusResult(PaymentOutcome.PENDING)
        self.session_calls = []
        self.status_calls = []
        self.session_error = None
        self.status_error = None

    @property
    def configured(self):
        return True

    def credential_hints(self):
        return {}

    async def _create_session(self, amount, order_ref, customer):
        self.session_calls.append((amount, order_ref, customer))
        if self.session_error is not None:
            raise self.session_error
        return GatewaySession(
            session_handle=f"session-{order_ref}",
            provider_order_id=order_ref,
            client_payload={"payment_session_id": f"session-{order_ref}"},
        )

    async def verify_status(self, provider_order_id):
        self.status_calls.append(provider_order_id)
        if self.status_error is not None:
            raise self.status_error
        return self.status

    def verify_webhook_signature(self, raw_body, signature_header):
        return signature_header == "valid"

    def parse_webhook(self, raw_body):
        try:
            body = json.loads(raw_body)
            return WebhookNotification(
                gateway_order_ref=body.get("ref"),
                provider_order_id=body.get("provider_order_id", body.get("ref")),
                provider_payment_id=body.get("payment_id"),
                outcome=PaymentOutcome(body["outcome"]),
            )
        except (ValueError, KeyError) as exc:
            raise MalformedPayload(str(exc)) from exc


@pytest.fixture
def fake_adapter(settings):
    return FakeAdapter(settings)


@pytest.fixture
def registry(fake_adapter):
    return GatewayRegistry({fake_adapter.gateway: fake_adapter})


@pytest.fixture
def notifier():
    return AsyncMock(spec=EventPublisher)


@pytest.fixture
def webhook_body():
    def _body(ref, outcome, payment_id="pay-1"):
        return json.dumps({"ref": ref, "outcome": outcome, "payment_id": payment_id}).encode("utf-8")

    return _body


@pytest.fixture
def place_order(db, user, shipping, settings):
    async def _place(items=None, method="Prepaid", gateway="Cashfree", **extra):
        payload = OrderCreate.model_validate(
            {
                "items": items or [{"product_id": "prod-tee", "quantity": 2}],
                "shipping_address": shipping,
                "payment_method": method,
                "payment_gateway": gateway,
                **extra,
            }
        )
        return await create_order(db, user, payload, settings)

    return _place


@pytest.fixture
def make_adapter(settings):
    def _make(gateway=PaymentGateway.CASHFREE, webhook_is_hint=False):
        return FakeAdapter(settings, gateway=gateway, webhook_is_hint=webhook_is_hint)

    return _make
