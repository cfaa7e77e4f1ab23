from contextlib import asynccontextmanager
from typing import Optional

import httpx
import structlog
import uvicorn
from fastapi import Depends, FastAPI, Header, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from order_engine import admin, admission, checkout, reconciliation, sessions, webhooks
from order_engine.config import Settings, get_settings
from order_engine.database import DatabaseHealth, get_session, init_db
from order_engine.errors import EngineError, RetryRateLimited, Unauthenticated
from order_engine.gateways import GatewayRegistry
from order_engine.logs import configure_logging
from order_engine.messaging import EventPublisher
from order_engine.models import User
from order_engine.schemas import (
    AdminStatusUpdate,
    CheckoutConfirmRead,
    HealthRead,
    OrderCreate,
    OrderRead,
    PaymentSessionRead,
    PaymentSessionRequest,
    PaymentStatusRead,
    RazorpayCheckoutConfirm,
    WebhookAck,
)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_json)

    app.state.health = DatabaseHealth(recheck_seconds=settings.datastore_recheck_seconds)
    await init_db()
    await app.state.health.check()

    app.state.notifier = EventPublisher(settings.rabbitmq_url)
    await app.state.notifier.connect()

    app.state.http_client = httpx.AsyncClient(timeout=settings.gateway_timeout_seconds)
    app.state.registry = GatewayRegistry.from_settings(app.state.http_client, settings)
    logger.info("service_started", default_gateway=settings.default_gateway)
    try:
        yield
    finally:
        await app.state.http_client.aclose()
        await app.state.notifier.close()


app = FastAPI(title="Order Payment Engine", lifespan=lifespan)


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    headers = None
    if isinstance(exc, RetryRateLimited):
        headers = {"Retry-After": str(exc.retry_after)}
    if exc.status_code >= 500:
        logger.error("request_failed", path=request.url.path, code=exc.code, error=exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "code": exc.code, "message": exc.message},
        headers=headers,
    )


# --- Dependencies ---


async def require_datastore(request: Request):
    await request.app.state.health.ensure_available()


def get_registry(request: Request) -> GatewayRegistry:
    return request.app.state.registry


def get_notifier(request: Request) -> Optional[EventPublisher]:
    return getattr(request.app.state, "notifier", None)


async def get_current_user(
    x_user_id: Optional[str] = Header(None),
    db: AsyncSession = Depends(get_session),
) -> User:
    if not x_user_id:
        raise Unauthenticated("Missing X-User-Id header")
    user = await db.get(User, x_user_id)
    if user is None:
        raise Unauthenticated("Unknown user")
    return user


# --- Orders ---


@app.post(
    "/api/orders",
    response_model=OrderRead,
    status_code=201,
    dependencies=[Depends(require_datastore)],
)
async def create_order(
    order_data: OrderCreate,
    db: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
    settings: Settings = Depends(get_settings),
    notifier: Optional[EventPublisher] = Depends(get_notifier),
):
    order = await admission.create_order(db, user, order_data, settings, notifier)
    return OrderRead.model_validate(order)


@app.get("/api/orders/{order_id}", response_model=OrderRead, dependencies=[Depends(require_datastore)])
async def get_order(
    order_id: str,
    db: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    order = await admission.load_order_for(db, order_id, user)
    return OrderRead.model_validate(order)


@app.post(
    "/api/orders/{order_id}/payment-session",
    response_model=PaymentSessionRead,
    dependencies=[Depends(require_datastore)],
)
async def create_payment_session(
    order_id: str,
    body: Optional[PaymentSessionRequest] = None,
    db: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
    settings: Settings = Depends(get_settings),
    registry: GatewayRegistry = Depends(get_registry),
):
    order = await admission.load_order_for(db, order_id, user)
    return await sessions.initiate_payment_session(
        db, order, registry, settings, user=user, gateway=body.gateway if body else None
    )


@app.post(
    "/api/orders/{order_id}/retry-payment",
    response_model=PaymentSessionRead,
    dependencies=[Depends(require_datastore)],
)
async def retry_payment(
    order_id: str,
    body: Optional[PaymentSessionRequest] = None,
    db: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
    settings: Settings = Depends(get_settings),
    registry: GatewayRegistry = Depends(get_registry),
):
    order = await admission.load_order_for(db, order_id, user)
    return await sessions.retry_payment(
        db, order, registry, settings, user=user, gateway=body.gateway if body else None
    )


@app.get(
    "/api/orders/{order_id}/payment-status",
    response_model=PaymentStatusRead,
    dependencies=[Depends(require_datastore)],
)
async def get_payment_status(
    order_id: str,
    db: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
    settings: Settings = Depends(get_settings),
    registry: GatewayRegistry = Depends(get_registry),
    notifier: Optional[EventPublisher] = Depends(get_notifier),
):
    order = await admission.load_order_for(db, order_id, user)
    return await reconciliation.get_payment_status(db, order, registry, settings, notifier)


@app.post(
    "/api/orders/{order_id}/payments/razorpay/verify",
    response_model=CheckoutConfirmRead,
    dependencies=[Depends(require_datastore)],
)
async def confirm_razorpay_checkout(
    order_id: str,
    confirmation: RazorpayCheckoutConfirm,
    db: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
    registry: GatewayRegistry = Depends(get_registry),
    notifier: Optional[EventPublisher] = Depends(get_notifier),
):
    order = await admission.load_order_for(db, order_id, user)
    result = await checkout.confirm_razorpay_checkout(db, order, confirmation, registry, notifier)
    status = reconciliation.status_view(order)
    return CheckoutConfirmRead(**status.model_dump(), result=result.value)


# --- Webhooks ---


@app.post(
    "/api/payments/webhooks/{gateway}",
    response_model=WebhookAck,
    dependencies=[Depends(require_datastore)],
)
async def receive_webhook(
    gateway: str,
    request: Request,
    db: AsyncSession = Depends(get_session),
    registry: GatewayRegistry = Depends(get_registry),
    notifier: Optional[EventPublisher] = Depends(get_notifier),
):
    raw_body = await request.body()
    result = await webhooks.ingest_webhook(db, gateway, raw_body, request.headers, registry, notifier)
    return WebhookAck(result=result)


# --- Admin ---


@app.patch(
    "/api/admin/orders/{order_id}/status",
    response_model=OrderRead,
    dependencies=[Depends(require_datastore)],
)
async def update_order_status(
    order_id: str,
    update: AdminStatusUpdate,
    db: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
    notifier: Optional[EventPublisher] = Depends(get_notifier),
):
    order = await admin.update_order_status(db, order_id, update, user, notifier)
    return OrderRead.model_validate(order)


@app.get("/health", response_model=HealthRead)
async def health(request: Request, response: Response):
    state: DatabaseHealth = request.app.state.health
    connected = await state.check()
    if not connected:
        response.status_code = 503
    return HealthRead(status="ok" if connected else "degraded", database=state.snapshot())


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
