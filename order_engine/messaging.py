import json
from datetime import datetime
from typing import Optional
from uuid import uuid4

import aio_pika
import structlog

from order_engine.models import Order, User

logger = structlog.get_logger(__name__)

ORDER_EXCHANGE = "order_exchange"


class EventPublisher:
    """Publishes order notification events to the topic exchange.

    Publishing never raises: a broker outage is logged and the order flow
    carries on.
    """

    def __init__(self, url: str, exchange_name: str = ORDER_EXCHANGE):
        self.url = url
        self.exchange_name = exchange_name
        self.connection = None
        self.channel = None
        self.exchange = None

    async def connect(self):
        try:
            self.connection = await aio_pika.connect_robust(self.url)
            self.channel = await self.connection.channel()
            self.exchange = await self.channel.declare_exchange(
                self.exchange_name, aio_pika.ExchangeType.TOPIC, durable=True
            )
            logger.info("rabbitmq_ready", exchange=self.exchange_name)
        except Exception as exc:
            logger.error("rabbitmq_setup_failed", error=str(exc))
            self.exchange = None

    async def close(self):
        if self.connection is not None:
            await self.connection.close()
            self.connection = None
            self.channel = None
            self.exchange = None

    async def publish(self, routing_key: str, message_data: dict) -> bool:
        if self.exchange is None:
            logger.warning("rabbitmq_unavailable", routing_key=routing_key)
            return False

        message = aio_pika.Message(
            json.dumps(message_data, default=str).encode("utf-8"),
            content_type="application/json",
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
        )
        try:
            await self.exchange.publish(message, routing_key=routing_key)
        except Exception as exc:
            logger.error("event_publish_failed", routing_key=routing_key, error=str(exc))
            return False
        logger.info("event_published", routing_key=routing_key, event_type=message_data["event_type"])
        return True

    async def send_order_confirmation(self, order: Order, user: Optional[User] = None) -> bool:
        return await self.publish("order.confirmed", _order_event("OrderConfirmed", order, user))

    async def send_admin_order_alert(self, order: Order, user: Optional[User] = None) -> bool:
        return await self.publish("order.admin_alert", _order_event("AdminOrderAlert", order, user))


def _order_event(event_type: str, order: Order, user: Optional[User]) -> dict:
    return {
        "event_id": str(uuid4()),
        "event_type": event_type,
        "timestamp": datetime.utcnow().isoformat(),
        "order_id": order.id,
        "order_number": order.order_number,
        "user_id": order.user_id,
        "customer_email": user.email if user else None,
        "customer_name": user.name if user else None,
        "payment_method": order.payment_method.value,
        "payment_status": order.payment_status.value,
        "total_amount": str(order.total_amount),
        "items": [
            {
                "product_id": item.product_id,
                "quantity": item.quantity,
                "size": item.size,
                "unit_price": str(item.unit_price),
            }
            for item in order.items
        ],
    }
