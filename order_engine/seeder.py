import asyncio
from datetime import timedelta
from decimal import Decimal

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from order_engine.config import get_settings
from order_engine.database import get_session, init_db
from order_engine.logs import configure_logging
from order_engine.models import Coupon, CouponType, Product, ProductSize, User, utcnow
from order_engine.stock import refresh_stock_flags

logger = structlog.get_logger(__name__)


def demo_catalog():
    products = [
        Product(id="prod-tee", name="Classic Tee", price=Decimal("499.00"), stock_quantity=25),
        Product(id="prod-cap", name="Logo Cap", price=Decimal("299.00"), stock_quantity=10),
        Product(id="prod-mug", name="Travel Mug", price=Decimal("349.00"), stock_quantity=0),
        Product(
            id="prod-hoodie",
            name="Fleece Hoodie",
            price=Decimal("1299.00"),
            sizes=[
                ProductSize(size="S", price=Decimal("1299.00"), stock_quantity=5),
                ProductSize(size="M", price=Decimal("1299.00"), stock_quantity=8),
                ProductSize(size="L", price=Decimal("1399.00"), stock_quantity=2),
                ProductSize(size="XL", price=Decimal("1399.00"), stock_quantity=0),
            ],
        ),
    ]
    for product in products:
        refresh_stock_flags(product)
    return products


async def seed_catalog(session: AsyncSession) -> bool:
    """Insert the demo catalog once. Returns False when it is already there."""
    if await session.get(Product, "prod-tee"):
        logger.info("catalog_already_seeded")
        return False

    session.add_all(demo_catalog())
    session.add(User(id="demo-user", name="Demo Customer", email="customer@example.com", phone="9876543210"))
    session.add(User(id="demo-admin", name="Store Admin", email="admin@example.com", is_admin=True))
    session.add(
        Coupon(
            code="WELCOME10",
            type=CouponType.PERCENTAGE,
            value=Decimal("10"),
            min_order=Decimal("499"),
            max_discount=Decimal("200"),
            usage_limit=100,
            used_count=0,
            expires_at=utcnow() + timedelta(days=365),
        )
    )
    await session.commit()
    logger.info("catalog_seeded")
    return True


async def main():
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_json)
    await init_db()
    async for session in get_session():
        await seed_catalog(session)


if __name__ == "__main__":
    asyncio.run(main())
