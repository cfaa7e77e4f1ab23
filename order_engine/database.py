from datetime import datetime, timedelta
from typing import Optional

import structlog
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from order_engine.config import get_settings
from order_engine.errors import DatastoreUnavailable

logger = structlog.get_logger(__name__)

Base = declarative_base()

engine = create_async_engine(get_settings().database_url, pool_pre_ping=True)
AsyncSessionLocal = async_sessionmaker(engine, expire_on_commit=False)


async def get_session():
    async with AsyncSessionLocal() as session:
        yield session


async def init_db(bind: Optional[AsyncEngine] = None):
    # Importing the models registers every table on Base.metadata.
    from order_engine import models  # noqa: F401

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


class DatabaseHealth:
    """Connection state of the datastore, refreshed by `check()`.

    A healthy result is trusted for `recheck_seconds`; after that the next
    guarded request pings the datastore again.
    """

    def __init__(self, bind: Optional[AsyncEngine] = None, recheck_seconds: float = 15):
        self._engine = bind or engine
        self.recheck_seconds = recheck_seconds
        self.connected = False
        self.last_checked_at: Optional[datetime] = None
        self.last_error: Optional[str] = None

    async def check(self) -> bool:
        self.last_checked_at = datetime.utcnow()
        try:
            async with self._engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except (SQLAlchemyError, OSError) as exc:
            if self.connected or self.last_error is None:
                logger.error("datastore_unreachable", error=str(exc))
            self.connected = False
            self.last_error = str(exc)
            return False

        if not self.connected:
            logger.info("datastore_connected")
        self.connected = True
        self.last_error = None
        return True

    def _fresh(self, now: datetime) -> bool:
        return (
            self.connected
            and self.last_checked_at is not None
            and now - self.last_checked_at < timedelta(seconds=self.recheck_seconds)
        )

    async def ensure_available(self, now: Optional[datetime] = None):
        if self._fresh(now or datetime.utcnow()):
            return
        if not await self.check():
            raise DatastoreUnavailable("Database connection unavailable. Please try again shortly.")

    def snapshot(self) -> dict:
        return {
            "connected": self.connected,
            "last_checked_at": self.last_checked_at.isoformat() if self.last_checked_at else None,
            "last_error": self.last_error,
        }
