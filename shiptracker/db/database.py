"""
Async SQLAlchemy engine and session factory for the transit store.

The store is optional: when it cannot be reached at startup the relay keeps
forwarding live data and the transit tracker degrades to no-ops.
"""
import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from shiptracker.core.errors import StoreError
from shiptracker.db.models import Base

logger = logging.getLogger("ais.db")


def _redact(url: str) -> str:
    # keep credentials out of the logs
    if "@" not in url:
        return url
    scheme, _, rest = url.partition("://")
    return f"{scheme}://***@{rest.rsplit('@', 1)[1]}"


class Store:
    """Engine + session factory pair owned by the app lifespan."""

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self.session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            engine, expire_on_commit=False
        )

    async def create_schema(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()


async def open_store(url: str) -> Store:
    """Connect and create the schema. Raises StoreError when unreachable."""
    if not url:
        raise StoreError("DATABASE_URL is empty")
    try:
        engine = create_async_engine(url, pool_pre_ping=True)
    except (SQLAlchemyError, ImportError, ValueError) as exc:
        raise StoreError(f"invalid DATABASE_URL: {exc}") from exc
    store = Store(engine)
    try:
        await store.create_schema()
    except (SQLAlchemyError, OSError) as exc:
        await engine.dispose()
        raise StoreError(f"cannot reach {_redact(url)}: {exc}") from exc
    logger.info("Connected to transit store at %s", _redact(url))
    return store


async def try_open_store(url: str) -> Optional[Store]:
    try:
        return await open_store(url)
    except StoreError as exc:
        logger.error("Transit store unavailable (%s); running without database", exc)
        return None
