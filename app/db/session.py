# app/db/session.py
import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from app.db.models import Base

logger = logging.getLogger(__name__)


class Database:
    """Owns the async engine and hands out sessions."""

    def __init__(self, url: str):
        self.url = url
        if url.startswith("sqlite"):
            # aiosqlite connections are bound to the loop that opened them
            self.engine = create_async_engine(url, future=True, poolclass=NullPool)
        else:
            self.engine = create_async_engine(url, future=True, pool_pre_ping=True)
        self.sessionmaker = async_sessionmaker(self.engine, expire_on_commit=False, class_=AsyncSession)

    async def create_all(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info(f"Database schema ready ({self.engine.url.get_backend_name()})")

    async def dispose(self) -> None:
        await self.engine.dispose()
