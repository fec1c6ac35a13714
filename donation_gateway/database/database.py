import asyncio
from typing import Optional

import structlog
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from donation_gateway.core.config import get_settings
from donation_gateway.models.donation import Base

settings = get_settings()
logger = structlog.get_logger(__name__)

engine = create_async_engine(
    settings.database_url,
    echo=False,
    poolclass=NullPool,
)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


async def wait_for_db(max_retries: Optional[int] = None, delay: Optional[float] = None) -> None:
    """Block until the database answers, retrying while it starts up"""
    max_retries = max_retries or settings.db_connect_retries
    delay = delay if delay is not None else settings.db_connect_retry_delay_seconds

    for attempt in range(1, max_retries + 1):
        try:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except (OSError, SQLAlchemyError) as e:
            if attempt == max_retries:
                logger.error("Database unreachable, giving up", attempts=attempt, error=str(e))
                raise
            logger.warning("Database not ready yet", attempt=attempt, max_retries=max_retries, error=str(e))
            await asyncio.sleep(delay)
        else:
            logger.info("Database connection established", attempts=attempt)
            return


async def init_db():
    """Initialize database tables"""
    await wait_for_db()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables created successfully")


async def get_db():
    """Dependency for getting database session"""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def close_db():
    """Close database connection"""
    await engine.dispose()
    logger.info("Database connection closed")
