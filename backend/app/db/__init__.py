"""
Database Layer - Async SQLAlchemy engine + session factory.
"""
import os
import logging
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    create_async_engine,
    AsyncSession,
    async_sessionmaker,
)
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger("baogia-db")

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./baogia.db"


def normalize_database_url(url: str) -> str:
    """Point plain Postgres URLs at the asyncpg driver."""
    if not url:
        return DEFAULT_DATABASE_URL
    if url.startswith("postgresql://") and "+asyncpg" not in url:
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    return url


DATABASE_URL = normalize_database_url(os.getenv("DATABASE_URL", ""))


class Base(DeclarativeBase):
    pass


def make_engine(url: str) -> AsyncEngine:
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=False)
    return create_async_engine(
        url,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,
        echo=False,
        pool_timeout=5,
    )


engine = make_engine(DATABASE_URL)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def create_tables(target: AsyncEngine, reset: bool = False) -> None:
    from app.models import orm_models  # noqa: F401
    async with target.begin() as conn:
        if reset:
            logger.warning("DB_RESET_ON_STARTUP=true: dropping all tables")
            await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)


async def init_db():
    """Create tables on startup. A database that can't be reached is logged, not fatal."""
    reset = os.getenv("DB_RESET_ON_STARTUP", "").lower() in ("1", "true", "yes")
    try:
        await create_tables(engine, reset=reset)
        logger.info("Database tables initialized.")
    except Exception as e:
        logger.warning(f"init_db skipped (DB not available): {e}")

