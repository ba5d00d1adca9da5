"""Async SQLAlchemy engine and sessions for the users and settings tables.

The security core only reads users and feature toggles per request; the
pool is sized by ``DB_POOL_*`` settings and connections are pinged on
checkout so a restarted PostgreSQL does not fail the first login after it.
"""

import logging
from collections.abc import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from app.core.config import Settings, settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Declarative base shared by the models and Alembic's autogenerate."""


def build_engine(config: Settings) -> AsyncEngine:
    """Create the application's async engine from settings."""
    return create_async_engine(
        config.database_url,
        pool_size=config.db_pool_size,
        max_overflow=config.db_max_overflow,
        pool_timeout=config.db_pool_timeout,
        pool_recycle=config.db_pool_recycle,
        pool_pre_ping=True,
        echo=config.debug and config.log_level.upper() == "DEBUG",
    )


engine = build_engine(settings)

async_session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped session: committed when the handler returns, rolled back otherwise."""
    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except BaseException:
            # Includes CancelledError from a client disconnect
            await session.rollback()
            raise


async def check_db_connection() -> bool:
    """Return True if a trivial query succeeds. Used by ``/health``."""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except (SQLAlchemyError, OSError) as e:
        logger.warning(f"Database connection check failed: {e}")
        return False
