"""
Database engine configuration for Trade Engine

Async SQLAlchemy 2.0 setup with connection pooling
"""

import logging
from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    create_async_engine,
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
)
from sqlalchemy.pool import AsyncAdaptedQueuePool

from config.config import DATABASE_URL, ENVIRONMENT
from trade_engine.database.models import Base

logger = logging.getLogger(__name__)


# Global engine and session maker
engine: AsyncEngine | None = None
AsyncSessionLocal: async_sessionmaker[AsyncSession] | None = None


def get_engine() -> AsyncEngine:
    """
    Create and configure async database engine

    Returns:
        Configured AsyncEngine instance
    """
    global engine

    if engine is None:
        is_production = ENVIRONMENT == "production"
        options = {}
        if DATABASE_URL.startswith("postgresql"):
            options = {
                "poolclass": AsyncAdaptedQueuePool,
                "pool_size": 10 if is_production else 5,
                "max_overflow": 20 if is_production else 10,
                "pool_recycle": 3600,  # Recycle connections every hour
                "connect_args": {
                    "statement_cache_size": 0,  # Disable prepared statement cache
                    "server_settings": {
                        "application_name": "trade_engine",
                        "jit": "off",
                    },
                },
            }

        engine = create_async_engine(
            DATABASE_URL,
            pool_pre_ping=True,  # Verify connections before using
            echo=False,  # using loguru
            **options,
        )

        logger.info(f"Database engine created - Environment: {ENVIRONMENT}")

    return engine


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    """
    Create async session maker

    Returns:
        Configured async_sessionmaker instance
    """
    global AsyncSessionLocal

    if AsyncSessionLocal is None:
        AsyncSessionLocal = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,  # Important for async!
            autoflush=False,
        )
        logger.info("Session maker created")

    return AsyncSessionLocal


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Session с rollback при ошибке.

    Yields:
        AsyncSession instance
    """
    session_maker = get_session_maker()
    async with session_maker() as session:
        try:
            yield session
        except Exception as e:
            await session.rollback()
            logger.error(f"Session error: {e}", exc_info=True)
            raise


async def init_db() -> None:
    """
    Initialize database - create all tables

    Creates tables if they don't exist.
    """
    # регистрация таблиц pipeline в Base.metadata
    import trade_engine.pipeline.models  # noqa: F401

    eng = get_engine()
    logger.info("Creating database tables...")

    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("Database tables created successfully")


async def drop_db() -> None:
    """
    Drop all database tables

    WARNING: This deletes all data! Only for development/testing.
    """
    if ENVIRONMENT == "production":
        raise RuntimeError("Cannot drop database in production environment!")

    import trade_engine.pipeline.models  # noqa: F401

    eng = get_engine()
    logger.warning("Dropping all database tables...")

    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    logger.warning("Database tables dropped")


async def dispose_engine() -> None:
    """
    Dispose database engine and close all connections

    Call this on application shutdown
    """
    global engine, AsyncSessionLocal

    if engine is not None:
        await engine.dispose()
        logger.info("Database engine disposed")
        engine = None
        AsyncSessionLocal = None


async def check_connection() -> bool:
    """
    Check database connection

    Returns:
        True if connection successful, False otherwise
    """
    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
        logger.info("Database connection check: OK")
        return True
    except Exception as e:
        logger.error(f"Database connection check failed: {e}", exc_info=True)
        return False
