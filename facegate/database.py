"""
Database Connection and Session Management

This module handles database connectivity using SQLAlchemy's async engine
(asyncpg for PostgreSQL, aiosqlite for local and test runs).
"""
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy import text
import logging

from facegate.config import DATABASE_URL, DB_POOL_SIZE, DB_MAX_OVERFLOW

logger = logging.getLogger(__name__)

# Base class for ORM models
Base = declarative_base()


class Database:
    """
    Owns the async engine and session factory for one database URL.

    Constructed explicitly and handed to the services that need it.
    """

    def __init__(self, url: str = DATABASE_URL, echo: bool = False):
        self.url = url

        engine_kwargs = {
            "echo": echo,  # Set to True for SQL debugging
            "pool_pre_ping": True,  # Enable connection health checks
        }
        # SQLite uses a static/null pool that rejects sizing arguments
        if not url.startswith("sqlite"):
            engine_kwargs["pool_size"] = DB_POOL_SIZE
            engine_kwargs["max_overflow"] = DB_MAX_OVERFLOW

        self.engine = create_async_engine(url, **engine_kwargs)

        # Session factory
        self.session_maker = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autocommit=False,
            autoflush=False,
        )

    async def init(self, create_tables: bool = True):
        """Verify connectivity and create missing tables."""
        # Registers the ORM tables on Base.metadata
        from facegate import models  # noqa: F401

        try:
            async with self.engine.begin() as conn:
                # Test connection
                await conn.execute(text("SELECT 1"))
                if create_tables:
                    await conn.run_sync(Base.metadata.create_all)
            logger.info("Database connection established successfully")
        except Exception as e:
            logger.error(f"Failed to connect to database: {e}")
            raise

    async def close(self):
        """Close database connection pool."""
        await self.engine.dispose()
        logger.info("Database connection pool closed")

