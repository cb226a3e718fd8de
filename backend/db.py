"""
Database configuration and session management.
Uses SQLAlchemy async with SQLite as the job store.
"""

import logging
import os
from typing import Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    create_async_engine,
    async_sessionmaker,
)
from sqlalchemy.orm import DeclarativeBase

from config import settings

logger = logging.getLogger(__name__)


# Create async engine
engine = create_async_engine(
    settings.DATABASE_URL,
    echo=False,
    future=True,
)

# Create async session factory
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


# Base class for all models
class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


async def init_db(target: Optional[AsyncEngine] = None) -> None:
    """
    Initialize the database.
    Creates all tables and ensures the SQLite data directory exists.

    Args:
        target: Engine to initialize (defaults to the application engine)
    """
    target = target or engine

    # Ensure data directory exists
    url = str(target.url)
    if url.startswith("sqlite+aiosqlite:///") and ":memory:" not in url:
        data_dir = os.path.dirname(url.replace("sqlite+aiosqlite:///", ""))
        if data_dir and not os.path.exists(data_dir):
            os.makedirs(data_dir, exist_ok=True)
            logger.info(f"Created data directory: {data_dir}")

    # Import all models to ensure they are registered
    import models  # noqa: F401

    # Create all tables
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("Database tables created successfully")
