"""
Database engine and session factory construction with SQLAlchemy async.

Nothing here is created at import time: the replication process and the
status API each build one engine at startup and hand the session factory to
the components that need it.
"""

from typing import Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from core.config import Settings, settings as default_settings
from core.exceptions import DatabaseConnectionError
import logging

logger = logging.getLogger(__name__)


def create_engine(config: Optional[Settings] = None) -> AsyncEngine:
    """Create the async engine backed by a bounded connection pool"""
    config = config or default_settings
    return create_async_engine(
        config.DATABASE_URL,
        echo=False,
        pool_size=config.DB_POOL_SIZE,
        max_overflow=config.DB_MAX_OVERFLOW,
        pool_timeout=config.DB_POOL_TIMEOUT,
        pool_pre_ping=True,
        future=True
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    """Create session factory bound to the given engine"""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False
    )


async def check_connection(engine: AsyncEngine) -> None:
    """
    Verify the store is reachable.

    Raises:
        DatabaseConnectionError: If a connection cannot be opened
    """
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as e:
        raise DatabaseConnectionError(
            "Cannot connect to database",
            context={"database": engine.url.render_as_string(hide_password=True)},
            original_exception=e
        )

    logger.info(f"Database connection verified ({engine.url.host}/{engine.url.database})")
