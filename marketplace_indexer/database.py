#!/usr/bin/env python3
"""
Database connection and session management for the indexer.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

from sqlalchemy import Numeric, String, text
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.types import TypeDecorator

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Serialization failure and deadlock
RETRYABLE_SQLSTATES = {"40001", "40P01"}


class Base(DeclarativeBase):
    pass


class Uint256(TypeDecorator):
    """Unsigned 256-bit integer.

    NUMERIC(78, 0) on PostgreSQL, a decimal string elsewhere. Always an int in Python.
    """

    impl = String(78)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(Numeric(78, 0))
        return dialect.type_descriptor(String(78))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        value = int(value)
        if value < 0:
            raise ValueError(f"Uint256 cannot store negative value {value}")
        if dialect.name == "postgresql":
            return value
        return str(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return int(value)


def create_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create the async engine for the configured database"""
    if database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)

    if database_url.startswith("sqlite"):
        return create_async_engine(database_url, echo=echo)

    return create_async_engine(
        database_url,
        echo=echo,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,
        pool_recycle=3600,
    )


def create_session_factory(engine: AsyncEngine, isolation_level: Optional[str] = None) -> async_sessionmaker:
    """Session factory; pass isolation_level="SERIALIZABLE" for reconciliation writes"""
    bind = engine.execution_options(isolation_level=isolation_level) if isolation_level else engine
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


async def init_models(engine: AsyncEngine) -> None:
    """Create all tables that do not exist yet"""
    # Registers the mapped classes on Base.metadata
    from marketplace_indexer import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ready")


async def check_database_connection(session_factory: async_sessionmaker) -> bool:
    """Check if database connection is working"""
    try:
        async with session_factory() as session:
            result = await session.execute(text("SELECT 1"))
            return result.scalar() == 1
    except DBAPIError as e:
        logger.error(f"Database connection failed: {e}")
        return False


def is_retryable(error: Exception) -> bool:
    """Whether a failed transaction lost a race and can simply be run again"""
    if isinstance(error, IntegrityError):
        return True
    if isinstance(error, DBAPIError):
        orig = getattr(error, "orig", None)
        sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
        if sqlstate in RETRYABLE_SQLSTATES:
            return True
        return "could not serialize access" in str(error).lower()
    return False


async def run_in_transaction(
    session_factory: async_sessionmaker,
    work: Callable[[AsyncSession], Awaitable[T]],
    attempts: int = 5,
    label: str = "transaction",
) -> T:
    """Run `work` inside a single transaction, retrying lost serialization races.

    Everything `work` writes commits together or not at all.
    """
    for attempt in range(1, attempts + 1):
        try:
            async with session_factory() as session:
                async with session.begin():
                    return await work(session)
        except DBAPIError as e:
            if attempt >= attempts or not is_retryable(e):
                raise
            logger.warning(f"Retrying {label} after conflict (attempt {attempt}/{attempts}): {e.__class__.__name__}")
            await asyncio.sleep(0.05 * attempt)
    raise RuntimeError("unreachable")


async def retry_forever(
    operation: Callable[[], Awaitable[Optional[Any]]],
    label: str,
    initial_delay: float = 0.1,
    max_delay: float = 5.0,
) -> Any:
    """Poll `operation` until it returns something other than None"""
    delay = initial_delay
    while True:
        result = await operation()
        if result is not None:
            return result
        logger.debug(f"{label} not visible yet, retrying in {delay:.1f}s")
        await asyncio.sleep(delay)
        delay = min(delay * 2, max_delay)
