"""
Database infrastructure.

This module provides the async SQLAlchemy engine, session factory,
declarative base and the transaction helper every consolidation
operation runs inside. The engine is built lazily so importing models
never opens a connection, and services always receive a session factory
explicitly instead of reaching for a module global.
"""

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional

from sqlalchemy import DateTime, Uuid, event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.pool import Pool

from dedup.core.config import settings

# Configure logger
logger = logging.getLogger(__name__)

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def utcnow() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """
    Base class for all database models.

    Provides common columns that all models inherit:
    - id: UUID primary key, generated client side so snapshots can
      carry it and undo can reinsert the exact same identity
    - created_at: Timezone-aware timestamp of record creation (UTC)

    There is deliberately no ``onupdate`` timestamp here: relation rows
    are re-pointed during merge and undo, and those rewrites must not
    alter any other column.
    """

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )


def _normalize_url(url: str) -> str:
    # Convert DATABASE_URL to use asyncpg driver if needed
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def create_engine_from_settings(url: Optional[str] = None, **kwargs: Any) -> AsyncEngine:
    """
    Create an async engine.

    Args:
        url: Database URL, defaults to ``settings.DATABASE_URL``
        **kwargs: Extra ``create_async_engine`` arguments (override defaults)

    Returns:
        AsyncEngine: Configured engine
    """
    database_url = _normalize_url(url or settings.DATABASE_URL)
    options: dict[str, Any] = {
        "echo": settings.DB_ECHO,  # Log SQL queries (controlled separately)
        "future": True,
        "pool_reset_on_return": "rollback",
    }
    if database_url.startswith("postgresql"):
        options.update(
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            pool_recycle=3600,
        )
    options.update(kwargs)
    return create_async_engine(database_url, **options)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create an async session factory with explicit transaction control."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,  # Don't expire objects after commit (avoid extra queries)
        autocommit=False,
        autoflush=False,  # Explicit flush control; merge ordering depends on it
    )


def get_engine() -> AsyncEngine:
    """Return the process-wide engine, creating it on first use."""
    global _engine
    if _engine is None:
        _engine = create_engine_from_settings()
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the process-wide session factory, creating it on first use."""
    global _session_factory
    if _session_factory is None:
        _session_factory = create_session_factory(get_engine())
    return _session_factory


@asynccontextmanager
async def transaction(
    session_factory: async_sessionmaker[AsyncSession],
    isolation_level: Optional[str] = None,
) -> AsyncIterator[AsyncSession]:
    """
    Run a block inside one database transaction.

    The transaction commits when the block exits normally and rolls back
    on any exception, including task cancellation, so only a committed
    unit of work is ever visible to other sessions.

    Args:
        session_factory: Factory producing the session for this unit of work
        isolation_level: Optional isolation level (e.g. "SERIALIZABLE")
            pinned on the connection before the first statement

    Yields:
        AsyncSession: Session bound to the open transaction

    Example:
        async with transaction(factory, "SERIALIZABLE") as session:
            session.add(record)
    """
    async with session_factory() as session:
        async with session.begin():
            if isolation_level:
                await session.connection(
                    execution_options={"isolation_level": isolation_level}
                )
            yield session


async def close_db() -> None:
    """
    Close all database connections on application shutdown.

    Properly disposes of the connection pool and forgets the cached
    engine and session factory.
    """
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        logger.info("Database connections closed")
    _engine = None
    _session_factory = None


# Connection pool event listener for observability
@event.listens_for(Pool, "connect")
def receive_connect(dbapi_conn: Any, connection_record: Any) -> None:
    """Log when a new connection is established to the database."""
    logger.debug("Database connection established")
