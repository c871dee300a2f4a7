"""
Pytest configuration and fixtures for consolidation integration tests.

Runs the real merge/undo engine against an in-memory SQLite database
(aiosqlite) with foreign keys enforced. Provides:
- Engine / session factory with all tables created
- Services wired to that factory with a mock audit bus
- A Store helper for seeding rows and reading their encoded state
"""

from __future__ import annotations

from typing import Any, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import event, select
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

import dedup.models  # noqa: F401  (registers every table on Base.metadata)
from dedup.core.database import Base, create_session_factory
from dedup.services.consolidation import (
    ConsolidationWorkflow,
    MergeService,
    SnapshotCodec,
    UndoService,
)


# ---------------------------------------------------------------------------
# Database Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
async def engine():
    """In-memory SQLite engine shared by every session of one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _enable_foreign_keys(dbapi_connection: Any, connection_record: Any) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def mock_event_bus():
    bus = MagicMock()
    bus.publish = AsyncMock()
    return bus


@pytest.fixture
def merge_service(session_factory, mock_event_bus):
    # SQLite has no per-transaction isolation switch worth testing here
    return MergeService(session_factory, event_bus=mock_event_bus, isolation_level=None)


@pytest.fixture
def undo_service(session_factory, mock_event_bus):
    return UndoService(session_factory, event_bus=mock_event_bus, isolation_level=None)


@pytest.fixture
def workflow(session_factory, mock_event_bus, merge_service, undo_service):
    return ConsolidationWorkflow(
        session_factory,
        event_bus=mock_event_bus,
        merge_service=merge_service,
        undo_service=undo_service,
    )


# ---------------------------------------------------------------------------
# Data helpers
# ---------------------------------------------------------------------------


class Store:
    """Small helper around the session factory for seeding and reading."""

    def __init__(self, session_factory):
        self.session_factory = session_factory
        self.codec = SnapshotCodec()

    async def add(self, *objects):
        async with self.session_factory() as session:
            session.add_all(objects)
            await session.commit()
        return objects[0] if len(objects) == 1 else objects

    async def get(self, model, record_id):
        async with self.session_factory() as session:
            return await session.get(model, record_id)

    async def all(self, model, **filters):
        async with self.session_factory() as session:
            query = select(model).filter_by(**filters).order_by(model.id)
            result = await session.execute(query)
            return list(result.scalars().all())

    async def state(self, model, **filters) -> list[dict]:
        """Encoded column state of matching rows, for byte-for-byte comparison."""
        return [self.codec.encode_row(row) for row in await self.all(model, **filters)]

    async def row_state(self, model, record_id) -> Optional[dict]:
        row = await self.get(model, record_id)
        return self.codec.encode_row(row) if row is not None else None

    async def delete(self, model, record_id):
        async with self.session_factory() as session:
            row = await session.get(model, record_id)
            await session.delete(row)
            await session.commit()

    async def update(self, model, record_id, **values):
        async with self.session_factory() as session:
            row = await session.get(model, record_id)
            for key, value in values.items():
                setattr(row, key, value)
            await session.commit()


@pytest.fixture
def store(session_factory):
    return Store(session_factory)

