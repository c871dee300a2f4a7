"""
Unit tests for engine and session factory construction.
"""

import pytest

from dedup.core import database
from dedup.core.database import (
    _normalize_url,
    close_db,
    create_engine_from_settings,
    get_engine,
    get_session_factory,
)


class TestNormalizeUrl:
    def test_plain_postgres_url_gets_asyncpg_driver(self):
        assert (
            _normalize_url("postgresql://user:pw@db:5432/dedup")
            == "postgresql+asyncpg://user:pw@db:5432/dedup"
        )

    def test_explicit_driver_untouched(self):
        assert _normalize_url("sqlite+aiosqlite://") == "sqlite+aiosqlite://"


class TestEngineLifecycle:
    @pytest.fixture(autouse=True)
    def reset(self, monkeypatch):
        monkeypatch.setattr(database, "_engine", None)
        monkeypatch.setattr(database, "_session_factory", None)

    def test_engine_from_explicit_url(self):
        engine = create_engine_from_settings("sqlite+aiosqlite://")
        assert engine.url.drivername == "sqlite+aiosqlite"

    def test_engine_and_factory_are_cached(self):
        engine = get_engine()
        factory = get_session_factory()

        assert get_engine() is engine
        assert get_session_factory() is factory
        assert factory.kw["bind"] is engine
        assert factory.kw["expire_on_commit"] is False
        assert factory.kw["autoflush"] is False

    @pytest.mark.asyncio
    async def test_close_db_forgets_engine(self):
        get_session_factory()

        await close_db()

        assert database._engine is None
        assert database._session_factory is None
