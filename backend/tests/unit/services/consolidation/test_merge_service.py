"""
Unit tests for MergeService.

Covers request validation (which must happen before any transaction is
opened), error wrapping and audit publishing. The full merge algorithm
is exercised against a real database in the integration tests.
"""

from __future__ import annotations

import uuid
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from dedup.models.duplicate_set import EntityType
from dedup.services.consolidation.errors import (
    AlreadyMerged,
    ConcurrentUpdateConflict,
    EntityNotFound,
    MergeFailed,
    MergeValidationError,
    SelfMergeRejected,
    UnknownEntityType,
)
from dedup.services.consolidation.merge_service import MergeResult, MergeService


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def session_factory():
    """A session factory that must not be used by validation failures."""
    return MagicMock(side_effect=AssertionError("transaction must not be opened"))


@pytest.fixture
def mock_event_bus():
    bus = MagicMock()
    bus.publish = AsyncMock()
    return bus


class FakeSessionContext:
    """Async context manager standing in for a session from the factory."""

    def __init__(self, session):
        self.session = session

    async def __aenter__(self):
        return self.session

    async def __aexit__(self, *exc):
        return False


def session_factory_for(session):
    begin_ctx = MagicMock()
    begin_ctx.__aenter__ = AsyncMock(return_value=None)
    begin_ctx.__aexit__ = AsyncMock(return_value=False)
    session.begin = MagicMock(return_value=begin_ctx)
    return MagicMock(return_value=FakeSessionContext(session))


# =============================================================================
# Test MergeResult
# =============================================================================


class TestMergeResult:
    def test_repr(self):
        result = MergeResult(
            merge_history_id=uuid.uuid4(),
            entity_type=EntityType.CONTACT,
            survivor_id=uuid.uuid4(),
            merged_id=uuid.uuid4(),
            relations_migrated=3,
            relations_skipped=1,
        )
        text = repr(result)
        assert "contact" in text
        assert "migrated=3" in text
        assert "skipped=1" in text
        assert result.field_changes == {}


# =============================================================================
# Test validation
# =============================================================================


class TestMergeValidation:
    """Validation errors are raised before the store is touched."""

    @pytest.mark.asyncio
    async def test_self_merge_rejected(self, session_factory, reviewer_id):
        service = MergeService(session_factory, isolation_level=None)
        record_id = uuid.uuid4()

        with pytest.raises(SelfMergeRejected):
            await service.merge(EntityType.CONTACT, record_id, record_id, reviewer_id)
        session_factory.assert_not_called()

    @pytest.mark.asyncio
    async def test_unknown_entity_type(self, session_factory, reviewer_id):
        service = MergeService(session_factory, isolation_level=None)

        with pytest.raises(UnknownEntityType):
            await service.merge("vendor", uuid.uuid4(), uuid.uuid4(), reviewer_id)
        session_factory.assert_not_called()

    @pytest.mark.asyncio
    async def test_invalid_field_resolution(self, session_factory, reviewer_id):
        service = MergeService(session_factory, isolation_level=None)

        with pytest.raises(MergeValidationError):
            await service.merge(
                EntityType.ORGANIZATION,
                uuid.uuid4(),
                uuid.uuid4(),
                reviewer_id,
                field_resolutions={"review_count": 10},
            )
        session_factory.assert_not_called()

    @pytest.mark.asyncio
    async def test_wrongly_typed_value_rejected_before_transaction(
        self, session_factory, reviewer_id
    ):
        service = MergeService(session_factory, isolation_level=None)

        with pytest.raises(MergeValidationError, match="is_vendor"):
            await service.merge(
                EntityType.ORGANIZATION,
                uuid.uuid4(),
                uuid.uuid4(),
                reviewer_id,
                field_resolutions={"is_vendor": "yes"},
            )
        session_factory.assert_not_called()

    def test_isolation_level_defaults_to_settings(self, session_factory):
        with patch(
            "dedup.services.consolidation.merge_service.settings"
        ) as mock_settings:
            mock_settings.MERGE_ISOLATION_LEVEL = "SERIALIZABLE"
            service = MergeService(session_factory)
        assert service.isolation_level == "SERIALIZABLE"

    def test_explicit_none_isolation_level(self, session_factory):
        assert MergeService(session_factory, isolation_level=None).isolation_level is None


# =============================================================================
# Test error handling
# =============================================================================


class TestMergeErrorHandling:
    """State conflicts pass through; everything else becomes MergeFailed."""

    @pytest.mark.asyncio
    async def test_infrastructure_error_wrapped(self, reviewer_id, mock_event_bus):
        cause = RuntimeError("connection reset")
        service = MergeService(
            MagicMock(side_effect=cause), event_bus=mock_event_bus, isolation_level=None
        )

        with pytest.raises(MergeFailed) as exc_info:
            await service.merge(EntityType.CONTACT, uuid.uuid4(), uuid.uuid4(), reviewer_id)

        assert exc_info.value.cause is cause
        assert exc_info.value.__cause__ is cause
        mock_event_bus.publish.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_already_merged_passes_through(self, reviewer_id, mock_event_bus):
        session = AsyncMock()
        service = MergeService(
            session_factory_for(session), event_bus=mock_event_bus, isolation_level=None
        )
        open_history = MagicMock(id=uuid.uuid4(), survivor_id=uuid.uuid4())

        with patch(
            "dedup.services.consolidation.merge_service.find_open_history",
            AsyncMock(return_value=open_history),
        ):
            with pytest.raises(AlreadyMerged):
                await service.merge(
                    EntityType.CONTACT, uuid.uuid4(), uuid.uuid4(), reviewer_id
                )
        mock_event_bus.publish.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_record(self, reviewer_id):
        session = AsyncMock()
        session.get = AsyncMock(return_value=None)
        service = MergeService(session_factory_for(session), isolation_level=None)

        with patch(
            "dedup.services.consolidation.merge_service.find_open_history",
            AsyncMock(return_value=None),
        ):
            with pytest.raises(EntityNotFound):
                await service.merge(
                    EntityType.ORGANIZATION, uuid.uuid4(), uuid.uuid4(), reviewer_id
                )

    @pytest.mark.asyncio
    async def test_serialization_failure_is_state_conflict(self, reviewer_id):
        class SerializationFailure(Exception):
            sqlstate = "40001"

        service = MergeService(
            MagicMock(side_effect=SerializationFailure("could not serialize access")),
            isolation_level=None,
        )

        with pytest.raises(ConcurrentUpdateConflict):
            await service.merge(EntityType.CONTACT, uuid.uuid4(), uuid.uuid4(), reviewer_id)
