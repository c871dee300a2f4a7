"""
Integration tests: merge/undo preconditions and failure atomicity.
"""

from __future__ import annotations

import dataclasses
import uuid
from unittest.mock import AsyncMock, patch

import pytest

from dedup.models import Contact, EntityType, MergeHistory, Organization
from dedup.services.consolidation import (
    AlreadyMerged,
    AlreadyUndone,
    EntityNotFound,
    HistoryNotFound,
    MergeFailed,
    MergeValidationError,
    SelfMergeRejected,
    SnapshotVersionError,
    UndoFailed,
    UnknownEntityType,
)
from dedup.services.consolidation.registry import ENTITY_REGISTRY, ORGANIZATION

pytestmark = [pytest.mark.asyncio, pytest.mark.integration]


@pytest.fixture
async def orgs(store):
    """Three organizations; the second has a contact."""
    records = [Organization(id=uuid.uuid4(), name=f"Builder {n}") for n in ("A", "B", "C")]
    await store.add(*records)
    await store.add(
        Contact(id=uuid.uuid4(), first_name="Yossi", last_name="Peretz", organization_id=records[1].id)
    )
    return records


class TestMergeValidation:
    async def test_self_merge_rejected(self, merge_service, orgs, mock_event_bus):
        a = orgs[0]

        with pytest.raises(SelfMergeRejected):
            await merge_service.merge("organization", a.id, a.id)

        mock_event_bus.publish.assert_not_awaited()

    async def test_unknown_entity_type(self, merge_service, orgs):
        with pytest.raises(UnknownEntityType):
            await merge_service.merge("vendor", orgs[0].id, orgs[1].id)

    async def test_missing_record(self, merge_service, store, orgs):
        with pytest.raises(EntityNotFound):
            await merge_service.merge("organization", orgs[0].id, uuid.uuid4())

        assert await store.all(MergeHistory) == []

    @pytest.mark.parametrize(
        "resolutions",
        [
            [{"field": "average_rating", "source": "merged"}],
            [{"field": "name", "source": "combine"}],
            [{"field": "no_such_field", "source": "merged"}],
            [{"field": "name", "source": "merged"}, {"field": "name", "source": "survivor"}],
            {"is_vendor": "yes"},
        ],
    )
    async def test_bad_resolutions_rejected_before_any_write(
        self, merge_service, store, orgs, resolutions
    ):
        a, b, _ = orgs

        with pytest.raises(MergeValidationError):
            await merge_service.merge("organization", a.id, b.id, field_resolutions=resolutions)

        assert await store.get(Organization, b.id) is not None


class TestRepeatedOperations:
    async def test_second_merge_of_same_record_rejected(self, merge_service, orgs, reviewer_id):
        a, b, c = orgs
        await merge_service.merge("organization", a.id, b.id, reviewer_id)

        with pytest.raises(AlreadyMerged):
            await merge_service.merge("organization", a.id, b.id, reviewer_id)
        with pytest.raises(AlreadyMerged):
            await merge_service.merge("organization", c.id, b.id, reviewer_id)

    async def test_merged_record_cannot_survive_another_merge(
        self, merge_service, store, orgs, reviewer_id
    ):
        a, b, c = orgs
        await merge_service.merge("organization", a.id, b.id, reviewer_id)

        with pytest.raises(EntityNotFound):
            await merge_service.merge("organization", b.id, c.id, reviewer_id)

        assert await store.get(Organization, c.id) is not None
        assert len(await store.all(MergeHistory)) == 1

    async def test_second_undo_rejected(self, merge_service, undo_service, orgs, reviewer_id):
        a, b, _ = orgs
        merged = await merge_service.merge("organization", a.id, b.id, reviewer_id)
        await undo_service.undo(merged.merge_history_id, reviewer_id)

        with pytest.raises(AlreadyUndone):
            await undo_service.undo(merged.merge_history_id, reviewer_id)

    async def test_undo_unknown_history(self, undo_service):
        with pytest.raises(HistoryNotFound):
            await undo_service.undo(uuid.uuid4())


class TestFailureAtomicity:
    async def test_failure_mid_merge_changes_nothing(
        self, merge_service, store, orgs, mock_event_bus, reviewer_id
    ):
        a, b, _ = orgs
        before = {
            "survivor": await store.row_state(Organization, a.id),
            "merged": await store.row_state(Organization, b.id),
            "contacts": await store.state(Contact),
        }
        broken = dataclasses.replace(
            ORGANIZATION, recalculate=AsyncMock(side_effect=RuntimeError("disk full"))
        )

        with patch.dict(ENTITY_REGISTRY, {EntityType.ORGANIZATION: broken}):
            with pytest.raises(MergeFailed) as exc_info:
                await merge_service.merge(
                    "organization",
                    a.id,
                    b.id,
                    reviewer_id,
                    field_resolutions={"notes": "changed"},
                )

        assert isinstance(exc_info.value.cause, RuntimeError)
        assert await store.row_state(Organization, a.id) == before["survivor"]
        assert await store.row_state(Organization, b.id) == before["merged"]
        assert await store.state(Contact) == before["contacts"]
        assert await store.all(MergeHistory) == []
        mock_event_bus.publish.assert_not_awaited()

    async def test_undo_fails_when_original_id_taken(
        self, merge_service, undo_service, store, orgs, reviewer_id
    ):
        a, b, _ = orgs
        merged = await merge_service.merge("organization", a.id, b.id, reviewer_id)
        await store.add(Organization(id=b.id, name="Someone else"))

        with pytest.raises(UndoFailed):
            await undo_service.undo(merged.merge_history_id, reviewer_id)

        history = await store.get(MergeHistory, merged.merge_history_id)
        assert history.undone_at is None
        assert (await store.get(Organization, b.id)).name == "Someone else"

    async def test_undo_fails_on_unsupported_snapshot_version(
        self, merge_service, undo_service, store, orgs, reviewer_id
    ):
        a, b, _ = orgs
        merged = await merge_service.merge("organization", a.id, b.id, reviewer_id)
        history = await store.get(MergeHistory, merged.merge_history_id)
        await store.update(
            MergeHistory,
            history.id,
            merged_snapshot={**history.merged_snapshot, "schema_version": 99},
        )

        with pytest.raises(UndoFailed) as exc_info:
            await undo_service.undo(merged.merge_history_id, reviewer_id)

        assert isinstance(exc_info.value.cause, SnapshotVersionError)
        assert await store.get(Organization, b.id) is None
