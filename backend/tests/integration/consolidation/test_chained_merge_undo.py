"""
Integration tests: undoing a chain of merges.

B is merged into A, then A into C. Whichever order the two merges are
undone in, every contact ends up back with the organization it started
with.
"""

from __future__ import annotations

import uuid

import pytest

from dedup.models import Contact, Organization

pytestmark = [pytest.mark.asyncio, pytest.mark.integration]


@pytest.fixture
async def chain(store):
    """Organizations A, B, C with one contact each."""
    orgs = {
        key: Organization(id=uuid.uuid4(), name=f"Tzafon Build {key.upper()}")
        for key in ("a", "b", "c")
    }
    await store.add(*orgs.values())
    contacts = {
        key: Contact(
            id=uuid.uuid4(), first_name="Contact", last_name=key.upper(), organization_id=org.id
        )
        for key, org in orgs.items()
    }
    await store.add(*contacts.values())
    return orgs, contacts


async def _holder(store, contact):
    return (await store.get(Contact, contact.id)).organization_id


async def _merge_chain(merge_service, orgs, reviewer_id):
    first = await merge_service.merge("organization", orgs["a"].id, orgs["b"].id, reviewer_id)
    second = await merge_service.merge("organization", orgs["c"].id, orgs["a"].id, reviewer_id)
    return first, second


class TestChainedUndo:
    async def test_chain_moves_everything_to_last_survivor(
        self, merge_service, store, chain, reviewer_id
    ):
        orgs, contacts = chain

        await _merge_chain(merge_service, orgs, reviewer_id)

        for contact in contacts.values():
            assert await _holder(store, contact) == orgs["c"].id

    async def test_undo_oldest_first(self, merge_service, undo_service, store, chain, reviewer_id):
        orgs, contacts = chain
        first, second = await _merge_chain(merge_service, orgs, reviewer_id)

        undo_first = await undo_service.undo(first.merge_history_id, reviewer_id)
        assert undo_first.relations_restored == 1
        assert await _holder(store, contacts["b"]) == orgs["b"].id

        undo_second = await undo_service.undo(second.merge_history_id, reviewer_id)

        # contact B was captured by the second merge too, but already went home
        assert undo_second.relations_restored == 1
        assert undo_second.relations_moved == 1
        for key, contact in contacts.items():
            assert await _holder(store, contact) == orgs[key].id

    async def test_undo_newest_first(self, merge_service, undo_service, store, chain, reviewer_id):
        orgs, contacts = chain
        first, second = await _merge_chain(merge_service, orgs, reviewer_id)

        undo_second = await undo_service.undo(second.merge_history_id, reviewer_id)
        assert undo_second.relations_restored == 2
        assert undo_second.relations_moved == 0

        undo_first = await undo_service.undo(first.merge_history_id, reviewer_id)

        assert undo_first.relations_restored == 1
        for key, contact in contacts.items():
            assert await _holder(store, contact) == orgs[key].id

    async def test_row_reassigned_by_hand_is_left_alone(
        self, merge_service, undo_service, store, chain, reviewer_id
    ):
        orgs, contacts = chain
        first = await merge_service.merge("organization", orgs["a"].id, orgs["b"].id, reviewer_id)
        await store.update(Contact, contacts["b"].id, organization_id=orgs["c"].id)

        result = await undo_service.undo(first.merge_history_id, reviewer_id)

        assert result.relations_moved == 1
        assert result.relations_restored == 0
        assert await _holder(store, contacts["b"]) == orgs["c"].id
