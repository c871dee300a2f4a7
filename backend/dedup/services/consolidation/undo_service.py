"""
UndoService for reversing a completed merge.

Replays the snapshots stored on a MergeHistory row: the merged record is
recreated under its original id, captured relation rows are pointed back
at it (colliding rows reinserted verbatim), and the history row is
stamped undone. Survivor field values chosen at merge time are left as
they are.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dedup.core.config import settings
from dedup.core.database import transaction
from dedup.eventsourcing.events.consolidation import MergeUndone
from dedup.models.duplicate_set import DuplicateSet, DuplicateStatus, EntityType
from dedup.models.merge_history import MergeHistory
from dedup.services.consolidation.audit import AuditPublisher
from dedup.services.consolidation.duplicate_sets import DuplicateSetManager
from dedup.services.consolidation.errors import (
    AlreadyUndone,
    ConsolidationError,
    HistoryNotFound,
    SnapshotVersionError,
    UndoFailed,
    translate_store_error,
)
from dedup.services.consolidation.merge_service import find_open_history
from dedup.services.consolidation.registry import EntityDescriptor, get_descriptor
from dedup.services.consolidation.relation_migrator import RelationMigrator
from dedup.services.consolidation.snapshot_codec import SnapshotCodec

if TYPE_CHECKING:
    from eventsource import EventBus

logger = logging.getLogger(__name__)

_SETTINGS_ISOLATION: Any = object()


class UndoResult:
    """
    Result of an undo operation.

    Attributes:
        merge_history_id: History row that is now undone
        entity_type: Type of the restored record
        restored_id: ID of the recreated record (its original id)
        survivor_id: Survivor of the original merge
        relations_restored: Rows pointed back at the restored record
        relations_reinserted: Colliding rows recreated
        relations_missing: Captured rows that no longer existed
        relations_moved: Captured rows now held by another record, left there
        duplicate_set_id: Duplicate set returned to pending, if any
    """

    def __init__(
        self,
        merge_history_id: UUID,
        entity_type: EntityType,
        restored_id: UUID,
        survivor_id: UUID,
        relations_restored: int,
        relations_reinserted: int,
        relations_missing: int = 0,
        duplicate_set_id: Optional[UUID] = None,
        relations_moved: int = 0,
    ):
        self.merge_history_id = merge_history_id
        self.entity_type = entity_type
        self.restored_id = restored_id
        self.survivor_id = survivor_id
        self.relations_restored = relations_restored
        self.relations_reinserted = relations_reinserted
        self.relations_missing = relations_missing
        self.duplicate_set_id = duplicate_set_id
        self.relations_moved = relations_moved

    def __repr__(self) -> str:
        return (
            f"<UndoResult {self.entity_type.value} restored={self.restored_id} "
            f"relations={self.relations_restored}+{self.relations_reinserted} "
            f"missing={self.relations_missing} moved={self.relations_moved}>"
        )


class UndoService:
    """
    Executes undo of merges, one transaction per call.

    Example:
        service = UndoService(session_factory, event_bus)
        result = await service.undo(merge_history_id, performed_by_id=reviewer_id)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        event_bus: Optional["EventBus"] = None,
        isolation_level: Optional[str] = _SETTINGS_ISOLATION,
        codec: Optional[SnapshotCodec] = None,
    ):
        self.session_factory = session_factory
        self.isolation_level = (
            settings.MERGE_ISOLATION_LEVEL
            if isolation_level is _SETTINGS_ISOLATION
            else isolation_level
        )
        self.codec = codec or SnapshotCodec()
        self.audit = AuditPublisher(event_bus)

    async def undo(
        self,
        merge_history_id: UUID,
        performed_by_id: Optional[UUID] = None,
    ) -> UndoResult:
        """
        Undo the merge recorded by ``merge_history_id``.

        Args:
            merge_history_id: MergeHistory row to reverse
            performed_by_id: Who is undoing the merge

        Returns:
            UndoResult with the restored record id

        Raises:
            HistoryNotFound: no such history row
            AlreadyUndone: the history row is already undone
            UndoFailed: anything else, including the original id or a
                relation row id now being taken; nothing was changed
        """
        logger.info(f"Starting undo for merge {merge_history_id} by {performed_by_id}")

        try:
            async with transaction(self.session_factory, self.isolation_level) as session:
                result = await self._undo_in_transaction(
                    session, merge_history_id, performed_by_id
                )
        except SnapshotVersionError as e:
            logger.error(f"Undo failed: {e}")
            raise UndoFailed(f"Undo operation failed: {e}", cause=e) from e
        except ConsolidationError:
            raise
        except Exception as e:
            conflict = translate_store_error(e)
            if conflict is not None:
                logger.info(f"Undo of {merge_history_id} lost a race: {e}")
                raise conflict from e
            logger.error(f"Undo failed: {e}", exc_info=True)
            raise UndoFailed(f"Undo operation failed: {e}", cause=e) from e

        await self.audit.publish(
            MergeUndone,
            aggregate_id=merge_history_id,
            entity_type=result.entity_type.value,
            restored_id=result.restored_id,
            survivor_id=result.survivor_id,
            merge_history_id=merge_history_id,
            relations_restored=result.relations_restored,
            relations_reinserted=result.relations_reinserted,
            relations_missing=result.relations_missing,
            relations_moved=result.relations_moved,
            performed_by_id=performed_by_id,
        )

        logger.info(
            f"Undo completed for merge {merge_history_id}: restored {result.restored_id}, "
            f"{result.relations_restored} relations re-pointed, "
            f"{result.relations_reinserted} reinserted",
            extra={"merge_history_id": str(merge_history_id)},
        )
        return result

    async def _undo_in_transaction(
        self,
        session: AsyncSession,
        merge_history_id: UUID,
        performed_by_id: Optional[UUID],
    ) -> UndoResult:
        # 1. Lock and validate the history row
        result = await session.execute(
            select(MergeHistory)
            .where(MergeHistory.id == merge_history_id)
            .with_for_update()
        )
        history = result.scalar_one_or_none()
        if history is None:
            raise HistoryNotFound(f"Merge history {merge_history_id} not found")
        if not history.can_undo:
            raise AlreadyUndone(
                f"Merge {merge_history_id} was already undone at {history.undone_at}"
            )

        descriptor = get_descriptor(history.entity_type)
        merged_snapshot = self.codec.load_entity(history.merged_snapshot)
        relations_snapshot = self.codec.load_relations(history.relations_snapshot)

        # 2. Recreate the merged record under its original id
        restored_id = merged_snapshot.id
        occupant = await session.get(descriptor.model, restored_id, with_for_update=True)
        if occupant is not None:
            raise UndoFailed(
                f"Cannot restore {descriptor.entity_type.value} {restored_id}: "
                "id is already in use"
            )
        session.add(self.codec.build_instance(descriptor.model, merged_snapshot.fields))
        await session.flush()

        # 3. Reverse the relation migration, only taking rows back from the
        # survivor or whatever it was merged into since
        holders = await self._current_holders(session, history)
        migrator = RelationMigrator(session, self.codec)
        demigrated = await migrator.demigrate(relations_snapshot, restored_id, holders)

        # 4. Mark the history undone (never deleted)
        history.undone_at = datetime.now(UTC)
        history.undone_by_id = performed_by_id

        # 5. Survivor aggregates lose the restored relations
        await self._recalculate_survivor(session, descriptor, history.survivor_id)

        # 6. Put the duplicate set back in the review queue
        duplicate_set = await self._find_merged_set(session, history)
        if duplicate_set is not None:
            await DuplicateSetManager(session).mark_pending_after_undo(
                duplicate_set.id, performed_by_id
            )

        await session.flush()

        return UndoResult(
            merge_history_id=history.id,
            entity_type=history.entity_type,
            restored_id=restored_id,
            survivor_id=history.survivor_id,
            relations_restored=demigrated.restored,
            relations_reinserted=demigrated.reinserted,
            relations_missing=demigrated.missing,
            duplicate_set_id=duplicate_set.id if duplicate_set else None,
            relations_moved=demigrated.moved,
        )

    async def _current_holders(
        self, session: AsyncSession, history: MergeHistory
    ) -> set[UUID]:
        """The survivor plus every record it was later merged into, transitively."""
        holders = {history.survivor_id}
        current = history.survivor_id
        while True:
            onward = await find_open_history(session, history.entity_type, current)
            if onward is None or onward.survivor_id in holders:
                return holders
            current = onward.survivor_id
            holders.add(current)

    async def _recalculate_survivor(
        self,
        session: AsyncSession,
        descriptor: EntityDescriptor,
        survivor_id: UUID,
    ) -> None:
        survivor = await session.get(descriptor.model, survivor_id, with_for_update=True)
        if survivor is None:
            logger.warning(
                f"Survivor {survivor_id} no longer exists; skipping rating recalculation"
            )
            return
        await descriptor.recalculate(session, survivor)

    async def _find_merged_set(
        self, session: AsyncSession, history: MergeHistory
    ) -> Optional[DuplicateSet]:
        manager = DuplicateSetManager(session)
        if history.duplicate_set_id is not None:
            duplicate_set = await session.get(
                DuplicateSet, history.duplicate_set_id, with_for_update=True
            )
            if duplicate_set is not None and duplicate_set.status == DuplicateStatus.MERGED:
                return duplicate_set
            return None

        active = await manager.find_active(
            history.entity_type, history.survivor_id, history.merged_id, lock=True
        )
        if active is not None and active.status == DuplicateStatus.MERGED:
            return active
        return None
