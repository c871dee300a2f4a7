"""
MergeService for executing duplicate merges.

Consolidates two records of the same entity type into one:

- snapshot the record being removed and every row referencing it
- apply the reviewer's field resolutions to the survivor
- move dependent rows to the survivor (deleting colliding rows)
- write the MergeHistory row, then delete the merged record
- recompute survivor rating aggregates
- mark the originating duplicate set as merged

Everything runs in one serializable transaction with preconditions
re-checked after the rows are locked. The audit event goes out after
commit.

Example:
    from dedup.services.consolidation import MergeService

    service = MergeService(session_factory, event_bus)
    result = await service.merge(
        EntityType.ORGANIZATION,
        survivor_id=acme.id,
        merged_id=acme_dupe.id,
        performed_by_id=reviewer_id,
        field_resolutions={"website": "https://acme.example"},
    )
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Optional, Union
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dedup.core.config import settings
from dedup.core.database import transaction
from dedup.eventsourcing.events.consolidation import DuplicatesMerged
from dedup.models.duplicate_set import DuplicateSet, DuplicateStatus, EntityType
from dedup.models.merge_history import MergeHistory
from dedup.services.consolidation.audit import AuditPublisher
from dedup.services.consolidation.duplicate_sets import DuplicateSetManager
from dedup.services.consolidation.errors import (
    AlreadyMerged,
    ConsolidationError,
    EntityNotFound,
    MergeFailed,
    MergeValidationError,
    SelfMergeRejected,
    translate_store_error,
)
from dedup.services.consolidation.field_resolution import (
    FieldResolutionsInput,
    apply_resolutions,
    normalize_resolutions,
)
from dedup.services.consolidation.registry import EntityDescriptor, get_descriptor
from dedup.services.consolidation.relation_migrator import RelationMigrator
from dedup.services.consolidation.snapshot_codec import SnapshotCodec

if TYPE_CHECKING:
    from eventsource import EventBus

logger = logging.getLogger(__name__)

# Sentinel: use settings.MERGE_ISOLATION_LEVEL
_SETTINGS_ISOLATION: Any = object()


class MergeResult:
    """
    Result of a merge operation.

    Attributes:
        merge_history_id: ID of the MergeHistory audit/restore record
        entity_type: Type of both records
        survivor_id: ID of the record that remained
        merged_id: ID of the record that was deleted
        relations_migrated: Dependent rows moved to the survivor
        relations_skipped: Colliding rows deleted instead of moved
        duplicate_set_id: Duplicate set marked merged, if any
        field_changes: Survivor fields changed by resolutions
    """

    def __init__(
        self,
        merge_history_id: UUID,
        entity_type: EntityType,
        survivor_id: UUID,
        merged_id: UUID,
        relations_migrated: int,
        relations_skipped: int,
        duplicate_set_id: Optional[UUID] = None,
        field_changes: Optional[dict[str, Any]] = None,
    ):
        self.merge_history_id = merge_history_id
        self.entity_type = entity_type
        self.survivor_id = survivor_id
        self.merged_id = merged_id
        self.relations_migrated = relations_migrated
        self.relations_skipped = relations_skipped
        self.duplicate_set_id = duplicate_set_id
        self.field_changes = field_changes or {}

    def __repr__(self) -> str:
        return (
            f"<MergeResult {self.entity_type.value} survivor={self.survivor_id} "
            f"merged={self.merged_id} migrated={self.relations_migrated} "
            f"skipped={self.relations_skipped}>"
        )


async def find_open_history(
    session: AsyncSession,
    entity_type: EntityType,
    merged_id: UUID,
    lock: bool = False,
) -> Optional[MergeHistory]:
    """The MergeHistory currently keeping ``merged_id`` merged away, if any."""
    query = select(MergeHistory).where(
        MergeHistory.entity_type == entity_type,
        MergeHistory.merged_id == merged_id,
        MergeHistory.undone_at.is_(None),
    )
    if lock:
        query = query.with_for_update()
    result = await session.execute(query)
    return result.scalar_one_or_none()


class MergeService:
    """
    Executes merges, one transaction per call.

    The service owns its transaction: each ``merge`` opens a session from
    the factory, commits on success and rolls back on any failure.
    Nothing is retried automatically; calling ``merge`` again is a new
    attempt with fresh precondition checks.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        event_bus: Optional["EventBus"] = None,
        isolation_level: Optional[str] = _SETTINGS_ISOLATION,
        codec: Optional[SnapshotCodec] = None,
    ):
        """
        Initialize the merge service.

        Args:
            session_factory: Factory for the per-merge session
            event_bus: Optional bus for the DuplicatesMerged audit event
            isolation_level: Transaction isolation; defaults to
                ``settings.MERGE_ISOLATION_LEVEL``, None keeps the driver default
            codec: Snapshot codec (default instance if omitted)
        """
        self.session_factory = session_factory
        self.isolation_level = (
            settings.MERGE_ISOLATION_LEVEL
            if isolation_level is _SETTINGS_ISOLATION
            else isolation_level
        )
        self.codec = codec or SnapshotCodec()
        self.audit = AuditPublisher(event_bus)

    async def merge(
        self,
        entity_type: Union[EntityType, str],
        survivor_id: UUID,
        merged_id: UUID,
        performed_by_id: Optional[UUID] = None,
        field_resolutions: FieldResolutionsInput = None,
        duplicate_set_id: Optional[UUID] = None,
    ) -> MergeResult:
        """
        Merge ``merged_id`` into ``survivor_id``.

        Args:
            entity_type: Type of both records
            survivor_id: Record that remains
            merged_id: Record that is deleted
            performed_by_id: Approving reviewer
            field_resolutions: ``{field: value}`` or ``FieldResolution`` list;
                unspecified fields keep the survivor's value
            duplicate_set_id: Originating duplicate set; when omitted the
                pending set for the pair, if any, is marked merged

        Returns:
            MergeResult with the MergeHistory id

        Raises:
            UnknownEntityType, SelfMergeRejected, MergeValidationError:
                rejected before the transaction opens
            AlreadyMerged: an open history already covers ``merged_id``
            EntityNotFound: either record does not exist
            InvalidStateTransition: the duplicate set is not pending
            MergeFailed: any other failure; nothing was changed
        """
        # Validation happens before any transaction opens
        descriptor = get_descriptor(entity_type)
        if survivor_id == merged_id:
            raise SelfMergeRejected(f"Cannot merge {survivor_id} into itself")
        resolutions = normalize_resolutions(descriptor, field_resolutions)

        logger.info(
            f"Starting {descriptor.entity_type.value} merge: "
            f"{merged_id} -> {survivor_id} by {performed_by_id}"
        )

        try:
            async with transaction(self.session_factory, self.isolation_level) as session:
                result = await self._merge_in_transaction(
                    session,
                    descriptor,
                    survivor_id,
                    merged_id,
                    performed_by_id,
                    resolutions,
                    duplicate_set_id,
                )
        except ConsolidationError as e:
            logger.info(f"Merge {merged_id} -> {survivor_id} rejected: {e}")
            raise
        except Exception as e:
            conflict = translate_store_error(e)
            if conflict is not None:
                logger.info(f"Merge {merged_id} -> {survivor_id} lost a race: {e}")
                raise conflict from e
            logger.error(f"Merge failed: {e}", exc_info=True)
            raise MergeFailed(f"Merge operation failed: {e}", cause=e) from e

        await self.audit.publish(
            DuplicatesMerged,
            aggregate_id=result.merge_history_id,
            entity_type=result.entity_type.value,
            survivor_id=result.survivor_id,
            merged_id=result.merged_id,
            merge_history_id=result.merge_history_id,
            duplicate_set_id=result.duplicate_set_id,
            relations_migrated=result.relations_migrated,
            relations_skipped=result.relations_skipped,
            performed_by_id=performed_by_id,
        )

        logger.info(
            f"Merge completed: survivor={survivor_id}, merged={merged_id}, "
            f"relations_migrated={result.relations_migrated}, "
            f"relations_skipped={result.relations_skipped}",
            extra={"merge_history_id": str(result.merge_history_id)},
        )
        return result

    async def _merge_in_transaction(
        self,
        session: AsyncSession,
        descriptor: EntityDescriptor,
        survivor_id: UUID,
        merged_id: UUID,
        performed_by_id: Optional[UUID],
        resolutions: list,
        duplicate_set_id: Optional[UUID],
    ) -> MergeResult:
        entity_type = descriptor.entity_type
        now = datetime.now(UTC)
        migrator = RelationMigrator(session, self.codec)
        duplicate_sets = DuplicateSetManager(session)

        # 1. Re-check that the merged record is not already merged away
        open_history = await find_open_history(session, entity_type, merged_id, lock=True)
        if open_history is not None:
            raise AlreadyMerged(
                f"{entity_type.value} {merged_id} was already merged into "
                f"{open_history.survivor_id} (history {open_history.id})"
            )

        # 2. Lock both records, lower id first
        records = {}
        for record_id in sorted((survivor_id, merged_id)):
            records[record_id] = await session.get(
                descriptor.model, record_id, with_for_update=True
            )
        survivor, merged = records[survivor_id], records[merged_id]
        for record_id, record in ((survivor_id, survivor), (merged_id, merged)):
            if record is None:
                raise EntityNotFound(f"{entity_type.value} {record_id} not found")

        # 3. Resolve the originating duplicate set
        duplicate_set = await self._resolve_duplicate_set(
            duplicate_sets, entity_type, survivor_id, merged_id, duplicate_set_id
        )

        # 4. Snapshot the merged record and its relations
        merged_snapshot = self.codec.snapshot_entity(entity_type, merged)
        relations_snapshot = await migrator.capture(entity_type, merged_id, survivor_id)

        # 5. Apply field resolutions to the survivor
        field_changes = apply_resolutions(
            descriptor, survivor, merged, resolutions, now, self.codec
        )
        survivor.updated_at = now
        survivor.updated_by_id = performed_by_id

        # 6. Move relations to the survivor
        migrated = await migrator.migrate(
            entity_type, merged_id, survivor_id, relations_snapshot
        )
        skipped = len(relations_snapshot.skipped_rows)

        # 7. Persist history before the merged record is destroyed
        history = MergeHistory(
            entity_type=entity_type,
            survivor_id=survivor_id,
            merged_id=merged_id,
            duplicate_set_id=duplicate_set.id if duplicate_set else None,
            merged_snapshot=self.codec.dump(merged_snapshot),
            relations_snapshot=self.codec.dump(relations_snapshot),
            field_resolutions=field_changes,
            relations_migrated=migrated,
            relations_skipped=skipped,
            performed_by_id=performed_by_id,
            created_at=now,
        )
        session.add(history)
        await session.flush()

        # 8. Delete the merged record
        await session.delete(merged)
        await session.flush()

        # 9. Recompute survivor aggregates
        await descriptor.recalculate(session, survivor)

        # 10. Close the duplicate set
        if duplicate_set is not None:
            await duplicate_sets.mark_merged(duplicate_set.id, performed_by_id)

        await session.flush()

        return MergeResult(
            merge_history_id=history.id,
            entity_type=entity_type,
            survivor_id=survivor_id,
            merged_id=merged_id,
            relations_migrated=migrated,
            relations_skipped=skipped,
            duplicate_set_id=duplicate_set.id if duplicate_set else None,
            field_changes=field_changes,
        )

    async def _resolve_duplicate_set(
        self,
        duplicate_sets: DuplicateSetManager,
        entity_type: EntityType,
        survivor_id: UUID,
        merged_id: UUID,
        duplicate_set_id: Optional[UUID],
    ) -> Optional[DuplicateSet]:
        if duplicate_set_id is None:
            active = await duplicate_sets.find_active(
                entity_type, survivor_id, merged_id, lock=True
            )
            if active is not None and active.status == DuplicateStatus.PENDING:
                return active
            return None

        duplicate_set = await duplicate_sets.get(duplicate_set_id, lock=True)
        if duplicate_set.entity_type != entity_type or not duplicate_set.covers(
            survivor_id, merged_id
        ):
            raise MergeValidationError(
                f"Duplicate set {duplicate_set_id} does not cover "
                f"{entity_type.value} pair {survivor_id}/{merged_id}"
            )
        return duplicate_set
