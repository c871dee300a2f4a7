"""
Relation migration between duplicate records.

Moves every dependent row of the merged record onto the survivor, and
replays the captured state on undo. Relation tables come from the static
entity registry; a relation with ``unique_with`` columns is checked for
collisions against the survivor's existing rows.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Collection, Optional, Union
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from dedup.models.duplicate_set import EntityType
from dedup.schemas.snapshot import RelationsSnapshot
from dedup.services.consolidation.errors import StateConflictError, UndoFailed
from dedup.services.consolidation.registry import RelationDescriptor, get_descriptor
from dedup.services.consolidation.snapshot_codec import SnapshotCodec

logger = logging.getLogger(__name__)


@dataclass
class DemigrationResult:
    """
    Counts from replaying a relations snapshot.

    Attributes:
        restored: Migrated rows pointed back at the restored record
        reinserted: Colliding rows recreated verbatim
        missing: Migrated rows that no longer exist and were skipped
        moved: Migrated rows now held by some other record, left in place
    """

    restored: int = 0
    reinserted: int = 0
    missing: int = 0
    moved: int = 0


class RelationMigrator:
    """
    Rewrite relation foreign keys from one record to another.

    All work happens on the caller's session and inside the caller's
    transaction; nothing here commits.

    Example:
        migrator = RelationMigrator(session)
        snapshot = await migrator.capture(EntityType.CONTACT, doomed_id, survivor_id)
        migrated = await migrator.migrate(
            EntityType.CONTACT, doomed_id, survivor_id, snapshot
        )
    """

    def __init__(self, session: AsyncSession, codec: Optional[SnapshotCodec] = None):
        self.session = session
        self.codec = codec or SnapshotCodec()

    async def _load_rows(self, relation: RelationDescriptor, entity_id: UUID) -> list:
        query = (
            select(relation.model)
            .where(relation.column == entity_id)
            .order_by(relation.model.id)
            .with_for_update()
        )
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def capture(
        self,
        entity_type: Union[EntityType, str],
        from_id: UUID,
        to_id: UUID,
    ) -> RelationsSnapshot:
        """
        Lock and snapshot every row referencing ``from_id``.

        Rows whose unique key is already held by ``to_id`` are marked as
        skipped: migrating them would violate the relation's unique
        constraint, so merge deletes them instead.
        """
        descriptor = get_descriptor(entity_type)
        snapshot = RelationsSnapshot(entity_type=descriptor.entity_type)

        for relation in descriptor.relations:
            rows = await self._load_rows(relation, from_id)
            if not rows:
                continue

            taken: set[tuple] = set()
            if relation.unique_with:
                survivor_rows = await self._load_rows(relation, to_id)
                taken = {relation.unique_key(row) for row in survivor_rows}

            for row in rows:
                skipped = bool(taken) and relation.unique_key(row) in taken
                snapshot.rows.append(
                    self.codec.snapshot_relation_row(
                        relation.name, relation.foreign_key, row, skipped=skipped
                    )
                )

        return snapshot

    async def migrate(
        self,
        entity_type: Union[EntityType, str],
        from_id: UUID,
        to_id: UUID,
        snapshot: Optional[RelationsSnapshot] = None,
    ) -> int:
        """
        Point every relation row of ``from_id`` at ``to_id``.

        Colliding rows are deleted rather than migrated. When ``snapshot``
        is given it must describe exactly the rows currently referencing
        ``from_id``.

        Returns:
            Number of rows actually migrated
        """
        descriptor = get_descriptor(entity_type)
        if snapshot is None:
            snapshot = await self.capture(descriptor.entity_type, from_id, to_id)

        # 1. Make sure nothing appeared since capture
        for relation in descriptor.relations:
            current = {row.id for row in await self._load_rows(relation, from_id)}
            captured = {
                row.row_id for row in snapshot.rows if row.relation == relation.name
            }
            if current != captured:
                raise StateConflictError(
                    f"{relation.name} rows of {from_id} changed since capture"
                )

        # 2. Delete colliding rows first so the rewrite never hits the constraint
        skipped = 0
        for captured_row in snapshot.skipped_rows:
            relation = descriptor.relation(captured_row.relation)
            row = await self.session.get(relation.model, captured_row.row_id)
            await self.session.delete(row)
            skipped += 1
        if skipped:
            await self.session.flush()

        # 3. Re-point the rest
        migrated = 0
        for captured_row in snapshot.migrated_rows:
            relation = descriptor.relation(captured_row.relation)
            row = await self.session.get(relation.model, captured_row.row_id)
            setattr(row, relation.foreign_key, to_id)
            migrated += 1
        await self.session.flush()

        logger.info(
            f"Migrated {migrated} {descriptor.entity_type.value} relation rows "
            f"from {from_id} to {to_id} ({skipped} collisions deleted)"
        )
        return migrated

    async def demigrate(
        self,
        snapshot: RelationsSnapshot,
        restored_id: UUID,
        holders: Optional[Collection[UUID]] = None,
    ) -> DemigrationResult:
        """
        Replay a relations snapshot after the merged record was restored.

        Migrated rows get their original foreign key back (other columns
        keep any edits made since the merge). Deleted colliding rows are
        reinserted exactly as captured; if their id is taken by another
        row the undo fails rather than overwrite it. Live collision state
        is not consulted.

        When ``holders`` is given, a migrated row is only taken back while
        its foreign key points at one of them (the survivor, or whatever the
        survivor was merged into since). A row another undo already handed
        to a different record stays where it is.
        """
        descriptor = get_descriptor(snapshot.entity_type)
        result = DemigrationResult()

        for captured_row in snapshot.rows:
            relation = descriptor.relation(captured_row.relation)
            if captured_row.original_value != restored_id:
                raise UndoFailed(
                    f"Relation row {captured_row.row_id} belongs to "
                    f"{captured_row.original_value}, not {restored_id}"
                )

            existing = await self.session.get(
                relation.model, captured_row.row_id, with_for_update=True
            )

            if captured_row.skipped:
                if existing is not None:
                    raise UndoFailed(
                        f"Cannot reinsert {relation.name} row {captured_row.row_id}: "
                        "id is already in use"
                    )
                self.session.add(
                    self.codec.build_instance(relation.model, captured_row.fields)
                )
                result.reinserted += 1
                continue

            if existing is None:
                logger.warning(
                    f"{relation.name} row {captured_row.row_id} no longer exists; "
                    f"not restoring it to {restored_id}"
                )
                result.missing += 1
                continue

            current_holder = getattr(existing, relation.foreign_key)
            if holders is not None and current_holder not in holders:
                logger.warning(
                    f"{relation.name} row {captured_row.row_id} now belongs to "
                    f"{current_holder}; not restoring it to {restored_id}"
                )
                result.moved += 1
                continue

            setattr(existing, relation.foreign_key, captured_row.original_value)
            result.restored += 1

        await self.session.flush()

        logger.info(
            f"Restored relations of {restored_id}: {result.restored} re-pointed, "
            f"{result.reinserted} reinserted, {result.missing} missing, "
            f"{result.moved} moved elsewhere"
        )
        return result
