"""
Duplicate set lifecycle.

Owns the review state machine of a candidate pair:

    pending -> merged     (merge executed)
    pending -> ignored    (reviewer says "not duplicates"; terminal)
    merged  -> pending    (merge undone)

Every operation runs on the caller's session so the transition commits
or rolls back together with whatever else the caller does.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Optional, Union
from uuid import UUID

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from dedup.models.duplicate_set import (
    ACTIVE_STATUSES,
    DuplicateSet,
    DuplicateStatus,
    EntityType,
    MatchType,
)
from dedup.models.merge_history import MergeHistory
from dedup.schemas.consolidation import ConflictField
from dedup.services.consolidation.errors import (
    DuplicateAlreadyTracked,
    DuplicateSetNotFound,
    EntityNotFound,
    InvalidStateTransition,
    MergeValidationError,
)
from dedup.services.consolidation.registry import FieldKind, get_descriptor

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[DuplicateStatus, frozenset[DuplicateStatus]] = {
    DuplicateStatus.PENDING: frozenset({DuplicateStatus.MERGED, DuplicateStatus.IGNORED}),
    DuplicateStatus.MERGED: frozenset({DuplicateStatus.PENDING}),
    DuplicateStatus.IGNORED: frozenset(),
}


def canonical_pair(id_a: UUID, id_b: UUID) -> tuple[UUID, UUID]:
    """Order a pair so the smaller id comes first."""
    if id_a == id_b:
        raise MergeValidationError(f"A record cannot be a duplicate of itself: {id_a}")
    return (id_a, id_b) if id_a < id_b else (id_b, id_a)


def _differs(kind: FieldKind, primary, secondary) -> bool:
    if kind == FieldKind.ARRAY:
        return sorted(map(str, primary or [])) != sorted(map(str, secondary or []))
    if isinstance(primary, str) or isinstance(secondary, str):
        return (primary or "") != (secondary or "")
    return primary != secondary


def _merged_away():
    """Correlated EXISTS: either record of the set is currently merged away."""
    return (
        select(MergeHistory.id)
        .where(
            MergeHistory.entity_type == DuplicateSet.entity_type,
            MergeHistory.undone_at.is_(None),
            MergeHistory.merged_id.in_([DuplicateSet.primary_id, DuplicateSet.secondary_id]),
        )
        .exists()
    )


class DuplicateSetManager:
    """
    Create, transition and query duplicate sets.

    Example:
        manager = DuplicateSetManager(session)
        duplicate_set = await manager.propose(EntityType.CONTACT, id_a, id_b, score=92)
        await manager.ignore(duplicate_set.id, reviewer_id)
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    # =========================================================================
    # Queries
    # =========================================================================

    async def get(self, set_id: UUID, lock: bool = False) -> DuplicateSet:
        """Load a duplicate set, optionally locking it."""
        query = select(DuplicateSet).where(DuplicateSet.id == set_id)
        if lock:
            query = query.with_for_update()
        result = await self.session.execute(query)
        duplicate_set = result.scalar_one_or_none()
        if duplicate_set is None:
            raise DuplicateSetNotFound(f"Duplicate set {set_id} not found")
        return duplicate_set

    async def find_active(
        self,
        entity_type: Union[EntityType, str],
        id_a: UUID,
        id_b: UUID,
        lock: bool = False,
    ) -> Optional[DuplicateSet]:
        """Find the pending or merged set covering ``{id_a, id_b}``."""
        descriptor = get_descriptor(entity_type)
        primary_id, secondary_id = canonical_pair(id_a, id_b)
        query = select(DuplicateSet).where(
            DuplicateSet.entity_type == descriptor.entity_type,
            DuplicateSet.primary_id == primary_id,
            DuplicateSet.secondary_id == secondary_id,
            DuplicateSet.status.in_(ACTIVE_STATUSES),
        )
        if lock:
            query = query.with_for_update()
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def list_sets(
        self,
        status: Optional[DuplicateStatus] = DuplicateStatus.PENDING,
        entity_type: Optional[Union[EntityType, str]] = None,
        limit: Optional[int] = None,
        include_stale: bool = False,
    ) -> list[DuplicateSet]:
        """
        List sets by status (None for all), highest score first, newest next.

        Pending sets whose record was merged away through another pair are
        stale and left out unless ``include_stale`` is set.
        """
        query = select(DuplicateSet)
        if not include_stale:
            query = query.where(
                or_(DuplicateSet.status != DuplicateStatus.PENDING, ~_merged_away())
            )
        if status is not None:
            query = query.where(DuplicateSet.status == DuplicateStatus(status))
        if entity_type is not None:
            query = query.where(
                DuplicateSet.entity_type == get_descriptor(entity_type).entity_type
            )
        query = query.order_by(
            DuplicateSet.score.desc().nulls_last(),
            DuplicateSet.created_at.desc(),
        )
        if limit:
            query = query.limit(limit)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def status_counts(
        self, entity_type: Optional[Union[EntityType, str]] = None
    ) -> dict[DuplicateStatus, int]:
        """Number of sets per status; statuses without sets report 0."""
        query = select(DuplicateSet.status, func.count()).group_by(DuplicateSet.status)
        if entity_type is not None:
            query = query.where(
                DuplicateSet.entity_type == get_descriptor(entity_type).entity_type
            )
        result = await self.session.execute(query)
        counts = {status: 0 for status in DuplicateStatus}
        for status, count in result.all():
            counts[DuplicateStatus(status)] = count
        return counts

    async def sets_for_record(
        self, entity_type: Union[EntityType, str], record_id: UUID
    ) -> list[DuplicateSet]:
        """All sets, any status, that mention ``record_id``."""
        descriptor = get_descriptor(entity_type)
        query = select(DuplicateSet).where(
            DuplicateSet.entity_type == descriptor.entity_type,
            or_(
                DuplicateSet.primary_id == record_id,
                DuplicateSet.secondary_id == record_id,
            ),
        ).order_by(DuplicateSet.created_at.desc())
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def identify_conflicts(self, set_id: UUID) -> list[ConflictField]:
        """Mergeable fields whose values differ between the two records."""
        duplicate_set = await self.get(set_id)
        descriptor = get_descriptor(duplicate_set.entity_type)

        primary = await self.session.get(descriptor.model, duplicate_set.primary_id)
        secondary = await self.session.get(descriptor.model, duplicate_set.secondary_id)
        if primary is None or secondary is None:
            missing = duplicate_set.primary_id if primary is None else duplicate_set.secondary_id
            raise EntityNotFound(f"{descriptor.entity_type.value} {missing} not found")

        conflicts = []
        for name, kind in descriptor.fields.items():
            primary_value = getattr(primary, name)
            secondary_value = getattr(secondary, name)
            if _differs(kind, primary_value, secondary_value):
                conflicts.append(
                    ConflictField(
                        field=name,
                        kind=kind.value,
                        primary_value=primary_value,
                        secondary_value=secondary_value,
                    )
                )
        return conflicts

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def propose(
        self,
        entity_type: Union[EntityType, str],
        id_a: UUID,
        id_b: UUID,
        score: Optional[int] = None,
        match_type: Optional[MatchType] = None,
        reason: Optional[str] = None,
    ) -> DuplicateSet:
        """
        Record a new pending candidate pair.

        Raises:
            MergeValidationError: ``id_a == id_b``
            DuplicateAlreadyTracked: a pending or merged set covers the pair
        """
        descriptor = get_descriptor(entity_type)
        primary_id, secondary_id = canonical_pair(id_a, id_b)

        existing = await self.find_active(descriptor.entity_type, primary_id, secondary_id)
        if existing is not None:
            raise DuplicateAlreadyTracked(
                f"Pair {primary_id}/{secondary_id} already tracked by "
                f"{existing.id} ({existing.status.value})"
            )

        duplicate_set = DuplicateSet(
            entity_type=descriptor.entity_type,
            primary_id=primary_id,
            secondary_id=secondary_id,
            status=DuplicateStatus.PENDING,
            score=score,
            match_type=MatchType(match_type) if match_type else None,
            reason=reason,
        )
        self.session.add(duplicate_set)
        try:
            await self.session.flush()
        except IntegrityError as e:
            # Lost a race with a concurrent proposal of the same pair
            raise DuplicateAlreadyTracked(
                f"Pair {primary_id}/{secondary_id} already tracked"
            ) from e

        logger.info(
            f"Proposed {descriptor.entity_type.value} duplicate set {duplicate_set.id} "
            f"({primary_id}/{secondary_id}, score={score})"
        )
        return duplicate_set

    async def _transition(
        self,
        set_id: UUID,
        target: DuplicateStatus,
        reviewer_id: Optional[UUID],
    ) -> DuplicateSet:
        duplicate_set = await self.get(set_id, lock=True)
        current = duplicate_set.status
        if target not in ALLOWED_TRANSITIONS[current]:
            raise InvalidStateTransition(
                f"Duplicate set {set_id} is {current.value}; "
                f"cannot move to {target.value}"
            )

        duplicate_set.status = target
        duplicate_set.reviewed_by_id = reviewer_id
        duplicate_set.reviewed_at = datetime.now(UTC)
        await self.session.flush()

        logger.info(
            f"Duplicate set {set_id}: {current.value} -> {target.value}",
            extra={"duplicate_set_id": str(set_id), "reviewer_id": str(reviewer_id)},
        )
        return duplicate_set

    async def ignore(self, set_id: UUID, reviewer_id: Optional[UUID]) -> DuplicateSet:
        """pending -> ignored."""
        return await self._transition(set_id, DuplicateStatus.IGNORED, reviewer_id)

    async def mark_merged(self, set_id: UUID, reviewer_id: Optional[UUID]) -> DuplicateSet:
        """pending -> merged. Only the merge executor calls this."""
        return await self._transition(set_id, DuplicateStatus.MERGED, reviewer_id)

    async def mark_pending_after_undo(
        self, set_id: UUID, reviewer_id: Optional[UUID]
    ) -> DuplicateSet:
        """merged -> pending. Only the undo executor calls this."""
        return await self._transition(set_id, DuplicateStatus.PENDING, reviewer_id)
