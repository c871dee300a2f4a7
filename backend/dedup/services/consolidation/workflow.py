"""
Reviewer workflow over the merge/undo engine.

Entry points the host application wires to its API and authorization
layer: queue candidates from the scorer, ignore or approve a pair, undo
a merged pair, and the read queries the review screen needs. Callers are
expected to have authorized the action already.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Iterable, Optional, Union
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dedup.core.config import settings
from dedup.core.database import transaction
from dedup.models.duplicate_set import DuplicateSet, DuplicateStatus, EntityType, MatchType
from dedup.models.merge_history import MergeHistory
from dedup.schemas.consolidation import ConflictField, IngestReport, ScoredCandidate
from dedup.services.consolidation.duplicate_sets import DuplicateSetManager
from dedup.services.consolidation.errors import (
    DuplicateAlreadyTracked,
    HistoryNotFound,
    InvalidStateTransition,
    MergeValidationError,
)
from dedup.services.consolidation.field_resolution import FieldResolutionsInput
from dedup.services.consolidation.merge_service import MergeResult, MergeService
from dedup.services.consolidation.registry import get_descriptor
from dedup.services.consolidation.undo_service import UndoResult, UndoService

if TYPE_CHECKING:
    from eventsource import EventBus

logger = logging.getLogger(__name__)


class ConsolidationWorkflow:
    """
    Facade combining the duplicate set manager, merge and undo.

    Every method is its own unit of work. Queue operations use the
    default isolation level; merge and undo delegate to their services,
    which run serializable.

    Example:
        workflow = ConsolidationWorkflow(get_session_factory(), create_event_bus())
        report = await workflow.ingest_candidates(scorer_output)
        await workflow.approve_merge(set_id, survivor_id, reviewer_id)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        event_bus: Optional["EventBus"] = None,
        merge_service: Optional[MergeService] = None,
        undo_service: Optional[UndoService] = None,
        isolation_level: Optional[str] = None,
    ):
        self.session_factory = session_factory
        self.isolation_level = isolation_level or settings.DEFAULT_ISOLATION_LEVEL
        self.merge_service = merge_service or MergeService(session_factory, event_bus)
        self.undo_service = undo_service or UndoService(session_factory, event_bus)

    def _transaction(self):
        return transaction(self.session_factory, self.isolation_level)

    # =========================================================================
    # Queue
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
        async with self._transaction() as session:
            return await DuplicateSetManager(session).propose(
                entity_type, id_a, id_b, score=score, match_type=match_type, reason=reason
            )

    async def ingest_candidates(
        self,
        candidates: Iterable[ScoredCandidate],
        min_score: Optional[int] = None,
    ) -> IngestReport:
        """
        Queue scorer output.

        Pairs scoring below ``min_score`` (default
        ``settings.DUPLICATE_MIN_SCORE``) are dropped, as are pairs that
        already have a pending or merged set. Each pair is proposed in
        its own transaction so one rejected pair never blocks the rest.
        """
        threshold = settings.DUPLICATE_MIN_SCORE if min_score is None else min_score
        report = IngestReport()

        for candidate in candidates:
            report.received += 1
            if candidate.score < threshold:
                report.below_threshold += 1
                continue
            try:
                duplicate_set = await self.propose(
                    candidate.entity_type,
                    candidate.id_a,
                    candidate.id_b,
                    score=round(candidate.score),
                    match_type=candidate.match_type,
                    reason=candidate.reason,
                )
            except DuplicateAlreadyTracked:
                report.already_tracked += 1
            except MergeValidationError as e:
                logger.warning(f"Dropping invalid candidate {candidate}: {e}")
                report.invalid += 1
            else:
                report.saved += 1
                report.duplicate_set_ids.append(duplicate_set.id)

        logger.info(
            f"Ingested duplicate candidates: received={report.received}, "
            f"saved={report.saved}, already_tracked={report.already_tracked}, "
            f"below_threshold={report.below_threshold}, invalid={report.invalid}"
        )
        return report

    async def ignore(self, set_id: UUID, reviewer_id: Optional[UUID]) -> DuplicateSet:
        async with self._transaction() as session:
            return await DuplicateSetManager(session).ignore(set_id, reviewer_id)

    # =========================================================================
    # Merge / undo
    # =========================================================================

    async def approve_merge(
        self,
        set_id: UUID,
        survivor_id: UUID,
        reviewer_id: Optional[UUID],
        field_resolutions: FieldResolutionsInput = None,
    ) -> MergeResult:
        """Merge a pending pair, keeping ``survivor_id``."""
        async with self._transaction() as session:
            duplicate_set = await DuplicateSetManager(session).get(set_id)

        if not duplicate_set.is_pending:
            raise InvalidStateTransition(
                f"Duplicate set {set_id} is {duplicate_set.status.value}; only pending sets can be merged"
            )
        try:
            merged_id = duplicate_set.other_id(survivor_id)
        except ValueError as e:
            raise MergeValidationError(str(e)) from e

        return await self.merge_service.merge(
            duplicate_set.entity_type,
            survivor_id=survivor_id,
            merged_id=merged_id,
            performed_by_id=reviewer_id,
            field_resolutions=field_resolutions,
            duplicate_set_id=set_id,
        )

    async def undo_for_set(self, set_id: UUID, performed_by_id: Optional[UUID]) -> UndoResult:
        """Undo the merge of a merged pair; the set returns to pending."""
        async with self._transaction() as session:
            duplicate_set = await DuplicateSetManager(session).get(set_id)
            if duplicate_set.status != DuplicateStatus.MERGED:
                raise InvalidStateTransition(
                    f"Duplicate set {set_id} is {duplicate_set.status.value}; only merged sets can be undone"
                )
            history = await self._latest_open_history(session, duplicate_set)

        if history is None:
            raise HistoryNotFound(f"No open merge history for duplicate set {set_id}")
        return await self.undo_service.undo(history.id, performed_by_id)

    async def undo(self, merge_history_id: UUID, performed_by_id: Optional[UUID]) -> UndoResult:
        return await self.undo_service.undo(merge_history_id, performed_by_id)

    async def _latest_open_history(
        self, session: AsyncSession, duplicate_set: DuplicateSet
    ) -> Optional[MergeHistory]:
        a, b = duplicate_set.primary_id, duplicate_set.secondary_id
        result = await session.execute(
            select(MergeHistory)
            .where(
                MergeHistory.entity_type == duplicate_set.entity_type,
                MergeHistory.undone_at.is_(None),
                or_(
                    (MergeHistory.survivor_id == a) & (MergeHistory.merged_id == b),
                    (MergeHistory.survivor_id == b) & (MergeHistory.merged_id == a),
                ),
            )
            .order_by(MergeHistory.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    # =========================================================================
    # Read side
    # =========================================================================

    async def list_sets(
        self,
        status: Optional[DuplicateStatus] = DuplicateStatus.PENDING,
        entity_type: Optional[Union[EntityType, str]] = None,
        limit: Optional[int] = None,
        include_stale: bool = False,
    ) -> list[DuplicateSet]:
        async with self._transaction() as session:
            return await DuplicateSetManager(session).list_sets(
                status, entity_type, limit, include_stale=include_stale
            )

    async def status_counts(
        self, entity_type: Optional[Union[EntityType, str]] = None
    ) -> dict[DuplicateStatus, int]:
        async with self._transaction() as session:
            return await DuplicateSetManager(session).status_counts(entity_type)

    async def conflicts(self, set_id: UUID) -> list[ConflictField]:
        async with self._transaction() as session:
            return await DuplicateSetManager(session).identify_conflicts(set_id)

    async def history_for(
        self, entity_type: Union[EntityType, str], entity_id: UUID
    ) -> list[MergeHistory]:
        """Merges where the record was survivor or merged record, newest first."""
        descriptor = get_descriptor(entity_type)
        async with self._transaction() as session:
            result = await session.execute(
                select(MergeHistory)
                .where(
                    MergeHistory.entity_type == descriptor.entity_type,
                    or_(
                        MergeHistory.survivor_id == entity_id,
                        MergeHistory.merged_id == entity_id,
                    ),
                )
                .order_by(MergeHistory.created_at.desc())
            )
            return list(result.scalars().all())
