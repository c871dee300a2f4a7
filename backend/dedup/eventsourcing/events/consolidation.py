"""
Domain events for duplicate consolidation.

One event per committed merge and one per committed undo. Both use the
merge history id as aggregate id so a merge and its undo land on the
same stream.
"""

from __future__ import annotations

from typing import Optional
from uuid import UUID

from eventsource import DomainEvent, register_event
from pydantic import Field


@register_event
class DuplicatesMerged(DomainEvent):
    """
    Emitted after a merge transaction commits.

    Attributes:
        entity_type: Type of the merged records
        survivor_id: Record that remained
        merged_id: Record that was deleted
        merge_history_id: Audit/restore record of the merge
        duplicate_set_id: Originating duplicate set, if any
        relations_migrated: Rows moved to the survivor
        relations_skipped: Colliding rows deleted
        performed_by_id: Reviewer who approved the merge
    """

    event_type: str = "DuplicatesMerged"
    aggregate_type: str = "MergeHistory"

    entity_type: str = Field(description="organization or contact")
    survivor_id: UUID = Field(description="Record that remained")
    merged_id: UUID = Field(description="Record that was deleted")
    merge_history_id: UUID = Field(description="MergeHistory row id")
    duplicate_set_id: Optional[UUID] = Field(
        default=None, description="Originating duplicate set"
    )
    relations_migrated: int = Field(default=0, description="Rows moved to survivor")
    relations_skipped: int = Field(default=0, description="Colliding rows deleted")
    performed_by_id: Optional[UUID] = Field(default=None, description="Approving reviewer")


@register_event
class MergeUndone(DomainEvent):
    """
    Emitted after an undo transaction commits.

    Attributes:
        entity_type: Type of the restored record
        restored_id: Record brought back from the snapshot
        survivor_id: Record the merge had kept
        merge_history_id: History row that is now undone
        relations_restored: Rows pointed back at the restored record
        relations_reinserted: Colliding rows recreated
        relations_missing: Captured rows that no longer existed
        relations_moved: Captured rows left with the record now holding them
        performed_by_id: Who undid the merge
    """

    event_type: str = "MergeUndone"
    aggregate_type: str = "MergeHistory"

    entity_type: str = Field(description="organization or contact")
    restored_id: UUID = Field(description="Restored record")
    survivor_id: UUID = Field(description="Survivor of the original merge")
    merge_history_id: UUID = Field(description="MergeHistory row id")
    relations_restored: int = Field(default=0)
    relations_reinserted: int = Field(default=0)
    relations_missing: int = Field(default=0)
    relations_moved: int = Field(default=0)
    performed_by_id: Optional[UUID] = Field(default=None, description="Who undid the merge")
