"""Domain event definitions."""

from dedup.eventsourcing.events.consolidation import DuplicatesMerged, MergeUndone

__all__ = ["DuplicatesMerged", "MergeUndone"]
