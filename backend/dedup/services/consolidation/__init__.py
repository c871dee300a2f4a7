"""
Duplicate consolidation services.

This package provides the merge/undo engine for duplicate records:
- DuplicateSetManager: review lifecycle of candidate pairs
- MergeService: transactional merge with snapshots and relation migration
- UndoService: replay of a merge's snapshots
- RelationMigrator / SnapshotCodec: building blocks used by both
- ConsolidationWorkflow: reviewer-facing facade
"""

from dedup.services.consolidation.audit import AuditPublisher
from dedup.services.consolidation.duplicate_sets import (
    ALLOWED_TRANSITIONS,
    DuplicateSetManager,
    canonical_pair,
)
from dedup.services.consolidation.errors import (
    AlreadyMerged,
    AlreadyUndone,
    ConcurrentUpdateConflict,
    ConsolidationError,
    DuplicateAlreadyTracked,
    DuplicateSetNotFound,
    EntityNotFound,
    HistoryNotFound,
    InvalidStateTransition,
    MergeFailed,
    MergeValidationError,
    RecordNotFoundError,
    SelfMergeRejected,
    SnapshotVersionError,
    StateConflictError,
    UndoFailed,
    UnknownEntityType,
)
from dedup.services.consolidation.merge_service import MergeResult, MergeService
from dedup.services.consolidation.registry import (
    ENTITY_REGISTRY,
    EntityDescriptor,
    FieldKind,
    RelationDescriptor,
    get_descriptor,
)
from dedup.services.consolidation.relation_migrator import (
    DemigrationResult,
    RelationMigrator,
)
from dedup.services.consolidation.snapshot_codec import SnapshotCodec
from dedup.services.consolidation.undo_service import UndoResult, UndoService
from dedup.services.consolidation.workflow import ConsolidationWorkflow

__all__ = [
    # Services
    "ConsolidationWorkflow",
    "DuplicateSetManager",
    "MergeService",
    "UndoService",
    "RelationMigrator",
    "SnapshotCodec",
    "AuditPublisher",
    # Results
    "MergeResult",
    "UndoResult",
    "DemigrationResult",
    # Registry
    "ENTITY_REGISTRY",
    "EntityDescriptor",
    "FieldKind",
    "RelationDescriptor",
    "get_descriptor",
    # State machine
    "ALLOWED_TRANSITIONS",
    "canonical_pair",
    # Errors
    "ConsolidationError",
    "MergeValidationError",
    "SelfMergeRejected",
    "UnknownEntityType",
    "RecordNotFoundError",
    "EntityNotFound",
    "HistoryNotFound",
    "DuplicateSetNotFound",
    "StateConflictError",
    "AlreadyMerged",
    "AlreadyUndone",
    "InvalidStateTransition",
    "DuplicateAlreadyTracked",
    "ConcurrentUpdateConflict",
    "SnapshotVersionError",
    "MergeFailed",
    "UndoFailed",
]
