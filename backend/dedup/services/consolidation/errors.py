"""
Error taxonomy for duplicate consolidation.

Three families callers can tell apart:

- validation errors, raised before any transaction opens
- state conflicts and missing records, detected inside the transaction
  after rows are locked ("someone already did this")
- ``MergeFailed`` / ``UndoFailed`` for everything else, with the
  underlying exception on ``cause``
"""

from __future__ import annotations

from typing import Optional


class ConsolidationError(Exception):
    """Base class for all consolidation errors."""

    pass


# =============================================================================
# Validation
# =============================================================================


class MergeValidationError(ConsolidationError):
    """Request is malformed and was rejected before touching the store."""

    pass


class SelfMergeRejected(MergeValidationError):
    """Survivor and merged record are the same record."""

    pass


class UnknownEntityType(MergeValidationError):
    """Entity type has no registered descriptor."""

    pass


# =============================================================================
# Missing records
# =============================================================================


class RecordNotFoundError(ConsolidationError):
    """A referenced row does not exist."""

    pass


class EntityNotFound(RecordNotFoundError):
    """Survivor or merged record does not exist."""

    pass


class HistoryNotFound(RecordNotFoundError):
    """Merge history row does not exist."""

    pass


class DuplicateSetNotFound(RecordNotFoundError):
    """Duplicate set does not exist."""

    pass


# =============================================================================
# State conflicts
# =============================================================================


class StateConflictError(ConsolidationError):
    """Current state forbids the operation."""

    pass


class AlreadyMerged(StateConflictError):
    """The merged record is already merged away by an open history."""

    pass


class AlreadyUndone(StateConflictError):
    """The merge history was already undone."""

    pass


class InvalidStateTransition(StateConflictError):
    """Duplicate set status does not allow the requested transition."""

    pass


class DuplicateAlreadyTracked(StateConflictError):
    """An active duplicate set already covers the pair."""

    pass


# =============================================================================
# Snapshots and transactional failures
# =============================================================================


class SnapshotVersionError(ConsolidationError):
    """Snapshot document has a schema version this code cannot read."""

    pass


class _OperationFailed(ConsolidationError):
    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class MergeFailed(_OperationFailed):
    """Merge transaction failed and was rolled back."""

    pass


class UndoFailed(_OperationFailed):
    """Undo transaction failed and was rolled back."""

    pass


class ConcurrentUpdateConflict(StateConflictError):
    """A concurrent transaction changed the same rows first."""

    pass


# SQLSTATE codes the store reports when a concurrent transaction won
_SERIALIZATION_FAILURES = frozenset({"40001", "40P01"})


def _sqlstate(exc: BaseException) -> Optional[str]:
    orig = getattr(exc, "orig", None)
    for source in (orig, exc):
        if source is None:
            continue
        for attr in ("sqlstate", "pgcode"):
            code = getattr(source, attr, None)
            if isinstance(code, str):
                return code
    return None


def translate_store_error(exc: BaseException) -> Optional[ConsolidationError]:
    """
    Map store errors that mean "someone else got there first" to state
    conflicts. Returns None for anything else.
    """
    if _sqlstate(exc) in _SERIALIZATION_FAILURES:
        return ConcurrentUpdateConflict(
            f"Concurrent transaction modified the same records: {exc}"
        )
    if "uq_merge_history_open_merged_id" in str(exc):
        return AlreadyMerged("Record was merged away by a concurrent transaction")
    return None
