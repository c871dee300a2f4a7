"""
Database models.

All models must be imported here so ``Base.metadata`` knows every table
before ``create_all`` runs.
"""

from dedup.models.contact import Contact
from dedup.models.duplicate_set import (
    ACTIVE_STATUSES,
    DuplicateSet,
    DuplicateStatus,
    EntityType,
    MatchType,
)
from dedup.models.individual_review import IndividualReview
from dedup.models.merge_history import MergeHistory
from dedup.models.organization import Organization
from dedup.models.project import ContactProject, Project

__all__ = [
    "ACTIVE_STATUSES",
    "Contact",
    "ContactProject",
    "DuplicateSet",
    "DuplicateStatus",
    "EntityType",
    "IndividualReview",
    "MatchType",
    "MergeHistory",
    "Organization",
    "Project",
]
