"""
Duplicate set model for the human review lifecycle.

A duplicate set is one scored candidate pair of records of the same
entity type. Reviewers either merge it or ignore it; undoing a merge
puts it back in the queue.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    DateTime,
    Enum as SQLEnum,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from dedup.core.database import Base


class EntityType(str, enum.Enum):
    """Record types that can be deduplicated."""

    ORGANIZATION = "organization"
    CONTACT = "contact"


class DuplicateStatus(str, enum.Enum):
    """Status values for duplicate sets."""

    PENDING = "pending"  # Awaiting review
    MERGED = "merged"  # Merge executed
    IGNORED = "ignored"  # Reviewer decided these are distinct (terminal)


class MatchType(str, enum.Enum):
    """How the scorer found the pair."""

    EXACT_EMAIL = "exact_email"
    EXACT_PHONE = "exact_phone"
    EXACT_BUSINESS_ID = "exact_business_id"
    NAME_SIMILARITY = "name_similarity"
    MODEL_DETECTED = "model_detected"


# Statuses that count against the one-active-set-per-pair rule
ACTIVE_STATUSES = (DuplicateStatus.PENDING, DuplicateStatus.MERGED)


def _enum_values(obj):
    return [e.value for e in obj]


class DuplicateSet(Base):
    """
    Candidate duplicate pair awaiting or having undergone review.

    The pair is stored canonically (``primary_id`` sorts before
    ``secondary_id``) so the same unordered pair is never tracked twice.
    A partial unique index keeps at most one non-ignored set per pair.

    Attributes:
        id: UUID primary key
        entity_type: Which table both records live in
        primary_id: Lower id of the pair
        secondary_id: Higher id of the pair
        status: Current lifecycle status
        match_type: Scorer's match category
        score: Scorer confidence (0-100)
        reason: Scorer explanation
        reviewed_by_id: Last reviewer acting on the set
        reviewed_at: When that happened
        created_at: When the candidate was recorded
    """

    __tablename__ = "duplicate_sets"
    __table_args__ = (
        Index(
            "uq_duplicate_sets_active_pair",
            "entity_type",
            "primary_id",
            "secondary_id",
            unique=True,
            postgresql_where=text("status != 'ignored'"),
            sqlite_where=text("status != 'ignored'"),
        ),
        Index("ix_duplicate_sets_status_score", "status", "score"),
    )

    entity_type: Mapped[EntityType] = mapped_column(
        SQLEnum(
            EntityType,
            name="dedup_entity_type",
            native_enum=False,
            length=32,
            values_callable=_enum_values,
        ),
        nullable=False,
    )
    primary_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    secondary_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    status: Mapped[DuplicateStatus] = mapped_column(
        SQLEnum(
            DuplicateStatus,
            name="duplicate_status",
            native_enum=False,
            length=16,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=DuplicateStatus.PENDING,
    )

    match_type: Mapped[Optional[MatchType]] = mapped_column(
        SQLEnum(
            MatchType,
            name="duplicate_match_type",
            native_enum=False,
            length=32,
            values_callable=_enum_values,
        ),
        nullable=True,
    )
    score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    reviewed_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    def __init__(self, **kwargs):
        """Initialize duplicate set with defaults."""
        if "id" not in kwargs:
            kwargs["id"] = uuid.uuid4()
        if "status" not in kwargs:
            kwargs["status"] = DuplicateStatus.PENDING
        super().__init__(**kwargs)

    @property
    def is_pending(self) -> bool:
        """Check if the set is waiting for a reviewer."""
        return self.status == DuplicateStatus.PENDING

    @property
    def is_active(self) -> bool:
        """Pending and merged sets block re-proposal of the same pair."""
        return self.status in ACTIVE_STATUSES

    def other_id(self, record_id: uuid.UUID) -> uuid.UUID:
        """Return the id of the pair member that is not ``record_id``."""
        if record_id == self.primary_id:
            return self.secondary_id
        if record_id == self.secondary_id:
            return self.primary_id
        raise ValueError(f"{record_id} is not part of duplicate set {self.id}")

    def covers(self, a: uuid.UUID, b: uuid.UUID) -> bool:
        """Check if the set tracks the unordered pair ``{a, b}``."""
        return {a, b} == {self.primary_id, self.secondary_id}

    def __repr__(self) -> str:
        """Return string representation."""
        return (
            f"<DuplicateSet {self.id} {self.entity_type.value} "
            f"({self.status.value}) {self.primary_id}/{self.secondary_id}>"
        )
