"""
Merge history model.

Every executed merge writes one row here before the merged record is
deleted. The row carries the snapshots undo replays, and it is never
deleted: an undo only stamps ``undone_at``.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from dedup.core.database import Base
from dedup.models.duplicate_set import EntityType, _enum_values
from dedup.models.types import JSONType


class MergeHistory(Base):
    """
    Audit and restore record of one merge.

    Attributes:
        id: UUID primary key
        entity_type: Type of both records
        survivor_id: Record that remained
        merged_id: Record that was deleted
        duplicate_set_id: Originating duplicate set, if any
        merged_snapshot: Versioned snapshot document of the deleted record
        relations_snapshot: Versioned snapshot of every relation row that
            pointed at the deleted record, with skip markers
        field_resolutions: Field changes applied to the survivor
        relations_migrated: Rows re-pointed to the survivor
        relations_skipped: Colliding rows deleted instead of re-pointed
        performed_by_id: Reviewer who approved the merge
        created_at: When the merge ran
        undone_at: When the merge was undone (None while in effect)
        undone_by_id: Who undid it
    """

    __tablename__ = "merge_history"
    __table_args__ = (
        # A record can only be merged away once at a time
        Index(
            "uq_merge_history_open_merged_id",
            "entity_type",
            "merged_id",
            unique=True,
            postgresql_where=text("undone_at IS NULL"),
            sqlite_where=text("undone_at IS NULL"),
        ),
        Index("ix_merge_history_survivor", "entity_type", "survivor_id"),
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
    survivor_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    merged_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    duplicate_set_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("duplicate_sets.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    merged_snapshot: Mapped[dict] = mapped_column(JSONType, nullable=False)
    relations_snapshot: Mapped[dict] = mapped_column(JSONType, nullable=False)
    field_resolutions: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)

    relations_migrated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    relations_skipped: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    performed_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    undone_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    undone_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    def __init__(self, **kwargs):
        """Initialize history record with defaults."""
        if "id" not in kwargs:
            kwargs["id"] = uuid.uuid4()
        if "field_resolutions" not in kwargs:
            kwargs["field_resolutions"] = {}
        super().__init__(**kwargs)

    @property
    def can_undo(self) -> bool:
        """Check if this merge can still be undone."""
        return self.undone_at is None

    def __repr__(self) -> str:
        """Return string representation."""
        state = "undone" if self.undone_at else "open"
        return (
            f"<MergeHistory {self.id} {self.entity_type.value} "
            f"{self.merged_id}->{self.survivor_id} ({state})>"
        )
