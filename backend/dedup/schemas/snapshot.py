"""
Snapshot documents stored on merge history rows.

Both documents are self-describing and carry ``schema_version`` so old
history rows stay restorable after the layout changes. Values inside
``fields`` are JSON-safe encodings of column values; the snapshot codec
turns them back into column-typed Python values.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from dedup.models.duplicate_set import EntityType

SNAPSHOT_SCHEMA_VERSION = 1

# Versions the codec knows how to read
SUPPORTED_SCHEMA_VERSIONS = frozenset({1})


class EntitySnapshot(BaseModel):
    """Full column state of the record deleted by a merge."""

    schema_version: int = Field(
        default=SNAPSHOT_SCHEMA_VERSION, description="Snapshot layout version"
    )
    entity_type: EntityType = Field(description="Type of the captured record")
    id: UUID = Field(description="Original identity, reused on restore")
    fields: dict[str, Any] = Field(
        default_factory=dict, description="Column name -> encoded value"
    )


class RelationRowSnapshot(BaseModel):
    """One dependent row as it looked before migration."""

    relation: str = Field(description="Relation name from the entity registry")
    row_id: UUID = Field(description="Primary key of the dependent row")
    foreign_key: str = Field(description="Column that referenced the merged record")
    original_value: UUID = Field(description="Foreign key value before migration")
    skipped: bool = Field(
        default=False,
        description="Row collided with a survivor row and was deleted instead of migrated",
    )
    fields: dict[str, Any] = Field(
        default_factory=dict, description="Column name -> encoded value"
    )


class RelationsSnapshot(BaseModel):
    """Every dependent row of the merged record, in capture order."""

    schema_version: int = Field(
        default=SNAPSHOT_SCHEMA_VERSION, description="Snapshot layout version"
    )
    entity_type: EntityType = Field(description="Type of the merged record")
    rows: list[RelationRowSnapshot] = Field(default_factory=list)

    @property
    def migrated_rows(self) -> list[RelationRowSnapshot]:
        return [row for row in self.rows if not row.skipped]

    @property
    def skipped_rows(self) -> list[RelationRowSnapshot]:
        return [row for row in self.rows if row.skipped]
