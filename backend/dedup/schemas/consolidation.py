"""
Consolidation request/result schemas.

Inputs the reviewer workflow accepts (field resolutions, scored
candidates) and the read models it returns.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

from dedup.models.duplicate_set import EntityType, MatchType


# =============================================================================
# Field Resolution
# =============================================================================


class ResolutionSource(str, Enum):
    """Where a resolved survivor field value comes from."""

    SURVIVOR = "survivor"  # Keep survivor value (default)
    MERGED = "merged"  # Copy the merged record's value
    VALUE = "value"  # Use an explicit value
    COMBINE = "combine"  # Union arrays / append notes


class FieldResolution(BaseModel):
    """Reviewer decision for one survivor field."""

    field: str = Field(description="Field name on the entity model")
    source: ResolutionSource = Field(
        default=ResolutionSource.VALUE, description="Where the value comes from"
    )
    value: Any = Field(default=None, description="Explicit value when source=value")

    @model_validator(mode="after")
    def check_value_source(self) -> "FieldResolution":
        if self.source != ResolutionSource.VALUE and self.value is not None:
            raise ValueError(f"value is only allowed with source='value' (field {self.field})")
        return self


class FieldChange(BaseModel):
    """A change actually applied to the survivor, stored for audit."""

    source: ResolutionSource
    value: Any = None


# =============================================================================
# Duplicate Review
# =============================================================================


class ConflictField(BaseModel):
    """A field whose value differs between the two records of a pair."""

    field: str
    kind: str = Field(description="scalar, array or notes")
    primary_value: Any = None
    secondary_value: Any = None


class ScoredCandidate(BaseModel):
    """A pair produced by the external duplicate scorer."""

    entity_type: EntityType
    id_a: UUID
    id_b: UUID
    score: float = Field(ge=0, le=100, description="Confidence as a percentage")
    match_type: Optional[MatchType] = None
    reason: Optional[str] = None


class IngestReport(BaseModel):
    """Outcome of feeding a batch of scored candidates into the queue."""

    received: int = 0
    saved: int = 0
    already_tracked: int = 0
    below_threshold: int = 0
    invalid: int = 0
    duplicate_set_ids: list[UUID] = Field(default_factory=list)
