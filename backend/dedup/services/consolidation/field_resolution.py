"""
Field-level conflict resolution applied to the survivor during a merge.

Reviewers pick per field whether the survivor keeps its value, takes the
merged record's value, gets an explicit value, or combines both sides.
Fields nobody mentions keep the survivor's value.
"""

from __future__ import annotations

import copy
import logging
from datetime import datetime
from typing import Any, Iterable, Mapping, Optional, Union

from pydantic import ValidationError
from sqlalchemy import inspect
from sqlalchemy.orm import ColumnProperty

from dedup.schemas.consolidation import FieldChange, FieldResolution, ResolutionSource
from dedup.services.consolidation.errors import MergeValidationError
from dedup.services.consolidation.registry import EntityDescriptor, FieldKind
from dedup.services.consolidation.snapshot_codec import SnapshotCodec, column_python_type

logger = logging.getLogger(__name__)

FieldResolutionsInput = Optional[
    Union[Mapping[str, Any], Iterable[Union[FieldResolution, Mapping[str, Any]]]]
]

NOTES_DIVIDER = "--- Merged from {name} ({date}) ---"


def normalize_resolutions(
    descriptor: EntityDescriptor,
    resolutions: FieldResolutionsInput,
) -> list[FieldResolution]:
    """
    Validate reviewer input against the entity's mergeable fields.

    A plain ``{field: value}`` mapping means "use this value" for each
    entry. Raises ``MergeValidationError`` for unknown or derived fields,
    repeated fields, and ``combine`` on a scalar field.
    """
    if not resolutions:
        return []

    try:
        if isinstance(resolutions, Mapping):
            items = [
                FieldResolution(field=name, source=ResolutionSource.VALUE, value=value)
                for name, value in resolutions.items()
            ]
        else:
            items = [
                item if isinstance(item, FieldResolution) else FieldResolution.model_validate(item)
                for item in resolutions
            ]
    except ValidationError as e:
        raise MergeValidationError(f"Invalid field resolution: {e}") from e

    codec = SnapshotCodec()
    mapper = inspect(descriptor.model)
    seen: set[str] = set()
    for item in items:
        if item.field in descriptor.derived_fields:
            raise MergeValidationError(
                f"{item.field} is derived and cannot be resolved manually"
            )
        kind = descriptor.field_kind(item.field)
        if kind is None:
            raise MergeValidationError(
                f"Unknown {descriptor.entity_type.value} field: {item.field}"
            )
        if item.field in seen:
            raise MergeValidationError(f"Field {item.field} resolved more than once")
        if item.source == ResolutionSource.COMBINE and kind == FieldKind.SCALAR:
            raise MergeValidationError(f"Field {item.field} cannot be combined")
        if item.source == ResolutionSource.VALUE:
            _check_value(codec, mapper.column_attrs[item.field], kind, item)
        seen.add(item.field)

    return items


def _check_value(
    codec: SnapshotCodec, prop: ColumnProperty, kind: FieldKind, item: FieldResolution
) -> None:
    """Reject an explicit value the column could not store."""
    value = item.value
    column = prop.columns[0]
    invalid = MergeValidationError(f"Invalid value for {item.field}: {value!r}")

    if value is None:
        if not column.nullable:
            raise invalid
        return

    if kind == FieldKind.ARRAY:
        if not isinstance(value, list):
            raise invalid
        return

    python_type = column_python_type(prop)
    if python_type is bool:
        valid = isinstance(value, bool)
    elif python_type is str:
        max_length = getattr(column.type, "length", None)
        valid = isinstance(value, str) and (max_length is None or len(value) <= max_length)
    elif python_type is int:
        valid = isinstance(value, int) and not isinstance(value, bool)
    elif python_type is float:
        valid = isinstance(value, (int, float)) and not isinstance(value, bool)
    else:
        try:
            codec.decode_value(prop, value)
        except (TypeError, ValueError) as e:
            raise invalid from e
        return

    if not valid:
        raise invalid


def union_values(survivor_values: Optional[list], merged_values: Optional[list]) -> list:
    """Order-preserving union, survivor entries first."""
    combined: list = []
    for value in list(survivor_values or []) + list(merged_values or []):
        if value not in combined:
            combined.append(value)
    return combined


def combine_notes(
    survivor_notes: Optional[str],
    merged_notes: Optional[str],
    merged_name: str,
    merged_at: datetime,
) -> Optional[str]:
    """Append the merged record's notes under a divider naming where they came from."""
    if not merged_notes:
        return survivor_notes
    if not survivor_notes:
        return merged_notes
    divider = NOTES_DIVIDER.format(name=merged_name, date=merged_at.date().isoformat())
    return f"{survivor_notes}\n\n{divider}\n{merged_notes}"


def apply_resolutions(
    descriptor: EntityDescriptor,
    survivor: Any,
    merged: Any,
    resolutions: list[FieldResolution],
    merged_at: datetime,
    codec: Optional[SnapshotCodec] = None,
) -> dict[str, dict[str, Any]]:
    """
    Apply normalized resolutions to ``survivor`` in place.

    Returns:
        ``{field: {"source": ..., "value": ...}}`` with JSON-safe values,
        for the merge history audit record
    """
    codec = codec or SnapshotCodec()
    mapper = inspect(descriptor.model)
    changes: dict[str, dict[str, Any]] = {}

    for resolution in resolutions:
        name = resolution.field
        kind = descriptor.field_kind(name)

        if resolution.source == ResolutionSource.SURVIVOR:
            continue
        elif resolution.source == ResolutionSource.MERGED:
            value = copy.deepcopy(getattr(merged, name))
        elif resolution.source == ResolutionSource.VALUE:
            value = codec.decode_value(mapper.column_attrs[name], resolution.value)
        elif kind == FieldKind.ARRAY:
            value = union_values(getattr(survivor, name), getattr(merged, name))
        else:
            value = combine_notes(
                getattr(survivor, name),
                getattr(merged, name),
                merged.display_name,
                merged_at,
            )

        setattr(survivor, name, value)
        changes[name] = FieldChange(
            source=resolution.source, value=codec.encode_value(value)
        ).model_dump(mode="json")

    if changes:
        logger.debug(f"Resolved survivor fields {sorted(changes)} on {survivor.id}")
    return changes
