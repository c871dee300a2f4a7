"""
Snapshot codec.

Turns mapped rows into JSON-safe snapshot documents and back. Encoding
and decoding are driven by each column's SQLAlchemy type, so a UUID
column always comes back as ``uuid.UUID`` and a timestamp as
``datetime`` no matter how the JSON column stored it.
"""

from __future__ import annotations

import copy
import enum
import logging
import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Mapping

from sqlalchemy import inspect
from sqlalchemy.orm import ColumnProperty
from pydantic import ValidationError

from dedup.core.database import Base
from dedup.models.duplicate_set import EntityType
from dedup.schemas.snapshot import (
    SNAPSHOT_SCHEMA_VERSION,
    SUPPORTED_SCHEMA_VERSIONS,
    EntitySnapshot,
    RelationRowSnapshot,
    RelationsSnapshot,
)
from dedup.services.consolidation.errors import SnapshotVersionError

logger = logging.getLogger(__name__)


def column_python_type(prop: ColumnProperty) -> type | None:
    try:
        return prop.columns[0].type.python_type
    except NotImplementedError:
        return None


class SnapshotCodec:
    """
    Encode and decode entity and relation snapshots.

    Example:
        codec = SnapshotCodec()
        snapshot = codec.snapshot_entity(EntityType.CONTACT, contact)
        history.merged_snapshot = codec.dump(snapshot)

        restored = codec.build_instance(Contact, codec.load_entity(doc).fields)
    """

    # -------------------------------------------------------------------------
    # Column values
    # -------------------------------------------------------------------------

    @staticmethod
    def encode_value(value: Any) -> Any:
        """Convert a column value to a JSON-safe value."""
        if value is None:
            return None
        if isinstance(value, uuid.UUID):
            return str(value)
        if isinstance(value, (datetime, date)):
            return value.isoformat()
        if isinstance(value, Decimal):
            return str(value)
        if isinstance(value, enum.Enum):
            return value.value
        if isinstance(value, (list, dict)):
            return copy.deepcopy(value)
        return value

    @staticmethod
    def decode_value(prop: ColumnProperty, value: Any) -> Any:
        """Convert an encoded value back to the column's Python type."""
        if value is None:
            return None
        python_type = column_python_type(prop)
        if python_type is uuid.UUID:
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        if python_type is datetime:
            return value if isinstance(value, datetime) else datetime.fromisoformat(value)
        if python_type is date:
            return value if isinstance(value, date) else date.fromisoformat(value)
        if python_type is Decimal:
            return Decimal(str(value))
        if python_type is float and isinstance(value, int) and not isinstance(value, bool):
            return float(value)
        if isinstance(python_type, type) and issubclass(python_type, enum.Enum):
            return python_type(value)
        if isinstance(value, (list, dict)):
            return copy.deepcopy(value)
        return value

    def encode_row(self, instance: Base) -> dict[str, Any]:
        """Encode every mapped column of ``instance``."""
        mapper = inspect(type(instance))
        return {
            prop.key: self.encode_value(getattr(instance, prop.key))
            for prop in mapper.column_attrs
        }

    def decode_fields(self, model: type[Base], fields: Mapping[str, Any]) -> dict[str, Any]:
        """Decode snapshot fields for ``model``; columns no longer mapped are dropped."""
        mapper = inspect(model)
        decoded: dict[str, Any] = {}
        for key, value in fields.items():
            prop = mapper.column_attrs.get(key)
            if prop is None:
                logger.warning(
                    f"Snapshot field {key!r} has no column on {model.__name__}; ignoring"
                )
                continue
            decoded[key] = self.decode_value(prop, value)
        return decoded

    def build_instance(self, model: type[Base], fields: Mapping[str, Any]) -> Base:
        """Create a transient instance of ``model`` from snapshot fields."""
        return model(**self.decode_fields(model, fields))

    # -------------------------------------------------------------------------
    # Documents
    # -------------------------------------------------------------------------

    def snapshot_entity(self, entity_type: EntityType, instance: Base) -> EntitySnapshot:
        return EntitySnapshot(
            schema_version=SNAPSHOT_SCHEMA_VERSION,
            entity_type=entity_type,
            id=instance.id,
            fields=self.encode_row(instance),
        )

    def snapshot_relation_row(
        self,
        relation: str,
        foreign_key: str,
        row: Base,
        skipped: bool = False,
    ) -> RelationRowSnapshot:
        return RelationRowSnapshot(
            relation=relation,
            row_id=row.id,
            foreign_key=foreign_key,
            original_value=getattr(row, foreign_key),
            skipped=skipped,
            fields=self.encode_row(row),
        )

    @staticmethod
    def dump(snapshot: EntitySnapshot | RelationsSnapshot) -> dict[str, Any]:
        """Serialize a snapshot document for a JSON column."""
        return snapshot.model_dump(mode="json")

    @staticmethod
    def _check_version(document: Mapping[str, Any], kind: str) -> None:
        version = document.get("schema_version") if isinstance(document, Mapping) else None
        if version not in SUPPORTED_SCHEMA_VERSIONS:
            raise SnapshotVersionError(
                f"Unsupported {kind} snapshot schema version: {version!r}"
            )

    def load_entity(self, document: Mapping[str, Any]) -> EntitySnapshot:
        """Validate a stored entity snapshot document."""
        self._check_version(document, "entity")
        try:
            return EntitySnapshot.model_validate(document)
        except ValidationError as e:
            raise SnapshotVersionError(f"Malformed entity snapshot: {e}") from e

    def load_relations(self, document: Mapping[str, Any]) -> RelationsSnapshot:
        """Validate a stored relations snapshot document."""
        self._check_version(document, "relations")
        try:
            return RelationsSnapshot.model_validate(document)
        except ValidationError as e:
            raise SnapshotVersionError(f"Malformed relations snapshot: {e}") from e
