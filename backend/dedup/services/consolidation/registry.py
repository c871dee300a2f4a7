"""
Static registry of deduplicated entity types.

Each entity type is described once: its model, which fields a reviewer
may resolve during a merge (and how they combine), and every relation
table holding a foreign key to it. Merge, undo and the relation migrator
dispatch on ``EntityType`` through this table instead of touching tables
by name at runtime.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession

from dedup.core.database import Base
from dedup.models.contact import Contact
from dedup.models.duplicate_set import EntityType
from dedup.models.individual_review import IndividualReview
from dedup.models.organization import Organization
from dedup.models.project import ContactProject
from dedup.services.consolidation.errors import UnknownEntityType
from dedup.services.consolidation.ratings import (
    recalculate_contact_rating,
    recalculate_organization_rating,
)


class FieldKind(str, Enum):
    """How a mergeable field behaves under ``combine``."""

    SCALAR = "scalar"  # No combine; pick one side
    ARRAY = "array"  # Order-preserving union
    NOTES = "notes"  # Concatenate with a divider


@dataclass(frozen=True)
class RelationDescriptor:
    """
    One relation table referencing an entity.

    Attributes:
        name: Relation name used in snapshots ("contacts", "projects", ...)
        model: Mapped class of the relation table
        foreign_key: Column holding the entity id
        unique_with: Other columns forming a unique key together with
            ``foreign_key``; rows of the merged record that would
            duplicate a survivor key collide
    """

    name: str
    model: type[Base]
    foreign_key: str
    unique_with: tuple[str, ...] = ()

    @property
    def column(self):
        return getattr(self.model, self.foreign_key)

    def unique_key(self, row: Any) -> Optional[tuple]:
        if not self.unique_with:
            return None
        return tuple(getattr(row, name) for name in self.unique_with)


@dataclass(frozen=True)
class EntityDescriptor:
    """Everything merge and undo need to know about an entity type."""

    entity_type: EntityType
    model: type[Base]
    fields: Mapping[str, FieldKind]
    relations: tuple[RelationDescriptor, ...]
    recalculate: Callable[[AsyncSession, Any], Awaitable[None]]
    derived_fields: frozenset[str] = field(
        default_factory=lambda: frozenset({"average_rating", "review_count"})
    )
    notes_field: str = "notes"

    def field_kind(self, name: str) -> Optional[FieldKind]:
        return self.fields.get(name)

    def relation(self, name: str) -> RelationDescriptor:
        for relation in self.relations:
            if relation.name == name:
                return relation
        raise KeyError(f"{self.entity_type.value} has no relation {name!r}")


_S = FieldKind.SCALAR

ORGANIZATION = EntityDescriptor(
    entity_type=EntityType.ORGANIZATION,
    model=Organization,
    fields={
        "name": _S,
        "type": _S,
        "phone": _S,
        "email": _S,
        "website": _S,
        "address": _S,
        "business_id": _S,
        "logo_url": _S,
        "is_vendor": _S,
        "contact_types": FieldKind.ARRAY,
        "disciplines": FieldKind.ARRAY,
        "notes": FieldKind.NOTES,
    },
    relations=(
        RelationDescriptor("contacts", Contact, "organization_id"),
    ),
    recalculate=recalculate_organization_rating,
)

CONTACT = EntityDescriptor(
    entity_type=EntityType.CONTACT,
    model=Contact,
    fields={
        "first_name": _S,
        "last_name": _S,
        "nickname": _S,
        "phone": _S,
        "phone_alt": _S,
        "email": _S,
        "email_alt": _S,
        "linkedin_url": _S,
        "photo_url": _S,
        "organization_id": _S,
        "role": _S,
        "department": _S,
        "status": _S,
        "contact_types": FieldKind.ARRAY,
        "disciplines": FieldKind.ARRAY,
        "notes": FieldKind.NOTES,
    },
    relations=(
        RelationDescriptor("individual_reviews", IndividualReview, "contact_id"),
        RelationDescriptor(
            "projects", ContactProject, "contact_id", unique_with=("project_id",)
        ),
    ),
    recalculate=recalculate_contact_rating,
)

ENTITY_REGISTRY: dict[EntityType, EntityDescriptor] = {
    EntityType.ORGANIZATION: ORGANIZATION,
    EntityType.CONTACT: CONTACT,
}


def resolve_entity_type(entity_type: Union[EntityType, str]) -> EntityType:
    """Coerce a string to ``EntityType``, raising ``UnknownEntityType``."""
    if isinstance(entity_type, EntityType):
        return entity_type
    try:
        return EntityType(entity_type)
    except ValueError:
        raise UnknownEntityType(f"Unknown entity type: {entity_type!r}") from None


def get_descriptor(entity_type: Union[EntityType, str]) -> EntityDescriptor:
    """Look up the descriptor for an entity type."""
    resolved = resolve_entity_type(entity_type)
    try:
        return ENTITY_REGISTRY[resolved]
    except KeyError:
        raise UnknownEntityType(f"No descriptor registered for {resolved.value}") from None
