"""
Unit tests for the entity registry.
"""

import pytest

from dedup.models.contact import Contact
from dedup.models.duplicate_set import EntityType
from dedup.models.individual_review import IndividualReview
from dedup.models.project import ContactProject
from dedup.services.consolidation.errors import MergeValidationError, UnknownEntityType
from dedup.services.consolidation.registry import (
    ENTITY_REGISTRY,
    FieldKind,
    get_descriptor,
    resolve_entity_type,
)


class TestRegistry:
    def test_every_entity_type_registered(self):
        assert set(ENTITY_REGISTRY) == set(EntityType)

    def test_lookup_by_string(self):
        assert get_descriptor("contact").model is Contact

    def test_unknown_type_is_validation_error(self):
        with pytest.raises(UnknownEntityType):
            get_descriptor("vendor")
        assert issubclass(UnknownEntityType, MergeValidationError)

    def test_resolve_passthrough(self):
        assert resolve_entity_type(EntityType.ORGANIZATION) is EntityType.ORGANIZATION

    def test_contact_relations(self):
        descriptor = get_descriptor(EntityType.CONTACT)
        reviews = descriptor.relation("individual_reviews")
        projects = descriptor.relation("projects")

        assert reviews.model is IndividualReview
        assert reviews.unique_with == ()
        assert projects.model is ContactProject
        assert projects.foreign_key == "contact_id"
        assert projects.unique_with == ("project_id",)

    def test_organization_relations(self):
        descriptor = get_descriptor(EntityType.ORGANIZATION)
        assert [r.name for r in descriptor.relations] == ["contacts"]
        assert descriptor.relation("contacts").column is Contact.organization_id

    def test_field_kinds(self):
        descriptor = get_descriptor(EntityType.ORGANIZATION)
        assert descriptor.field_kind("disciplines") == FieldKind.ARRAY
        assert descriptor.field_kind("notes") == FieldKind.NOTES
        assert descriptor.field_kind("name") == FieldKind.SCALAR
        assert descriptor.field_kind("average_rating") is None

    def test_unknown_relation(self):
        with pytest.raises(KeyError):
            get_descriptor(EntityType.CONTACT).relation("contacts")
