"""
Organization model.

Organizations are one of the two deduplicated entity types. Contacts
reference them through ``contacts.organization_id``.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, Float, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from dedup.core.database import Base, utcnow
from dedup.models.types import JSONType


class Organization(Base):
    """
    A company, vendor or client.

    Attributes:
        name: Display name
        type: Free-form organization type (client, vendor, agency, ...)
        business_id: Registry/business identifier used by exact-match scoring
        contact_types: Tags describing how the organization is engaged
        disciplines: Trade or discipline tags
        notes: Free text, combined with a divider when merging
        average_rating: Weighted mean of member contact ratings (derived)
        review_count: Sum of member contact review counts (derived)
        updated_at: Last time a reviewer or merge changed the record
    """

    __tablename__ = "organizations"

    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    website: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    business_id: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    logo_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_vendor: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    contact_types: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    disciplines: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)

    average_rating: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    review_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    @property
    def display_name(self) -> str:
        return self.name

    def __repr__(self) -> str:
        return f"<Organization {self.id} {self.name!r}>"
