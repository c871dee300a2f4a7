"""Per-contact reviews feeding the rating aggregates."""

from __future__ import annotations

import uuid
from typing import Optional

from sqlalchemy import Float, ForeignKey, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from dedup.core.database import Base


class IndividualReview(Base):
    """
    A review of one contact, optionally scoped to a project.

    Attributes:
        contact_id: Reviewed contact
        project_id: Project the review was written for (optional)
        avg_rating: Mean of the review's criteria scores
        reviewer_name: Who wrote the review
        comments: Free text
    """

    __tablename__ = "individual_reviews"

    contact_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("contacts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    project_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("projects.id", ondelete="SET NULL"),
        nullable=True,
    )
    avg_rating: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    reviewer_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    comments: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<IndividualReview {self.id} contact={self.contact_id} rating={self.avg_rating}>"
