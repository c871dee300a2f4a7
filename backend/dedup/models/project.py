"""Projects and the contact-project link table."""

from __future__ import annotations

import uuid
from typing import Optional

from sqlalchemy import ForeignKey, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from dedup.core.database import Base


class Project(Base):
    """A downstream record contacts can be linked to."""

    __tablename__ = "projects"

    name: Mapped[str] = mapped_column(String(255), nullable=False)

    def __repr__(self) -> str:
        return f"<Project {self.id} {self.name!r}>"


class ContactProject(Base):
    """
    Link between a contact and a project.

    A contact can be linked to a project only once, which is the
    constraint merges have to respect when both duplicates share a
    project.
    """

    __tablename__ = "contact_projects"
    __table_args__ = (
        UniqueConstraint("contact_id", "project_id", name="uq_contact_projects_contact_project"),
    )

    contact_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("contacts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    project_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    role_in_project: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    def __repr__(self) -> str:
        return f"<ContactProject contact={self.contact_id} project={self.project_id}>"
