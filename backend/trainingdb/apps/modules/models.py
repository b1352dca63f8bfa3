# backend/trainingdb/apps/modules/models.py

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
)
from sqlalchemy.orm import relationship

from ...database import DocumentBase
from ...utils.identifiers import generate_module_id


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ModuleRecord(DocumentBase):
    """
    One module document.

    The nested body (sessions, assigned users, legacy presence, ...) lives
    in `document`; the columns next to it are copies kept for lookups.
    """

    __tablename__ = "module_documents"
    __table_args__ = (
        Index("idx_module_documents_archived", "archived"),
        Index("idx_module_documents_program_title", "cycle_program_title"),
    )

    id = Column(String(64), primary_key=True, default=generate_module_id)
    title = Column(String(255), nullable=True, index=True)

    cycle_program_id = Column(Integer, nullable=True, index=True)
    cycle_program_title = Column(
        String(255),
        nullable=True,
        doc="Legacy free-text link to a cycle/program title.",
    )

    archived = Column(Boolean, nullable=False, default=False)
    document = Column(JSON, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    assignments = relationship(
        "ModuleAssignment",
        back_populates="module",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<ModuleRecord id={self.id} title={self.title!r} archived={self.archived}>"


class ModuleAssignment(DocumentBase):
    """
    Index of `document.assigned_users`: one row per (module, user).

    Rewritten together with the document on every save.
    """

    __tablename__ = "module_assignments"
    __table_args__ = (
        Index("idx_module_assignments_user", "user_id"),
    )

    module_id = Column(
        String(64),
        ForeignKey("module_documents.id", ondelete="CASCADE"),
        primary_key=True,
    )
    user_id = Column(Integer, primary_key=True)

    module = relationship("ModuleRecord", back_populates="assignments")

    def __repr__(self) -> str:
        return f"<ModuleAssignment module={self.module_id} user={self.user_id}>"
