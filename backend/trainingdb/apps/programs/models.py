# backend/trainingdb/apps/programs/models.py

from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from ...database import Base
from ...utils.identifiers import generate_uuid7


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# ENUMS
# ---------------------------------------------------------------------------


class CycleProgramType(str, enum.Enum):
    """
    - CYCLE: every linked module is mandatory
    - PROGRAM: the learner selects a subset of linked modules
    """

    CYCLE = "cycle"
    PROGRAM = "program"


class ProgramKind(str, enum.Enum):
    MARDI_DU_PARTAGE = "mardi_du_partage"
    BATI_PRO = "bati_pro"
    OTHER = "other"


class EnrollmentStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class PresenceStatus(str, enum.Enum):
    PRESENT = "present"
    ABSENT = "absent"


class SyncMode(str, enum.Enum):
    RESET_AND_SYNC = "reset_and_sync"
    RECONCILE = "reconcile"


class SyncJobStatus(str, enum.Enum):
    PENDING = "PENDING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    DEAD_LETTER = "DEAD_LETTER"


# ---------------------------------------------------------------------------
# CYCLES / PROGRAMS
# ---------------------------------------------------------------------------


class CycleProgram(Base):
    """
    A container of modules, typed `cycle` or `program`.

    Module definitions live in the document store; this row only links to
    them by id through CycleProgramModule.
    """

    __tablename__ = "cycles_programs"
    __table_args__ = (
        Index("idx_cycles_programs_title", "title"),
        Index("idx_cycles_programs_archived", "archived"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(255), nullable=False)
    type = Column(
        SAEnum(CycleProgramType, name="cycle_program_type_enum", native_enum=False),
        nullable=False,
    )
    program_type = Column(
        SAEnum(ProgramKind, name="program_kind_enum", native_enum=False),
        nullable=True,
        doc="Only set for `program` containers.",
    )
    description = Column(Text, nullable=True)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    budget = Column(Numeric(10, 2), nullable=True)
    entity = Column(String(255), nullable=True)
    facilitator = Column(String(255), nullable=True)
    archived = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    module_links = relationship(
        "CycleProgramModule",
        back_populates="cycle_program",
        cascade="all, delete-orphan",
        order_by="CycleProgramModule.id",
    )
    registrations = relationship(
        "Registration",
        back_populates="cycle_program",
        cascade="all, delete-orphan",
    )

    @property
    def module_ids(self) -> list:
        return [link.module_id for link in self.module_links]

    def __repr__(self) -> str:
        return f"<CycleProgram id={self.id} type={self.type} title={self.title!r}>"


class CycleProgramModule(Base):
    __tablename__ = "cycle_program_modules"
    __table_args__ = (
        UniqueConstraint("cycle_program_id", "module_id", name="uq_cycle_program_modules_program_module"),
        Index("idx_cycle_program_modules_module", "module_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    cycle_program_id = Column(
        Integer,
        ForeignKey("cycles_programs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    module_id = Column(String(64), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    cycle_program = relationship("CycleProgram", back_populates="module_links")


# ---------------------------------------------------------------------------
# REGISTRATIONS
# ---------------------------------------------------------------------------


class Registration(Base):
    """
    One learner's enrollment against one cycle/program.

    There is deliberately no unique constraint on (cycle_program_id,
    user_id): one-per-pair is maintained by find-or-create in the
    enrollment and synchronisation services.
    """

    __tablename__ = "cycle_program_registrations"
    __table_args__ = (
        Index("idx_registrations_program_user", "cycle_program_id", "user_id"),
        Index("idx_registrations_status", "status"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    cycle_program_id = Column(
        Integer,
        ForeignKey("cycles_programs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id = Column(Integer, nullable=False, index=True)
    status = Column(
        SAEnum(EnrollmentStatus, name="enrollment_status_enum", native_enum=False),
        nullable=False,
        default=EnrollmentStatus.PENDING,
    )
    decided_by_user_id = Column(Integer, nullable=True)
    decided_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    cycle_program = relationship("CycleProgram", back_populates="registrations")
    user_modules = relationship(
        "UserModule",
        back_populates="registration",
        cascade="all, delete-orphan",
        order_by="UserModule.id",
    )

    def __repr__(self) -> str:
        return f"<Registration id={self.id} program={self.cycle_program_id} user={self.user_id} status={self.status}>"


class UserModule(Base):
    """Per-module acceptance record inside a registration."""

    __tablename__ = "cycle_program_user_modules"
    __table_args__ = (
        UniqueConstraint("registration_id", "module_id", name="uq_user_modules_registration_module"),
        Index("idx_user_modules_module_status", "module_id", "status"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    registration_id = Column(
        Integer,
        ForeignKey("cycle_program_registrations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    module_id = Column(String(64), nullable=False)
    status = Column(
        SAEnum(EnrollmentStatus, name="enrollment_status_enum", native_enum=False),
        nullable=False,
        default=EnrollmentStatus.PENDING,
    )
    decided_by_user_id = Column(Integer, nullable=True)
    decided_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    registration = relationship("Registration", back_populates="user_modules")

    def __repr__(self) -> str:
        return f"<UserModule id={self.id} registration={self.registration_id} module={self.module_id} status={self.status}>"


# ---------------------------------------------------------------------------
# PRESENCE
# ---------------------------------------------------------------------------


class PresenceRecord(Base):
    """
    One attendance fact for (registration, module, date).

    Keyed by registration + module rather than by user module row so the
    history survives the delete-and-reinsert of a module resync.
    """

    __tablename__ = "presence_records"
    __table_args__ = (
        UniqueConstraint(
            "registration_id",
            "module_id",
            "date",
            name="uq_presence_records_registration_module_date",
        ),
        Index("idx_presence_records_module_date", "module_id", "date"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    registration_id = Column(
        Integer,
        ForeignKey("cycle_program_registrations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    module_id = Column(String(64), nullable=False)
    date = Column(Date, nullable=False)
    status = Column(
        SAEnum(PresenceStatus, name="presence_status_enum", native_enum=False),
        nullable=False,
        default=PresenceStatus.ABSENT,
    )
    recorded_by_user_id = Column(Integer, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    def __repr__(self) -> str:
        return f"<PresenceRecord registration={self.registration_id} module={self.module_id} date={self.date} status={self.status}>"


# ---------------------------------------------------------------------------
# CROSS-STORE RECONCILIATION
# ---------------------------------------------------------------------------


class SyncJob(Base):
    """
    Outbox row for one module -> program synchronisation.

    Written after the module document is committed; retried by the
    dispatcher until it succeeds or is dead-lettered.
    """

    __tablename__ = "sync_jobs"
    __table_args__ = (
        Index("ix_sync_jobs_status_next_attempt", "status", "next_attempt_at"),
        Index("ix_sync_jobs_module", "module_id"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    module_id = Column(String(64), nullable=False)
    cycle_program_id = Column(
        Integer,
        ForeignKey("cycles_programs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    mode = Column(
        SAEnum(SyncMode, name="sync_mode_enum", native_enum=False),
        nullable=False,
        default=SyncMode.RESET_AND_SYNC,
    )
    assigned_user_ids = Column(JSON, nullable=False, default=list)
    status = Column(
        SAEnum(SyncJobStatus, name="sync_job_status_enum", native_enum=False),
        nullable=False,
        default=SyncJobStatus.PENDING,
    )
    attempt_count = Column(Integer, nullable=False, default=0)
    next_attempt_at = Column(DateTime(timezone=True), nullable=True)
    last_error = Column(Text, nullable=True)
    created_by_user_id = Column(Integer, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<SyncJob id={self.id} module={self.module_id} program={self.cycle_program_id} status={self.status}>"
