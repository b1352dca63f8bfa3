# backend/trainingdb/apps/programs/schemas.py

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..modules.documents import ModuleDocument
from .models import (
    CycleProgramType,
    EnrollmentStatus,
    PresenceStatus,
    ProgramKind,
    SyncJobStatus,
    SyncMode,
)

# Alias so a field may be called `date`.
CalendarDate = date


# ---------------------------------------------------------------------------
# CYCLES / PROGRAMS
# ---------------------------------------------------------------------------


class CycleProgramBase(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    type: CycleProgramType
    program_type: Optional[ProgramKind] = Field(
        None,
        description="Only meaningful for `program` containers; always null for cycles.",
    )
    description: Optional[str] = None
    start_date: date
    end_date: date
    budget: Optional[Decimal] = None
    entity: Optional[str] = None
    facilitator: Optional[str] = None


class CycleProgramCreate(CycleProgramBase):
    module_ids: List[str] = Field(default_factory=list)


class CycleProgramUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    program_type: Optional[ProgramKind] = None
    description: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    budget: Optional[Decimal] = None
    entity: Optional[str] = None
    facilitator: Optional[str] = None
    module_ids: Optional[List[str]] = Field(
        None,
        description="Replaces the linked module ids when provided.",
    )


class CycleProgramRead(CycleProgramBase):
    model_config = ConfigDict(from_attributes=True)

    id: int
    archived: bool
    module_ids: List[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class CycleProgramDetail(CycleProgramRead):
    modules: List[ModuleDocument] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# REGISTRATIONS
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    user_id: Optional[int] = Field(
        None,
        description="Defaults to the caller; admins may register someone else.",
    )
    selected_module_ids: Optional[List[str]] = Field(
        None,
        description="Required for `program` containers; ignored for cycles.",
    )


class UserModuleRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    registration_id: int
    module_id: str
    status: EnrollmentStatus
    decided_by_user_id: Optional[int] = None
    decided_at: Optional[datetime] = None
    created_at: datetime


class RegistrationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    cycle_program_id: int
    user_id: int
    status: EnrollmentStatus
    decided_by_user_id: Optional[int] = None
    decided_at: Optional[datetime] = None
    created_at: datetime
    user_modules: List[UserModuleRead] = Field(default_factory=list)


class ModuleDecision(BaseModel):
    module_id: str
    status: EnrollmentStatus


class DecisionRequest(BaseModel):
    status: Optional[EnrollmentStatus] = Field(
        None,
        description="Cascades to every module of the registration.",
    )
    module_statuses: Optional[List[ModuleDecision]] = Field(
        None,
        description="Per-module decisions; take precedence over `status`.",
    )

    @model_validator(mode="after")
    def _require_one_shape(self) -> "DecisionRequest":
        if self.status is None and not self.module_statuses:
            raise ValueError("Provide `status` or `module_statuses`.")
        return self


class DecisionResult(BaseModel):
    registration_id: int
    final_status: EnrollmentStatus
    registration: RegistrationRead


class UserProgramRegistrations(BaseModel):
    cycle_program_id: int
    user_id: int
    registrations: List[RegistrationRead]
    module_statuses: Dict[str, EnrollmentStatus]


class AcceptedRegistrationRead(BaseModel):
    registration_id: int
    user_id: int
    accepted_module_ids: List[str]


# ---------------------------------------------------------------------------
# PRESENCE
# ---------------------------------------------------------------------------


class PresenceEntryIn(BaseModel):
    """
    One attendance submission.

    Fields are loosely typed on purpose: the presence service validates the
    whole batch itself and reports every failing entry at once.
    """

    user_id: Union[int, str]
    date: Optional[Union[CalendarDate, str]] = None
    day: Optional[int] = Field(None, description="Legacy 1-based index into the module's dates.")
    status: str


class PresenceSubmitRequest(BaseModel):
    entries: List[PresenceEntryIn] = Field(..., min_length=1)


class PresenceSubmitResult(BaseModel):
    module_id: str
    written: int


class PresenceRowRead(BaseModel):
    user_id: int
    registration_id: int
    user_module_id: int
    statuses: Dict[date, PresenceStatus]
    days_present: int


class PresenceSheetRead(BaseModel):
    module_id: str
    dates: List[date]
    rows: List[PresenceRowRead]


class LegacyImportResult(BaseModel):
    module_id: str
    imported: int
    skipped: int


# ---------------------------------------------------------------------------
# SYNCHRONISATION
# ---------------------------------------------------------------------------


class SyncRequest(BaseModel):
    cycle_program_id: Optional[int] = Field(
        None,
        description="Defaults to the program the module is linked to.",
    )
    user_ids: Optional[List[int]] = Field(
        None,
        description="Defaults to the module's current assigned users.",
    )
    mode: SyncMode = SyncMode.RESET_AND_SYNC


class SyncResultRead(BaseModel):
    module_id: str
    cycle_program_id: int
    mode: SyncMode
    registrations_created: int
    user_modules_created: int
    user_modules_reset: int


class SyncJobRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    module_id: str
    cycle_program_id: int
    mode: SyncMode
    assigned_user_ids: List[int]
    status: SyncJobStatus
    attempt_count: int
    next_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None


class DispatchResult(BaseModel):
    dispatched: int
