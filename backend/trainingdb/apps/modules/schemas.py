# backend/trainingdb/apps/modules/schemas.py

from __future__ import annotations

from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .documents import DeliveryMode, ModuleDocument, ModuleSession


# ---------------------------------------------------------------------------
# MODULE DOCUMENTS
# ---------------------------------------------------------------------------


class ModuleBase(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    delivery_mode: Optional[DeliveryMode] = None
    sessions: List[ModuleSession] = Field(
        default_factory=list,
        description="Instructor-led blocks; every date range must parse and start before it ends.",
    )
    cycle_program_id: Optional[int] = Field(
        None,
        description="Explicit link to the cycle/program this module belongs to.",
    )
    cycle_program_title: Optional[str] = Field(
        None,
        description="Legacy link by cycle/program title. Ignored when cycle_program_id is set.",
    )


class ModuleCreate(ModuleBase):
    assigned_users: List[int] = Field(default_factory=list)


class ModuleUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    delivery_mode: Optional[DeliveryMode] = None
    sessions: Optional[List[ModuleSession]] = None
    cycle_program_id: Optional[int] = None
    cycle_program_title: Optional[str] = None
    assigned_users: Optional[List[int]] = None


class DurationRead(BaseModel):
    count: int
    dates: List[date]


class ModuleRead(ModuleDocument):
    duration: DurationRead


# ---------------------------------------------------------------------------
# ASSIGNMENT / CONFLICTS
# ---------------------------------------------------------------------------


class AssignUsersRequest(BaseModel):
    user_ids: List[int] = Field(
        ...,
        description="Complete list of directly assigned users after this call.",
    )


class EvictionRead(BaseModel):
    user_id: int
    from_module_id: str


class SyncJobSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    status: str
    attempt_count: int
    last_error: Optional[str] = None


class AssignUsersResult(BaseModel):
    module_id: str
    assigned_users: List[int]
    evicted: List[EvictionRead]
    cycle_program_id: Optional[int] = None
    sync_job: Optional[SyncJobSummary] = None


class UserJoinRequest(BaseModel):
    user_id: int


class ConflictCheckRequest(BaseModel):
    module_id: str
    other_module_id: str


class ConflictCheckResult(BaseModel):
    module_id: str
    other_module_id: str
    conflict: bool
    checked_at: datetime
