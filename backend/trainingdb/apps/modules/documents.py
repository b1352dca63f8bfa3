# backend/trainingdb/apps/modules/documents.py
"""
Typed shape of a module document as it lives in the document store.

A module nests its sessions, each session nests its date ranges. Date
range bounds are kept as the raw strings that were stored; parsing is the
scheduling layer's job so legacy documents with odd values still load.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class InstructorType(str, enum.Enum):
    INTERN = "intern"
    EXTERN = "extern"


class DeliveryMode(str, enum.Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    HYBRID = "hybrid"


class DateRange(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    start_time: str = Field(..., alias="startTime", description="Inclusive start instant (ISO 8601).")
    end_time: str = Field(..., alias="endTime", description="Inclusive end instant (ISO 8601).")


class ExternalInstructor(BaseModel):
    phone: Optional[str] = None
    position: Optional[str] = None
    cv: Optional[str] = None


class ModuleSession(BaseModel):
    """An instructor-led block inside a module."""

    model_config = ConfigDict(populate_by_name=True)

    date_ranges: List[DateRange] = Field(default_factory=list, alias="dateRanges")
    instructor_type: Optional[InstructorType] = None
    instructor_id: Optional[int] = None
    instructor_name: Optional[str] = None
    external_instructor: Optional[ExternalInstructor] = None


class LegacyDailyStatus(BaseModel):
    day: int = Field(..., ge=1, description="1-based index into the module's sorted dates.")
    status: Literal["present", "absent"] = "absent"


class LegacyPresenceEntry(BaseModel):
    """Per-user presence as older module documents stored it."""

    user_id: int
    daily_statuses: List[LegacyDailyStatus] = Field(default_factory=list)
    days_present: int = 0


class ModuleDocument(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    title: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    delivery_mode: Optional[DeliveryMode] = None
    sessions: List[ModuleSession] = Field(default_factory=list)
    assigned_users: List[int] = Field(default_factory=list)
    interested_users: List[int] = Field(default_factory=list)
    presence: List[LegacyPresenceEntry] = Field(default_factory=list)

    # Explicit program link; `cycle_program_title` is the legacy free-text link.
    cycle_program_id: Optional[int] = None
    cycle_program_title: Optional[str] = None

    archived: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def storage_payload(self) -> dict:
        """JSON body persisted in the document column (indexed fields excluded)."""
        return self.model_dump(
            mode="json",
            exclude={"id", "archived", "created_at", "updated_at"},
        )
