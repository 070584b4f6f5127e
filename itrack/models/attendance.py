"""Attendance events: one clock-in to clock-out cycle per record."""
from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

logger = logging.getLogger(__name__)


class AttendanceStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Coordinates(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)


class Location(BaseModel):
    """Where the intern stood at time-in."""
    address: str = Field(min_length=1)
    coordinates: Coordinates


class AttendanceEvent(BaseModel):
    """Attendance event as stored in the ``attendance`` collection."""

    model_config = ConfigDict(use_enum_values=True)

    id: Optional[str] = None
    intern_id: str = Field(min_length=1)
    teacher_id: str = Field(min_length=1)
    clock_in: datetime
    clock_out: Optional[datetime] = None
    location: str
    coordinates: Coordinates
    photo_url: str = Field(min_length=1)
    time_out_photo_url: Optional[str] = None
    status: AttendanceStatus = AttendanceStatus.PENDING
    is_late: bool = False
    is_early: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    approval_reason: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.clock_out is None

    @property
    def total_hours(self) -> float:
        if self.clock_out is None:
            return 0.0
        return (self.clock_out - self.clock_in).total_seconds() / 3600

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(exclude={"id"})


def parse_event(raw: dict[str, Any]) -> Optional[AttendanceEvent]:
    """Validate one raw store record; malformed records are logged and dropped."""
    try:
        return AttendanceEvent.model_validate(raw)
    except PydanticValidationError as e:
        logger.warning(f"Skipping malformed attendance record {raw.get('id')!r}: {e.error_count()} errors")
        return None


def parse_events(raws: Iterable[dict[str, Any]]) -> list[AttendanceEvent]:
    events = []
    for raw in raws:
        event = parse_event(raw)
        if event is not None:
            events.append(event)
    return events


class DecisionRequest(BaseModel):
    reason: Optional[str] = None


class AttendanceSummary(BaseModel):
    total_hours: float = 0.0
    total_days: int = 0
    average_hours: float = 0.0
    approved_count: int = 0
    pending_count: int = 0
    rejected_count: int = 0


class TeacherStats(BaseModel):
    total_interns: int
    total_attendance: int
    pending_attendance: int
